"""Phase contract, action router, endpoint guard and QA payload schemas."""
