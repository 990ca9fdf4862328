"""
Floorplan Pipeline Orchestrator
Blueprint registry.
"""
