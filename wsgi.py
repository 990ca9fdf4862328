"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi check-contract
    gunicorn wsgi:app
"""

from floorflow import create_app

app = create_app()
