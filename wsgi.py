"""
WSGI entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi ensure-schema
    flask --app wsgi issue-token alice bay_manager
"""

from loto import create_app

app = create_app()
