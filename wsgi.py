"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi generate-cycles --date 2025-01-31
    gunicorn wsgi:app
"""

from opsdesk import create_app

app = create_app()
