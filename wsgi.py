"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi create-user alice --email alice@example.com
"""

from uathub import create_app

app = create_app()
