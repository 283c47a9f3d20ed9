"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi run-suite suite.json
    gunicorn wsgi:app
"""

from testbench import create_app

app = create_app()
