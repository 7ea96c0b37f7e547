"""
WSGI + Flask-Migrate / Alembic entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi run-job cap_deadline_escalation
"""

from peer_review import create_app

app = create_app()
