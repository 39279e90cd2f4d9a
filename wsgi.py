"""
Lead SLA Platform
WSGI and Flask CLI entry point.

Serve:
    gunicorn wsgi:app

Schema (Flask-Migrate / Alembic):
    flask db init       # first time only (creates migrations/)
    flask db migrate -m "lead sla schema"
    flask db upgrade

Scheduled sweep:
    flask sla-sweep [--workspace-id N]
"""

from app import create_app

app = create_app()
