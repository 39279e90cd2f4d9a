"""
Lead SLA Platform
SQLAlchemy models package.

The shared ``db`` instance lives here so that every model module and service
imports the same extension object:

    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
