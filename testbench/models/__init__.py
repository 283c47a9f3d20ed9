"""
AI Analysis Testbench
Shared SQLAlchemy handle.

Every model module imports ``db`` from here so that Flask-Migrate / Alembic
sees a single metadata object:

    from testbench.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
