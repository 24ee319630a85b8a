"""
Checklist Audit Platform
Model package — shared SQLAlchemy handle.

All model modules import ``db`` from here:

    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
