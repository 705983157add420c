"""
LabOps Reconciliation Service
Model package — shared SQLAlchemy handle.

Usage:
    from labops.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
