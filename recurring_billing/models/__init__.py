"""
Recurring Billing Engine
SQLAlchemy extension instance shared by every model module.

Usage:
    from recurring_billing.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
