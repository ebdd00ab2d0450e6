"""
UAT Hub
Database handle shared by all model modules.

Usage:
    from uathub.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
