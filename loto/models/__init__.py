"""
SQLAlchemy extension instance shared by the models and services.

Usage:
    from loto.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
