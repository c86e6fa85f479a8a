"""
Commitment Ledger — SQLAlchemy models package.

The shared ``db`` handle lives here so every model module can do
``from app.models import db`` without importing the application factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
