"""
SQLAlchemy declarative base shared by all persisted models.

Kept in its own module so models can be imported without pulling in
engine or session configuration.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
