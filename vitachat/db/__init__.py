"""
vitachat.db: SQLAlchemy engine, session factory and the SQLModel tables.

Usage:
    from vitachat.db import get_engine, init_db
    from vitachat.db.models import User, Message, ApiCall
"""

from vitachat.db.engine import configure_engine, get_engine, get_session, init_db, ping

__all__ = ["configure_engine", "get_engine", "get_session", "init_db", "ping"]
