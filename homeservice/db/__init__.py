"""Database session and bootstrap helpers."""
from homeservice.db_core import Base, SessionLocal, engine, get_db

__all__ = ("Base", "engine", "SessionLocal", "get_db")
