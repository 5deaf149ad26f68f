"""
Database access: async engine, sessions and schema creation.
"""
from meeting_pipeline.db.engine import create_engine
from meeting_pipeline.db.session import create_session_factory, create_tables, get_db_session

__all__ = ["create_engine", "create_session_factory", "create_tables", "get_db_session"]
