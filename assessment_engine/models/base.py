"""
Database base configuration for SQLAlchemy models.

Uses SQLAlchemy 2.0 style with DeclarativeBase. The engine is created lazily
through create_session_factory() so that library consumers and tests can bind
their own database URL.
"""

import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from typing import Callable, Optional

# Load environment variables
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./assessment_engine.db")

# Echo SQL only when explicitly requested
DB_ECHO = os.getenv("DB_ECHO", "False").lower() in ("true", "1", "yes")

SessionFactory = Callable[[], Session]


class Base(DeclarativeBase):
    """
    SQLAlchemy 2.0 declarative base class.
    """

    pass


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """
    Build a sync session factory for the given database URL.

    Scoring attempts, percentile recalculation and psychometric audits each
    open their own session from this factory so that their transactions stay
    independent of one another.

    Args:
        database_url: SQLAlchemy URL. Defaults to DATABASE_URL from the environment.

    Returns:
        Configured sessionmaker bound to a new engine.
    """
    url = database_url or DATABASE_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, echo=DB_ECHO, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
