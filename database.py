"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the salvage escrow settlement service.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend"""
    if database_url.startswith("sqlite"):
        # Development and test databases. Threads share the file, so the
        # busy timeout serializes writers instead of failing fast.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "salvage_escrow",  # For monitoring in pg_stat_activity
        },
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    """Services take one of these; expire_on_commit=False keeps results readable after commit"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(Config.DATABASE_URL)
SessionLocal = make_session_factory(engine)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False
