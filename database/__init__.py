"""
Database layer — Multi-backend persistence for jobs, events and recommendations.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  job = await store.get_job("4f1c...")
"""
from database.models import (
    Base, BrandRow, JobRow, RecommendationRow, ActionDraftRow,
    ActionExecutionRow, EventRow, EventRuleRow, SignalRow,
)
from database.session import configure_engine, get_engine, get_session, init_db, close_db
from database.store_base import BasePipelineStore
from database.store import SqlPipelineStore
from database.store_memory import InMemoryPipelineStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "BrandRow", "JobRow", "RecommendationRow", "ActionDraftRow",
    "ActionExecutionRow", "EventRow", "EventRuleRow", "SignalRow",
    # Session management
    "configure_engine", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BasePipelineStore",
    # Store backends
    "SqlPipelineStore", "InMemoryPipelineStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
