"""Database-agnostic type definitions for SQLAlchemy models.

Columns declared with these types work on both SQLite (local runs, tests)
and PostgreSQL (production).
"""
from sqlalchemy import JSON, BigInteger, Uuid

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid(as_uuid=True)

# Money is stored as integer paise
PaiseType = BigInteger
