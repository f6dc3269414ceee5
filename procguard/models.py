"""
Database models for procguard.

Uses Peewee ORM with SQLite. Stores managed process records and the
rolling log/error history of each process.
"""

import os
from datetime import datetime

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(db_path=None):
    """Initialize database connection and create tables."""
    db_path = str(db_path or config.db_path)
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    db = SqliteDatabase(
        db_path,
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([ProcessRecord, HistoryEntry], safe=True)
    return db


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class ProcessRecord(BaseModel):
    """Last known snapshot of a managed process."""

    process_id = CharField(primary_key=True)
    state = CharField(index=True)
    payload = TextField()  # JSON snapshot of ManagedProcess
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "process_records"


class HistoryEntry(BaseModel):
    """A retained log line or classified error of a managed process."""

    id = AutoField()
    process_id = CharField(index=True)
    seq = IntegerField()
    kind = CharField()  # line, error
    payload = TextField()  # JSON
    created_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "history_entries"
        indexes = ((("process_id", "seq"), True),)
