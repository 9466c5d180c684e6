"""Keyed TTL stores for short-lived entries such as pending OTPs.

Entries are returned with their expiry and are not hidden once stale; callers
decide how to treat an expired entry (the feedback gate reports and clears it).
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, NamedTuple, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import KeyedEntry


class StoredEntry(NamedTuple):
    value: Dict[str, Any]
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at


class KeyedTTLStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[StoredEntry]:
        ...

    @abstractmethod
    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int, now: datetime | None = None) -> StoredEntry:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self, now: datetime | None = None) -> int:
        ...


class MemoryTTLStore(KeyedTTLStore):
    """Process-local store; only suitable for a single worker."""

    def __init__(self) -> None:
        self._entries: Dict[str, StoredEntry] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._entries.get(key)

    def put(self, key, value, ttl_seconds, now=None):
        entry = StoredEntry(dict(value), (now or datetime.utcnow()) + timedelta(seconds=ttl_seconds))
        with self._lock:
            self._entries[key] = entry
        return entry

    def delete(self, key):
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self, now=None):
        now = now or datetime.utcnow()
        with self._lock:
            stale = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)


class DatabaseTTLStore(KeyedTTLStore):
    """Store backed by the keyed_entries table, shared by every worker."""

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace

    def _row(self, key: str) -> Optional[KeyedEntry]:
        return KeyedEntry.query.filter_by(namespace=self.namespace, key=key).first()

    def get(self, key):
        row = self._row(key)
        if row is None:
            return None
        return StoredEntry(dict(row.payload or {}), row.expires_at)

    def put(self, key, value, ttl_seconds, now=None):
        expires_at = (now or datetime.utcnow()) + timedelta(seconds=ttl_seconds)
        row = self._row(key)
        if row is None:
            row = KeyedEntry(namespace=self.namespace, key=key)
            db.session.add(row)
        row.payload = dict(value)
        row.expires_at = expires_at
        try:
            db.session.commit()
        except IntegrityError:
            # Lost an insert race for the same key; overwrite the winner.
            db.session.rollback()
            row = self._row(key)
            row.payload = dict(value)
            row.expires_at = expires_at
            db.session.commit()
        return StoredEntry(dict(value), expires_at)

    def delete(self, key):
        deleted = KeyedEntry.query.filter_by(namespace=self.namespace, key=key).delete(synchronize_session=False)
        db.session.commit()
        return bool(deleted)

    def purge_expired(self, now=None):
        now = now or datetime.utcnow()
        deleted = (
            KeyedEntry.query.filter(KeyedEntry.namespace == self.namespace, KeyedEntry.expires_at < now)
            .delete(synchronize_session=False)
        )
        db.session.commit()
        return deleted


def get_otp_store() -> KeyedTTLStore:
    """Return the app-wide OTP store selected by OTP_STORE_BACKEND."""
    store = current_app.extensions.get("otp_store")
    if store is not None:
        return store
    backend = current_app.config.get("OTP_STORE_BACKEND", "database")
    if backend == "memory":
        store = MemoryTTLStore()
    elif backend == "database":
        store = DatabaseTTLStore("otp")
    else:
        raise ValueError(f"Unknown OTP_STORE_BACKEND: {backend}")
    current_app.extensions["otp_store"] = store
    return store
