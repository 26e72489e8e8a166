"""API key records and the stores that persist them.

Two interchangeable stores are provided: a JSONL file store for local use and
a SQL store for deployments with ``DATABASE_URL``. Both expose the same async
surface; the rate limiter only relies on ``read_by_key``,
``conditional_update`` and ``update``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import string
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from keygate.db import models
from keygate.services.rate_windows import RateWindow, calculate_next_reset

logger = logging.getLogger(__name__)

_KEY_ALPHABET = string.ascii_letters + string.digits
_KEY_BODY_LENGTH = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are always UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return _as_utc(value)
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


@dataclass(slots=True)
class ApiKeyRecord:
    id: str
    key: str
    name: str
    description: str = ""
    type: str = "dev"
    # Either a list or its serialized form, exactly as stored
    permissions: list[str] | str | None = None
    usage: int = 0
    usage_limit: int | None = None
    rate_limit_window: str | None = None
    rate_limit_reset_at: datetime | None = None
    last_used: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_json(self) -> dict[str, Any]:
        payload = asdict(self)
        for name in ("rate_limit_reset_at", "last_used", "created_at"):
            value = payload[name]
            payload[name] = value.isoformat() if value else None
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "ApiKeyRecord":
        return cls(
            id=str(payload["id"]),
            key=str(payload["key"]),
            name=str(payload.get("name") or ""),
            description=str(payload.get("description") or ""),
            type=str(payload.get("type") or "dev"),
            permissions=payload.get("permissions"),
            usage=int(payload.get("usage") or 0),
            usage_limit=payload.get("usage_limit"),
            rate_limit_window=payload.get("rate_limit_window"),
            rate_limit_reset_at=_parse_datetime(payload.get("rate_limit_reset_at")),
            last_used=_parse_datetime(payload.get("last_used")),
            created_at=_parse_datetime(payload.get("created_at")) or _utcnow(),
        )


@dataclass(slots=True)
class UsagePatch:
    """Fields the accounting path is allowed to change on a record."""

    usage: int
    last_used: datetime
    rate_limit_reset_at: datetime | None = None

    def values(self) -> dict[str, Any]:
        values: dict[str, Any] = {"usage": self.usage, "last_used": self.last_used}
        if self.rate_limit_reset_at is not None:
            values["rate_limit_reset_at"] = self.rate_limit_reset_at
        return values

    def apply_to(self, record: ApiKeyRecord) -> ApiKeyRecord:
        return replace(record, **self.values())


def parse_permissions(raw: Any) -> set[str]:
    """Decode a stored permission field; anything malformed is an empty set."""

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return set()
    if not isinstance(raw, (list, tuple, set)):
        return set()
    return {str(item) for item in raw}


def generate_api_key(prefix: str = "api_") -> str:
    body = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(_KEY_BODY_LENGTH))
    return f"{prefix}{body}"


def new_api_key_record(
    *,
    name: str,
    description: str = "",
    permissions: Iterable[str] = (),
    key_type: str = "dev",
    usage_limit: int | None = None,
    rate_limit_window: RateWindow | str | None = None,
    prefix: str = "api_",
    now: datetime | None = None,
) -> ApiKeyRecord:
    """Build a fresh record with zero usage and a window starting now."""

    now = now or _utcnow()
    window = RateWindow.parse(rate_limit_window)
    return ApiKeyRecord(
        id=os.urandom(8).hex(),
        key=generate_api_key(prefix),
        name=name,
        description=description,
        type=key_type,
        permissions=list(permissions),
        usage=0,
        usage_limit=usage_limit,
        rate_limit_window=window.value,
        rate_limit_reset_at=calculate_next_reset(window, now),
        created_at=now,
    )


class ApiKeyStore:
    """Async persistence surface for API key records."""

    async def read_by_key(self, key: str) -> ApiKeyRecord | None:
        raise NotImplementedError

    async def get(self, key_id: str) -> ApiKeyRecord | None:
        raise NotImplementedError

    async def conditional_update(
        self, key: str, expected_usage: int, patch: UsagePatch
    ) -> ApiKeyRecord | None:
        """Apply ``patch`` only if the stored usage still equals ``expected_usage``.

        Returns the updated record, or ``None`` when no row matched.
        """
        raise NotImplementedError

    async def update(self, key: str, patch: UsagePatch) -> ApiKeyRecord | None:
        raise NotImplementedError

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        raise NotImplementedError

    async def list_keys(self) -> list[ApiKeyRecord]:
        raise NotImplementedError

    async def update_details(
        self, key_id: str, *, name: str, description: str, permissions: list[str]
    ) -> ApiKeyRecord | None:
        """Replace the descriptive fields of a key; usage is left alone."""
        raise NotImplementedError

    async def delete(self, key_id: str) -> bool:
        raise NotImplementedError


_path_locks: dict[Path, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _path_locks_guard:
        return _path_locks.setdefault(path, threading.Lock())


class FileApiKeyStore(ApiKeyStore):
    """JSONL-backed store, one record per line.

    Every read-modify-write runs under a process-wide lock for the file, which
    makes ``conditional_update`` a real compare-and-swap within one process.
    The lock is a ``threading.Lock``, so it does not hold across processes:
    several workers sharing one JSONL file can overspend a key. Use
    :class:`SQLApiKeyStore` for multi-process deployments.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = _lock_for(self._path.resolve())

    async def read_by_key(self, key: str) -> ApiKeyRecord | None:
        return await asyncio.to_thread(self._find, key)

    async def get(self, key_id: str) -> ApiKeyRecord | None:
        for item in await asyncio.to_thread(self._snapshot):
            if item.id == key_id:
                return item
        return None

    async def conditional_update(
        self, key: str, expected_usage: int, patch: UsagePatch
    ) -> ApiKeyRecord | None:
        return await asyncio.to_thread(self._apply, key, patch, expected_usage)

    async def update(self, key: str, patch: UsagePatch) -> ApiKeyRecord | None:
        return await asyncio.to_thread(self._apply, key, patch, None)

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        await asyncio.to_thread(self._insert, record)
        return record

    async def list_keys(self) -> list[ApiKeyRecord]:
        items = await asyncio.to_thread(self._snapshot)
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    async def update_details(
        self, key_id: str, *, name: str, description: str, permissions: list[str]
    ) -> ApiKeyRecord | None:
        changes = {"name": name, "description": description, "permissions": list(permissions)}
        return await asyncio.to_thread(self._edit, key_id, changes)

    async def delete(self, key_id: str) -> bool:
        return await asyncio.to_thread(self._remove, key_id)

    def _edit(self, key_id: str, changes: dict[str, Any]) -> ApiKeyRecord | None:
        with self._lock:
            items = self._read_all()
            for i, item in enumerate(items):
                if item.id == key_id:
                    items[i] = replace(item, **changes)
                    self._write_all(items)
                    return items[i]
        return None

    def _find(self, key: str) -> ApiKeyRecord | None:
        for item in self._snapshot():
            if item.key == key:
                return item
        return None

    def _snapshot(self) -> list[ApiKeyRecord]:
        with self._lock:
            return self._read_all()

    def _apply(
        self, key: str, patch: UsagePatch, expected_usage: int | None
    ) -> ApiKeyRecord | None:
        with self._lock:
            items = self._read_all()
            for i, item in enumerate(items):
                if item.key != key:
                    continue
                if expected_usage is not None and item.usage != expected_usage:
                    return None
                items[i] = patch.apply_to(item)
                self._write_all(items)
                return items[i]
        return None

    def _insert(self, record: ApiKeyRecord) -> None:
        with self._lock:
            items = self._read_all()
            if any(item.key == record.key for item in items):
                raise ValueError("API key already exists")
            items.append(record)
            self._write_all(items)

    def _remove(self, key_id: str) -> bool:
        with self._lock:
            items = self._read_all()
            kept = [item for item in items if item.id != key_id]
            if len(kept) == len(items):
                return False
            self._write_all(kept)
            return True

    def _read_all(self) -> list[ApiKeyRecord]:
        if not self._path.exists():
            return []
        items: list[ApiKeyRecord] = []
        with self._path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(ApiKeyRecord.from_json(json.loads(line)))
                except (ValueError, KeyError, TypeError):
                    logger.warning("Skipping unreadable API key line", extra={"path": str(self._path)})
                    continue
        return items

    def _write_all(self, items: list[ApiKeyRecord]) -> None:
        tmp = self._path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            for item in items:
                fh.write(json.dumps(item.to_json(), ensure_ascii=False))
                fh.write("\n")
        tmp.replace(self._path)


def _record_from_row(row: models.ApiKey) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row.id,
        key=row.key,
        name=row.name,
        description=row.description or "",
        type=row.type or "dev",
        permissions=row.permissions,
        usage=row.usage or 0,
        usage_limit=row.usage_limit,
        rate_limit_window=row.rate_limit_window,
        rate_limit_reset_at=_as_utc(row.rate_limit_reset_at),
        last_used=_as_utc(row.last_used),
        created_at=_as_utc(row.created_at) or _utcnow(),
    )


class SQLApiKeyStore(ApiKeyStore):
    """SQL-backed store using the ``api_keys`` table."""

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def read_by_key(self, key: str) -> ApiKeyRecord | None:
        async with self._session_maker() as session:
            row = (
                await session.execute(select(models.ApiKey).where(models.ApiKey.key == key))
            ).scalar_one_or_none()
        return _record_from_row(row) if row else None

    async def get(self, key_id: str) -> ApiKeyRecord | None:
        async with self._session_maker() as session:
            row = await session.get(models.ApiKey, key_id)
        return _record_from_row(row) if row else None

    async def update_details(
        self, key_id: str, *, name: str, description: str, permissions: list[str]
    ) -> ApiKeyRecord | None:
        async with self._session_maker() as session:
            row = await session.get(models.ApiKey, key_id)
            if row is None:
                return None
            row.name = name
            row.description = description
            row.permissions = json.dumps(list(permissions))
            await session.commit()
            await session.refresh(row)
            return _record_from_row(row)

    async def conditional_update(
        self, key: str, expected_usage: int, patch: UsagePatch
    ) -> ApiKeyRecord | None:
        return await self._update(key, patch, expected_usage=expected_usage)

    async def update(self, key: str, patch: UsagePatch) -> ApiKeyRecord | None:
        return await self._update(key, patch)

    async def _update(
        self, key: str, patch: UsagePatch, *, expected_usage: int | None = None
    ) -> ApiKeyRecord | None:
        filters = [models.ApiKey.key == key]
        if expected_usage is not None:
            filters.append(models.ApiKey.usage == expected_usage)
        async with self._session_maker() as session:
            result = await session.execute(
                update(models.ApiKey)
                .where(*filters)
                .values(**patch.values())
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await session.rollback()
                return None
            # Same transaction, so this sees exactly the row just written.
            row = (
                await session.execute(select(models.ApiKey).where(models.ApiKey.key == key))
            ).scalar_one()
            record = _record_from_row(row)
            await session.commit()
        return record

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        permissions = record.permissions
        if not isinstance(permissions, str) and permissions is not None:
            permissions = json.dumps(list(permissions))
        async with self._session_maker() as session:
            session.add(
                models.ApiKey(
                    id=record.id,
                    key=record.key,
                    name=record.name,
                    description=record.description,
                    type=record.type,
                    permissions=permissions,
                    usage=record.usage,
                    usage_limit=record.usage_limit,
                    rate_limit_window=record.rate_limit_window,
                    rate_limit_reset_at=record.rate_limit_reset_at,
                    last_used=record.last_used,
                    created_at=record.created_at,
                )
            )
            await session.commit()
        return record

    async def list_keys(self) -> list[ApiKeyRecord]:
        async with self._session_maker() as session:
            rows = (
                await session.execute(
                    select(models.ApiKey).order_by(models.ApiKey.created_at.desc())
                )
            ).scalars().all()
        return [_record_from_row(row) for row in rows]

    async def delete(self, key_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                delete(models.ApiKey).where(models.ApiKey.id == key_id)
            )
            await session.commit()
        return bool(result.rowcount)


__all__ = [
    "ApiKeyRecord",
    "ApiKeyStore",
    "FileApiKeyStore",
    "SQLApiKeyStore",
    "UsagePatch",
    "generate_api_key",
    "new_api_key_record",
    "parse_permissions",
]
