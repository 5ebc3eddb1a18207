"""Session persistence: durable records of live and past conversations.

Storage layout:
    ~/.threadbridge/sessions.json

    {
      "version": 2,
      "sessions": {
        "<platform_id>:<thread_id>": { ...PersistedSession fields... }
      }
    }

Records are soft-deleted (``cleaned_at`` set) when a conversation ends so
they remain visible in history; retention cleanup removes them for good.
Version 1 files keyed records by thread id alone and are migrated on read.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from threadbridge.engine.errors import StoreError
from threadbridge.engine.models import PersistedSession, from_iso, to_iso, utcnow
from threadbridge.shared.services.store_file import write_store_document

logger = logging.getLogger(__name__)

STORE_VERSION = 2
DEFAULT_PLATFORM_ID = "default"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def default_store_path() -> Path:
    """Resolve the store path from the current HOME at call time."""
    return Path.home() / ".threadbridge" / "sessions.json"


def _migrate(data: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Bring an on-disk document up to the current version."""
    version = data.get("version", 1)
    sessions = data.get("sessions") or {}
    if version >= STORE_VERSION:
        return dict(sessions)

    migrated: dict[str, dict[str, Any]] = {}
    for key, record in sessions.items():
        record = dict(record)
        record.setdefault("thread_id", key)
        if not record.get("platform_id"):
            record["platform_id"] = DEFAULT_PLATFORM_ID
        migrated[f"{record['platform_id']}:{record['thread_id']}"] = record
    logger.info(
        "Migrated session store from v%s to v%d (%d records)",
        version, STORE_VERSION, len(migrated),
    )
    return migrated


class SessionStore:
    """JSON-file store of PersistedSession records keyed by composite id.

    Every mutation is a read-modify-write of the whole document under a
    lock, written with an atomic rename so a crash never leaves a
    truncated file behind.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path is not None else default_store_path()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ── Raw document access ──────────────────────────────────────

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            backup = self._path.with_suffix(self._path.suffix + ".corrupt")
            logger.error(
                "Session store %s is corrupt (%s); moving it to %s",
                self._path, exc, backup,
            )
            self._path.replace(backup)
            return {}
        except OSError as exc:
            raise StoreError(str(self._path), f"read failed: {exc}") from exc
        if not isinstance(data, dict):
            logger.error("Session store %s has unexpected shape; ignoring", self._path)
            return {}
        return _migrate(data)

    def _write(self, sessions: dict[str, dict[str, Any]]) -> None:
        try:
            write_store_document(self._path, STORE_VERSION, sessions)
        except OSError as exc:
            raise StoreError(str(self._path), f"write failed: {exc}") from exc

    def _records(self) -> dict[str, PersistedSession]:
        return {
            key: PersistedSession.from_dict(value)
            for key, value in self._read().items()
        }

    # ── Single-record operations ─────────────────────────────────

    def save(self, session_id: str, record: PersistedSession) -> None:
        """Insert or replace the record for ``session_id``."""
        with self._lock:
            sessions = self._read()
            sessions[session_id] = record.to_dict()
            self._write(sessions)
        logger.debug("Session %s saved to %s", session_id, self._path)

    def get(self, session_id: str) -> PersistedSession | None:
        """Return the record for ``session_id``, soft-deleted or not."""
        raw = self._read().get(session_id)
        return PersistedSession.from_dict(raw) if raw is not None else None

    def remove(self, session_id: str) -> bool:
        """Hard-delete a record. Returns True if one existed."""
        with self._lock:
            sessions = self._read()
            if session_id not in sessions:
                return False
            del sessions[session_id]
            self._write(sessions)
        logger.info("Session %s removed from store", session_id)
        return True

    def soft_delete(self, session_id: str) -> bool:
        """Mark a record inactive. A second call is a no-op.

        Returns True only when this call performed the transition.
        """
        with self._lock:
            sessions = self._read()
            record = sessions.get(session_id)
            if record is None or record.get("cleaned_at"):
                return False
            record["cleaned_at"] = to_iso(utcnow())
            self._write(sessions)
        logger.info("Session %s soft-deleted", session_id)
        return True

    # ── Queries ──────────────────────────────────────────────────

    def load(self) -> dict[str, PersistedSession]:
        """Return every active (not soft-deleted) record."""
        return {
            key: record
            for key, record in self._records().items()
            if not record.cleaned_at
        }

    def find_by_thread(self, platform_id: str, thread_id: str) -> PersistedSession | None:
        """Active record for a thread, if any."""
        return self.load().get(f"{platform_id}:{thread_id}")

    def find_by_post_id(self, platform_id: str, post_id: str) -> PersistedSession | None:
        """Active record whose timeout or start post is ``post_id``."""
        for record in self.load().values():
            if record.platform_id != platform_id:
                continue
            if post_id in (record.timeout_post_id, record.session_start_post_id):
                return record
        return None

    def get_history(
        self,
        platform_id: str,
        active_ids: set[str] | None = None,
    ) -> list[PersistedSession]:
        """Inactive records for a platform, most recently active first.

        Soft-deleted records are always included. Timed-out records that
        were never soft-deleted are included only when ``active_ids`` is
        given and does not contain them.
        """
        history: list[PersistedSession] = []
        for key, record in self._records().items():
            if record.platform_id != platform_id:
                continue
            if record.cleaned_at:
                history.append(record)
            elif (
                active_ids is not None
                and record.timeout_post_id
                and key not in active_ids
            ):
                history.append(record)
        history.sort(key=lambda r: r.last_activity or _EPOCH, reverse=True)
        return history

    # ── Sweeps ───────────────────────────────────────────────────

    def clean_stale(self, max_age_seconds: float) -> list[str]:
        """Soft-delete active records idle longer than ``max_age_seconds``."""
        now = utcnow()
        cutoff = now - timedelta(seconds=max_age_seconds)
        cleaned: list[str] = []
        with self._lock:
            sessions = self._read()
            for key, record in sessions.items():
                if record.get("cleaned_at"):
                    continue
                last = from_iso(record.get("last_activity_at")) or _EPOCH
                if last < cutoff:
                    record["cleaned_at"] = to_iso(now)
                    cleaned.append(key)
            if cleaned:
                self._write(sessions)
        if cleaned:
            logger.info("Soft-deleted %d stale session(s)", len(cleaned))
        return cleaned

    def clean_history(self, retention_seconds: float) -> int:
        """Hard-remove soft-deleted records older than the retention window."""
        cutoff = utcnow() - timedelta(seconds=retention_seconds)
        with self._lock:
            sessions = self._read()
            expired = [
                key for key, record in sessions.items()
                if record.get("cleaned_at")
                and (from_iso(record["cleaned_at"]) or _EPOCH) < cutoff
            ]
            for key in expired:
                del sessions[key]
            if expired:
                self._write(sessions)
        if expired:
            logger.info("Removed %d expired history record(s)", len(expired))
        return len(expired)

    def clear(self) -> None:
        """Drop every record."""
        with self._lock:
            self._write({})
        logger.info("Session store %s cleared", self._path)
