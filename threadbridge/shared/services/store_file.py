"""On-disk form of the session store.

The whole document is rewritten on every change. It is encoded, written
to ``.<name>.<pid>.tmp`` next to the store and synced, then renamed over
the store, so a reader finds either the previous document or the new
one. The file holds usernames and prompts and is created owner-only.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STORE_FILE_MODE = 0o600


def temp_path_for(path: Path) -> Path:
    return path.with_name(f".{path.name}.{os.getpid()}.tmp")


def encode_store_document(version: int, sessions: dict[str, dict[str, Any]]) -> bytes:
    document = {"version": version, "sessions": sessions}
    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _sync_directory(directory: Path) -> None:
    # Makes the rename durable; some filesystems refuse directory fds.
    try:
        fd = os.open(str(directory), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        logger.debug("fsync of %s skipped: %s", directory, exc)
    finally:
        os.close(fd)


def write_store_document(
    path: Path, version: int, sessions: dict[str, dict[str, Any]],
) -> None:
    """Replace the store at ``path`` with ``sessions``.

    Raises:
        OSError: The document could not be written. The previous store
            is left in place and the temp file is removed.
    """
    payload = encode_store_document(version, sessions)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = temp_path_for(path)
    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, STORE_FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _sync_directory(path.parent)
    logger.debug("Wrote %d session record(s) to %s", len(sessions), path)
