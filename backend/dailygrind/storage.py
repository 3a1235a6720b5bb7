"""Local durable storage: the running-timer mirror and the entry outbox.

Both live as JSON documents in the configured state directory so that a
restart of the process picks them up again.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import NotFound
from .records import TimeEntryDraft

logger = logging.getLogger(__name__)

TIMER_SNAPSHOT_VERSION = 1

_KEY_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")


class LocalStore:
    """Key/value JSON documents on disk."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

    def _path(self, key: str) -> Path:
        safe = _KEY_PATTERN.sub("_", key).strip("_") or "default"
        return self.directory / f"{safe}.json"

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = json.dumps(value, ensure_ascii=False, indent=2)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, path)
            except Exception:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable local state %s: %s", path.name, exc)
                return None

    def clear(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)


class TimerSnapshot(BaseModel):
    """Serialized form of a running timer."""

    model_config = ConfigDict(extra="forbid")

    version: int = TIMER_SNAPSHOT_VERSION
    project_id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    start_time: dt.datetime
    saved_at: dt.datetime

    @field_validator("start_time", "saved_at")
    @classmethod
    def _require_timezone(cls, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            raise ValueError("timestamps must carry a timezone")
        return value


@dataclass(slots=True)
class FlushResult:
    delivered: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    remaining: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Outbox:
    """Durable FIFO of finished timer sessions that still need to reach the repository."""

    def __init__(self, store: LocalStore, key: str) -> None:
        self.store = store
        self.key = key
        self._lock = RLock()

    def pending(self) -> List[TimeEntryDraft]:
        raw = self.store.load(self.key)
        if not isinstance(raw, list):
            return []
        drafts: List[TimeEntryDraft] = []
        for item in raw:
            try:
                drafts.append(TimeEntryDraft.from_json(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Dropping malformed outbox item in %s: %s", self.key, exc)
        return drafts

    def _write(self, drafts: List[TimeEntryDraft]) -> None:
        if drafts:
            self.store.save(self.key, [draft.to_json() for draft in drafts])
        else:
            self.store.clear(self.key)

    def enqueue(self, draft: TimeEntryDraft) -> None:
        with self._lock:
            drafts = self.pending()
            drafts.append(draft)
            self._write(drafts)

    def flush(self, send: Callable[[TimeEntryDraft], Any]) -> FlushResult:
        """Deliver queued drafts in order, stopping at the first failure."""
        with self._lock:
            drafts = self.pending()
            result = FlushResult(remaining=len(drafts))
            while drafts:
                draft = drafts[0]
                try:
                    send(draft)
                except NotFound as exc:
                    # The target project is gone; retrying can never succeed.
                    logger.error("Dropping outbox entry %s: %s", draft.id, exc.message)
                    drafts.pop(0)
                    result.dropped.append(draft.id)
                    self._write(drafts)
                    continue
                except Exception as exc:
                    logger.warning("Outbox delivery of entry %s failed: %s", draft.id, exc)
                    result.error = str(exc) or exc.__class__.__name__
                    break
                drafts.pop(0)
                result.delivered.append(draft.id)
                self._write(drafts)
            result.remaining = len(drafts)
            if result.delivered:
                logger.info("Delivered %d outbox entries for %s", len(result.delivered), self.key)
            return result


__all__ = ["FlushResult", "LocalStore", "Outbox", "TIMER_SNAPSHOT_VERSION", "TimerSnapshot"]
