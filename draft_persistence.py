from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field, is_dataclass, asdict
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class DraftPersistenceError(RuntimeError):
    pass


def to_jsonable(value: Any) -> Any:
    """
    Convert wizard data into plain JSON types.

    Dates become ISO strings, Decimals become strings (no float drift), enums become their values,
    dataclasses become dicts and tuples become lists.
    """
    if isinstance(value, Enum):
        return to_jsonable(value.value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise DraftPersistenceError(f"Cannot serialize value of type {type(value).__name__} into a draft")


@dataclass(frozen=True)
class DraftSnapshot:
    wizard_data: Mapping[str, Any] = field(default_factory=dict)
    progress: Mapping[str, Any] = field(default_factory=dict)
    version: int = SNAPSHOT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "wizardData": to_jsonable(self.wizard_data),
            "progress": to_jsonable(self.progress),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DraftSnapshot":
        wizard_data = raw.get("wizardData")
        progress = raw.get("progress")
        if not isinstance(wizard_data, Mapping) or not isinstance(progress, Mapping):
            raise DraftPersistenceError("Draft must contain 'wizardData' and 'progress' objects")
        return cls(wizard_data=dict(wizard_data), progress=dict(progress), version=int(raw.get("version") or SNAPSHOT_VERSION))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "DraftSnapshot":
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise DraftPersistenceError(f"Draft is not valid JSON: {e}") from e
        if not isinstance(raw, Mapping):
            raise DraftPersistenceError("Draft JSON must be an object")
        return cls.from_dict(raw)


class DraftStore(Protocol):
    def load(self, key: str) -> Optional[DraftSnapshot]:
        ...

    def save(self, key: str, snapshot: DraftSnapshot) -> None:
        ...

    def clear(self, key: str) -> None:
        ...


class InMemoryDraftStore:
    """
    Dict-backed store. Snapshots go through the JSON codec so a restore sees exactly what a file
    store would hand back.
    """

    def __init__(self) -> None:
        self._drafts: Dict[str, str] = {}
        self.save_count = 0

    def load(self, key: str) -> Optional[DraftSnapshot]:
        text = self._drafts.get(key)
        return DraftSnapshot.from_json(text) if text is not None else None

    def save(self, key: str, snapshot: DraftSnapshot) -> None:
        self._drafts[key] = snapshot.to_json()
        self.save_count += 1

    def clear(self, key: str) -> None:
        self._drafts.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._drafts)


class JsonFileDraftStore:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key or ""):
            raise DraftPersistenceError(f"Invalid draft key: {key!r}")
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[DraftSnapshot]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return DraftSnapshot.from_json(path.read_text(encoding="utf-8"))
        except DraftPersistenceError:
            logger.error("Ignoring corrupt draft %s", path, exc_info=True)
            return None
        except OSError as e:
            raise DraftPersistenceError(f"Could not read draft {path}: {e}") from e

    def save(self, key: str, snapshot: DraftSnapshot) -> None:
        path = self.path_for(key)
        text = snapshot.to_json()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.directory))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise DraftPersistenceError(f"Could not write draft {path}: {e}") from e
        logger.debug("Saved draft %s (%d bytes)", path, len(text))

    def clear(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise DraftPersistenceError(f"Could not remove draft {path}: {e}") from e

    def keys(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json") if _KEY_RE.match(p.stem))


TimerFactory = Callable[[float, Callable[[], None]], Any]


def _default_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()
    return t


class DebouncedDraftWriter:
    """
    Fire-and-forget autosave.

    `schedule` replaces any pending write for the same key and (re)starts its timer. Every write
    carries a sequence number; a write older than the last one stored for its key is dropped, so a
    slow save can never clobber a newer draft. `flush` writes whatever is pending right now.
    """

    def __init__(self, store: DraftStore, delay_seconds: float = 1.0, *, timer_factory: Optional[TimerFactory] = None) -> None:
        self.store = store
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._timer_factory = timer_factory or _default_timer
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._seq = 0
        self._pending: Dict[str, Tuple[int, DraftSnapshot]] = {}
        self._timers: Dict[str, Any] = {}
        self._written: Dict[str, int] = {}
        self.saved_at: Dict[str, datetime] = {}
        self.last_error: Optional[BaseException] = None

    def schedule(self, key: str, snapshot: DraftSnapshot) -> int:
        with self._lock:
            self._seq += 1
            seq = self._seq
            self._pending[key] = (seq, snapshot)
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._timers[key] = self._timer_factory(self.delay_seconds, lambda: self._fire(key))
        return seq

    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def _take(self, key: str) -> Optional[Tuple[int, DraftSnapshot]]:
        with self._lock:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            return self._pending.pop(key, None)

    def _write(self, key: str, seq: int, snapshot: DraftSnapshot) -> bool:
        with self._write_lock:
            if seq <= self._written.get(key, 0):
                logger.debug("Dropping superseded draft write for %s (seq %d)", key, seq)
                return False
            self.store.save(key, snapshot)
            self._written[key] = seq
            self.saved_at[key] = datetime.now(timezone.utc)
            return True

    def _fire(self, key: str) -> None:
        entry = self._take(key)
        if entry is None:
            return
        try:
            self._write(key, *entry)
        except (DraftPersistenceError, OSError) as e:
            self.last_error = e
            logger.error("Autosave failed for draft %s: %s", key, e)

    def flush(self) -> None:
        """
        Write all pending drafts now. Every pending key is attempted; the first failure is re-raised.
        """
        with self._lock:
            keys = list(self._pending)
        first_error: Optional[BaseException] = None
        for key in keys:
            entry = self._take(key)
            if entry is None:
                continue
            try:
                self._write(key, *entry)
            except (DraftPersistenceError, OSError) as e:
                self.last_error = e
                logger.error("Draft save failed for %s: %s", key, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def discard(self, key: str) -> None:
        """
        Cancel any pending write for `key` and fence off writes already in flight, then clear the store.
        """
        self._take(key)
        with self._lock:
            fence = self._seq
        with self._write_lock:
            self._written[key] = max(self._written.get(key, 0), fence)
            self.store.clear(key)

    def close(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
