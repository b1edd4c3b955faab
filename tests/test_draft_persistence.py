from __future__ import annotations

import tempfile
import unittest
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from draft_persistence import (
    DebouncedDraftWriter,
    DraftPersistenceError,
    DraftSnapshot,
    InMemoryDraftStore,
    JsonFileDraftStore,
    to_jsonable,
)
from pricing_engine import PriceSource


class _FakeTimer:
    def __init__(self, delay: float, fn) -> None:
        self.delay = delay
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fn()


class _FakeTimers:
    def __init__(self) -> None:
        self.created: list[_FakeTimer] = []

    def __call__(self, delay: float, fn) -> _FakeTimer:
        t = _FakeTimer(delay, fn)
        self.created.append(t)
        return t


class _FailingStore(InMemoryDraftStore):
    def save(self, key: str, snapshot: DraftSnapshot) -> None:
        raise DraftPersistenceError("disk full")


def _snap(step: int) -> DraftSnapshot:
    return DraftSnapshot(wizard_data={"step": step}, progress={"currentStep": step})


class TestSnapshotCodec(unittest.TestCase):
    def test_to_jsonable_handles_wizard_types(self) -> None:
        value = {
            "when": datetime(2026, 3, 1, 9, 30),
            "day": date(2026, 3, 1),
            "amount": Decimal("12.50"),
            "source": PriceSource.PANEL,
            "tags": ("a", "b"),
        }
        self.assertEqual(
            to_jsonable(value),
            {"when": "2026-03-01T09:30:00", "day": "2026-03-01", "amount": "12.50", "source": "panel", "tags": ["a", "b"]},
        )
        with self.assertRaises(DraftPersistenceError):
            to_jsonable({"bad": object()})

    def test_snapshot_json_keys(self) -> None:
        snap = DraftSnapshot.from_json(_snap(3).to_json())
        self.assertEqual(snap.wizard_data, {"step": 3})
        self.assertEqual(snap.progress, {"currentStep": 3})
        self.assertIn('"wizardData"', _snap(3).to_json())

    def test_malformed_snapshot_rejected(self) -> None:
        with self.assertRaises(DraftPersistenceError):
            DraftSnapshot.from_json("{not json")
        with self.assertRaises(DraftPersistenceError):
            DraftSnapshot.from_json('{"wizardData": {}}')
        with self.assertRaises(DraftPersistenceError):
            DraftSnapshot.from_json("[]")


class TestJsonFileDraftStore(unittest.TestCase):
    def test_save_load_clear(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonFileDraftStore(Path(tmp) / "drafts")
            self.assertIsNone(store.load("draft-1"))
            store.save("draft-1", _snap(2))
            self.assertEqual(store.load("draft-1").wizard_data, {"step": 2})
            self.assertEqual(store.keys(), ["draft-1"])
            # No temp files left behind.
            self.assertEqual([p.name for p in (Path(tmp) / "drafts").iterdir()], ["draft-1.json"])
            store.clear("draft-1")
            store.clear("draft-1")
            self.assertIsNone(store.load("draft-1"))

    def test_corrupt_file_loads_as_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonFileDraftStore(Path(tmp))
            store.path_for("broken").write_text("{oops", encoding="utf-8")
            with self.assertLogs("draft_persistence", level="ERROR"):
                self.assertIsNone(store.load("broken"))

    def test_rejects_path_like_keys(self) -> None:
        store = JsonFileDraftStore(Path("unused"))
        for key in ("../escape", "", ".hidden", "a/b"):
            with self.subTest(key=key):
                with self.assertRaises(DraftPersistenceError):
                    store.path_for(key)


class TestDebouncedDraftWriter(unittest.TestCase):
    def test_burst_of_edits_writes_once_with_latest(self) -> None:
        store = InMemoryDraftStore()
        timers = _FakeTimers()
        writer = DebouncedDraftWriter(store, 1.0, timer_factory=timers)
        for step in range(5):
            writer.schedule("k", _snap(step))
        self.assertEqual(store.save_count, 0)
        self.assertEqual(sum(1 for t in timers.created if not t.cancelled), 1)
        for t in timers.created:
            t.fire()
        self.assertEqual(store.save_count, 1)
        self.assertEqual(store.load("k").wizard_data, {"step": 4})
        self.assertIn("k", writer.saved_at)

    def test_older_write_never_overwrites_newer(self) -> None:
        store = InMemoryDraftStore()
        writer = DebouncedDraftWriter(store, 1.0, timer_factory=_FakeTimers())
        writer._write("k", 2, _snap(2))
        self.assertFalse(writer._write("k", 1, _snap(1)))
        self.assertEqual(store.load("k").wizard_data, {"step": 2})

    def test_flush_writes_pending_now(self) -> None:
        store = InMemoryDraftStore()
        timers = _FakeTimers()
        writer = DebouncedDraftWriter(store, 1.0, timer_factory=timers)
        writer.schedule("a", _snap(1))
        writer.schedule("b", _snap(2))
        writer.flush()
        self.assertEqual(store.keys(), ["a", "b"])
        self.assertEqual(writer.pending_keys(), [])
        self.assertTrue(all(t.cancelled for t in timers.created))

    def test_discard_cancels_pending_and_clears(self) -> None:
        store = InMemoryDraftStore()
        timers = _FakeTimers()
        writer = DebouncedDraftWriter(store, 1.0, timer_factory=timers)
        writer.schedule("k", _snap(1))
        writer.flush()
        writer.schedule("k", _snap(2))
        writer.discard("k")
        for t in timers.created:
            t.fire()
        self.assertIsNone(store.load("k"))
        self.assertEqual(writer.pending_keys(), [])

    def test_autosave_failure_is_logged_not_raised(self) -> None:
        timers = _FakeTimers()
        writer = DebouncedDraftWriter(_FailingStore(), 1.0, timer_factory=timers)
        writer.schedule("k", _snap(1))
        with self.assertLogs("draft_persistence", level="ERROR"):
            timers.created[-1].fire()
        self.assertIsInstance(writer.last_error, DraftPersistenceError)

    def test_flush_failure_is_raised(self) -> None:
        writer = DebouncedDraftWriter(_FailingStore(), 1.0, timer_factory=_FakeTimers())
        writer.schedule("k", _snap(1))
        with self.assertLogs("draft_persistence", level="ERROR"):
            with self.assertRaises(DraftPersistenceError):
                writer.flush()


if __name__ == "__main__":
    unittest.main()
