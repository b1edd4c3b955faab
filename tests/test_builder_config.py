from __future__ import annotations

import json
import os
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest import mock

from builder_config import (
    AGREEMENT_STORAGE_KEY,
    BuilderConfig,
    load_config,
    load_config_from_env,
    load_environment,
)


class TestLoadConfigFromEnv(unittest.TestCase):
    def test_defaults_when_environment_is_empty(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = load_config_from_env()
        self.assertEqual(cfg, BuilderConfig())
        self.assertEqual(cfg.agreement_storage_key, AGREEMENT_STORAGE_KEY)
        self.assertEqual(cfg.fallback_rates.daily, Decimal("50.00"))

    def test_reads_overrides(self) -> None:
        env = {
            "DRAFT_DIR": "/tmp/drafts",
            "AUTOSAVE_DELAY_SECONDS": "2.5",
            "FALLBACK_DAILY_RATE": "75",
            "ADDITIONAL_DRIVER_FEE": "12.5",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config_from_env()
        self.assertEqual(cfg.draft_dir, Path("/tmp/drafts"))
        self.assertEqual(cfg.autosave_delay_seconds, 2.5)
        self.assertEqual(cfg.fallback_rates.daily, Decimal("75.00"))
        self.assertEqual(cfg.fallback_rates.weekly, Decimal("300.00"))
        self.assertEqual(cfg.additional_driver_fee, Decimal("12.50"))
        self.assertEqual(cfg.log_level, "DEBUG")

    def test_rejects_bad_values(self) -> None:
        for key, value in (("FALLBACK_HOURLY_RATE", "-1"), ("UNDERAGE_DRIVER_FEE", "lots"), ("AUTOSAVE_DELAY_SECONDS", "soon"), ("LOG_LEVEL", "loud")):
            with self.subTest(key=key):
                with mock.patch.dict(os.environ, {key: value}, clear=True):
                    with self.assertRaises(ValueError):
                        load_config_from_env()


class TestLoadConfigFile(unittest.TestCase):
    def test_json_file(self) -> None:
        raw = {
            "draft_dir": "drafts",
            "autosave_delay_seconds": 0,
            "reservation_storage_key": "res-draft",
            "fallback_rates": {"monthly": "999.99"},
            "underage_driver_fee": 30,
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            cfg = load_config(path)
        self.assertEqual(cfg.draft_dir, Path("drafts"))
        self.assertEqual(cfg.autosave_delay_seconds, 0.0)
        self.assertEqual(cfg.reservation_storage_key, "res-draft")
        self.assertEqual(cfg.fallback_rates.monthly, Decimal("999.99"))
        self.assertEqual(cfg.underage_driver_fee, Decimal("30.00"))

    def test_json_must_be_an_object(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_config(path)
            path.write_text('{"fallback_rates": 5}', encoding="utf-8")
            with self.assertRaises(ValueError):
                load_config(path)


class TestLoadEnvironment(unittest.TestCase):
    def test_dotenv_does_not_override_existing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            dotenv = Path(tmp) / ".env"
            dotenv.write_text("FALLBACK_DAILY_RATE=80\nLOG_LEVEL=WARNING\n", encoding="utf-8")
            with mock.patch.dict(os.environ, {"LOG_LEVEL": "ERROR"}, clear=True):
                load_environment(dotenv)
                cfg = load_config_from_env()
        self.assertEqual(cfg.fallback_rates.daily, Decimal("80.00"))
        self.assertEqual(cfg.log_level, "ERROR")


if __name__ == "__main__":
    unittest.main()
