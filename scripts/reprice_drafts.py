from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from builder_config import configure_logging, load_config, load_config_from_env, load_environment
from draft_persistence import DraftPersistenceError, DraftSnapshot, JsonFileDraftStore
from pricing_engine import FallbackRates, PricingError, RateContext, reprice, stale_lines
from reservation_builder import priced_line_from_dict, priced_line_to_dict


@dataclass(frozen=True)
class DraftReport:
    key: str
    lines: int
    stale: int
    status: str


def reprice_draft(store: JsonFileDraftStore, key: str, fallback_rates: FallbackRates, *, dry_run: bool = False) -> DraftReport:
    """
    Bring every stale line of one reservation draft up to the draft's current rate context.
    Drafts without lines (agreement drafts included) are left alone.
    """
    snapshot = store.load(key)
    if snapshot is None:
        return DraftReport(key=key, lines=0, stale=0, status="unreadable")
    data = dict(snapshot.wizard_data)
    raw_lines = data.get("lines")
    if not isinstance(raw_lines, list) or not raw_lines:
        return DraftReport(key=key, lines=0, stale=0, status="no lines")

    try:
        lines = tuple(priced_line_from_dict(r) for r in raw_lines if isinstance(r, dict))
        ctx = RateContext.from_mapping(data.get("rate_taxes") or {})
    except (PricingError, ArithmeticError, ValueError, KeyError) as e:
        return DraftReport(key=key, lines=len(raw_lines), stale=0, status=f"skipped: {e}")

    stale = stale_lines(lines, ctx)
    if not stale:
        return DraftReport(key=key, lines=len(lines), stale=0, status="up to date")
    if dry_run:
        return DraftReport(key=key, lines=len(lines), stale=len(stale), status="would reprice")

    data["lines"] = [priced_line_to_dict(line) for line in reprice(lines, ctx, fallback_rates)]
    store.save(key, DraftSnapshot(wizard_data=data, progress=snapshot.progress, version=snapshot.version))
    return DraftReport(key=key, lines=len(lines), stale=len(stale), status="repriced")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reprice stale reservation lines in saved drafts.")
    parser.add_argument("--config", required=False, help="Path to config JSON (defaults to environment variables).")
    parser.add_argument("--draft-dir", required=False, help="Draft directory (default: DRAFT_DIR from config).")
    parser.add_argument("--key", action="append", default=[], help="Only process this draft key (repeatable).")
    parser.add_argument("--dry-run", action="store_true", help="Report stale drafts without writing them.")
    args = parser.parse_args(argv)

    load_environment()
    cfg = load_config(Path(args.config)) if isinstance(args.config, str) and args.config.strip() else load_config_from_env()
    configure_logging(cfg.log_level)

    store = JsonFileDraftStore(Path(args.draft_dir) if args.draft_dir else cfg.draft_dir)
    keys = store.keys()
    if args.key:
        wanted = {k.strip() for k in args.key if isinstance(k, str) and k.strip()}
        keys = [k for k in keys if k in wanted]
    if not keys:
        print(f"No drafts found in {store.directory}")
        return 0

    reports: List[DraftReport] = []
    failed = 0
    for key in tqdm(keys, desc="Drafts", unit="draft"):
        try:
            reports.append(reprice_draft(store, key, cfg.fallback_rates, dry_run=bool(args.dry_run)))
        except DraftPersistenceError as e:
            failed += 1
            reports.append(DraftReport(key=key, lines=0, stale=0, status=f"failed: {e}"))

    for r in reports:
        print(f"{r.key}: {r.status} ({r.stale}/{r.lines} stale)")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
