"""
Offline smoke run for the builders.

Drives an AgreementWizardSession through all nine steps with typed commands (the same ones the
Streamlit app dispatches), checks that a fresh session can resume the saved draft halfway through,
submits, and renders the agreement PDF. A second scenario builds a reservation, changes the rate
context after a line exists and confirms the stale-pricing flag and reprice.

Writes drafts and PDFs to `out/simulate_agreement_wizard/` and exits non-zero if anything breaks.

Usage:
  python3 scripts/simulate_agreement_wizard.py
  python3 scripts/simulate_agreement_wizard.py --out-dir out/simulate_agreement_wizard
"""

from __future__ import annotations

import argparse
import sys
import traceback
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# Allow running as `python3 scripts/simulate_agreement_wizard.py` (module imports live at repo root).
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agreement_pdf import artifact_from_wizard_data, make_agreement_pdf_bytes
from agreement_wizard import AGREEMENT_STEPS, AgreementWizardSession
from builder_config import BuilderConfig, configure_logging, load_config_from_env, load_environment
from draft_persistence import JsonFileDraftStore
from reservation_builder import ReservationBuilderSession
from wizard_commands import (
    CompleteReview,
    ConfigureBilling,
    ConfigurePricing,
    RecordInspection,
    SelectSource,
    SetAddons,
    SignAgreement,
    UpdateAgreementTerms,
    UpdateDocuments,
    UpdateLinePrefill,
    UpdateRateContext,
)


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class Step:
    label: str
    command: object


def _agreement_steps(pickup: datetime) -> list[Step]:
    return [
        Step("source", SelectSource(source="direct")),
        Step(
            "terms",
            UpdateAgreementTerms(
                customer_id="CUST-1001",
                vehicle_id="VEH-NISSAN-PATROL-07",
                agreement_type="daily",
                rental_purpose="tourism",
                pickup_location_id="DXB-T3",
                dropoff_location_id="DXB-T3",
                pickup_at=pickup,
                dropoff_at=pickup + timedelta(days=3, hours=2),
                mileage_package="limited",
                included_km=750,
                excess_km_rate="0.75",
            ),
        ),
        Step(
            "inspection",
            RecordInspection(
                pre_handover_checklist={
                    "vehicle_cleaned": True,
                    "vehicle_fueled": True,
                    "documents_ready": True,
                    "keys_available": True,
                    "warning_lights_ok": True,
                },
                fuel_level=1.0,
                odometer_reading=48210,
                odometer_photo="odo.jpg",
                fuel_gauge_photo="fuel.jpg",
                photos={"exterior": [f"ext-{i}.jpg" for i in range(8)], "interior": [f"int-{i}.jpg" for i in range(4)]},
            ),
        ),
        Step(
            "pricing",
            ConfigurePricing(
                base_rate="350.00",
                insurance_package="comprehensive",
                excess_amount="1500.00",
                discount_amount="100.00",
                discount_reason="Returning customer",
            ),
        ),
        Step(
            "addons",
            SetAddons(selected_addons=[{"id": "gps", "name": "GPS Navigation", "quantity": 1, "unit_price": "15.00", "total": "60.00"}]),
        ),
        Step(
            "billing",
            ConfigureBilling(
                billing_type="same",
                payment_method="card",
                payment_schedule="upfront",
                advance_payment={"status": "completed", "amount": "500.00"},
                security_deposit={"method": "card_hold", "status": "authorized", "amount": "1500.00"},
            ),
        ),
        Step(
            "documents",
            UpdateDocuments(
                documents=[
                    {"type": "emirates_id", "verification_status": "verified"},
                    {"type": "passport", "verification_status": "verified"},
                    {"type": "license", "verification_status": "verified"},
                ],
                emirates_id_verified=True,
                license_verified=True,
                black_points_checked=True,
                black_points_count=0,
                eligibility_status="eligible",
            ),
        ),
        Step(
            "signature",
            SignAgreement(
                terms_accepted=True,
                key_terms_acknowledged={
                    "fuel_policy": True,
                    "insurance_coverage": True,
                    "tolls_fines_liability": True,
                    "return_policy": True,
                    "damage_liability": True,
                },
                customer_signature={"signer_name": "Demo Customer"},
                customer_declarations={
                    "vehicle_condition_confirmed": True,
                    "keys_documents_received": True,
                    "terms_understood": True,
                },
            ),
        ),
        Step("review", CompleteReview(review_completed=True, distribution_methods={"email": True})),
    ]


def _run_agreement(*, cfg: BuilderConfig, out_dir: Path) -> None:
    store = JsonFileDraftStore(out_dir / "drafts")
    store.clear(cfg.agreement_storage_key)
    pickup = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
    steps = _agreement_steps(pickup)
    resume_after = len(steps) // 2

    print("")
    print("=" * 72)
    print("SCENARIO: agreement wizard")
    print("=" * 72)

    session = AgreementWizardSession(store, config=cfg)
    for i, step in enumerate(steps):
        if i == resume_after:
            session.save_now()
            session.close()
            session = AgreementWizardSession(store, config=cfg)
            if not session.resume():
                raise RuntimeError("Saved draft could not be resumed")
            print(f"  - resumed draft at step {session.current_step} ({session.progress.get_progress_percentage()}%)")
        session.go_to(i)
        result = session.dispatch(step.command)
        print(f"[{i + 1}/{len(steps)}] {step.label}: valid={result.is_valid} progress={session.progress.get_progress_percentage()}%")
        for w in result.warnings:
            print(f"  - warning: {w}")
        if not result.is_valid:
            raise RuntimeError(f"Step {AGREEMENT_STEPS[i].title} failed validation: {list(result.errors)}")

    print(f"  - total: AED {session.breakdown.get('total')}")
    submission = session.submit()
    if not submission.ok:
        raise RuntimeError(submission.message)
    if store.load(cfg.agreement_storage_key) is not None:
        raise RuntimeError("Draft still present after submission")

    submitted = session.submitted_at or datetime.now(timezone.utc)
    artifact = artifact_from_wizard_data(
        session.data, agreement_no="AGR-SMOKE-0001", agreement_date=submitted.date(), signed_at=submitted
    )
    pdf_bytes = make_agreement_pdf_bytes(artifact)
    if not pdf_bytes.startswith(b"%PDF"):
        raise RuntimeError("Generated PDF does not start with %PDF header.")
    for marker in (b"Balance Due", b"CUSTOMER SIGNATURE", b"AGR-SMOKE-0001"):
        if marker not in pdf_bytes:
            raise RuntimeError(f"Generated PDF missing expected marker: {marker!r}")
    out_path = out_dir / "agreement_smoke.pdf"
    out_path.write_bytes(pdf_bytes)
    print(f"  - pdf: {out_path.name}")
    session.close()


def _run_reservation(*, cfg: BuilderConfig, out_dir: Path) -> None:
    store = JsonFileDraftStore(out_dir / "drafts")
    store.clear(cfg.reservation_storage_key)
    check_out = datetime(2026, 3, 1, 9, 0)

    print("")
    print("=" * 72)
    print("SCENARIO: reservation builder")
    print("=" * 72)

    session = ReservationBuilderSession(store, config=cfg)
    session.dispatch(UpdateRateContext(price_list_id="PL-STD", daily_rate="120.00"))
    session.dispatch(
        UpdateLinePrefill(
            vehicle_class_id="SUV",
            vehicle_id="VEH-0042",
            check_out_at=check_out,
            check_in_at=check_out + timedelta(days=2, hours=1),
            check_out_location_id="DXB-T3",
            check_in_location_id="DXB-T3",
            drivers=[{"driver_id": "DRV-1", "role": "PRIMARY", "date_of_birth": "1990-05-01"}],
        )
    )
    added = session.add_line()
    if not added.ok or added.line is None:
        raise RuntimeError(f"Line was not added: {list(added.errors)}")
    print(f"  - line 1: {added.line.price_source.value} total={added.line.line_total}")

    session.dispatch(UpdateRateContext(daily_rate="135.00"))
    if not session.stale_pricing:
        raise RuntimeError("Rate change with a priced line did not raise the stale-pricing flag")
    before = session.lines[0].line_total
    repriced = session.reprice_lines()
    if not repriced.ok:
        raise RuntimeError(f"Reprice failed: {list(repriced.errors)}")
    after = repriced.lines[0].line_total
    if session.stale_pricing or after == before:
        raise RuntimeError(f"Reprice did not refresh the line (before={before}, after={after})")
    print(f"  - repriced: {before} -> {after}")
    print(f"  - grand total: {session.summary().grand_total}")
    session.save_now()
    session.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--out-dir",
        default=str(_repo_root() / "out" / "simulate_agreement_wizard"),
        help="Directory to write drafts and PDFs into (default: out/simulate_agreement_wizard).",
    )
    args = parser.parse_args(argv)

    load_environment()
    cfg = load_config_from_env()
    configure_logging(cfg.log_level)

    out_dir = Path(args.out_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    # Saves are flushed explicitly below; no background timers in a one-shot run.
    cfg = replace(cfg, autosave_delay_seconds=0.0)

    try:
        _run_agreement(cfg=cfg, out_dir=out_dir)
        _run_reservation(cfg=cfg, out_dir=out_dir)
    except Exception:
        traceback.print_exc()
        return 1
    print("")
    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
