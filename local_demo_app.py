from __future__ import annotations

import os
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import streamlit as st

from agreement_pdf import artifact_from_wizard_data, format_aed, make_agreement_pdf_bytes
from agreement_wizard import AGREEMENT_STEPS, AgreementWizardSession
from builder_config import BuilderConfig, configure_logging, load_config_from_env, load_environment
from draft_persistence import DraftPersistenceError, JsonFileDraftStore
from pricing_engine import rental_days, to_money
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
)
from wizard_progress import StepStatus
from wizard_validation import StepValidation, parse_datetime

SESSION_KEY = "agreement_session"

ADDON_CATALOG: tuple[dict[str, object], ...] = (
    {"id": "gps", "name": "GPS Navigation", "unit_price": "15.00"},
    {"id": "child_seat", "name": "Child Seat", "unit_price": "10.00"},
    {"id": "wifi", "name": "Mobile Wi-Fi", "unit_price": "20.00"},
    {"id": "salik", "name": "Salik Tag", "unit_price": "5.00"},
)

_STATUS_MARKERS = {
    StepStatus.COMPLETE: "[done]",
    StepStatus.HAS_ERRORS: "[!]",
    StepStatus.INCOMPLETE: "[..]",
    StepStatus.NOT_VISITED: "[  ]",
}


def _read_secret_or_env_str(key: str) -> str:
    """
    Read a configuration value from Streamlit Secrets (preferred) or environment variables.

    Returns a stripped string; returns "" when missing.
    """
    val: object = ""
    try:
        # `st.secrets` is Mapping-like; `.get` is supported in Streamlit.
        val = st.secrets.get(key, "")  # type: ignore[attr-defined]
    except Exception:
        val = ""
    if not val:
        val = os.environ.get(key, "")
    if isinstance(val, str):
        return val.strip()
    return str(val).strip() if val is not None else ""


def _app_config() -> BuilderConfig:
    load_environment()
    cfg = load_config_from_env()
    draft_dir = _read_secret_or_env_str("DRAFT_DIR")
    if draft_dir:
        cfg = replace(cfg, draft_dir=Path(draft_dir))
    return cfg


def _get_session(cfg: Optional[BuilderConfig] = None) -> AgreementWizardSession:
    """
    One AgreementWizardSession per browser session, kept in st.session_state across reruns.
    """
    session = st.session_state.get(SESSION_KEY)
    if isinstance(session, AgreementWizardSession):
        return session
    cfg = cfg or _app_config()
    session = AgreementWizardSession(JsonFileDraftStore(cfg.draft_dir), config=cfg)
    st.session_state[SESSION_KEY] = session
    return session


def _reset_session() -> None:
    session = st.session_state.pop(SESSION_KEY, None)
    if isinstance(session, AgreementWizardSession):
        session.close()
    st.session_state.pop("_draft_prompt_done", None)


def _step_label(index: int, status: StepStatus) -> str:
    return f"{_STATUS_MARKERS.get(status, '')} {index + 1}. {AGREEMENT_STEPS[index].title}"


def _combine(d: Optional[date], t: Optional[time]) -> Optional[datetime]:
    if d is None:
        return None
    return datetime.combine(d, t or time(10, 0))


def _split(value: object, default: datetime) -> tuple[date, time]:
    dt = parse_datetime(value) or default
    return dt.date(), dt.time().replace(second=0, microsecond=0)


def _option_index(options: List[str], value: object) -> int:
    return options.index(value) if value in options else 0


def _addon_days(step1: Mapping[str, Any]) -> int:
    # Same day count the rental charge uses, so add-ons are billed for every rental day.
    return rental_days(parse_datetime(step1.get("pickup_at")), parse_datetime(step1.get("dropoff_at")))


def _addons_from_selection(quantities: Mapping[str, int], days: int) -> List[Dict[str, object]]:
    """
    Turn catalog quantities into selected add-on records. Zero-quantity entries are dropped.
    """
    out: List[Dict[str, object]] = []
    for item in ADDON_CATALOG:
        qty = int(quantities.get(str(item["id"]), 0) or 0)
        if qty <= 0:
            continue
        unit = Decimal(str(item["unit_price"]))
        out.append(
            {
                "id": item["id"],
                "name": item["name"],
                "quantity": qty,
                "unit_price": str(item["unit_price"]),
                "total": str(to_money(unit * qty * max(1, days))),
            }
        )
    return out


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _render_validation(result: Optional[StepValidation]) -> None:
    if result is None:
        return
    for e in result.errors:
        st.error(e)
    for w in result.warnings:
        st.warning(w)


def _render_sidebar(session: AgreementWizardSession) -> None:
    summary = session.progress.get_progress_summary()
    st.sidebar.markdown("### Agreement progress")
    st.sidebar.progress(summary.percentage / 100.0, text=f"{summary.percentage}% ({summary.completed}/{summary.total})")
    for i, status in session.progress.get_all_steps_status().items():
        label = _step_label(i, status)
        if st.sidebar.button(label, key=f"nav_{i}", use_container_width=True, type="primary" if i == session.current_step else "secondary"):
            session.go_to(i)
            st.rerun()
    saved = session.last_saved_at
    st.sidebar.caption(f"Last saved: {saved.strftime('%H:%M:%S')}" if saved else "Not saved yet")
    if session.writer.last_error is not None:
        st.sidebar.error(f"Autosave failed: {session.writer.last_error}")


def _render_draft_prompt(session: AgreementWizardSession) -> bool:
    """
    Offer to resume a saved draft once per browser session. Returns True while the prompt is showing.
    """
    if st.session_state.get("_draft_prompt_done"):
        return False
    if not session.has_draft():
        st.session_state["_draft_prompt_done"] = True
        return False
    st.info("A saved agreement draft was found.")
    c1, c2 = st.columns(2)
    if c1.button("Resume draft", use_container_width=True):
        session.resume()
        st.session_state["_draft_prompt_done"] = True
        st.rerun()
    if c2.button("Start fresh", use_container_width=True):
        session.discard_draft()
        st.session_state["_draft_prompt_done"] = True
        st.rerun()
    return True


# ---------------------------------------------------------------------------
# Step forms
# ---------------------------------------------------------------------------


def _render_source_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    data = session.data
    options = ["direct", "reservation", "booking"]
    with st.form("step_source"):
        current = data.get("source") if data.get("source") in options else None
        source = st.radio("Agreement source", options, index=options.index(current) if current else None, horizontal=True)
        source_id = st.text_input("Reservation / booking number", value=str(data.get("source_id") or ""))
        if st.form_submit_button("Apply"):
            return session.dispatch(SelectSource(source=source, source_id=source_id.strip() or None))
    return None


def _render_terms_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step1 = _section(session.data, "step1")
    now = datetime.now().replace(minute=0, second=0, microsecond=0)
    pickup_d, pickup_t = _split(step1.get("pickup_at"), now + timedelta(hours=1))
    dropoff_d, dropoff_t = _split(step1.get("dropoff_at"), now + timedelta(days=1, hours=1))
    packages = ["unlimited", "limited"]
    with st.form("step_terms"):
        c1, c2 = st.columns(2)
        customer_id = c1.text_input("Customer ID", value=str(step1.get("customer_id") or ""))
        vehicle_id = c2.text_input("Vehicle", value=str(step1.get("vehicle_id") or ""))
        agreement_types = ["daily", "weekly", "monthly", "long_term"]
        purposes = ["personal", "business", "tourism", "replacement"]
        agreement_type = c1.selectbox("Agreement type", agreement_types, index=_option_index(agreement_types, step1.get("agreement_type")))
        rental_purpose = c2.selectbox("Rental purpose", purposes, index=_option_index(purposes, step1.get("rental_purpose")))
        pickup_loc = c1.text_input("Pickup location", value=str(step1.get("pickup_location_id") or ""))
        dropoff_loc = c2.text_input("Drop-off location", value=str(step1.get("dropoff_location_id") or ""))
        p_date = c1.date_input("Pickup date", value=pickup_d)
        p_time = c1.time_input("Pickup time", value=pickup_t)
        d_date = c2.date_input("Drop-off date", value=dropoff_d)
        d_time = c2.time_input("Drop-off time", value=dropoff_t)
        current_pkg = step1.get("mileage_package") if step1.get("mileage_package") in packages else "unlimited"
        mileage = st.radio("Mileage package", packages, index=packages.index(current_pkg), horizontal=True)
        included_km = st.number_input("Included km (limited only)", min_value=0, value=int(step1.get("included_km") or 0))
        excess_rate = st.number_input("Excess km rate", min_value=0.0, value=float(step1.get("excess_km_rate") or 0.0), step=0.1)
        cross_border = st.checkbox("Cross-border travel allowed", value=bool(step1.get("cross_border_allowed")))
        countries = st.text_input("Countries (comma separated)", value=", ".join(step1.get("cross_border_countries") or []))
        notes = st.text_area("Special instructions", value=str(step1.get("special_instructions") or ""))
        if st.form_submit_button("Apply"):
            return session.dispatch(
                UpdateAgreementTerms(
                    customer_id=customer_id.strip(),
                    vehicle_id=vehicle_id.strip(),
                    agreement_type=agreement_type,
                    rental_purpose=rental_purpose,
                    pickup_location_id=pickup_loc.strip(),
                    dropoff_location_id=dropoff_loc.strip(),
                    pickup_at=_combine(p_date, p_time),
                    dropoff_at=_combine(d_date, d_time),
                    mileage_package=mileage,
                    included_km=included_km if mileage == "limited" else None,
                    excess_km_rate=excess_rate if mileage == "limited" else None,
                    cross_border_allowed=cross_border,
                    cross_border_countries=[c.strip() for c in countries.split(",") if c.strip()],
                    special_instructions=notes.strip(),
                )
            )
    return None


def _render_inspection_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step2 = _section(session.data, "step2")
    handover = dict(_section(step2, "pre_handover_checklist"))
    with st.form("step_inspection"):
        st.markdown("**Pre-handover checklist**")
        for key in ("vehicle_cleaned", "vehicle_fueled", "documents_ready", "keys_available", "warning_lights_ok"):
            handover[key] = st.checkbox(key.replace("_", " ").capitalize(), value=bool(handover.get(key)))
        fuel_pct = st.slider("Fuel level (%)", 0, 100, int(float(step2.get("fuel_level") or 0) * 100))
        odometer = st.number_input("Odometer (km)", min_value=0, value=int(step2.get("odometer_reading") or 0))
        exterior = st.number_input("Exterior photos captured", min_value=0, value=len(_section(step2, "photos").get("exterior") or []))
        interior = st.number_input("Interior photos captured", min_value=0, value=len(_section(step2, "photos").get("interior") or []))
        inspector_notes = st.text_area("Inspector notes", value=str(step2.get("inspector_notes") or ""))
        if st.form_submit_button("Apply"):
            return session.dispatch(
                RecordInspection(
                    pre_handover_checklist=handover,
                    fuel_level=round(fuel_pct / 100.0, 2),
                    odometer_reading=odometer,
                    photos={
                        "exterior": [f"exterior-{i + 1}" for i in range(int(exterior))],
                        "interior": [f"interior-{i + 1}" for i in range(int(interior))],
                    },
                    inspector_notes=inspector_notes.strip(),
                )
            )
    return None


def _render_breakdown(breakdown: Mapping[str, Any]) -> None:
    if not breakdown:
        st.caption("Enter a base rate to see the pricing breakdown.")
        return
    rows = [
        ("Rental", breakdown.get("base_rate")),
        ("Insurance", breakdown.get("insurance")),
        ("Maintenance", breakdown.get("maintenance")),
        ("Add-ons", breakdown.get("addons")),
        ("Subtotal", breakdown.get("subtotal")),
        ("Discount", breakdown.get("discount")),
        ("VAT (5%)", breakdown.get("vat")),
        ("Total", breakdown.get("total")),
    ]
    st.table([{"Item": label, "Amount": format_aed(value or 0)} for label, value in rows])


def _render_pricing_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step3 = _section(session.data, "step3")
    override = _section(step3, "rate_override")
    packages = ["basic", "comprehensive"]
    result = None
    with st.form("step_pricing"):
        c1, c2 = st.columns(2)
        base_rate = c1.number_input("Daily base rate (AED)", min_value=0.0, value=float(step3.get("base_rate") or 0.0), step=5.0)
        insurance = c2.selectbox("Insurance package", packages, index=_option_index(packages, step3.get("insurance_package")))
        excess = c1.number_input("Insurance excess (AED)", min_value=0.0, value=float(step3.get("excess_amount") or 0.0), step=100.0)
        maintenance = c2.checkbox("Maintenance included", value=bool(step3.get("maintenance_included")))
        maintenance_cost = c2.number_input("Maintenance per day", min_value=0.0, value=float(step3.get("maintenance_cost") or 0.0))
        use_override = st.checkbox("Override daily rate", value=bool(override))
        override_amount = st.number_input("Override amount", min_value=0.0, value=float(override.get("amount") or 0.0))
        override_reason = st.text_input("Override reason", value=str(override.get("reason") or ""))
        discount = c1.number_input("Discount (AED)", min_value=0.0, value=float(step3.get("discount_amount") or 0.0))
        discount_reason = st.text_input("Discount reason", value=str(step3.get("discount_reason") or ""))
        if st.form_submit_button("Apply"):
            result = session.dispatch(
                ConfigurePricing(
                    base_rate=f"{base_rate:.2f}",
                    insurance_package=insurance,
                    excess_amount=f"{excess:.2f}",
                    maintenance_included=maintenance,
                    maintenance_cost=f"{maintenance_cost:.2f}",
                    rate_override={"amount": f"{override_amount:.2f}", "reason": override_reason.strip()} if use_override else None,
                    discount_amount=f"{discount:.2f}",
                    discount_reason=discount_reason.strip(),
                )
            )
    _render_breakdown(session.breakdown)
    return result


def _render_addons_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    selected = {str(a.get("id")): int(a.get("quantity") or 0) for a in _section(session.data, "step4").get("selected_addons") or [] if isinstance(a, Mapping)}
    days = _addon_days(_section(session.data, "step1"))
    with st.form("step_addons"):
        quantities: Dict[str, int] = {}
        for item in ADDON_CATALOG:
            quantities[str(item["id"])] = int(
                st.number_input(f"{item['name']} (AED {item['unit_price']}/day)", min_value=0, max_value=5, value=selected.get(str(item["id"]), 0))
            )
        if st.form_submit_button("Apply"):
            return session.dispatch(SetAddons(selected_addons=_addons_from_selection(quantities, days)))
    return None


def _render_billing_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step5 = _section(session.data, "step5")
    info = _section(step5, "billing_info")
    with st.form("step_billing"):
        billing_types = ["same", "corporate", "other"]
        billing_type = st.selectbox("Billing type", billing_types, index=_option_index(billing_types, step5.get("billing_type")))
        name = st.text_input("Billing name", value=str(info.get("name") or ""))
        email = st.text_input("Billing email", value=str(info.get("email") or ""))
        phone = st.text_input("Billing phone", value=str(info.get("phone") or ""))
        address = st.text_input("Billing address", value=str(info.get("address") or ""))
        trn = st.text_input("Tax registration number", value=str(info.get("tax_reg_no") or ""))
        methods = ["card", "cash", "bank_transfer"]
        schedules = ["upfront", "on_return", "monthly"]
        payment_method = st.selectbox("Payment method", methods, index=_option_index(methods, step5.get("payment_method")))
        schedule = st.selectbox("Payment schedule", schedules, index=_option_index(schedules, step5.get("payment_schedule")))
        advance_done = st.checkbox("Advance payment completed", value=_section(step5, "advance_payment").get("status") == "completed")
        advance_amount = st.number_input("Advance amount (AED)", min_value=0.0, value=float(_section(step5, "advance_payment").get("amount") or 0.0))
        deposit = _section(step5, "security_deposit")
        deposit_methods = ["card_hold", "cash", "cheque"]
        deposit_statuses = ["pending", "authorized", "collected"]
        deposit_method = st.selectbox("Security deposit method", deposit_methods, index=_option_index(deposit_methods, deposit.get("method")))
        deposit_status = st.selectbox("Deposit status", deposit_statuses, index=_option_index(deposit_statuses, deposit.get("status")))
        deposit_amount = st.number_input("Deposit amount (AED)", min_value=0.0, value=float(deposit.get("amount") or 0.0))
        if st.form_submit_button("Apply"):
            return session.dispatch(
                ConfigureBilling(
                    billing_type=billing_type,
                    billing_info={"name": name, "email": email, "phone": phone, "address": address, "tax_reg_no": trn} if billing_type != "same" else {},
                    payment_method=payment_method,
                    payment_schedule=schedule,
                    advance_payment={"status": "completed" if advance_done else "pending", "amount": f"{advance_amount:.2f}"},
                    security_deposit={"method": deposit_method, "status": deposit_status, "amount": f"{deposit_amount:.2f}"},
                )
            )
    return None


def _render_documents_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step6 = _section(session.data, "step6")
    verified = {d.get("type") for d in step6.get("documents") or [] if isinstance(d, Mapping) and d.get("verification_status") == "verified"}
    with st.form("step_documents"):
        st.caption("Document upload and verification happen in the document service; record the outcome here.")
        checks = {t: st.checkbox(f"{label} verified", value=t in verified) for t, label in (("emirates_id", "Emirates ID"), ("passport", "Passport"), ("license", "Driving license"))}
        black_points = st.number_input("Black points", min_value=0, value=int(step6.get("black_points_count") or 0))
        outcomes = ["eligible", "review_required", "ineligible"]
        eligibility = st.selectbox("Eligibility", outcomes, index=_option_index(outcomes, step6.get("eligibility_status")))
        if st.form_submit_button("Apply"):
            docs = [{"type": t, "verification_status": "verified" if ok else "pending"} for t, ok in checks.items()]
            return session.dispatch(
                UpdateDocuments(
                    documents=docs,
                    emirates_id_verified=checks["emirates_id"],
                    license_verified=checks["license"],
                    black_points_checked=True,
                    black_points_count=black_points,
                    eligibility_status=eligibility,
                )
            )
    return None


def _render_signature_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step7 = _section(session.data, "step7")
    key_terms = dict(_section(step7, "key_terms_acknowledged"))
    declarations = dict(_section(step7, "customer_declarations"))
    with st.form("step_signature"):
        for key in ("fuel_policy", "insurance_coverage", "tolls_fines_liability", "return_policy", "damage_liability"):
            key_terms[key] = st.checkbox(f"Acknowledged: {key.replace('_', ' ')}", value=bool(key_terms.get(key)))
        for key in ("vehicle_condition_confirmed", "keys_documents_received", "terms_understood"):
            declarations[key] = st.checkbox(key.replace("_", " ").capitalize(), value=bool(declarations.get(key)))
        accepted = st.checkbox("Customer accepts the terms and conditions", value=bool(step7.get("terms_accepted")))
        signer = st.text_input("Signer name", value=str(_section(step7, "customer_signature").get("signer_name") or ""))
        if st.form_submit_button("Apply"):
            return session.dispatch(
                SignAgreement(
                    terms_accepted=accepted,
                    key_terms_acknowledged=key_terms,
                    customer_declarations=declarations,
                    customer_signature={"signer_name": signer.strip(), "signed_at": datetime.now().isoformat(timespec="seconds")} if signer.strip() else None,
                )
            )
    return None


def _render_review_step(session: AgreementWizardSession) -> Optional[StepValidation]:
    step8 = _section(session.data, "step8")
    methods = dict(_section(step8, "distribution_methods"))
    _render_breakdown(session.breakdown)
    with st.form("step_review"):
        for key in ("email", "sms", "whatsapp", "print"):
            methods[key] = st.checkbox(f"Send by {key}", value=bool(methods.get(key)))
        reviewed = st.checkbox("I have reviewed the agreement", value=bool(step8.get("review_completed")))
        if st.form_submit_button("Apply"):
            return session.dispatch(CompleteReview(review_completed=reviewed, distribution_methods=methods))
    return None


_STEP_RENDERERS = (
    _render_source_step,
    _render_terms_step,
    _render_inspection_step,
    _render_pricing_step,
    _render_addons_step,
    _render_billing_step,
    _render_documents_step,
    _render_signature_step,
    _render_review_step,
)


def _render_controls(session: AgreementWizardSession) -> None:
    c1, c2, c3, c4 = st.columns(4)
    if c1.button("Back", use_container_width=True, disabled=session.current_step == 0):
        session.previous()
        st.rerun()
    if c2.button("Next", use_container_width=True, disabled=session.current_step == len(AGREEMENT_STEPS) - 1):
        nav = session.next()
        if nav.moved:
            st.rerun()
        _render_validation(nav.validation)
    if c3.button("Save draft", use_container_width=True):
        try:
            session.save_now()
            st.success("Draft saved.")
        except DraftPersistenceError as e:
            st.error(f"Could not save draft: {e}")
    if c4.button("Submit", use_container_width=True, type="primary"):
        result = session.submit()
        if result.ok:
            st.rerun()
        st.error(result.message)


def _render_submitted(session: AgreementWizardSession) -> None:
    st.success("Agreement submitted.")
    submitted = session.submitted_at or datetime.now()
    artifact = artifact_from_wizard_data(
        session.data,
        agreement_no=f"AGR-{submitted.strftime('%Y%m%d%H%M%S')}",
        agreement_date=submitted.date(),
        signed_at=submitted,
    )
    st.download_button(
        "Download agreement PDF",
        data=make_agreement_pdf_bytes(artifact),
        file_name=f"{artifact.agreement_no}.pdf",
        mime="application/pdf",
    )
    if st.button("Start a new agreement"):
        _reset_session()
        st.rerun()


def main() -> None:
    st.set_page_config(page_title="Rental Agreement Wizard", layout="wide")
    st.title("Rental Agreement Wizard")

    cfg = _app_config()
    configure_logging(cfg.log_level)
    session = _get_session(cfg)

    if session.submitted:
        _render_submitted(session)
        return
    if _render_draft_prompt(session):
        return

    _render_sidebar(session)
    step = session.current_step
    st.subheader(_step_label(step, session.progress.get_step_status(step)))
    result = _STEP_RENDERERS[step](session)
    _render_validation(result if result is not None else session.validations.get(step))
    st.divider()
    _render_controls(session)


if __name__ == "__main__":
    main()
