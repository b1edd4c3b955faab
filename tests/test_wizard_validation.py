from __future__ import annotations

import unittest
from datetime import datetime

from wizard_validation import (
    INTERNAL_ERROR,
    INVALID_STEP_ERROR,
    StepValidation,
    ValidationRegistry,
    agreement_registry,
    parse_datetime,
    reservation_registry,
    validate_billing,
    validate_documents,
    validate_final_review,
    validate_inspection,
    validate_pricing,
    validate_rate_taxes,
    validate_reservation_lines,
    validate_signature,
    validate_source,
    validate_terms,
    validate_vehicles_drivers,
)


def _terms(**overrides):
    step1 = {
        "customer_id": "C1",
        "agreement_type": "daily",
        "rental_purpose": "tourism",
        "pickup_location_id": "DXB",
        "dropoff_location_id": "DXB",
        "pickup_at": "2026-03-01T09:00:00",
        "dropoff_at": "2026-03-03T09:00:00",
        "mileage_package": "unlimited",
    }
    step1.update(overrides)
    return {"step1": step1}


class TestRegistry(unittest.TestCase):
    def test_unknown_step_fails_closed(self) -> None:
        result = agreement_registry().validate(42, {})
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, (INVALID_STEP_ERROR,))

    def test_raising_validator_becomes_generic_error(self) -> None:
        def boom(data):
            raise KeyError("missing")

        registry = ValidationRegistry({0: boom}, names={0: "Boom"})
        with self.assertLogs("wizard_validation", level="ERROR"):
            result = registry.validate(0, {})
        self.assertFalse(result.is_valid)
        self.assertTrue(result.fault)
        self.assertEqual(result.errors, (INTERNAL_ERROR,))

    def test_is_valid_follows_errors(self) -> None:
        registry = ValidationRegistry({0: lambda data: StepValidation(is_valid=True, errors=("nope",))})
        self.assertFalse(registry.validate(0, {}).is_valid)

    def test_step_indices_and_names(self) -> None:
        self.assertEqual(agreement_registry().step_indices, tuple(range(9)))
        self.assertEqual(reservation_registry().step_indices, tuple(range(7)))
        self.assertEqual(agreement_registry().name_for(8), "Final Review")
        self.assertEqual(ValidationRegistry({}).name_for(3), "Step 3")


class TestAgreementValidators(unittest.TestCase):
    def test_source_required(self) -> None:
        result = validate_source({"source": None})
        self.assertEqual(result.errors, ("Please select an agreement source",))
        self.assertTrue(validate_source({"source": "direct"}).is_valid)
        self.assertFalse(validate_source({"source": "reservation"}).is_valid)
        self.assertTrue(validate_source({"source": "reservation", "source_id": "R1"}).is_valid)

    def test_terms_complete(self) -> None:
        self.assertTrue(validate_terms(_terms()).is_valid)

    def test_dropoff_must_follow_pickup(self) -> None:
        result = validate_terms(_terms(dropoff_at="2026-03-01T08:00:00"))
        self.assertIn("Drop-off date must be after pickup date", result.errors)

    def test_limited_mileage_needs_km_and_rate(self) -> None:
        result = validate_terms(_terms(mileage_package="limited"))
        self.assertIn("Please specify included kilometers", result.errors)
        self.assertIn("Please specify excess km rate", result.errors)

    def test_cross_border_without_countries_warns(self) -> None:
        result = validate_terms(_terms(cross_border_allowed=True))
        self.assertTrue(result.is_valid)
        self.assertIn("Cross-border allowed but no countries specified", result.warnings)

    def test_inspection_errors_and_warnings(self) -> None:
        result = validate_inspection({"step2": {"fuel_level": 1.5, "odometer_reading": 0}})
        self.assertIn("Please set fuel level (0-100%)", result.errors)
        self.assertIn("Please enter a valid odometer reading", result.errors)
        ok = validate_inspection({"step2": {"fuel_level": 0.5, "odometer_reading": 1200}})
        self.assertTrue(ok.is_valid)
        self.assertIn("Odometer photo not captured", ok.warnings)

    def test_pricing_needs_breakdown(self) -> None:
        step3 = {"base_rate": "100", "insurance_package": "basic", "excess_amount": "1000"}
        result = validate_pricing({"step3": step3})
        self.assertEqual(result.errors, ("Pricing breakdown is incomplete",))
        step3["pricing_breakdown"] = {"subtotal": "250.00", "total": "262.50"}
        self.assertTrue(validate_pricing({"step3": step3}).is_valid)

    def test_override_without_reason(self) -> None:
        step3 = {
            "base_rate": "100",
            "insurance_package": "basic",
            "excess_amount": "1000",
            "rate_override": {"amount": "150"},
            "pricing_breakdown": {"subtotal": "300", "total": "315"},
        }
        result = validate_pricing({"step3": step3})
        self.assertIn("Rate override requires a reason", result.errors)
        self.assertIn("Rate override is more than 20% - approval may be required", result.warnings)

    def test_upfront_schedule_requires_completed_advance(self) -> None:
        step5 = {
            "billing_type": "same",
            "payment_method": "card",
            "payment_schedule": "upfront",
            "security_deposit": {"method": "card_hold"},
        }
        result = validate_billing({"step5": step5})
        self.assertIn("Advance payment must be completed for upfront payment schedule", result.errors)
        step5["advance_payment"] = {"status": "completed"}
        self.assertTrue(validate_billing({"step5": step5}).is_valid)

    def test_documents_must_be_verified(self) -> None:
        docs = [{"type": "emirates_id", "verification_status": "verified"}, {"type": "passport", "verification_status": "pending"}]
        result = validate_documents({"step6": {"documents": docs}})
        self.assertIn("Passport must be uploaded and verified", result.errors)
        self.assertIn("Driving license must be uploaded and verified", result.errors)
        self.assertNotIn("Emirates ID must be uploaded and verified", result.errors)

    def test_ineligible_driver_is_an_error(self) -> None:
        result = validate_documents({"step6": {"eligibility_status": "ineligible"}})
        self.assertIn("Driver is not eligible to rent a vehicle", result.errors)

    def test_signature_requires_signer_name(self) -> None:
        result = validate_signature({"step7": {"customer_signature": {"image": "x"}}})
        self.assertIn("Signer name is required", result.errors)
        self.assertIn("You must accept the terms and conditions", result.errors)

    def test_final_review_reports_failing_steps(self) -> None:
        result = validate_final_review({"step8": {"review_completed": True, "distribution_methods": {"email": True}}})
        self.assertIn("Step 0 (Source Selection) has errors", result.errors)
        self.assertNotIn("Please complete the final review", result.errors)

    def test_non_finite_amounts_get_field_errors(self) -> None:
        step3 = {"base_rate": "nan", "insurance_package": "basic", "excess_amount": "inf"}
        result = agreement_registry().validate(3, {"step3": step3})
        self.assertFalse(result.fault)
        self.assertIn("Base rate must be greater than 0", result.errors)
        self.assertIn("Please set insurance excess amount", result.errors)
        self.assertNotIn(INTERNAL_ERROR, result.errors)


class TestReservationValidators(unittest.TestCase):
    def test_rates_need_price_list_or_a_rate(self) -> None:
        self.assertFalse(validate_rate_taxes({"rate_taxes": {}}).is_valid)
        self.assertTrue(validate_rate_taxes({"rate_taxes": {"daily_rate": "50"}}).is_valid)
        self.assertTrue(validate_rate_taxes({"rate_taxes": {"price_list_id": "PL"}}).is_valid)

    def test_negative_rate_rejected(self) -> None:
        result = validate_rate_taxes({"rate_taxes": {"price_list_id": "PL", "weekly_rate": "-1"}})
        self.assertIn("Weekly rate cannot be negative", result.errors)

    def test_non_numeric_rates_are_field_errors(self) -> None:
        rates = {"price_list_id": "PL", "daily_rate": "nan", "weekly_rate": "Infinity", "monthly_rate": "abc", "hourly_rate": ""}
        result = reservation_registry().validate(1, {"rate_taxes": rates})
        self.assertFalse(result.fault)
        self.assertEqual(
            result.errors,
            ("Daily rate must be a number", "Weekly rate must be a number", "Monthly rate must be a number"),
        )

    def test_non_numeric_adjustments_are_field_errors(self) -> None:
        result = reservation_registry().validate(5, {"adjustments": {"advance_payment": "nan", "cancellation_charges": "-5"}})
        self.assertFalse(result.fault)
        self.assertEqual(result.errors, ("Advance payment must be a number", "Cancellation charges cannot be negative"))

    def test_prefill_accepts_mixed_offsets(self) -> None:
        prefill = {
            "vehicle_class_id": "SUV",
            "vehicle_id": "V1",
            "check_out_location_id": "DXB",
            "check_in_location_id": "DXB",
            "check_out_at": "2026-03-01T10:00:00",
            "check_in_at": "2026-03-03T10:00:00+00:00",
        }
        self.assertTrue(validate_vehicles_drivers({"prefill": prefill}).is_valid)

    def test_prefill_requires_dates_in_order(self) -> None:
        prefill = {
            "vehicle_class_id": "SUV",
            "vehicle_id": "V1",
            "check_out_location_id": "DXB",
            "check_in_location_id": "DXB",
            "check_out_at": datetime(2026, 3, 2),
            "check_in_at": datetime(2026, 3, 1),
        }
        result = validate_vehicles_drivers({"prefill": prefill})
        self.assertEqual(result.errors, ("Check-in date must be after check-out date",))

    def test_lines_warn_when_priced_with_other_rates(self) -> None:
        data = {"lines": [{"rate_context_hash_at_pricing": "old"}], "rate_context_hash": "new"}
        result = validate_reservation_lines(data)
        self.assertTrue(result.is_valid)
        self.assertEqual(len(result.warnings), 1)
        self.assertFalse(validate_reservation_lines({"lines": []}).is_valid)


class TestParseDatetime(unittest.TestCase):
    def test_accepts_iso_strings_and_rejects_garbage(self) -> None:
        self.assertEqual(parse_datetime("2026-03-01T09:00:00"), datetime(2026, 3, 1, 9))
        self.assertIsNone(parse_datetime("tomorrow"))
        self.assertIsNone(parse_datetime(None))


if __name__ == "__main__":
    unittest.main()
