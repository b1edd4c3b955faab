from __future__ import annotations

import unittest
from datetime import date, datetime
from decimal import Decimal

from agreement_pdf import (
    AgreementPdfArtifact,
    AgreementPdfLineItem,
    AgreementPdfTotals,
    artifact_from_wizard_data,
    format_aed,
    make_agreement_pdf_bytes,
)


def _artifact(items) -> AgreementPdfArtifact:
    return AgreementPdfArtifact(
        agreement_no="AGR-TEST-1",
        agreement_date=date(2026, 3, 1),
        customer_name="Demo Customer",
        customer_id="CUST-1",
        vehicle_label="Nissan Patrol",
        pickup_label="2026-03-01 09:00 @ DXB",
        dropoff_label="2026-03-05 11:00 @ DXB",
        mileage_label="unlimited",
        line_items=tuple(items),
        totals=AgreementPdfTotals(
            subtotal=Decimal("1660.00"),
            discount=Decimal("100.00"),
            taxable_amount=Decimal("1560.00"),
            vat=Decimal("78.00"),
            total=Decimal("1638.00"),
            security_deposit=Decimal("1500.00"),
            advance_paid=Decimal("500.00"),
        ),
        signer_name="Demo Customer",
        signed_at=datetime(2026, 3, 1, 9, 5),
    )


class TestAgreementPdf(unittest.TestCase):
    def _count_pdf_pages(self, pdf: bytes) -> int:
        """
        Each page object carries "/Type /Page"; the page tree carries "/Type /Pages".
        """
        return max(0, pdf.count(b"/Type /Page") - pdf.count(b"/Type /Pages"))

    def test_make_agreement_pdf_bytes_returns_pdf(self) -> None:
        pdf = make_agreement_pdf_bytes(_artifact([AgreementPdfLineItem("Rental charges", 1, Decimal("1400.00"))]))
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertGreater(len(pdf), 1000)
        self.assertIn(b"Vehicle Rental Agreement", pdf)
        self.assertIn(b"Balance Due", pdf)
        self.assertIn(b"CUSTOMER SIGNATURE", pdf)
        self.assertEqual(self._count_pdf_pages(pdf), 1)

    def test_long_charge_list_continues_on_next_page(self) -> None:
        items = [AgreementPdfLineItem(f"Extra charge {i}", 1, Decimal("10.00")) for i in range(60)]
        pdf = make_agreement_pdf_bytes(_artifact(items))
        self.assertGreaterEqual(self._count_pdf_pages(pdf), 2)
        # Parentheses are escaped inside PDF strings.
        self.assertIn(b"CHARGES", pdf)

    def test_balance_due(self) -> None:
        totals = _artifact([]).totals
        self.assertEqual(totals.balance_due, Decimal("1138.00"))

    def test_format_aed(self) -> None:
        self.assertEqual(format_aed(Decimal("1234")), "AED 1,234.00")
        self.assertEqual(format_aed(Decimal("-5.5")), "-AED 5.50")


class TestArtifactFromWizardData(unittest.TestCase):
    def test_builds_items_and_totals_from_breakdown(self) -> None:
        data = {
            "step1": {
                "customer_id": "CUST-1",
                "vehicle_id": "VEH-1",
                "pickup_at": "2026-03-01T09:00:00",
                "pickup_location_id": "DXB",
                "mileage_package": "limited",
                "included_km": 750,
                "excess_km_rate": "0.75",
            },
            "step3": {
                "insurance_package": "comprehensive",
                "discount_reason": "Returning customer",
                "pricing_breakdown": {
                    "base_rate": "1400.00",
                    "insurance": "200.00",
                    "maintenance": "0.00",
                    "addons": "60.00",
                    "subtotal": "1660.00",
                    "discount": "100.00",
                    "taxable_amount": "1560.00",
                    "vat": "78.00",
                    "total": "1638.00",
                },
            },
            "step4": {"selected_addons": [{"name": "GPS", "quantity": 1, "total": "60.00"}]},
            "step5": {"advance_payment": {"status": "pending", "amount": "500"}, "security_deposit": {"amount": "1500"}},
            "step7": {"customer_signature": {"signer_name": "Demo Customer"}},
        }
        artifact = artifact_from_wizard_data(data, agreement_no="AGR-1", agreement_date=date(2026, 3, 1))
        self.assertEqual([li.description for li in artifact.line_items], ["Rental charges", "Insurance (comprehensive)", "GPS"])
        self.assertEqual(artifact.totals.total, Decimal("1638.00"))
        # Advance only counts once it is completed.
        self.assertEqual(artifact.totals.advance_paid, Decimal("0.00"))
        self.assertEqual(artifact.totals.security_deposit, Decimal("1500.00"))
        self.assertEqual(artifact.customer_name, "Demo Customer")
        self.assertEqual(artifact.pickup_label, "2026-03-01 09:00 @ DXB")
        self.assertEqual(artifact.dropoff_label, "- @ -")
        self.assertIn("750 km", artifact.mileage_label)
        self.assertEqual(artifact.notes, ("Discount: Returning customer",))


if __name__ == "__main__":
    unittest.main()
