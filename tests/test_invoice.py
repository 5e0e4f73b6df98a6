"""
Pure unit tests for the invoice-number envelope.
"""
from app.services.invoice import InvoiceEnvelope, format_invoice_number, parse_invoice_number


class TestFormatInvoiceNumber:
    def test_full_envelope(self):
        assert format_invoice_number(12, 345, "6789", "3") == "ATT-12-345-6789-3"

    def test_store_omitted_for_reversals(self):
        assert format_invoice_number(12, 346, "6789") == "ATT-12-346-6789"

    def test_missing_temp_order_keeps_position(self):
        assert format_invoice_number(12, 347, None, "3") == "ATT-12-347--3"


class TestParseInvoiceNumber:
    def test_full_envelope(self):
        assert parse_invoice_number("ATT-12-345-6789-3") == InvoiceEnvelope(12, 345, "6789", "3")

    def test_without_store(self):
        env = parse_invoice_number("ATT-12-346-6789")
        assert env.user_id == 12
        assert env.attempt_id == 346
        assert env.store_id is None

    def test_store_with_hyphen_is_kept_whole(self):
        assert parse_invoice_number("ATT-1-2-300-store-east").store_id == "store-east"

    def test_empty_temp_order(self):
        env = parse_invoice_number("ATT-12-347--3")
        assert env.temp_order_number is None
        assert env.store_id == "3"

    def test_foreign_invoice_returns_none(self):
        assert parse_invoice_number("INV-2024-0001") is None

    def test_non_numeric_ids_return_none(self):
        assert parse_invoice_number("ATT-abc-1-2") is None

    def test_too_short_returns_none(self):
        assert parse_invoice_number("ATT-12") is None

    def test_none_and_empty(self):
        assert parse_invoice_number(None) is None
        assert parse_invoice_number("") is None
