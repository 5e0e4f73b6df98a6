"""
Invoice-number envelope embedded in outbound gateway metadata.

Format: ATT-{userId}-{attemptId}-{tempOrderNumber}-{storeId}
The store segment is omitted on refund/void requests. Inbound webhooks are
correlated back to ledger rows by parsing the segments by position.
"""
from dataclasses import dataclass
from typing import Optional

INVOICE_PREFIX = "ATT"
SEPARATOR = "-"


@dataclass(frozen=True)
class InvoiceEnvelope:
    user_id: int
    attempt_id: int
    temp_order_number: Optional[str] = None
    store_id: Optional[str] = None


def format_invoice_number(
    user_id,
    attempt_id,
    temp_order_number=None,
    store_id=None,
) -> str:
    parts = [INVOICE_PREFIX, str(user_id), str(attempt_id), str(temp_order_number or "")]
    if store_id not in (None, ""):
        parts.append(str(store_id))
    return SEPARATOR.join(parts)


def parse_invoice_number(value: Optional[str]) -> Optional[InvoiceEnvelope]:
    """Returns None for anything that is not one of our envelopes."""
    if not value:
        return None
    parts = str(value).split(SEPARATOR, 4)
    if len(parts) < 3 or parts[0] != INVOICE_PREFIX:
        return None
    try:
        user_id = int(parts[1])
        attempt_id = int(parts[2])
    except ValueError:
        return None

    temp_order_number = parts[3] if len(parts) > 3 and parts[3] else None
    store_id = parts[4] if len(parts) > 4 and parts[4] else None
    return InvoiceEnvelope(
        user_id=user_id,
        attempt_id=attempt_id,
        temp_order_number=temp_order_number,
        store_id=store_id,
    )
