"""
Webhook signature schemes.

Authorize.net signs the raw body with HMAC-SHA512 keyed by the merchant signature
key and sends ``sha512=<HEX>`` in X-ANET-Signature. Stripe signs with the endpoint
secret and is verified through the SDK's construct_event.
"""
import hashlib
import hmac
from typing import Optional

import stripe

from app.errors import SignatureVerificationError, WebhookConfigurationError

ANET_SIGNATURE_HEADER = "X-ANET-Signature"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


def compute_anet_signature(body: bytes, signing_key: str) -> str:
    digest = hmac.new(signing_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return f"sha512={digest}"


def verify_anet_signature(body: bytes, header_value: Optional[str], signing_key: Optional[str]) -> None:
    if not signing_key:
        raise WebhookConfigurationError("Authorize.net signature key is not configured")
    if not header_value:
        raise SignatureVerificationError(f"Missing {ANET_SIGNATURE_HEADER} header", http_status=401)

    expected = compute_anet_signature(body, signing_key).lower()
    if not hmac.compare_digest(expected, header_value.strip().lower()):
        raise SignatureVerificationError("Invalid webhook signature", http_status=401)


def verify_stripe_signature(body: bytes, header_value: Optional[str], secret: Optional[str]):
    if not secret:
        raise WebhookConfigurationError("Stripe webhook secret is not configured")
    if not header_value:
        raise SignatureVerificationError(f"Missing {STRIPE_SIGNATURE_HEADER} header", http_status=400)

    try:
        return stripe.Webhook.construct_event(body, header_value, secret)
    except stripe.SignatureVerificationError as exc:
        raise SignatureVerificationError(f"Invalid signature: {exc}", http_status=400) from exc
    except ValueError as exc:
        raise SignatureVerificationError(f"Invalid payload: {exc}", http_status=400) from exc
