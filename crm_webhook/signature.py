"""Razorpay webhook signature verification.

Razorpay signs the exact request body with HMAC-SHA256 using the webhook
secret and sends the hex digest in ``X-Razorpay-Signature``. The digest must be
computed over the bytes as received: parsing and re-serializing the JSON does
not round-trip whitespace or key order and breaks verification.
"""

import hashlib
import hmac
import logging
from typing import Optional

from crm_webhook.config import ConfigurationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"


class SignatureVerifier:
    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("Webhook secret is empty; signatures cannot be verified")
        self._key = secret.encode("utf-8")

    def compute(self, body: bytes) -> str:
        return hmac.new(self._key, body, hashlib.sha256).hexdigest()

    def verify(self, body: bytes, signature: Optional[str]) -> bool:
        if not signature or not signature.strip():
            logger.warning("Webhook rejected: missing %s header", SIGNATURE_HEADER)
            return False

        expected = self.compute(body)
        if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8")):
            logger.warning("Webhook rejected: signature mismatch (body_bytes=%d)", len(body))
            return False
        return True
