import base64
import hashlib
import hmac

from app.core.config import settings

SIGNATURE_HEADER = "X-Approval-Signature"
EVENT_HEADER = "X-Approval-Event"
IDEMPOTENCY_HEADER = "X-Approval-Idempotency-Key"


def _webhook_secret(secret: str | None = None) -> bytes:
    return (secret or settings.WEBHOOK_SECRET_KEY).encode("utf-8")


def sign_payload(payload: bytes | str, secret: str | None = None) -> str:
    """Base64 of HMAC-SHA256 over the exact bytes that go on the wire."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    digest = hmac.new(_webhook_secret(secret), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(payload: bytes, signature: str | None, secret: str | None = None) -> bool:
    if not signature:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.strip())
