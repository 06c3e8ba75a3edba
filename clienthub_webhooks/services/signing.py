"""
Webhook payload signing.

Destinations verify a delivery by recomputing HMAC-SHA256 over the literal
request body with their shared secret and comparing it with the
``X-Webhook-Signature`` header.
"""
import hashlib
import hmac
import secrets


SIGNATURE_PREFIX = "sha256="


def sign(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature (hex) for a serialized payload."""
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def signature_header(payload: str, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{sign(payload, secret)}"


def verify(payload: str, signature: str, secret: str) -> bool:
    """
    Check a signature produced by ``sign``.

    Accepts the bare hex digest or the ``sha256=`` header form.
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(
        sign(payload, secret).encode("utf-8"),
        signature.encode("utf-8"),
    )


def generate_secret() -> str:
    """Random 32-byte secret, hex encoded."""
    return secrets.token_hex(32)
