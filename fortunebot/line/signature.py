"""
signature.py — LINE webhook signature verification.

X-Line-Signature = base64(HMAC-SHA256(channel_secret, raw request body)).
Always verify against the raw bytes, before any JSON parsing.
"""
import base64
import hashlib
import hmac
from typing import Optional


def compute_signature(channel_secret: str, body: bytes) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Constant-time comparison of the expected and supplied signatures.
    An unset channel secret or a missing header never verifies.
    """
    if not channel_secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(channel_secret, body), signature)
