import hashlib
import hmac
import json
from typing import Any

def encode_body(body: Any) -> bytes:
    # Stable encoding keeps signatures reproducible on the receiving side.
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")

def sign_payload(secret: str | bytes, body: bytes) -> str:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return hmac.new(secret, body, hashlib.sha256).hexdigest()

def verify_signature(secret: str | bytes, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)
