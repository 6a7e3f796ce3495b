"""
HMAC-SHA256 signing and the forum's SSO payload encoding.
A payload is a URL-encoded query string, base64 encoded; the signature is lowercase hex over the base64 text.
"""
import base64
import binascii
import hashlib
import hmac
from urllib.parse import parse_qsl, urlencode


class DecodeError(ValueError):
    """The SSO payload is not valid base64 or not a valid query string."""


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(secret: str, payload: bytes | str) -> str:
    """HMAC-SHA256 of payload keyed by secret, as lowercase hex."""
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify(secret: str, signature_hex: str, payload: bytes | str) -> bool:
    """
    Constant-time check of signature_hex against payload. Malformed hex is a mismatch,
    never an exception.
    """
    try:
        expected = bytes.fromhex(signature_hex)
    except (TypeError, ValueError):
        return False
    actual = hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).digest()
    return hmac.compare_digest(actual, expected)


def encode_payload(fields: dict[str, str]) -> str:
    return base64.b64encode(urlencode(fields).encode("utf-8")).decode("ascii")


def decode_payload(encoded: str) -> dict[str, str]:
    """Reverse of encode_payload. Raises DecodeError on bad base64 or bad query syntax."""
    try:
        raw = base64.b64decode("".join(encoded.split()), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise DecodeError("Payload is not valid base64") from e
    try:
        pairs = parse_qsl(raw, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        raise DecodeError("Payload is not a valid query string") from e
    return dict(pairs)
