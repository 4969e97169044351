import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

SIGNATURE_LENGTH = 64  # hex chars of a SHA-256 digest


class EncodingError(ValueError):
    pass


def canonicalize(payload: Mapping[str, Any]) -> bytes:
    """
    Serialize a payload to its canonical byte form.

    Keys are sorted at every level and no whitespace is emitted, so two
    payloads holding the same data always produce the same bytes.
    """
    try:
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Payload is not JSON serializable: {exc}") from exc


def sign(payload: Mapping[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), canonicalize(payload), hashlib.sha256
    ).hexdigest()


def verify(payload: Mapping[str, Any], signature: str, secret: str) -> bool:
    if not isinstance(signature, str) or len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        expected = sign(payload, secret)
    except EncodingError:
        return False
    # compare_digest rejects non-ASCII str, compare bytes instead
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
