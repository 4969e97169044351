import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime

from pydantic import ValidationError
from relay.schemas.event import EventPayload, parse_timestamp
from relay.services import signing
from relay.services.delivery import SIGNATURE_HEADER, TIMESTAMP_HEADER

logger = logging.getLogger(__name__)


class ReceiverError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def verify_delivery(
    headers: Mapping[str, str],
    body: bytes,
    secret: str,
    replay_window: int = 300,
    now: datetime | None = None,
) -> EventPayload:
    """
    Check an inbound delivery before its payload is trusted.

    Rejects missing headers, stale or future timestamps (outside
    ``replay_window`` seconds) and bad signatures. Deduplication on the
    idempotency key is left to the caller's store.
    """
    now = now or datetime.now(UTC)
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    if not signature or not timestamp:
        raise ReceiverError("Missing webhook signature headers")

    try:
        raw = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ReceiverError("Invalid JSON payload")
    if not isinstance(raw, dict):
        raise ReceiverError("Invalid JSON payload")

    try:
        payload = EventPayload.model_validate(raw)
    except ValidationError:
        raise ReceiverError("Malformed webhook payload")

    if timestamp != payload.timestamp:
        raise ReceiverError("Timestamp header does not match payload")
    try:
        sent_at = parse_timestamp(timestamp)
    except ValueError:
        raise ReceiverError("Invalid timestamp")
    if abs((now - sent_at).total_seconds()) > replay_window:
        logger.warning(
            f"Rejected {payload.event} key={payload.idempotency_key}: timestamp outside replay window"
        )
        raise ReceiverError("Timestamp outside replay window")

    if not signing.verify(raw, signature, secret):
        logger.warning(
            f"Rejected {payload.event} key={payload.idempotency_key}: signature mismatch"
        )
        raise ReceiverError("Invalid signature", status_code=401)
    return payload
