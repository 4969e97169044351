"""
Single delivery attempt: POST the signed payload and classify the response.

No state is touched here; the scheduler decides what an outcome means for
the delivery record.
"""
import enum
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from relay.services import signing

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
USER_AGENT = "webhook-relay/1.0"


class AttemptOutcome(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = 0


def classify_status(status_code: int) -> AttemptOutcome:
    if 200 <= status_code < 300:
        return AttemptOutcome.SUCCESS
    if status_code == 429 or status_code >= 500:
        return AttemptOutcome.TRANSIENT_FAILURE
    # 4xx, and 1xx/3xx since redirects are never followed
    return AttemptOutcome.PERMANENT_FAILURE


def build_headers(payload: Mapping[str, Any], signature: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: signature,
        TIMESTAMP_HEADER: str(payload["timestamp"]),
        EVENT_HEADER: str(payload["event"]),
    }


def attempt(
    url: str,
    payload: Mapping[str, Any],
    signature: str,
    timeout: float = 30.0,
    client: httpx.Client | None = None,
) -> AttemptResult:
    body = signing.canonicalize(payload)
    headers = build_headers(payload, signature)

    started = time.monotonic()
    try:
        if client is None:
            with httpx.Client(timeout=timeout, follow_redirects=False) as own_client:
                response = own_client.post(url, content=body, headers=headers)
        else:
            response = client.post(url, content=body, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        return AttemptResult(
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            error=f"Request timed out after {timeout}s: {type(exc).__name__}",
            duration_ms=_elapsed_ms(started),
        )
    except httpx.HTTPError as exc:
        return AttemptResult(
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            error=f"{type(exc).__name__}: {exc}",
            duration_ms=_elapsed_ms(started),
        )

    outcome = classify_status(response.status_code)
    error = None
    if outcome is not AttemptOutcome.SUCCESS:
        error = f"HTTP {response.status_code}"
    logger.info(
        f"Webhook {payload['event']} to {url}: {response.status_code} ({outcome.value})"
    )
    return AttemptResult(
        outcome=outcome,
        status_code=response.status_code,
        error=error,
        duration_ms=_elapsed_ms(started),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
