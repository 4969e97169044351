from datetime import UTC, datetime, timedelta

import pytest
from relay.services.receiver import ReceiverError, verify_delivery
from relay.services.scheduler import build_payload
from relay.services.signing import canonicalize, sign

SECRET = "whsec_receiver_secret"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def signed(sent_at=NOW, secret=SECRET, data=None):
    payload = build_payload("order.created", "evt_001", data or {"id": 1}, sent_at).to_wire()
    headers = {
        "X-Webhook-Signature": sign(payload, secret),
        "X-Webhook-Timestamp": payload["timestamp"],
        "X-Webhook-Event": payload["event"],
    }
    return headers, canonicalize(payload)


def test_valid_delivery_is_accepted():
    headers, body = signed()
    payload = verify_delivery(headers, body, SECRET, now=NOW)
    assert payload.event == "order.created"
    assert payload.idempotency_key == "evt_001"
    assert payload.data == {"id": 1}


def test_header_names_are_case_insensitive():
    headers, body = signed()
    lowered = {k.lower(): v for k, v in headers.items()}
    assert verify_delivery(lowered, body, SECRET, now=NOW)


def test_reformatted_body_still_verifies():
    # Signatures cover the canonical form, not the bytes on the wire
    headers, _ = signed()
    body = (
        b'{ "data": {"id": 1}, "event": "order.created", '
        b'"idempotencyKey": "evt_001", "timestamp": "' + NOW.isoformat().encode() + b'" }'
    )
    assert verify_delivery(headers, body, SECRET, now=NOW)


def test_wrong_secret_is_unauthorized():
    headers, body = signed(secret="some_other_secret")
    with pytest.raises(ReceiverError) as exc:
        verify_delivery(headers, body, SECRET, now=NOW)
    assert exc.value.status_code == 401
    assert exc.value.message == "Invalid signature"


def test_tampered_body_is_unauthorized():
    headers, _ = signed()
    _, tampered = signed(data={"id": 2})
    with pytest.raises(ReceiverError) as exc:
        verify_delivery(headers, tampered, SECRET, now=NOW)
    assert exc.value.status_code == 401


def test_missing_headers():
    _, body = signed()
    with pytest.raises(ReceiverError, match="Missing webhook signature headers") as exc:
        verify_delivery({}, body, SECRET, now=NOW)
    assert exc.value.status_code == 400


@pytest.mark.parametrize(
    "offset", [timedelta(seconds=301), timedelta(hours=-1), timedelta(days=3)]
)
def test_timestamp_outside_replay_window(offset):
    headers, body = signed(sent_at=NOW - offset)
    with pytest.raises(ReceiverError, match="replay window") as exc:
        verify_delivery(headers, body, SECRET, replay_window=300, now=NOW)
    assert exc.value.status_code == 400


def test_timestamp_at_window_edge_is_accepted():
    headers, body = signed(sent_at=NOW - timedelta(seconds=300))
    assert verify_delivery(headers, body, SECRET, replay_window=300, now=NOW)


def test_timestamp_header_must_match_payload():
    headers, body = signed()
    headers["X-Webhook-Timestamp"] = (NOW + timedelta(seconds=1)).isoformat()
    with pytest.raises(ReceiverError, match="does not match"):
        verify_delivery(headers, body, SECRET, now=NOW)


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b"\xff\xfe"])
def test_invalid_json(body):
    headers, _ = signed()
    with pytest.raises(ReceiverError, match="Invalid JSON payload"):
        verify_delivery(headers, body, SECRET, now=NOW)


def test_malformed_payload():
    headers, _ = signed()
    with pytest.raises(ReceiverError, match="Malformed webhook payload"):
        verify_delivery(headers, b'{"event": "order.created"}', SECRET, now=NOW)
