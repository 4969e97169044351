import hashlib
import hmac

import pytest
from relay.services.signing import EncodingError, canonicalize, sign, verify

SECRET = "whsec_test_secret_value"


def test_canonical_form_sorts_keys_without_whitespace():
    payload = {"b": 1, "a": {"d": 2, "c": "é"}}
    assert canonicalize(payload) == '{"a":{"c":"é","d":2},"b":1}'.encode("utf-8")


def test_key_order_does_not_change_signature():
    first = {"event": "order.created", "data": {"id": 1, "total": 9.5}}
    second = {"data": {"total": 9.5, "id": 1}, "event": "order.created"}
    assert sign(first, SECRET) == sign(second, SECRET)


def test_signature_is_hmac_sha256_hex_of_canonical_bytes():
    payload = {"event": "order.created", "data": {"id": 1}}
    expected = hmac.new(
        SECRET.encode("utf-8"), canonicalize(payload), hashlib.sha256
    ).hexdigest()
    signature = sign(payload, SECRET)
    assert signature == expected
    assert len(signature) == 64
    assert signature == signature.lower()


def test_different_secret_different_signature():
    payload = {"event": "order.created"}
    assert sign(payload, SECRET) != sign(payload, "another_secret_value")


def test_verify_accepts_matching_signature():
    payload = {"event": "order.created", "data": {"id": 1}}
    assert verify(payload, sign(payload, SECRET), SECRET)


def test_verify_rejects_tampered_payload():
    payload = {"event": "order.created", "data": {"id": 1}}
    signature = sign(payload, SECRET)
    assert not verify({"event": "order.created", "data": {"id": 2}}, signature, SECRET)


@pytest.mark.parametrize(
    "signature",
    ["", "abc", "0" * 63, "0" * 65, "é" * 64, None],
)
def test_verify_rejects_malformed_signatures(signature):
    assert verify({"event": "order.created"}, signature, SECRET) is False


def test_nan_is_not_serializable():
    with pytest.raises(EncodingError):
        canonicalize({"value": float("nan")})


def test_unserializable_object():
    with pytest.raises(EncodingError):
        sign({"value": object()}, SECRET)


def test_verify_unserializable_payload_is_false():
    assert verify({"value": object()}, "0" * 64, SECRET) is False
