"""
Print the headers and body of a signed delivery, for poking a receiver by hand.

Usage:
    python sign.py <event> <idempotency_key> <data_json> <secret>
"""
import json
import sys
from datetime import UTC, datetime

from relay.services import signing
from relay.services.delivery import build_headers
from relay.services.scheduler import build_payload


def signed_request(
    event: str, idempotency_key: str, data: dict, secret: str
) -> tuple[dict[str, str], bytes]:
    payload = build_payload(event, idempotency_key, data, datetime.now(UTC)).to_wire()
    signature = signing.sign(payload, secret)
    return build_headers(payload, signature), signing.canonicalize(payload)


if __name__ == "__main__":
    if len(sys.argv) != 5:
        print("Usage: python sign.py <event> <idempotency_key> <data_json> <secret>")
        sys.exit(1)

    event, key, data_json, secret = sys.argv[1:]
    headers, body = signed_request(event, key, json.loads(data_json), secret)
    for name, value in headers.items():
        print(f"{name}: {value}")
    print()
    print(body.decode("utf-8"))
