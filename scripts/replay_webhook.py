"""
Replay a Razorpay webhook body against a running server.

Usage:
    python scripts/replay_webhook.py http://127.0.0.1:8000/v1/webhooks/razorpay <webhook-secret> payload.json

The file is sent byte-for-byte, signed the same way Razorpay signs it.
"""
import hashlib
import hmac
import sys

import httpx


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def replay(url: str, secret: str, path: str) -> httpx.Response:
    with open(path, "rb") as f:
        body = f.read()
    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": sign(secret, body),
    }
    return httpx.post(url, content=body, headers=headers, timeout=15)


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 3:
        print(__doc__)
        return 2
    url, secret, path = args
    try:
        res = replay(url, secret, path)
    except httpx.HTTPError as e:
        print(f"Request failed: {e}")
        return 1
    print(f"Status: {res.status_code}")
    print(res.text)
    return 0 if res.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
