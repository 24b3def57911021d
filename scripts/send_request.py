#!/usr/bin/env python3
"""
Test script that behaves like the browser client.

It fetches the shared secret from the proxy, signs a request descriptor
and posts it to /proxy, then prints the envelope.

Usage:
    python scripts/send_request.py                                   # GitHub octocat
    python scripts/send_request.py --url http://localhost:9001/users/octocat
    python scripts/send_request.py --method POST --body '{"a": 1}'
    python scripts/send_request.py --wrong-secret                    # expect 401
"""
from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

# Add parent dir to path to import from htmz_proxy
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from htmz_proxy.services.security import canonical_json, sign_descriptor


def fetch_secret(proxy_url: str) -> bytes:
    """Fetch the signing secret the way the browser client does."""
    response = httpx.get(f"{proxy_url}/secret", timeout=10.0)
    response.raise_for_status()
    data = response.json()
    print(f"🔑 Secret fetched (ttl {data['ttl']}s)")
    return data["secret"].encode("utf-8")


def send_request(proxy_url: str, descriptor: dict, secret: bytes) -> None:
    """Sign and send a descriptor, then print the proxy's envelope."""
    signature = sign_descriptor(descriptor, secret)

    print(f"\n📤 {descriptor['method']} {descriptor['url']}")

    try:
        response = httpx.post(
            f"{proxy_url}/proxy",
            content=canonical_json(descriptor),
            headers={"Content-Type": "application/json", "X-Signature": signature},
            timeout=60.0,
        )
    except httpx.ConnectError:
        print(f"❌ Could not connect to proxy at {proxy_url}")
        print("   Make sure the proxy is running: htmz-proxy --dev")
        return

    envelope = response.json()
    if envelope.get("success"):
        meta = envelope["metadata"]
        print(f"✅ {response.status_code} via {meta['security']['api'] or 'no profile'} "
              f"-> upstream {meta['external']['status']} in {meta['performance']['upstream_ms']}ms")
        print(json.dumps(envelope["data"], indent=2)[:2000])
    else:
        print(f"❌ {response.status_code} {envelope.get('type')}: {envelope.get('error')}")


def main():
    parser = argparse.ArgumentParser(description="Send a signed request through htmz-proxy")
    parser.add_argument("--proxy-url", default="http://127.0.0.1:3001", help="Proxy base URL")
    parser.add_argument("--url", default="https://api.github.com/users/octocat", help="Target API URL")
    parser.add_argument("--method", default="GET", help="HTTP method")
    parser.add_argument("--header", action="append", default=[], help="Extra header, Name: value")
    parser.add_argument("--body", help="JSON body for POST/PUT/PATCH")
    parser.add_argument("--wrong-secret", action="store_true", help="Sign with a bogus secret")
    args = parser.parse_args()

    headers = {}
    for item in args.header:
        name, _, value = item.partition(":")
        headers[name.strip()] = value.strip()

    descriptor = {
        "url": args.url,
        "method": args.method.upper(),
        "headers": headers,
        "body": json.loads(args.body) if args.body else None,
    }

    try:
        secret = fetch_secret(args.proxy_url)
    except httpx.HTTPError as e:
        print(f"❌ Could not fetch secret from {args.proxy_url}: {e}")
        sys.exit(1)

    if args.wrong_secret:
        secret = b"not-the-shared-secret"

    send_request(args.proxy_url, descriptor, secret)


if __name__ == "__main__":
    main()
