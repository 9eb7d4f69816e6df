"""Send one sample event to the configured webhook and report what came back."""

from __future__ import annotations

import argparse
import json
import time
from datetime import datetime, timezone

import httpx

from inboxrelay.infrastructure.settings import get_settings
from inboxrelay.infrastructure.webhook import payload_diagnostics


def sample_payload(client_id: str) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "client_id": client_id,
        "from": "sender@example.com",
        "to": "recipient@example.com",
        "subject": f"Webhook probe - {now.isoformat()}",
        "message_id": f"probe-{int(now.timestamp() * 1000)}@inboxrelay.local",
        "date": now.isoformat(),
        "original_from": "original@example.com",
        "text": "Sample email used to check the webhook sink.",
        "html": "<p>Sample email used to check the webhook sink.</p>",
    }


def probe(url: str, payload: dict, timeout: float = 30.0) -> int:
    """POST once (no retries) and print the outcome. Returns the exit code."""
    diag = payload_diagnostics(payload)
    print(f"URL: {url}")
    print(f"Payload size: {diag['payload_bytes']} bytes")
    print(f"Client ID: {payload['client_id']}")

    start = time.monotonic()
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload)
    except httpx.TimeoutException:
        print(f"Timed out after {timeout:g}s with no response")
        return 1
    except httpx.HTTPError as e:
        print(f"Request failed after {int((time.monotonic() - start) * 1000)} ms: {type(e).__name__}: {e}")
        return 1

    duration_ms = int((time.monotonic() - start) * 1000)
    print(f"Status: {response.status_code} {response.reason_phrase}")
    print(f"Time: {duration_ms} ms")
    print(f"Response headers: {json.dumps(dict(response.headers), indent=2)}")
    print(f"Response body: {response.text[:2000]}")

    if 200 <= response.status_code < 300:
        print("Webhook accepted the event")
        return 0
    print(f"Webhook answered with non-success status {response.status_code}")
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Post a sample event to WEBHOOK_URL")
    parser.add_argument("client_id", nargs="?", default="test@example.com", help="client_id to put in the event")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.webhook_url:
        print("WEBHOOK_URL is not configured")
        return 1

    return probe(settings.webhook_url, sample_payload(args.client_id), timeout=settings.webhook_timeout_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
