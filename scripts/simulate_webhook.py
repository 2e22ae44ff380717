"""
Simulate a signed SafeHaven webhook delivery.

Usage:
    python scripts/simulate_webhook.py
    python scripts/simulate_webhook.py --type payment.completed --event-id evt-123
    python scripts/simulate_webhook.py --repeat 3          # same event id, shows 202 then 200/409
    python scripts/simulate_webhook.py --bad-signature     # expect 401
"""
import argparse
import asyncio
import json
import logging
import os
import uuid

import httpx

from safehaven.utils.webhook_signatures import compute_hmac_sha256

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"
WEBHOOK_PATH = "/api/v1/safehaven/webhooks"


def build_payload(event_type: str, user_id: str) -> dict:
    payload = {"type": event_type, "user_id": user_id}
    if event_type.startswith("identity."):
        payload["email"] = f"{user_id}@example.com"
    if event_type.startswith("payment."):
        payload.update({"reference": f"pay-{uuid.uuid4().hex[:8]}", "amount": 2500, "currency": "NGN"})
    return payload


async def deliver(client: httpx.AsyncClient, event_id: str, body: bytes, signature: str) -> httpx.Response:
    resp = await client.post(
        f"{BASE_URL}{WEBHOOK_PATH}",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Provider-Event-Id": event_id,
            "X-Provider-Signature": signature,
        },
    )
    logger.info("Delivery %s -> %s %s", event_id, resp.status_code, resp.text)
    return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate SafeHaven webhook deliveries")
    parser.add_argument("--type", default="identity.created")
    parser.add_argument("--user-id", default="u-demo-1")
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--secret", default=os.environ.get("SAFEHAVEN_WEBHOOK_SECRET", ""))
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--bad-signature", action="store_true")
    args = parser.parse_args()

    if not args.secret:
        parser.error("--secret or SAFEHAVEN_WEBHOOK_SECRET is required")

    event_id = args.event_id or f"evt-{uuid.uuid4().hex[:12]}"
    body = json.dumps(build_payload(args.type, args.user_id)).encode("utf-8")
    secret = args.secret + "-wrong" if args.bad_signature else args.secret
    signature = compute_hmac_sha256(secret, body)

    async with httpx.AsyncClient(timeout=30) as client:
        for _ in range(args.repeat):
            await deliver(client, event_id, body, signature)
        health = await client.get(f"{BASE_URL}{WEBHOOK_PATH}/health")
        logger.info("Webhook health: %s", health.text)


if __name__ == "__main__":
    asyncio.run(main())
