"""Fire concurrent purchases of one course by one user against a sandbox.

Exactly one request should come back SUCCESS; every other one must be
ALREADY_PURCHASED (or FAILURE if the sandbox declined it). More than one
SUCCESS means the duplicate-purchase guard is broken.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter

import httpx


def purchase_payload(user_id: int, course_id: int) -> dict:
    """Sandbox test card and buyer."""

    return {
        "user_id": user_id,
        "course_id": course_id,
        "card_holder_name": "John Doe",
        "card_number": "5528790000000008",
        "expire_month": "12",
        "expire_year": "2030",
        "cvc": "123",
        "buyer_name": "John",
        "buyer_surname": "Doe",
        "buyer_email": "john.doe@example.com",
        "buyer_phone": "+905350000000",
        "buyer_identity_number": "74300864791",
        "buyer_address": "Nidakule Goztepe, Merdivenkoy Mah. Bora Sok. No:1",
        "buyer_city": "Istanbul",
        "buyer_country": "Turkey",
        "buyer_zip_code": "34732",
    }


async def send_one(client: httpx.AsyncClient, base_url: str, payload: dict):
    """Send one direct purchase and return (status_tag, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(f"{base_url}/api/payment/course-purchase/direct", json=payload)
        latency = (time.perf_counter() - started) * 1000
        if resp.status_code != 200:
            return f"HTTP_{resp.status_code}", latency
        return resp.json().get("status", "UNKNOWN"), latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return "TRANSPORT_ERROR", latency


async def run(concurrency: int, base_url: str, user_id: int, course_id: int) -> int:
    """Run one burst and print a summary; returns a process exit code."""

    payload = purchase_payload(user_id, course_id)
    async with httpx.AsyncClient(timeout=60.0) as client:
        results = await asyncio.gather(*(send_one(client, base_url, payload) for _ in range(concurrency)))

    tags = Counter(tag for tag, _ in results)
    lats = [latency for _, latency in results]
    for tag, count in sorted(tags.items()):
        print(f"{tag}={count}")
    print(f"avg_ms={statistics.mean(lats):.2f}")
    print(f"max_ms={max(lats):.2f}")
    if tags.get("SUCCESS", 0) > 1:
        print("duplicate purchase detected")
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--concurrency", type=int, default=10)
    parser.add_argument("--base-url", default="http://localhost:8083")
    parser.add_argument("--user-id", type=int, required=True)
    parser.add_argument("--course-id", type=int, required=True)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args.concurrency, args.base_url, args.user_id, args.course_id)))
