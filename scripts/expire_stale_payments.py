"""Trigger the stale-payment sweep and print which payments were expired."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the reconciliation sweep."""

    parser = argparse.ArgumentParser(description="Fail PENDING / AWAITING_3DS payments older than a bound.")
    parser.add_argument("--service-url", default="http://localhost:8083")
    parser.add_argument(
        "--max-age-seconds",
        type=int,
        default=None,
        help="override STALE_PAYMENT_MAX_AGE_SECONDS for this run",
    )
    args = parser.parse_args()

    params = {}
    if args.max_age_seconds is not None:
        params["max_age_seconds"] = args.max_age_seconds
    resp = httpx.post(f"{args.service_url}/internal/payments/expire-stale", params=params, timeout=30.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
