"""Re-derive AR snapshots from the event log.

Rebuilds every snapshot, or a single AR with `--ar-id`.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for snapshot rebuilds."""

    parser = argparse.ArgumentParser(description="Rebuild AR snapshots from events.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="change-me")
    parser.add_argument("--ar-id")
    args = parser.parse_args()

    path = f"/ars/{args.ar_id}/rebuild" if args.ar_id else "/admin/rebuild"
    resp = httpx.post(f"{args.api_url}{path}", headers={"x-api-key": args.api_key}, timeout=600.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
