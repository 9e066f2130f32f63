"""Trigger one daily sweep through the API and print its summary."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for a manual sweep run."""

    parser = argparse.ArgumentParser(description="Run the daily sweep for one calendar day.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="change-me")
    parser.add_argument("--date", help="Local calendar day (YYYY-MM-DD); defaults to today")
    args = parser.parse_args()

    params = {"today": args.date} if args.date else {}
    resp = httpx.post(
        f"{args.api_url}/admin/sweep",
        params=params,
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
