#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from modes import DEFAULT_REGION, parse_modes
from viz_client import BROKER_BASE_URL, BrokerClient, VisualizationClientError


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the tile broker cache over a range of years.")
    parser.add_argument("--start-year", type=int, default=1979)
    parser.add_argument("--end-year", type=int, default=2020)
    parser.add_argument("--modes", default="base", help="comma-separated visualization modes")
    parser.add_argument("--region", default=DEFAULT_REGION)
    parser.add_argument("--base-url", default=BROKER_BASE_URL)
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    client = BrokerClient(base_url=args.base_url)
    modes = parse_modes(args.modes)

    failed = []
    final = None
    try:
        for event in client.stream_bulk(args.start_year, args.end_year, modes, args.region):
            if "year" in event:
                print(f"{event['progress']:>3}% {event['year']} {event['mode']} {event['status']}")
                if event.get("status") == "error":
                    failed.append(event)
            else:
                final = event
    except VisualizationClientError as exc:
        print(f"prefetch failed: {exc}")
        return 1

    print(f"final={json.dumps(final, ensure_ascii=False)} errors={len(failed)}")
    for row in failed:
        print(json.dumps(row, ensure_ascii=False))
    return 0 if final and final.get("completed") else 1


if __name__ == "__main__":
    raise SystemExit(main())
