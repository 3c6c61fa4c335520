#!/usr/bin/env python3
"""Call the reminder trigger endpoint, for external cron hosts that cannot run the worker."""

from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request

BASE_URL_DEFAULT = "http://127.0.0.1:8000/api"


def post_trigger(base_url: str, secret: str, *, timeout: float) -> dict:
    """POST to /reminders/trigger with the cron secret and return the parsed response."""
    req = urllib.request.Request(
        f"{base_url.rstrip('/')}/reminders/trigger",
        data=b"",
        method="POST",
        headers={"Authorization": f"Bearer {secret}"} if secret else {},
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger a Todoria reminder run over HTTP.")
    parser.add_argument(
        "--base-url",
        default=os.getenv("NOTIFICATIONS_BASE_URL", BASE_URL_DEFAULT),
        help="Notifications API base URL",
    )
    parser.add_argument("--secret", default=os.getenv("CRON_SECRET", ""), help="defaults to $CRON_SECRET")
    parser.add_argument("--timeout", type=float, default=120.0)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        body = post_trigger(args.base_url, args.secret, timeout=args.timeout)
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8", errors="replace")
        print(f"ERROR: reminder trigger failed: {e.code} {error_body}", file=sys.stderr)
        return 1
    except urllib.error.URLError as e:
        print(f"ERROR: could not reach {args.base_url}: {e.reason}", file=sys.stderr)
        return 1

    summary = body.get("summary", {})
    print(f"{body.get('message')}: sent={summary.get('sent')} failed={summary.get('failed')} "
          f"total_tasks={summary.get('total_tasks')}")
    for result in summary.get("results", []):
        state = "ok" if result.get("success") else f"failed ({result.get('error')})"
        print(f"  {result.get('email')}: {result.get('count')} task(s) {state}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
