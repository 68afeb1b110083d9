from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
import urllib.parse
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("LASTMILE_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 30


def http_request(method: str, url: str, admin_key: str) -> dict[str, Any] | list[Any]:
    req = urllib.request.Request(
        url=url,
        data=b"" if method == "POST" else None,
        method=method,
        headers={
            "Content-Type": "application/json",
            "X-Internal-Admin-Key": admin_key,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return {"error": {"reason": str(e)}}


def list_dead_lettered(base_url: str, admin_key: str, tenant_id: str | None, limit: int) -> list[str]:
    params = {"status": "dead_lettered", "limit": str(limit)}
    if tenant_id:
        params["tenant_id"] = tenant_id
    url = f"{base_url}/v1/admin/callbacks?{urllib.parse.urlencode(params)}"
    res = http_request("GET", url, admin_key)
    if isinstance(res, dict):
        return []
    return [row["id"] for row in res]


def main() -> int:
    p = argparse.ArgumentParser(description="Requeue dead-lettered or skipped destination callbacks.")
    p.add_argument("callback_ids", nargs="*", help="Callback ids (cbk_...). Omit with --all-dead.")
    p.add_argument("--all-dead", action="store_true", help="Requeue every dead-lettered callback")
    p.add_argument("--tenant-id", default=None, help="Restrict --all-dead to one tenant")
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    p.add_argument("--dry-run", action="store_true")
    args = p.parse_args()

    if not args.admin_key:
        print("Missing admin key (INTERNAL_ADMIN_KEY or --admin-key)", file=sys.stderr)
        return 2

    base_url = args.base_url.rstrip("/")
    ids = list(args.callback_ids)
    if args.all_dead:
        ids.extend(list_dead_lettered(base_url, args.admin_key, args.tenant_id, args.limit))

    if not ids:
        print("Nothing to requeue", file=sys.stderr)
        return 1

    failures = 0
    for cid in ids:
        if args.dry_run:
            print(f"would requeue {cid}")
            continue
        res = http_request("POST", f"{base_url}/v1/admin/callbacks/{cid}/requeue", args.admin_key)
        if isinstance(res, dict) and "error" in res:
            failures += 1
            continue
        print(f"requeued {cid} status={res.get('status')}")

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
