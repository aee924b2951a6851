"""
Interactive CLI for the Apodata analytics engine.
Run analytics requests as a given user, with the same scope enforcement as the API.
"""

import json

import pandas as pd

from apodata.cache import init_cache
from apodata.database import init_engine
from apodata.errors import AnalyticsError
from apodata.rbac import load_security_context
from apodata.service import ENDPOINTS, AnalyticsService

MAX_PREVIEW_ROWS = 20


def _ask(prompt: str) -> str:
    return input(prompt).strip()


def main():
    print("=== Apodata Analytics: interactive requests (scope enforced per user) ===\n")

    engine = init_engine()
    service = AnalyticsService(engine, init_cache())

    # ── Login ────────────────────────────────────────────────────────
    try:
        user_id = _ask("Enter user id (or 'quit'): ")
    except (EOFError, KeyboardInterrupt):
        print("\nExiting.")
        return

    if not user_id or user_id.lower() in {"quit", "exit"}:
        print("Goodbye.")
        return

    try:
        ctx = load_security_context(engine, user_id)
    except AnalyticsError as e:
        print("\n[ERROR] Login failed.")
        print("Details:", e.message)
        return
    if ctx is None:
        print("\n[ERROR] Login failed: unknown or inactive user.")
        return

    scope = "all pharmacies" if ctx.is_admin else f"pharmacy {ctx.pharmacy_id}"
    print(f"\n[auth] Logged in as: {ctx.email or ctx.user_id} (role={ctx.role}, scope={scope})")

    endpoints = {e.name: e for e in ENDPOINTS}
    print("[help] Endpoints:", ", ".join(endpoints))

    # ── REPL ─────────────────────────────────────────────────────────
    while True:
        try:
            name = _ask("\nEndpoint (or 'quit'): ")
            if name.lower() in {"quit", "exit"}:
                print("Goodbye.")
                break
            if name not in endpoints:
                print("Unknown endpoint.")
                continue
            start = _ask("Start date (YYYY-MM-DD): ")
            end = _ask("End date (YYYY-MM-DD): ")
            extra = _ask("Extra JSON filters (blank for none): ")
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            break

        body = {"dateRange": {"start": start, "end": end}}
        if extra:
            try:
                body.update(json.loads(extra))
            except json.JSONDecodeError as e:
                print("[ERROR] Invalid JSON:", e)
                continue

        try:
            result = service.run(endpoints[name], body, ctx)
        except AnalyticsError as e:
            print(f"\n[ERROR {e.status_code}] {e.message}")
            continue

        rows = result[endpoints[name].result_field]
        print(f"\n[{result['count']} rows in {result['queryTime']} ms, cached={result['cached']}]")
        if not rows:
            print("(no rows returned)")
        else:
            print(pd.DataFrame(rows).head(MAX_PREVIEW_ROWS).to_string(index=False))


if __name__ == "__main__":
    main()
