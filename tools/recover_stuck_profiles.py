#!/usr/bin/env python3
"""
Reset profile runs abandoned in "processing".

A process that dies mid-run leaves the client's generation status at
"processing". This helper finds such clients whose status is older than
the staleness window and marks them "failed" so the next trigger resumes
the missing artifacts. Optionally re-triggers generation right away.

Usage examples:
  # Dry run against DATABASE_URL
  python tools/recover_stuck_profiles.py --dry-run

  # Reset and regenerate, JSON output for scripts
  python tools/recover_stuck_profiles.py --regenerate --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from app.core.logging import setup_logging  # noqa: E402
from app.services.profile_service import build_profile_services  # noqa: E402


async def recover(limit: int, dry_run: bool, regenerate: bool) -> dict:
    services = build_profile_services()
    orchestrator = services.orchestrator
    try:
        cutoff = datetime.now(UTC) - timedelta(
            seconds=orchestrator.config.stale_processing_after_seconds
        )
        stale = await services.clients.find_processing(older_than=cutoff, limit=limit)
        if dry_run:
            return {"dry_run": True, "stale": [c.client_id for c in stale]}

        tenants = {c.client_id: c.tenant_id for c in stale}
        recovered = await orchestrator.recover_stale_runs(limit=limit)
        runs = {}
        if regenerate:
            for client_id in recovered:
                tenant_id = tenants.get(client_id)
                if tenant_id is None:
                    continue
                run = await orchestrator.generate_profile(tenant_id, client_id)
                runs[client_id] = run.to_dict()
        return {"dry_run": False, "recovered": recovered, "runs": runs}
    finally:
        await services.aclose()


def main() -> int:
    ap = argparse.ArgumentParser(description="Recover stuck profile generation runs")
    ap.add_argument("--limit", type=int, default=100, help="Maximum clients to process")
    ap.add_argument("--dry-run", action="store_true", help="List stale runs without changing them")
    ap.add_argument("--regenerate", action="store_true", help="Run generation for recovered clients")
    ap.add_argument("--json", action="store_true", help="Emit JSON output")
    args = ap.parse_args()

    setup_logging("WARNING", format_json=args.json)
    result = asyncio.run(recover(args.limit, args.dry_run, args.regenerate))

    if args.json:
        print(json.dumps(result))
    elif result["dry_run"]:
        print(f"[DRY-RUN] {len(result['stale'])} stale runs: {', '.join(result['stale']) or '-'}")
    else:
        print(f"[OK] recovered {len(result['recovered'])} runs: {', '.join(result['recovered']) or '-'}")
        for client_id, run in result["runs"].items():
            print(f"  {client_id}: {run['status']} generated={run['generated']} failed={run['failed']}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
