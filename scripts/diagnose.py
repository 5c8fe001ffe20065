#!/usr/bin/env python3
"""Run a consistency diagnostic from the command line.

Talks to a running backend (``TRACKSYNC_BACKEND_BASE_URL``) and the
upstream source, prints the issues found and, with ``--fix``, repairs them.

Usage
-----
::

    export TRACKSYNC_ACCESS_TOKEN="..."
    python scripts/diagnose.py --start 2025-10-01 --end 2025-10-07 --fix

Options::

    --start DATE         First date (default: start of the preload window)
    --end DATE           Last date (default: today)
    --point ID           Only check this tracking point (repeatable)
    --fix                Apply remedies after diagnosing
    --quick              Only check that today and yesterday are cached
    --json               Output as machine-readable JSON
    --verbose            Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from tracksync import DiagnosticIssue, SyncConfig, TrackSyncService  # noqa: E402


def _issue_line(issue: DiagnosticIssue) -> str:
    where = f"point={issue.point_id}" if issue.point_id is not None else "config"
    dates = f" dates={','.join(issue.dates)}" if issue.dates else ""
    remedy = issue.remedy or "-"
    return f"  [{issue.severity:<6}] {issue.kind:<20} {where}{dates} remedy={remedy}\n           {issue.description}"


async def main() -> int:
    parser = argparse.ArgumentParser(description="Diagnose (and optionally repair) the tracksync cache.")
    parser.add_argument("--start", help="First date, YYYY-MM-DD")
    parser.add_argument("--end", help="Last date, YYYY-MM-DD")
    parser.add_argument("--point", type=int, action="append", dest="points", help="Tracking point id")
    parser.add_argument("--fix", action="store_true", help="Apply remedies after diagnosing")
    parser.add_argument("--quick", action="store_true", help="Only check today and yesterday")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    config = SyncConfig.from_env()
    async with TrackSyncService(config) as service:
        engine = service.diagnostics
        if service.startup_error:
            print(f"warning: {service.startup_error}", file=sys.stderr)

        if args.quick:
            health = await engine.quick_health_check(args.points)
            if args.json_mode:
                print(health.model_dump_json(by_alias=True, indent=2))
            else:
                print(f"health: {health.status}")
                for issue in health.issues:
                    print(_issue_line(issue))
            return 0 if health.healthy else 1

        date_range = None
        if args.start or args.end:
            default_start, default_end = engine.default_range()
            date_range = (args.start or default_start, args.end or default_end)

        report = await engine.run_full_diagnostic(date_range, args.points)
        if report is None:
            print("a diagnostic is already running", file=sys.stderr)
            return 2
        result: dict[str, Any] = {"report": report.model_dump(mode="json", by_alias=True)}

        if args.fix and report.issues:
            fixes = await engine.auto_fix_issues(report.issues, date_range=date_range, point_ids=args.points)
            result["fixes"] = [fix.model_dump(mode="json", by_alias=True, exclude={"issue"}) for fix in fixes]

    if args.json_mode:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        if not report.success:
            print(f"diagnostic failed: {report.error}")
            return 2
        print(f"{report.issue_count} issue(s)")
        for issue in report.issues:
            print(_issue_line(issue))
        for suggestion in report.suggestions:
            print(f"  suggestion [{suggestion.priority}] {suggestion.action}: {suggestion.description}")
        for fix in result.get("fixes", []):
            print(f"  fix {fix['action']}: {fix['status']} {fix['detail']}")
    return 0 if report.success and not report.issues else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
