#!/usr/bin/env python3
"""
Audit Log Export

Writes the audit trail for a date range to a CSV file for compliance
review. Only non-sensitive columns are exported; sealed fields (email,
patient id) never leave the store.

Usage:
    python scripts/export_audit_logs.py --from 2026-01-01 --to 2026-01-31
    python scripts/export_audit_logs.py --from 2026-01-01 --to 2026-01-31 --out exports/
"""

import argparse
import asyncio
import csv
import sys
from datetime import datetime, time, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from phi_audit.audit.report import iter_records  # noqa: E402
from phi_audit.audit.store import SqlAuditStore  # noqa: E402
from phi_audit.infra.database import close_db  # noqa: E402

COLUMNS = (
    "id",
    "timestamp",
    "event",
    "action",
    "result",
    "user_id",
    "user_role",
    "resource",
    "resource_id",
    "phi_accessed",
    "session_id",
    "date_partition",
)


def parse_day(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export audit logs to CSV")
    parser.add_argument("--from", dest="start", type=parse_day, required=True, help="First day (YYYY-MM-DD)")
    parser.add_argument("--to", dest="end", type=parse_day, required=True, help="Last day (YYYY-MM-DD)")
    parser.add_argument("--out", default="exports", help="Output directory (default: exports)")
    return parser.parse_args(argv)


async def export(start: datetime, end: datetime, out_dir: Path) -> tuple[Path, int]:
    """Write every record in [start, end] and return the file path and row count."""
    end = datetime.combine(end.date(), time.max, tzinfo=timezone.utc)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"audit-logs-{start:%Y%m%d}-{end:%Y%m%d}.csv"

    store = SqlAuditStore()
    rows = 0
    with out_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(COLUMNS)
        async for record in iter_records(store, start, end):
            writer.writerow([getattr(record, name) if getattr(record, name) is not None else "" for name in COLUMNS])
            rows += 1

    return out_path, rows


async def main(argv: list[str]) -> int:
    args = parse_args(argv)
    if args.start > args.end:
        print("--from must not be after --to", file=sys.stderr)
        return 2

    print(f"[audit-export] Exporting audit events from {args.start:%Y-%m-%d} to {args.end:%Y-%m-%d}...")
    try:
        out_path, rows = await export(args.start, args.end, Path(args.out))
    finally:
        await close_db()

    print(f"[audit-export] Wrote {rows} events to {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
