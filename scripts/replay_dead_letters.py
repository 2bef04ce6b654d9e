"""
Просмотр и replay DLQ задач синхронизации.

Примеры:
    python scripts/replay_dead_letters.py --list
    python scripts/replay_dead_letters.py --id 1718000000000-0 --id 1718000000001-0
    python scripts/replay_dead_letters.py --limit 50 --dry-run
"""

from __future__ import annotations

import argparse

from streamix_sync.common.logging import setup_logging
from streamix_sync.queue.dead_letters import list_dead_letters, replay_dead_letters


def _args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Inspect / replay sync dead letters")
    p.add_argument("--list", action="store_true", help="Only print dead letters")
    p.add_argument("--id", action="append", default=[], help="Replay only these entry ids")
    p.add_argument("--limit", type=int, default=100, help="Max entries to read from DLQ")
    p.add_argument("--force", action="store_true", help="Replay decode_error entries too")
    p.add_argument("--dry-run", action="store_true", help="Show what would be replayed")
    return p.parse_args()


def main() -> int:
    args = _args()
    setup_logging()

    if args.list:
        for d in list_dead_letters(count=args.limit):
            print(
                f"{d.message_id}\t{d.source_queue or '-'}\t{d.fields.get('type') or '-'}"
                f"\t{d.reason}\t{d.fields.get('body', '')[:120]}"
            )
        return 0

    report = replay_dead_letters(
        ids=args.id or None,
        limit=args.limit,
        force=args.force,
        dry_run=args.dry_run,
    )
    prefix = "would replay" if args.dry_run else "replayed"
    print(f"{prefix}: {len(report.replayed)}, skipped: {len(report.skipped)}")
    for mid in report.skipped:
        print(f"skipped {mid}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
