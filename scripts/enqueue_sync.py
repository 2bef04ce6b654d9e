"""
Ручная постановка задач синхронизации (dev / ops).

Примеры:
    python scripts/enqueue_sync.py iptv_live --provider-id 42
    python scripts/enqueue_sync.py gindex_movies --provider-id 7 --path "/1:/Filmes/" --priority high
    python scripts/enqueue_sync.py provider --provider-id 7 \
        --movies-path "/1:/Filmes/" --series-path "/1:/Séries/A/" --series-path "/1:/Séries/B/"
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from streamix_sync.common.logging import setup_logging
from streamix_sync.domain.enums import Priority
from streamix_sync.queue.dispatcher import get_sync_queue


def _provider_id(raw: str) -> int | str:
    return int(raw) if raw.isdigit() else raw


def _args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Enqueue Streamix sync tasks")
    p.add_argument("type", help="Task type or 'provider' for a GIndex provider fan-out")
    p.add_argument("--provider-id", required=True)
    p.add_argument("--path", default=None, help="Folder path for gindex_movies/series/animes")
    p.add_argument("--priority", default=Priority.normal.value, choices=[x.value for x in Priority])
    p.add_argument("--movies-path", default=None)
    p.add_argument("--series-path", action="append", default=[])
    p.add_argument("--animes-path", default=None)
    return p.parse_args()


def main() -> int:
    args = _args()
    setup_logging()
    queue = get_sync_queue()
    provider_id = _provider_id(args.provider_id)

    if args.type == "provider":
        res = queue.enqueue_provider_sync(
            {
                "id": provider_id,
                "gindex_drives": {
                    "movies_path": args.movies_path,
                    "series_paths": args.series_path,
                    "animes_path": args.animes_path,
                },
            }
        )
    else:
        payload = {"provider_id": provider_id}
        if args.path:
            payload["path"] = args.path
        res = queue.enqueue_sync(args.type, payload, args.priority)

    print(json.dumps(asdict(res), ensure_ascii=False))
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
