#!/usr/bin/env python3
"""
Dead-letter tool — list failed messages and re-queue them.

Usage:
    python scripts/replay_dlq.py list [--limit 20]
    python scripts/replay_dlq.py replay <failed_id> [<failed_id> ...]
    python scripts/replay_dlq.py replay --all [--limit 100]

Replayed messages keep their correlation id; if one dies again the same
dead-letter record gets its failure_count bumped.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()


async def _open_store():
    from config.settings import load_settings
    from database.session import init_db
    from database.store_factory import create_store

    settings = load_settings()
    if settings.database.store_backend != "sql":
        print("Dead letters only persist with the sql store backend (STORE_BACKEND=sql).")
        return None, settings
    await init_db(settings.database.url)
    return create_store({"store_backend": "sql"}), settings


async def list_failed(limit: int) -> int:
    from database.session import close_db

    store, _ = await _open_store()
    if store is None:
        return 1
    try:
        failed = await store.list_failed(limit=limit)
        if not failed:
            print("No failed messages.")
            return 0
        for f in failed:
            print(f"{f.id}  {f.message_type.value:<9} x{f.failure_count:<3} "
                  f"{f.last_failed_at:%Y-%m-%d %H:%M:%S}  corr={f.correlation_id}  {f.error_message[:80]}")
        return 0
    finally:
        await close_db()


async def replay(failed_ids: list[str], replay_all: bool, limit: int) -> int:
    from database.session import close_db
    from job_queue.enqueuer import Enqueuer
    from job_queue.errors import NotFoundError, ValidationError

    store, settings = await _open_store()
    if store is None:
        return 1
    enqueuer = Enqueuer(store, settings.dispatcher)
    try:
        if replay_all:
            failed_ids = [f.id for f in await store.list_failed(limit=limit)]
        status = 0
        for failed_id in failed_ids:
            try:
                message_id = await enqueuer.replay_failed(failed_id)
            except (NotFoundError, ValidationError) as e:
                print(f"{failed_id}: {e}")
                status = 1
                continue
            print(f"{failed_id} -> queued as {message_id}")
        return status
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Inspect and replay dead-lettered messages")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="List dead letters, most recent first")
    p_list.add_argument("--limit", type=int, default=20)

    p_replay = sub.add_parser("replay", help="Re-queue dead letters")
    p_replay.add_argument("failed_ids", nargs="*")
    p_replay.add_argument("--all", action="store_true", dest="replay_all")
    p_replay.add_argument("--limit", type=int, default=100)

    args = parser.parse_args()
    if args.command == "list":
        code = asyncio.run(list_failed(args.limit))
    else:
        if not args.failed_ids and not args.replay_all:
            parser.error("give failed ids or --all")
        code = asyncio.run(replay(args.failed_ids, args.replay_all, args.limit))
    sys.exit(code)


if __name__ == "__main__":
    main()
