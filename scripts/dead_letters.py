#!/usr/bin/env python3
"""
Dead Letters — inspect and replay jobs that gave up.

Usage:
    # Newest 20 dead letters across all queues:
    python scripts/dead_letters.py list --limit 20

    # Only federation failures, with payloads:
    python scripts/dead_letters.py list --queue activitypub --payload

    # Put one back on its queue with a fresh attempt count:
    python scripts/dead_letters.py replay job_3f2a9c1d0b7e4a55
"""
import asyncio
import json
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv


async def list_dead_letters(manager, queue: str = None, limit: int = 50, show_payload: bool = False) -> int:
    letters = await manager.dead_letters(queue, limit)
    if not letters:
        print("No dead letters.")
        return 0

    for dead in letters:
        print(f"{dead.id}  queue={dead.queue}  attempts={dead.attempts}  "
              f"failed_at={dead.failed_at.isoformat()}")
        print(f"    error: {dead.error or '(none)'}")
        if show_payload:
            print("    payload: " + json.dumps(dead.payload, indent=2, sort_keys=True).replace("\n", "\n    "))
    print(f"\n{len(letters)} dead letter(s)")
    return len(letters)


async def replay(manager, dead_letter_ids: list[str]) -> int:
    from job_queue.job import DeadLetterNotFoundError, DeliveryFailedError

    failures = 0
    for dead_letter_id in dead_letter_ids:
        try:
            job_id = await manager.replay(dead_letter_id)
        except DeadLetterNotFoundError:
            print(f"{dead_letter_id}: not found")
            failures += 1
            continue
        except DeliveryFailedError as e:
            print(f"{dead_letter_id}: replay failed again ({e})")
            failures += 1
            continue
        print(f"{dead_letter_id}: replayed as {job_id}")
    return failures


async def run(args) -> int:
    from config.settings import load_settings
    from core.pipeline import build_pipeline

    pipeline = build_pipeline(load_settings(args.config))
    await pipeline.start()
    try:
        if args.command == "list":
            await list_dead_letters(pipeline.manager, args.queue, args.limit, args.payload)
            return 0
        return 1 if await replay(pipeline.manager, args.ids) else 0
    finally:
        await pipeline.close()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Inspect and replay dead-lettered jobs")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="Show dead letters, newest first")
    p_list.add_argument("--queue", default=None)
    p_list.add_argument("--limit", type=int, default=50)
    p_list.add_argument("--payload", action="store_true", help="Print each payload")

    p_replay = sub.add_parser("replay", help="Re-enqueue dead letters by id")
    p_replay.add_argument("ids", nargs="+")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
