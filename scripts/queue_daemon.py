#!/usr/bin/env python3
"""
Queue Daemon — runs the QueueManager loop over the configured queues.

Usage:
    # All queues from settings.yaml:
    python scripts/queue_daemon.py

    # Only federation deliveries, separate worker pool:
    python scripts/queue_daemon.py --queues activitypub

    # Drain whatever is ready and exit (cron / tests):
    python scripts/queue_daemon.py --once

    # Different config:
    python scripts/queue_daemon.py --config /etc/fanout/settings.yaml
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv


async def run(config_path: str = None, queues: list[str] = None, once: bool = False) -> int:
    from config.settings import load_settings
    from core.pipeline import build_pipeline

    settings = load_settings(config_path)
    queues = queues or settings.queue.queues

    pipeline = build_pipeline(settings)
    pipeline.manager.validate(queues)
    await pipeline.start()

    try:
        if once:
            total = 0
            while True:
                processed = await pipeline.manager.run_once(queues)
                if processed == 0:
                    break
                total += processed
            print(f"Processed {total} job(s) from {', '.join(queues)}")
            return total

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, pipeline.manager.stop)
        await pipeline.manager.run_loop(queues)
        return 0
    finally:
        await pipeline.close()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run the fan-out queue workers")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--queues", nargs="+", default=None, help="Queues to poll (default: all configured)")
    parser.add_argument("--once", action="store_true", help="Process ready jobs, then exit")
    args = parser.parse_args()

    asyncio.run(run(args.config, args.queues, args.once))


if __name__ == "__main__":
    main()
