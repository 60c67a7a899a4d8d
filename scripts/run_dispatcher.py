#!/usr/bin/env python3
"""
Standalone Dispatcher — run queue workers without the HTTP API.

Several of these processes can share one SQL store; claims are exclusive
across processes.

Usage:
    python scripts/run_dispatcher.py                 # run until SIGINT/SIGTERM
    python scripts/run_dispatcher.py --workers 8
    python scripts/run_dispatcher.py --drain         # process what is due, then exit
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()


async def run(workers: int = None, drain: bool = False) -> int:
    import structlog

    from config.logging_conf import configure_logging
    from config.settings import load_settings
    from channels.conversation_engine import ConversationEngineClient
    from channels.zapi_sender import ZApiSender
    from database.session import close_db, init_db
    from database.store_factory import create_store
    from job_queue.dispatcher import Dispatcher

    settings = load_settings()
    configure_logging(settings.logging.level, settings.logging.json)
    logger = structlog.get_logger()

    problems = settings.validate()
    if problems:
        for problem in problems:
            logger.error("config_problem", problem=problem)
        return 2
    if workers:
        settings.dispatcher.worker_pool_size = workers

    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)
    else:
        logger.warning("dispatcher_memory_store",
                       hint="a separate process cannot see the API's in-memory queue")

    store = create_store({"store_backend": settings.database.store_backend})
    sender = ZApiSender(settings.gateway)
    engine = ConversationEngineClient(settings.engine)
    dispatcher = Dispatcher(store, sender, engine, settings.dispatcher)

    try:
        if drain:
            reaped = await dispatcher.reap_stale()
            processed = await dispatcher.run_once()
            logger.info("dispatcher_drained", processed=processed, reaped=reaped,
                        stats=dispatcher.stats)
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows

        await dispatcher.start()
        await stop.wait()
        await dispatcher.stop()
        return 0
    finally:
        await sender.close()
        await engine.close()
        if settings.database.store_backend == "sql":
            await close_db()


def main():
    parser = argparse.ArgumentParser(description="Run queue dispatcher workers")
    parser.add_argument("--workers", type=int, default=None, help="Override worker pool size")
    parser.add_argument("--drain", action="store_true", help="Process due messages once, then exit")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(workers=args.workers, drain=args.drain)))


if __name__ == "__main__":
    main()
