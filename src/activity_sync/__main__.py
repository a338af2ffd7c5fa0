"""
Main entrypoint: starts the auto-sync scheduler in one process.

The API runs separately under uvicorn.

Usage:
    python -m activity_sync                 # starts the scheduler
    python -m activity_sync serve           # starts the API on :8000
    python -m activity_sync genkey          # prints a new CREDENTIAL_ENCRYPTION_KEY
    python -m activity_sync encrypt-legacy  # encrypts plaintext credential rows
"""
import asyncio
import logging
import sys

from activity_sync.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_genkey() -> None:
    from activity_sync.vault.vault import generate_key
    print(generate_key())


def _run_serve() -> None:
    import uvicorn
    uvicorn.run("activity_sync.api.main:create_app", factory=True, host="0.0.0.0", port=8000)


async def _run_scheduler() -> None:
    from activity_sync.db.engine import get_engine
    from activity_sync.scheduler.jobs import build_scheduler
    from activity_sync.sync.orchestrator import SyncOrchestrator

    settings = get_settings()
    if not settings.credential_encryption_key:
        logger.warning("CREDENTIAL_ENCRYPTION_KEY not set; only legacy plaintext credentials can sync.")

    orchestrator = SyncOrchestrator(get_engine())
    scheduler = build_scheduler(orchestrator)
    scheduler.start()
    logger.info(
        "Scheduler started (tick every %d min, %d workers)",
        settings.sync_tick_minutes,
        settings.sync_max_workers,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "genkey":
        _run_genkey()
    elif command == "serve":
        _run_serve()
    elif command == "encrypt-legacy":
        from activity_sync.scripts.encrypt_legacy import main
        main(sys.argv[2:])
    elif command is None:
        asyncio.run(_run_scheduler())
    else:
        print(__doc__)
        sys.exit(2)
