"""
matrix-sed - sed-style corrections for Matrix rooms
Entry point and orchestration.

Startup sequence:
  1. Parse command line, load config.yaml, merge environment
  2. Configure logging
  3. Restore the stored session or log in
  4. Run the sync loop until SIGINT/SIGTERM
  5. Close the connection
"""

import asyncio
import logging
import logging.handlers
import signal
import sys
from typing import Optional, Sequence

from matrix_sed.config import BotConfig, build_config, load_config, parse_args
from matrix_sed.core.types import MatrixSedError
from matrix_sed.infra.paths import log_dir, session_file
from matrix_sed.infra.session_store import SessionStore
from matrix_sed.interfaces.session import SessionLifecycleManager
from matrix_sed.interfaces.sync_loop import SyncLoop


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: BotConfig) -> None:
    logs = log_dir(cfg.data_dir)
    logs.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, cfg.log_level, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        logs / "matrix-sed.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)
    # mautrix logs every request at DEBUG; keep the file log readable.
    logging.getLogger("mau").setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def run_bot(cfg: BotConfig) -> None:
    logger = logging.getLogger("main")
    store = SessionStore(session_file(cfg.data_dir))
    session = SessionLifecycleManager(cfg, store)

    conn, sync_token = await session.obtain_connection()
    sync_loop = SyncLoop(
        conn,
        session,
        delete_other_devices=cfg.delete_other_devices,
        tolerate_device_cleanup_failure=cfg.tolerate_device_cleanup_failure,
    )
    task = asyncio.create_task(sync_loop.run(sync_token), name="sync")

    def _request_shutdown() -> None:
        logger.info("Shutdown requested")
        sync_loop.stop()
        task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        await conn.close()
        logger.info("matrix-sed stopped (state=%s)", sync_loop.state.value)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(load_config(args.config), args=args)
    except MatrixSedError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    setup_logging(cfg)
    logger = logging.getLogger("main")
    logger.info("matrix-sed starting up (homeserver=%s, user=%s)", cfg.homeserver, cfg.username)

    try:
        asyncio.run(run_bot(cfg))
    except MatrixSedError as exc:
        logger.error("Fatal: %s (%s)", exc, type(exc).__name__)
        return 1
    except Exception:
        logger.exception("Fatal: unexpected error")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


def run() -> None:
    """Entry point for the `matrix-sed` console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()
