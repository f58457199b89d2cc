from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path

from .config import Settings
from .knowledge import DirectoryKnowledgeBase
from .memory.factory import build_store
from .runtime import LocalHostRuntime
from .service import CommunityMemoryService

logger = logging.getLogger("community_memory")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(Exception):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and _is_process_alive(stale_pid):
            raise RuntimeError(f"Community memory engine is already running (pid={stale_pid}).")
        with contextlib.suppress(Exception):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(Exception):
        if lock_path.exists():
            lock_path.unlink()


def build_service(settings: Settings) -> CommunityMemoryService:
    store = build_store(settings)
    runtime = LocalHostRuntime(settings.agent_id)
    knowledge = DirectoryKnowledgeBase(settings.knowledge_dir) if settings.knowledge_dir else None
    return CommunityMemoryService(settings, store=store, runtime=runtime, knowledge=knowledge)


async def _run_service(settings: Settings) -> None:
    service = build_service(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; KeyboardInterrupt still stops the run.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    await service.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await service.stop()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    lock_path = settings.sqlite_path.parent / "community_memory.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_service(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
