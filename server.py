#!/usr/bin/env python3
"""
ForumRAG Indexing Server
========================

Architecture:
- Queue store: SQLite (WAL mode) holding per-board queues, run settings,
  batch leases and persisted fallback-trigger due times
- Batch executor: one state machine driven by the interactive poller
  (POST /boards/{id}/indexing/batch) and the fallback scheduler
- Backends: tenant RAG API (httpx) or the in-memory backend for dry runs;
  topics read from the forum REST API

Usage:
    python server.py              # Start server on localhost:42070
    python server.py --port 8000  # Custom port
"""

import os
import sys
import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import portalocker
import uvicorn
from fastapi import FastAPI

from forumrag.api import indexing_router, init_indexing, reset_indexing
from forumrag.backends.http import HttpIndexingBackend, HttpTopicProvider
from forumrag.backends.images import HtmlImageFilter
from forumrag.backends.memory import InMemoryIndexingBackend
from forumrag.core.config import ForumRagConfig
from forumrag.indexing.executor import BatchExecutor
from forumrag.indexing.progress import ProgressReporter
from forumrag.indexing.scheduler import FallbackScheduler
from forumrag.platform import get_log_dir
from forumrag.store.lease import LeaseManager
from forumrag.store.queue_store import SQLiteQueueStore
from forumrag.version import __version__

# Configure logging to a file in the log directory plus the console
_log_dir = get_log_dir()
_log_dir.mkdir(parents=True, exist_ok=True)
server_log_path = str(_log_dir / "forumrag_server.log")
file_handler = logging.FileHandler(server_log_path, mode="a")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        file_handler,
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("ForumRag")

# --- Global State ---
_store: Optional[SQLiteQueueStore] = None
_scheduler: Optional[FallbackScheduler] = None
_SERVER_INSTANCE_LOCK_HANDLE: Optional[portalocker.Lock] = None
_SERVER_INSTANCE_LOCK_PATH: Optional[Path] = None


def _server_instance_lock_timeout_seconds() -> float:
    raw = os.environ.get("FORUMRAG_SERVER_INSTANCE_LOCK_TIMEOUT_SEC", "0.25").strip()
    try:
        return max(0.0, float(raw))
    except ValueError:
        logger.warning(
            "Invalid FORUMRAG_SERVER_INSTANCE_LOCK_TIMEOUT_SEC='%s'; using default 0.25s",
            raw,
        )
        return 0.25


def _acquire_server_instance_lock(config: ForumRagConfig) -> None:
    """
    Acquire an exclusive process-wide server lock for the configured data dir.

    Only one server may own the fallback scheduler for a queue database. A
    second one would restore the same persisted triggers and both would fire
    them, doubling the fallback traffic against the tenant RAG API.
    """
    global _SERVER_INSTANCE_LOCK_HANDLE, _SERVER_INSTANCE_LOCK_PATH

    data_dir = Path(config.data_dir)
    lock_path = data_dir / ".forumrag_server.instance.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock_handle = portalocker.Lock(
        str(lock_path),
        mode="a",
        timeout=_server_instance_lock_timeout_seconds(),
        flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
        fail_when_locked=True,
    )

    try:
        lock_handle.acquire()
    except portalocker.exceptions.LockException as exc:
        raise RuntimeError(
            "ForumRAG server instance lock is already held for data directory "
            f"'{data_dir}'. Reuse the existing server or stop it before starting "
            "another instance."
        ) from exc

    _SERVER_INSTANCE_LOCK_HANDLE = lock_handle
    _SERVER_INSTANCE_LOCK_PATH = lock_path
    logger.info("Acquired server instance lock: %s", lock_path)


def _release_server_instance_lock() -> None:
    """Release the process-wide server lock if held."""
    global _SERVER_INSTANCE_LOCK_HANDLE, _SERVER_INSTANCE_LOCK_PATH
    lock_handle = _SERVER_INSTANCE_LOCK_HANDLE
    lock_path = _SERVER_INSTANCE_LOCK_PATH
    _SERVER_INSTANCE_LOCK_HANDLE = None
    _SERVER_INSTANCE_LOCK_PATH = None
    if lock_handle is None:
        return

    try:
        lock_handle.release()
    except portalocker.exceptions.LockException as exc:
        logger.warning("Failed to release server instance lock %s: %s", lock_path, exc)
    lock_handle.close()
    if lock_path is not None:
        logger.info("Released server instance lock: %s", lock_path)


def _build_backend(config: ForumRagConfig, topics, image_filter):
    if config.backend.mode == "memory":
        logger.warning("Using in-memory indexing backend; embeddings will not survive a restart")
        return InMemoryIndexingBackend(topics, image_filter=image_filter)
    return HttpIndexingBackend(
        config.backend.base_url,
        topics,
        api_key=config.backend.api_key,
        tenant_id=config.backend.tenant_id,
        timeout=config.indexing.backend_timeout_seconds,
        status_cache_seconds=config.backend.status_cache_seconds,
        image_filter=image_filter,
    )


# --- Application Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    global _store, _scheduler

    logger.info("ForumRAG Server starting...")
    topics = None
    backend = None

    try:
        config = ForumRagConfig.from_env()
        config.ensure_directories()

        _acquire_server_instance_lock(config)

        _store = SQLiteQueueStore(config.store.path)
        lease = LeaseManager(_store, ttl_seconds=config.indexing.lease_ttl_seconds)
        _scheduler = FallbackScheduler(
            store=_store,
            delay_seconds=config.indexing.fallback_delay_seconds,
        )

        image_filter = HtmlImageFilter()
        topics = HttpTopicProvider(
            config.forum.base_url,
            api_key=config.forum.api_key,
            timeout=config.forum.timeout_seconds,
        )
        backend = _build_backend(config, topics, image_filter)

        executor = BatchExecutor(
            store=_store,
            lease=lease,
            scheduler=_scheduler,
            backend=backend,
            topics=topics,
            image_filter=image_filter,
            config=config.indexing,
        )
        reporter = ProgressReporter(
            executor=executor,
            lease=lease,
            scheduler=_scheduler,
            backend=backend,
        )
        init_indexing(executor, reporter, auth_token=config.server.auth_token)

        restored = await _scheduler.start()
        if restored:
            logger.info("Restored %d pending fallback activations", restored)

        yield
    finally:
        logger.info("Shutting down ForumRAG Server...")
        reset_indexing()
        if _scheduler:
            await _scheduler.shutdown()
            _scheduler = None
        if isinstance(backend, HttpIndexingBackend):
            await backend.close()
        if topics is not None:
            await topics.close()
        if _store:
            _store.close()
            _store = None
        _release_server_instance_lock()
        logger.info("ForumRAG Server stopped.")


app = FastAPI(
    title="ForumRAG Indexing Server",
    description="Resumable, credit-aware batch indexing of forum boards",
    version=__version__,
    lifespan=lifespan,
)

# Carries its own /boards/{board_id} prefix and Bearer-token dependency.
app.include_router(indexing_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    if _store is None or _scheduler is None:
        return {"status": "initializing", "version": __version__}
    return {
        "status": "ok",
        "version": __version__,
        "store": str(_store.db_path),
        "scheduler": _scheduler.status,
    }


# --- Main ---

def main():
    config = ForumRagConfig.from_env()

    parser = argparse.ArgumentParser(description="ForumRAG Indexing Server")
    parser.add_argument("--host", default=config.server.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.server.port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload")
    args = parser.parse_args()

    logger.info("Starting ForumRAG Indexing Server on %s:%d", args.host, args.port)

    try:
        uvicorn.run(
            "server:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=config.server.log_level,
        )
    except OSError as e:
        if e.errno in (98, 10048):
            logger.error("Failed to start server on port %d. Port is likely in use.", args.port)
            print(f"\n[ERROR] Port {args.port} is already in use.")
            print(f"Please check the server log at: {server_log_path}")
            sys.exit(1)
        raise


if __name__ == "__main__":
    main()
