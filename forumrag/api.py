"""
ForumRAG Indexing: FastAPI Router
==================================
HTTP surface a front end drives while indexing a board:

  POST   /boards/{board_id}/indexing/start      queue every indexable topic
  POST   /boards/{board_id}/indexing/batch      process the next batch (interactive caller)
  GET    /boards/{board_id}/indexing/progress   processed/remaining/total
  GET    /boards/{board_id}/indexing/status     progress plus credits, lease and fallback state
  POST   /boards/{board_id}/indexing/stop       drop the run
  POST   /boards/{board_id}/indexing/resume     re-arm a run halted by credit exhaustion
  POST   /boards/{board_id}/embeddings/clear    wipe the backend index and any run

When an auth token is configured every endpoint requires it as a Bearer
token; without one the router accepts all requests (dev/test mode).
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from forumrag.core.errors import BackendUnavailableError, NoCreditsError
from forumrag.core.types import (
    BatchResponse,
    CallerKind,
    ClearResponse,
    IndexingStatus,
    ProgressResponse,
    StartIndexingRequest,
    StartResponse,
    StopResponse,
)
from forumrag.indexing.executor import BatchExecutor
from forumrag.indexing.progress import ProgressReporter

logger = logging.getLogger("ForumRag.API")

# ---------------------------------------------------------------------------
# Module-level singletons: injected by server.py during lifespan startup
# ---------------------------------------------------------------------------

_executor: Optional[BatchExecutor] = None
_reporter: Optional[ProgressReporter] = None
_auth_token: Optional[str] = None


def init_indexing(
    executor: BatchExecutor,
    reporter: ProgressReporter,
    auth_token: Optional[str] = None,
) -> None:
    """
    Bind the router to its executor and reporter.

    Called once during application lifespan startup, before any request is
    served. Passing ``None`` for ``auth_token`` disables authentication.
    """
    global _executor, _reporter, _auth_token
    _executor = executor
    _reporter = reporter
    _auth_token = auth_token or None
    logger.info(
        "Indexing API initialised (executor=%s, auth=%s)",
        type(executor).__name__,
        "on" if _auth_token else "off",
    )


def reset_indexing() -> None:
    global _executor, _reporter, _auth_token
    _executor = None
    _reporter = None
    _auth_token = None


def _get_executor() -> BatchExecutor:
    """Return the executor singleton or raise HTTP 503."""
    if _executor is None:
        raise HTTPException(
            status_code=503,
            detail="Indexing executor is not initialised. Check server lifespan configuration.",
        )
    return _executor


def _get_reporter() -> ProgressReporter:
    if _reporter is None:
        raise HTTPException(
            status_code=503,
            detail="Indexing reporter is not initialised. Check server lifespan configuration.",
        )
    return _reporter


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

_security = HTTPBearer(auto_error=False)


async def _verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_security),
) -> None:
    if _auth_token is None:
        return
    token = credentials.credentials if credentials else ""
    if not secrets.compare_digest(token.encode("utf-8"), _auth_token.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _credits_error(exc: NoCreditsError) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={"error": "no_credits", "message": str(exc), "credits_available": exc.credits_available},
    )


def _backend_error(exc: BackendUnavailableError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"error": "backend_unavailable", "message": str(exc)},
    )


# ---------------------------------------------------------------------------
# Router definition
# ---------------------------------------------------------------------------

indexing_router = APIRouter(
    prefix="/boards/{board_id}",
    tags=["indexing"],
    dependencies=[Depends(_verify_token)],
)


@indexing_router.post("/indexing/start", response_model=StartResponse)
async def start_indexing(board_id: int, request: Optional[StartIndexingRequest] = None) -> StartResponse:
    """
    Queue every indexable topic of the board for a fresh run.

    Responds 402 when the tenant has no credits at all. When the balance is
    positive but short of the topic count, the run still starts and
    ``will_complete`` is false.
    """
    executor = _get_executor()
    try:
        return await executor.start(board_id, request or StartIndexingRequest())
    except NoCreditsError as exc:
        raise _credits_error(exc)
    except BackendUnavailableError as exc:
        logger.warning("Start on board %d failed: %s", board_id, exc)
        raise _backend_error(exc)


@indexing_router.post("/indexing/batch", response_model=BatchResponse, response_model_exclude_none=True)
async def process_batch(board_id: int) -> BatchResponse:
    """Drive one batch as the interactive caller. Poll until ``done`` is true."""
    return await _get_executor().drive_one_batch(board_id, CallerKind.INTERACTIVE)


@indexing_router.get("/indexing/progress", response_model=ProgressResponse, response_model_exclude_none=True)
async def get_progress(board_id: int) -> ProgressResponse:
    return _get_executor().get_progress(board_id)


@indexing_router.get("/indexing/status", response_model=IndexingStatus)
async def get_status(board_id: int) -> IndexingStatus:
    return await _get_reporter().status(board_id)


@indexing_router.post("/indexing/stop", response_model=StopResponse)
async def stop_indexing(board_id: int) -> StopResponse:
    return _get_executor().stop(board_id)


@indexing_router.post("/indexing/resume", response_model=ProgressResponse, response_model_exclude_none=True)
async def resume_indexing(board_id: int) -> ProgressResponse:
    """Re-arm the fallback trigger for a halted run whose queue is still stored."""
    executor = _get_executor()
    try:
        return await executor.resume(board_id)
    except NoCreditsError as exc:
        raise _credits_error(exc)
    except BackendUnavailableError as exc:
        raise _backend_error(exc)


@indexing_router.post("/embeddings/clear", response_model=ClearResponse)
async def clear_embeddings(board_id: int) -> ClearResponse:
    executor = _get_executor()
    try:
        return await executor.clear_embeddings(board_id)
    except BackendUnavailableError as exc:
        logger.warning("Clearing embeddings for board %d failed: %s", board_id, exc)
        raise _backend_error(exc)
