"""
HTTP collaborators (async, httpx).

``HttpIndexingBackend`` talks to the tenant RAG API that embeds content and
meters credits. ``HttpTopicProvider`` reads topics from the forum REST API.
Transport failures and timeouts surface as ``BackendUnavailableError``, as do
5xx and throttling answers (408, 429). An exhausted credit balance (HTTP
402) becomes a structured ``credits_exhausted`` batch error rather than an
exception.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx

from forumrag.backends.base import ImageFilter, TopicProvider
from forumrag.backends.content import content_fingerprint, prepare_post_content
from forumrag.core.errors import BackendUnavailableError
from forumrag.core.types import (
    BatchError,
    BatchErrorCode,
    BatchResult,
    CreditStatus,
    TopicDocument,
    TopicFilter,
)

logger = logging.getLogger("ForumRag.Backend.HTTP")

# Answered like an outage so the batch is retried.
_TRANSIENT_STATUS_CODES = frozenset({408, 429})


def _normalize_base_url(base_url: str) -> str:
    value = base_url.rstrip("/")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid base URL: {base_url!r}")
    return value


def _coerce_error_detail(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("message")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            try:
                return json.dumps(detail, sort_keys=True)
            except (TypeError, ValueError):
                return str(detail)
    if isinstance(payload, str) and payload:
        return payload
    return fallback


def _parse_batch_error(raw: Any) -> BatchError:
    if isinstance(raw, dict):
        try:
            code = BatchErrorCode(raw.get("code"))
        except ValueError:
            code = BatchErrorCode.ITEM_FAILED
        return BatchError(
            code=code,
            message=str(raw.get("message") or code.value),
            item_id=raw.get("item_id"),
        )
    return BatchError(code=BatchErrorCode.ITEM_FAILED, message=str(raw))


class _AsyncJsonClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = _normalize_base_url(base_url)
        self.timeout = timeout
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[int, Any]:
        url = f"{self.base_url}{path if path.startswith('/') else '/' + path}"
        try:
            response = await self._client.request(
                method=method,
                url=url,
                json=json_body,
                params=params,
                headers=self._headers,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise BackendUnavailableError(f"Timed out calling {self.base_url}: {exc}", path=path) from exc
        except httpx.HTTPError as exc:
            raise BackendUnavailableError(f"Failed to connect to {self.base_url}: {exc}", path=path) from exc

        if response.content:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
        else:
            payload = {}
        if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES:
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {response.status_code} error"),
                status_code=response.status_code,
                path=path,
                payload=payload,
            )
        return response.status_code, payload


class HttpIndexingBackend(_AsyncJsonClient):
    """
    Tenant RAG API client.

    Every post is sent with a sha256 ``content_hash``; the API skips posts
    whose hash it already stores, which makes replayed batches idempotent.
    """

    def __init__(
        self,
        base_url: str,
        topics: TopicProvider,
        *,
        api_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: float = 25.0,
        status_cache_seconds: float = 300.0,
        image_filter: Optional[ImageFilter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        now_fn=time.time,
    ):
        headers = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if tenant_id:
            headers["X-Tenant-ID"] = tenant_id
        super().__init__(base_url, timeout=timeout, headers=headers, http_client=http_client)
        self._topics = topics
        self._image_filter = image_filter
        self._status_cache_seconds = status_cache_seconds
        self._now_fn = now_fn
        self._cached_status: Optional[CreditStatus] = None
        self._cached_at = 0.0

    async def _build_threads(self, items: Sequence[int], result: BatchResult) -> List[Dict[str, Any]]:
        threads = []
        for topic_id in items:
            topic = await self._topics.get_topic(topic_id)
            if topic is None:
                result.errors.append(
                    BatchError(code=BatchErrorCode.ITEM_FAILED, message=f"Topic {topic_id} not found", item_id=topic_id)
                )
                continue
            if topic.private or not topic.approved:
                result.skipped_count += 1
                continue
            posts = []
            for post in topic.posts:
                content = prepare_post_content(topic, post)
                images = self._image_filter.extract_urls(post.body) if self._image_filter else []
                posts.append(
                    {
                        "post_id": post.post_id,
                        "user_id": post.user_id,
                        "is_first_post": post.is_first_post,
                        "content": content,
                        "content_hash": content_fingerprint(content, len(images)),
                        "images": images,
                    }
                )
            if posts:
                threads.append(
                    {
                        "topic_id": topic.topic_id,
                        "forum_id": topic.forum_id,
                        "title": topic.title,
                        "posts": posts,
                    }
                )
        return threads

    async def index_batch(
        self,
        items: Sequence[int],
        chunk_size: int,
        overlap_percent: int,
    ) -> BatchResult:
        result = BatchResult()
        threads = await self._build_threads(items, result)
        if not threads:
            return result

        status_code, payload = await self._request(
            "POST",
            "/rag/index-batch",
            json_body={
                "threads": threads,
                "chunk_size": int(chunk_size),
                "overlap_percent": int(overlap_percent),
            },
        )
        if status_code == 402:
            logger.warning("Tenant API rejected batch of %d topics: insufficient credits", len(items))
            result.errors.append(
                BatchError(
                    code=BatchErrorCode.CREDITS_EXHAUSTED,
                    message=_coerce_error_detail(payload, "Insufficient credits"),
                )
            )
            return result
        if status_code >= 400:
            logger.warning("Tenant API rejected batch with HTTP %d", status_code)
            result.errors.append(
                BatchError(
                    code=BatchErrorCode.ITEM_FAILED,
                    message=_coerce_error_detail(payload, f"HTTP {status_code} error"),
                )
            )
            return result

        data = payload if isinstance(payload, dict) else {}
        result.indexed_count += int(data.get("indexed_count", 0) or 0)
        result.skipped_count += int(data.get("skipped_count", 0) or 0)
        result.credits_used += int(data.get("credits_used", 0) or 0)
        result.errors.extend(_parse_batch_error(raw) for raw in data.get("errors") or [])
        return result

    async def get_credit_status(self, force_refresh: bool = False) -> CreditStatus:
        now = self._now_fn()
        if (
            not force_refresh
            and self._cached_status is not None
            and now - self._cached_at < self._status_cache_seconds
        ):
            return self._cached_status

        status_code, payload = await self._request("GET", "/tenant/status")
        if status_code >= 400:
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {status_code} error"),
                status_code=status_code,
                path="/tenant/status",
                payload=payload,
            )
        subscription = (payload.get("subscription") if isinstance(payload, dict) else None) or {}
        status = CreditStatus(
            credits_remaining=int(subscription.get("credits_remaining", 0) or 0),
            plan=subscription.get("plan"),
        )
        self._cached_status = status
        self._cached_at = now
        return status

    async def get_indexed_total(self) -> int:
        status_code, payload = await self._request("GET", "/rag/stats")
        if status_code >= 400 or not isinstance(payload, dict):
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {status_code} error"),
                status_code=status_code,
                path="/rag/stats",
            )
        return int(payload.get("total_indexed", 0) or 0)

    async def clear_all(self) -> None:
        status_code, payload = await self._request("POST", "/rag/clear")
        if status_code >= 400:
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {status_code} error"),
                status_code=status_code,
                path="/rag/clear",
            )
        self.clear_cached_status()

    def clear_cached_status(self) -> None:
        self._cached_status = None
        self._cached_at = 0.0


class HttpTopicProvider(_AsyncJsonClient):
    """Forum REST API reader."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(base_url, timeout=timeout, headers=headers, http_client=http_client)

    async def list_topic_ids(self, topic_filter: Optional[TopicFilter] = None) -> List[int]:
        topic_filter = topic_filter or TopicFilter()
        params: Dict[str, Any] = {"status": topic_filter.status, "orderby": "topicid", "order": "asc"}
        if topic_filter.forum_ids is not None:
            params["forum_ids"] = ",".join(str(forum_id) for forum_id in topic_filter.forum_ids)
        status_code, payload = await self._request("GET", "/topics", params=params)
        if status_code >= 400 or not isinstance(payload, dict):
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {status_code} error"),
                status_code=status_code,
                path="/topics",
            )
        return sorted(int(topic_id) for topic_id in payload.get("topic_ids", []))

    async def get_topic(self, topic_id: int) -> Optional[TopicDocument]:
        status_code, payload = await self._request("GET", f"/topics/{int(topic_id)}")
        if status_code == 404:
            return None
        if status_code >= 400 or not isinstance(payload, dict):
            raise BackendUnavailableError(
                _coerce_error_detail(payload, f"HTTP {status_code} error"),
                status_code=status_code,
                path=f"/topics/{topic_id}",
            )
        return TopicDocument(**payload)

    async def get_topic_first_post(self, topic_id: int) -> str:
        topic = await self.get_topic(topic_id)
        if topic is None or not topic.posts:
            return ""
        for post in topic.posts:
            if post.is_first_post:
                return post.body
        return topic.posts[0].body
