"""
Post text preparation and content fingerprints shared by the backends.
"""

import hashlib
import html
import re

from forumrag.core.types import TopicDocument, TopicPost

MAX_CONTENT_CHARS = 45000

_SHORTCODE_RE = re.compile(r"\[(?:/)?[a-zA-Z0-9_-]+(?:\s[^\]]*?)?\]")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def clean_body(body: str) -> str:
    text = _SHORTCODE_RE.sub("", body or "")
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _WS_RE.sub(" ", text).strip()


def prepare_post_content(topic: TopicDocument, post: TopicPost) -> str:
    """Text sent for embedding. The first post carries the topic title at both ends."""
    parts = []
    if post.is_first_post and topic.title:
        parts.append(f"Topic: {topic.title}")
    parts.append(clean_body(post.body))
    if post.is_first_post and topic.title:
        parts.append(f"Topic: {topic.title}")
    return "\n\n".join(part for part in parts if part)[:MAX_CONTENT_CHARS]


def content_fingerprint(content: str, image_count: int = 0) -> str:
    """Dedup key; the image count is included so adding or removing images re-indexes the post."""
    return hashlib.sha256(f"{content}|images:{image_count}".encode("utf-8")).hexdigest()


def chunk_words(content: str, chunk_size: int, overlap_percent: int):
    """Split into word windows of ``chunk_size`` with ``overlap_percent`` shared between neighbours."""
    words = content.split()
    if not words:
        return []
    step = max(1, chunk_size - (chunk_size * overlap_percent) // 100)
    chunks = []
    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start:start + chunk_size]))
        if start + chunk_size >= len(words):
            break
    return chunks
