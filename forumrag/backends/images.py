"""
Image detection for "images-only" indexing runs.
"""

import re
from typing import List

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "bmp", "svg", "avif")
_EXT = "|".join(IMAGE_EXTENSIONS)

_IMG_TAG_RE = re.compile(r"<img\b[^>]*\bsrc\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_ANCHOR_IMAGE_RE = re.compile(
    rf"<a\b[^>]*\bhref\s*=\s*[\"']([^\"']+\.(?:{_EXT})(?:\?[^\"']*)?)[\"']",
    re.IGNORECASE,
)
_PLAIN_URL_RE = re.compile(rf"(?<![\"'=])\bhttps?://[^\s<>\"']+\.(?:{_EXT})(?:\?[^\s<>\"']*)?", re.IGNORECASE)
_ATTACH_RE = re.compile(r"\[attach\]\s*(\d+)\s*\[/attach\]", re.IGNORECASE)


class HtmlImageFilter:
    """Finds images in post HTML: <img> tags, links to image files, bare image URLs and [attach] shortcodes."""

    def extract_urls(self, content: str) -> List[str]:
        if not content:
            return []
        seen = {}
        for pattern in (_IMG_TAG_RE, _ANCHOR_IMAGE_RE, _PLAIN_URL_RE):
            for match in pattern.finditer(content):
                seen.setdefault(match.group(1) if pattern.groups else match.group(0), None)
        return list(seen)

    def attachment_ids(self, content: str) -> List[int]:
        return [int(value) for value in _ATTACH_RE.findall(content or "")]

    def has_images(self, content: str) -> bool:
        return bool(self.extract_urls(content) or self.attachment_ids(content))
