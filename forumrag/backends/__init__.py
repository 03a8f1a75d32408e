# Lazy import: the HTTP adapters pull in httpx
from forumrag.backends.base import ImageFilter, IndexingBackend, TopicProvider
from forumrag.backends.images import HtmlImageFilter
from forumrag.backends.memory import InMemoryIndexingBackend, InMemoryTopicProvider

__all__ = [
    "ImageFilter",
    "IndexingBackend",
    "TopicProvider",
    "HtmlImageFilter",
    "InMemoryIndexingBackend",
    "InMemoryTopicProvider",
    "HttpIndexingBackend",
    "HttpTopicProvider",
]


def __getattr__(name):
    if name == "HttpIndexingBackend":
        from forumrag.backends.http import HttpIndexingBackend
        return HttpIndexingBackend
    if name == "HttpTopicProvider":
        from forumrag.backends.http import HttpTopicProvider
        return HttpTopicProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
