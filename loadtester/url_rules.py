"""
URL rules shared by the interceptor: user-supplied allow/block patterns and the
built-in streaming / essential request classification.

Pattern syntaxes:

* ``/regex/``   case-insensitive regular expression, searched anywhere
* ``glob``      ``*`` and ``?`` wildcards, anchored to the whole URL
* fallback      case-insensitive containment when the pattern won't compile
"""

from __future__ import annotations

import enum
import logging
import re
from functools import lru_cache
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# User patterns
# --------------------------------------------------------------------------- #

@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Optional[re.Pattern]:
    """Compiled form of *pattern*, ``None`` when it is not a valid expression."""
    try:
        if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
            return re.compile(pattern[1:-1], re.IGNORECASE)
        glob = "".join(
            ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
            for ch in pattern
        )
        return re.compile(f"^{glob}$", re.IGNORECASE)
    except re.error as exc:
        logger.warning("invalid URL pattern %r, falling back to containment: %s", pattern, exc)
        return None


def matches_url_pattern(url: str, pattern: str) -> bool:
    compiled = compile_pattern(pattern)
    if compiled is None:
        return pattern.lower() in url.lower()
    return compiled.search(url) is not None


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    return any(matches_url_pattern(url, p) for p in patterns)


# --------------------------------------------------------------------------- #
# Streaming classification
# --------------------------------------------------------------------------- #

_MANIFEST_RE = re.compile(r"\.m3u8(\?|$)|\.mpd(\?|$)|manifest", re.IGNORECASE)
_SEGMENT_RE = re.compile(r"\.ts(\?|$)|\.m4s(\?|$)|\.mp4(\?|$)|segment|chunk", re.IGNORECASE)
_LICENSE_RE = re.compile(r"license|drm|widevine|playready|fairplay", re.IGNORECASE)
_API_RE = re.compile(r"api.*stream|stream.*api|playback|player", re.IGNORECASE)

_ESSENTIAL_RES = [re.compile(p, re.IGNORECASE) for p in (
    # document root
    r"^https?://[^/]+/?$",
    r"/live\?",
    r"/start/?$",
    # core bundles
    r"/_next/static/chunks/main-",
    r"/_next/static/chunks/framework-",
    r"/_next/static/chunks/webpack-",
    r"/_next/static/chunks/pages/_app-",
    r"/_next/static/css/",
    # auth / session
    r"/api/auth/",
    r"/session",
    r"/api/domain/player-token",
    r"/stream-link",
    # page data
    r"/_next/data/",
    r"\.html(\?|$)",
    # icons
    r"favicon\.ico",
    r"/icon-",
)]


class StreamingType(str, enum.Enum):
    MANIFEST = "manifest"
    SEGMENT = "segment"
    LICENSE = "license"
    API = "api"


def streaming_type(url: str) -> Optional[StreamingType]:
    """Tag for a streaming-related URL, ``None`` for everything else."""
    if _MANIFEST_RE.search(url):
        return StreamingType.MANIFEST
    if _SEGMENT_RE.search(url):
        return StreamingType.SEGMENT
    if _LICENSE_RE.search(url):
        return StreamingType.LICENSE
    if _API_RE.search(url):
        return StreamingType.API
    return None


def is_streaming_request(url: str) -> bool:
    return streaming_type(url) is not None


def is_essential_request(url: str) -> bool:
    return any(r.search(url) for r in _ESSENTIAL_RES)


# --------------------------------------------------------------------------- #
# Filtering policy
# --------------------------------------------------------------------------- #

class FilterDecision(str, enum.Enum):
    CONTINUE = "continue"
    BLOCKED = "blocked"                  # matched blockedUrls
    NOT_STREAMING = "not-streaming"      # dropped by streaming-only mode


class UrlFilter:
    """Block list beats allow list beats streaming-only mode."""

    def __init__(
        self,
        streaming_only: bool = False,
        allowed_urls: Iterable[str] = (),
        blocked_urls: Iterable[str] = (),
    ) -> None:
        self.streaming_only = streaming_only
        self.allowed_urls = tuple(allowed_urls)
        self.blocked_urls = tuple(blocked_urls)

    def is_blocked(self, url: str) -> bool:
        return matches_any(url, self.blocked_urls)

    def is_allowed(self, url: str) -> bool:
        return matches_any(url, self.allowed_urls)

    def decide(self, url: str) -> FilterDecision:
        if self.is_blocked(url):
            return FilterDecision.BLOCKED
        if self.is_allowed(url):
            return FilterDecision.CONTINUE
        if self.streaming_only and not is_streaming_request(url) and not is_essential_request(url):
            return FilterDecision.NOT_STREAMING
        return FilterDecision.CONTINUE
