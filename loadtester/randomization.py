"""
Template engine for ``{{...}}`` expressions.

Supported forms, each substituted independently:

* ``{{name}}``                    variable from the context
* ``{{random:uuid}}``, ``number``, ``timestamp``, ``hex``, ``alphanumeric``,
  ``{{random:<min>-<max>}}``      fresh value on every call
* ``{{randomFrom:<name>}}``       element of an array in the context
* ``{{randomFromFile:<path>}}``   line of a file (blank and ``#`` lines skipped)

Anything that cannot be resolved stays in the output verbatim; nothing here
raises.
"""

from __future__ import annotations

import logging
import os
import random
import re
import string
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

EXPRESSION_RE = re.compile(r"\{\{([^}]+)\}\}")
_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")
_ALPHANUMERIC = string.ascii_letters + string.digits


@dataclass(frozen=True)
class _CachedFile:
    lines: tuple[str, ...]
    mtime_ns: int


class FileDataCache:
    """Lines of data files keyed by path, reloaded when the mtime changes.

    Shared by every interceptor of a test run. Concurrent population of the
    same path is harmless: content is deterministic, last write wins.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CachedFile] = {}

    def lines(self, path: str) -> tuple[str, ...] | None:
        try:
            mtime_ns = os.stat(path).st_mtime_ns
        except OSError as exc:
            logger.warning("cannot stat data file %s: %s", path, exc)
            return None

        cached = self._entries.get(path)
        if cached is not None and cached.mtime_ns == mtime_ns:
            return cached.lines

        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("cannot read data file %s: %s", path, exc)
            return None

        lines = tuple(
            stripped
            for stripped in (line.strip() for line in text.splitlines())
            if stripped and not stripped.startswith("#")
        )
        self._entries[path] = _CachedFile(lines=lines, mtime_ns=mtime_ns)
        return lines

    def invalidate(self, path: str | None = None) -> None:
        if path is None:
            self._entries.clear()
        else:
            self._entries.pop(path, None)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class TemplateEngine:
    def __init__(self, file_cache: FileDataCache | None = None, rng: random.Random | None = None) -> None:
        self.file_cache = file_cache if file_cache is not None else FileDataCache()
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def substitute(self, template: str, context: Mapping[str, Any] | None = None) -> str:
        context = context or {}

        def _replace(match: re.Match) -> str:
            try:
                resolved = self.resolve(match.group(1), context)
            except Exception:
                logger.warning("failed to substitute %s", match.group(0), exc_info=True)
                return match.group(0)
            return match.group(0) if resolved is None else resolved

        return EXPRESSION_RE.sub(_replace, template)

    def resolve(self, expression: str, context: Mapping[str, Any]) -> str | None:
        """Value for one expression (without braces), ``None`` if unresolved."""
        if expression.startswith("random:"):
            return self._random(expression[len("random:"):].strip())
        if expression.startswith("randomFrom:"):
            return self._random_from(expression[len("randomFrom:"):].strip(), context)
        if expression.startswith("randomFromFile:"):
            return self._random_from_file(expression[len("randomFromFile:"):].strip())

        value = context.get(expression.strip())
        return None if value is None else str(value)

    def process_mapping(self, data: Mapping[str, str], context: Mapping[str, Any] | None = None) -> dict[str, str]:
        return {key: self.substitute(value, context) for key, value in data.items()}

    @staticmethod
    def has_expressions(text: str) -> bool:
        return EXPRESSION_RE.search(text) is not None

    # ------------------------------------------------------------------ #
    # Generators
    # ------------------------------------------------------------------ #
    def _random(self, kind: str) -> str | None:
        if kind == "uuid":
            return str(uuid.UUID(int=self._rng.getrandbits(128), version=4))
        if kind == "number":
            return str(self._rng.randrange(1_000_000))
        if kind == "timestamp":
            return str(int(time.time() * 1000))
        if kind == "hex":
            return format(self._rng.randrange(0xFFFFFF), "x")
        if kind == "alphanumeric":
            return "".join(self._rng.choice(_ALPHANUMERIC) for _ in range(8))

        m = _RANGE_RE.match(kind)
        if m:
            low, high = sorted((int(m.group(1)), int(m.group(2))))
            return str(self._rng.randint(low, high))

        logger.warning("unknown random function: %s", kind)
        return None

    def _random_from(self, name: str, context: Mapping[str, Any]) -> str | None:
        values = context.get(name)
        if not isinstance(values, (list, tuple)):
            logger.warning("randomFrom target is not an array: %s (%s)", name, type(values).__name__)
            return None
        if not values:
            logger.warning("randomFrom target array is empty: %s", name)
            return None
        return str(self._rng.choice(values))

    def _random_from_file(self, path: str) -> str | None:
        lines = self.file_cache.lines(path)
        if not lines:
            logger.warning("file data is empty or could not be loaded: %s", path)
            return None
        return self._rng.choice(lines)
