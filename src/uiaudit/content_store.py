# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Compressed on-disk cache of fetched page markup.

Layout: ``{root}/html/{market}/{url_id}.html.gz``.  Callers hold the
relative pointer (``html/{market}/{url_id}.html.gz``), which is what the
inventory row stores in ``html_path``.

Writes are atomic: gzip into a temp file in the target directory, fsync,
then ``os.replace``.  Reads never return empty content silently; a missing
entry raises :class:`CacheMissError` and an undecodable one raises
:class:`CacheCorruptError`.
"""

from __future__ import annotations

import gzip
import logging
import os
import re
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import CacheCorruptError, CacheMissError, ContentStoreError

logger = logging.getLogger(__name__)

_HTML_DIR = "html"
_SUFFIX = ".html.gz"
_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_-]")
_COMPRESS_LEVEL = 6


@dataclass(frozen=True, slots=True)
class StoreStats:
    """Entry count and compressed size for one market."""

    market: str
    entries: int
    bytes_on_disk: int


def _safe_market(market: str) -> str:
    cleaned = _UNSAFE_SEGMENT_RE.sub("_", market.strip())
    if not cleaned:
        raise ContentStoreError(f"Invalid market segment: {market!r}")
    return cleaned


def pointer_for(market: str, url_id: int) -> str:
    """Relative pointer for (market, url_id)."""
    if url_id < 0:
        raise ContentStoreError(f"url_id must be >= 0, got {url_id}")
    return f"{_HTML_DIR}/{_safe_market(market)}/{url_id}{_SUFFIX}"


class ContentStore:
    """Gzip-compressed page cache rooted at a data directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, pointer: str) -> Path:
        rel = PurePosixPath(pointer)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts or rel.parts[0] != _HTML_DIR:
            raise ContentStoreError(f"Pointer escapes content store: {pointer!r}")
        return self._root.joinpath(*rel.parts)

    def put(self, market: str, url_id: int, markup: str) -> str:
        """Compress and store *markup*; returns the relative pointer."""
        pointer = pointer_for(market, url_id)
        target = self._resolve(pointer)
        target.parent.mkdir(parents=True, exist_ok=True)

        payload = gzip.compress(markup.encode("utf-8"), compresslevel=_COMPRESS_LEVEL)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ContentStoreError(f"Failed to write {pointer}: {exc}") from exc

        logger.debug("Cached %s (%d bytes raw, %d compressed)", pointer, len(markup), len(payload))
        return pointer

    def get(self, pointer: str) -> str:
        """Return the decompressed markup stored at *pointer*."""
        path = self._resolve(pointer)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            raise CacheMissError(pointer) from None
        except OSError as exc:
            raise ContentStoreError(f"Failed to read {pointer}: {exc}") from exc

        try:
            return gzip.decompress(raw).decode("utf-8")
        except (OSError, EOFError, zlib.error) as exc:
            raise CacheCorruptError(pointer, "bad gzip stream") from exc
        except UnicodeDecodeError as exc:
            raise CacheCorruptError(pointer, "not valid UTF-8") from exc

    def exists(self, pointer: str) -> bool:
        return self._resolve(pointer).is_file()

    def stats(self, market: str) -> StoreStats:
        market_dir = self._root / _HTML_DIR / _safe_market(market)
        entries = 0
        size = 0
        if market_dir.is_dir():
            for path in market_dir.glob(f"*{_SUFFIX}"):
                entries += 1
                size += path.stat().st_size
        return StoreStats(market=market, entries=entries, bytes_on_disk=size)
