from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Event, Lock
from typing import Optional, Union

from vector_engine.services.svg_sanitizer import (
    SanitizedSvg,
    ViewBox,
    hash_svg,
    parse_svg,
    sanitize_and_parse,
)

SVG_CACHE_VERSION = "canon_v1"

logger = logging.getLogger(__name__)


def _ensure_dir(path: Path) -> None:
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)


class SvgCache:
    """Content-addressed store of sanitized SVG documents.

    Entries are keyed by the SHA-256 of the canonical text, so two uploads
    that differ only in attribute order or whitespace share one parse. Raw
    digests are remembered too, letting a byte-identical upload skip the
    sanitizer entirely.
    """

    def __init__(self, cache_dir: Optional[str] = None) -> None:
        self._dir = Path(cache_dir) / "svg" if cache_dir else None
        self._entries: dict[str, SanitizedSvg] = {}
        self._raw_to_canonical: dict[str, str] = {}
        self._inflight: dict[str, Event] = {}
        self._lock = Lock()
        if self._dir is not None:
            _ensure_dir(self._dir)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, digest: str) -> Optional[SanitizedSvg]:
        with self._lock:
            hit = self._entries.get(digest)
        if hit is not None:
            return hit
        loaded = self._load(digest)
        if loaded is not None:
            with self._lock:
                self._entries[digest] = loaded
        return loaded

    def get_or_create(self, raw: Union[str, bytes]) -> SanitizedSvg:
        """Return the cached entry for `raw`, sanitizing it at most once at a time.

        Concurrent callers with the same bytes wait for the first one instead of
        sanitizing in parallel.
        """
        raw_digest = hash_svg(raw)
        while True:
            with self._lock:
                known = self._raw_to_canonical.get(raw_digest)
                inflight = self._inflight.get(raw_digest)
                leader = known is None and inflight is None
                if leader:
                    inflight = self._inflight[raw_digest] = Event()
            if known is not None:
                hit = self.get(known)
                if hit is not None:
                    return hit
                with self._lock:
                    self._raw_to_canonical.pop(raw_digest, None)
                continue
            if leader:
                break
            # A rejected upload leaves no entry; the next waiter re-raises for itself.
            inflight.wait()

        try:
            return self._create(raw, raw_digest)
        finally:
            with self._lock:
                self._inflight.pop(raw_digest, None)
            inflight.set()

    def _create(self, raw: Union[str, bytes], raw_digest: str) -> SanitizedSvg:
        # Sanitizer failures propagate; nothing is cached for rejected input.
        sanitized = sanitize_and_parse(raw)
        with self._lock:
            existing = self._entries.get(sanitized.digest)
            if existing is None:
                self._entries[sanitized.digest] = sanitized
            self._raw_to_canonical[raw_digest] = sanitized.digest
        if existing is not None:
            logger.info("SVG_CACHE_DEDUP", extra={"digest": sanitized.digest})
            return existing

        self._store(sanitized)
        return sanitized

    @staticmethod
    def _paths(root: Path, digest: str) -> tuple[Path, Path]:
        return root / f"{digest}_{SVG_CACHE_VERSION}.svg", root / f"{digest}_{SVG_CACHE_VERSION}.json"

    def _store(self, sanitized: SanitizedSvg) -> None:
        if self._dir is None:
            return
        svg_path, meta_path = self._paths(self._dir, sanitized.digest)
        svg_path.write_text(sanitized.canonical, encoding="utf-8")
        meta = {
            "digest": sanitized.digest,
            "view_box": [sanitized.view_box.x, sanitized.view_box.y, sanitized.view_box.width, sanitized.view_box.height],
            "version": SVG_CACHE_VERSION,
        }
        meta_path.write_text(json.dumps(meta, sort_keys=True, separators=(",", ":")), encoding="utf-8")

    def _load(self, digest: str) -> Optional[SanitizedSvg]:
        if self._dir is None:
            return None
        svg_path, meta_path = self._paths(self._dir, digest)
        if not svg_path.exists() or not meta_path.exists():
            return None
        canonical = svg_path.read_text(encoding="utf-8")
        if hash_svg(canonical) != digest:
            logger.warning("SVG_CACHE_CORRUPT", extra={"digest": digest})
            svg_path.unlink(missing_ok=True)
            meta_path.unlink(missing_ok=True)
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        x, y, w, h = (float(v) for v in meta["view_box"])
        parsed = parse_svg(canonical)
        return SanitizedSvg(
            digest=digest,
            canonical=canonical,
            view_box=ViewBox(x=x, y=y, width=w, height=h),
            paths=parsed.paths,
        )
