# src/cache/content_cache.py — v2
"""Content-addressed cache of accepted LLM objects.

One pretty-printed JSON file per key under the book's ``.cache/`` subtree,
so the cache can be wiped without touching node data. Keys are SHA-256 over
a canonical JSON encoding of ``{modelId, system, messages, schema}``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


def compute_cache_key(
    model_id: str,
    system: str | None,
    messages: list[dict[str, Any]],
    schema: dict[str, Any],
) -> str:
    """Deterministic key for one structured-output request.

    Message order matters; dict key order does not (keys are sorted).
    """
    payload = {
        "modelId": model_id,
        "system": system,
        "messages": messages,
        "schema": schema,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ContentCache:
    """File-per-key JSON cache with a force-recompute switch.

    With ``force_recompute`` set, get() always misses but put() still
    writes, so fresh results replace stale ones. ``guard`` runs before
    every write and may raise to refuse it (e.g. the book was deleted).
    """

    def __init__(
        self,
        cache_dir: Path,
        force_recompute: bool = False,
        guard: Callable[[], None] | None = None,
    ) -> None:
        self._root = Path(cache_dir)
        self._force_recompute = force_recompute
        self._guard = guard

    @property
    def root(self) -> Path:
        return self._root

    @property
    def force_recompute(self) -> bool:
        return self._force_recompute

    async def get(self, key: str) -> Any | None:
        """Return the cached object, or None on miss."""
        if self._force_recompute:
            return None
        path = self._entry_path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable cache entry %s, treating as miss: %s", key, e)
            return None

    async def put(self, key: str, obj: Any) -> None:
        if self._guard is not None:
            self._guard()
        path = self._entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")

    async def bust(self, key: str) -> bool:
        """Delete an entry. Returns False when there was nothing to delete."""
        path = self._entry_path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Busted cache entry %s", key)
        return True

    def _entry_path(self, key: str) -> Path:
        safe_key = key.replace("/", "_").replace("\\", "_")
        return self._root / f"{safe_key}.json"
