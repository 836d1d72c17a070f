"""Persistent cache for raw Overpass payloads with basic corruption recovery."""
from __future__ import annotations

import gzip
import json
import logging
from dataclasses import dataclass
from hashlib import sha1
from pathlib import Path
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)


@dataclass
class CacheResult:
    value: Optional[Any]
    hit: bool


class PayloadCache:
    """Filesystem-backed gzip JSON cache keyed by query text."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        digest = sha1(key.encode("utf-8")).hexdigest()
        return self.root / digest[:2] / f"{digest}.json.gz"

    def get(self, key: str) -> CacheResult:
        path = self.path_for(key)
        if not path.exists():
            return CacheResult(value=None, hit=False)
        try:
            with gzip.open(path, "rt", encoding="utf-8") as handle:
                data = json.load(handle)
        except (json.JSONDecodeError, OSError, EOFError) as exc:
            LOGGER.warning("Discarding unreadable cache entry %s: %s", path, exc)
            self.discard(key)
            return CacheResult(value=None, hit=False)
        return CacheResult(value=data, hit=True)

    def set(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        try:
            with gzip.open(tmp, "wt", encoding="utf-8") as handle:
                json.dump(value, handle, ensure_ascii=False)
            tmp.replace(path)
        finally:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError:
                    pass

    def discard(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except OSError:
            return
