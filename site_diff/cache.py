# File: site_diff/cache.py
"""site_diff.cache: Дисковый кэш baseline-скриншотов с TTL и периодической очисткой.

Один файл на URL и роль: ``<root>/<url_to_filename(url)>_<role>.png``.
Свежесть определяется временем модификации файла.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Set, Union

from site_diff.logger import get_logger
from site_diff.utils import url_to_filename

__all__ = ["ScreenshotCache", "cache_key"]

log = get_logger("cache")

_SUFFIX = ".png"


def cache_key(url: str, role: str = "baseline") -> str:
    """Детерминированный ключ кэша для URL и роли."""
    return f"{url_to_filename(url)}_{role}"


class ScreenshotCache:
    """Кэш скриншотов; любые ошибки чтения считаются промахом, а не фатальной ошибкой."""

    def __init__(
        self,
        root: Union[str, Path],
        ttl: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.root = Path(root)
        self.ttl = ttl
        self._clock = clock
        self._written: Set[str] = set()

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}{_SUFFIX}"

    # ------------------------------------------------------------------ #
    # sync implementations (run in worker threads)                       #
    # ------------------------------------------------------------------ #

    def get_sync(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            age = self._clock() - path.stat().st_mtime
            if age >= self.ttl:
                log.debug("Cache stale for %s (age %.1fs >= ttl %.1fs)", key, age, self.ttl)
                return None
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            return None
        if not data:
            return None
        return data

    def put_sync(self, key: str, content: bytes) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._written.add(key)
        return target

    def sweep_sync(self, max_age: float) -> int:
        if not self.root.is_dir():
            return 0
        now = self._clock()
        removed = 0
        try:
            entries = list(self.root.iterdir())
        except OSError as exc:
            log.warning("Cache cleanup skipped, cannot list %s: %s", self.root, exc)
            return 0
        for entry in entries:
            if not entry.is_file():
                continue
            key = entry.name.removesuffix(_SUFFIX)
            if key in self._written:
                continue
            try:
                if now - entry.stat().st_mtime > max_age:
                    entry.unlink()
                    removed += 1
            except OSError as exc:
                log.warning("Cache cleanup skipped %s: %s", entry.name, exc)
        if removed:
            log.info("Cache cleanup removed %d entries older than %.0fs", removed, max_age)
        return removed

    # ------------------------------------------------------------------ #
    # async API                                                          #
    # ------------------------------------------------------------------ #

    async def get(self, key: str) -> Optional[bytes]:
        """Возвращает содержимое, если запись свежее TTL, иначе None."""
        return await asyncio.to_thread(self.get_sync, key)

    async def put(self, key: str, content: bytes) -> Path:
        """Атомарно записывает (или перезаписывает) запись."""
        return await asyncio.to_thread(self.put_sync, key, content)

    async def sweep(self, max_age: float) -> int:
        """Удаляет записи старше max_age; записи, созданные этим экземпляром, не трогает."""
        return await asyncio.to_thread(self.sweep_sync, max_age)
