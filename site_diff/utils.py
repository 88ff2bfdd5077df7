# File: site_diff/utils.py
"""site_diff.utils: Утилиты для работы с URL, именами файлов и каталогами запуска."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import Collection, Iterable, List, Optional, Sequence
from urllib.parse import urljoin, urlparse

from site_diff.logger import logger

__all__: Sequence[str] = (
    "url_to_filename",
    "to_absolute_url",
    "transform_url",
    "remove_duplicates",
    "filter_urls",
    "run_directory_name",
    "ensure_dir",
)

_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)
_MAX_STEM = 150
_HASH_LEN = 8


def url_to_filename(url: str) -> str:
    """Превращает URL в безопасное имя файла.

    Все не буквенно-цифровые символы заменяются на `_`; короткий хэш исходного
    URL исключает совпадения вроде `/a-b` и `/a_b`.
    """
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:_HASH_LEN]
    return f"{_NON_ALNUM.sub('_', url).lower()[:_MAX_STEM]}_{digest}"


def to_absolute_url(candidate: str, parent_url: str) -> str:
    """Разрешает относительный `loc` относительно URL sitemap, в котором он найден."""
    try:
        return urljoin(parent_url, candidate)
    except ValueError:
        return candidate


def transform_url(original_url: str, new_base: Optional[str]) -> str:
    """Заменяет origin URL на новый домен (или полный origin) превью.

    >>> transform_url("https://example.com/a?b=1", "preview.example.net")
    'https://preview.example.net/a?b=1'
    """
    if not new_base:
        return original_url
    parsed = urlparse(original_url)
    if not parsed.scheme or not parsed.netloc:
        logger.debug("Cannot transform non-absolute URL %s", original_url)
        return original_url
    origin = f"{parsed.scheme}://{parsed.netloc}"
    base = new_base.rstrip("/")
    if "://" not in base:
        base = f"{parsed.scheme}://{base}"
    return base + original_url[len(origin):]


def remove_duplicates(urls: Collection[str]) -> List[str]:
    """Удаляет дубликаты из списка URL, сохраняя порядок."""
    unique = list(dict.fromkeys(urls))
    removed = len(urls) - len(unique)
    if removed:
        logger.debug("Removed %d duplicate URLs", removed)
    return unique


def filter_urls(
    urls: Iterable[str],
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> List[str]:
    """Оставляет URL, подходящие под include (если задан) и не подходящие под exclude."""
    inc = [re.compile(p, re.IGNORECASE) for p in include]
    exc = [re.compile(p, re.IGNORECASE) for p in exclude]
    kept: List[str] = []
    for url in urls:
        if inc and not any(p.search(url) for p in inc):
            continue
        if any(p.search(url) for p in exc):
            continue
        kept.append(url)
    return kept


def run_directory_name(run_name: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Имя каталога запуска: `YYYYMMDD-HHMMSS[-slug]`."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    if not run_name:
        return stamp
    slug = re.sub(r"[^a-z0-9]+", "-", run_name.lower()).strip("-")
    return f"{stamp}-{slug}" if slug else stamp


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path
