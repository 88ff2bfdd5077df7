# === FILE: site_diff/crawler/resolver.py ===
"""
Sitemap resolution: turns a root sitemap (or nested sitemap index) into a
deduplicated list of page targets.

Resolution walks an explicit worklist of ``(sitemap_url, depth)`` pairs, one
depth level at a time, instead of recursing. Every sitemap URL is fetched at
most once per resolver; a failing branch contributes no URLs and never stops
its siblings.
"""
from __future__ import annotations

import asyncio
import gzip
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from site_diff.crawler.models import PageTarget, SitemapFailure, SitemapNodeState
from site_diff.errors import SitemapFetchError, SitemapParseError
from site_diff.logger import get_logger
from site_diff.parser.sitemap_parser import ParsedSitemap, parse_sitemap
from site_diff.retry import RetryOptions, error_message, with_retry
from site_diff.utils import filter_urls, remove_duplicates, to_absolute_url

__all__ = ("ResolverOptions", "SitemapResolver", "resolve_sitemap")

DEFAULT_MAX_NESTED_DEPTH = 8
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True, slots=True)
class ResolverOptions:
    timeout: float = 30.0
    retry: RetryOptions = field(default_factory=RetryOptions)
    max_nested_depth: int = DEFAULT_MAX_NESTED_DEPTH
    follow_nested: bool = True
    max_urls: Optional[int] = None
    include_patterns: Sequence[str] = ()
    exclude_patterns: Sequence[str] = ()
    fetch_concurrency: int = 4
    user_agent: str = "SiteDiffBot/1.0"

    @classmethod
    def from_config(cls, config) -> ResolverOptions:
        return cls(
            timeout=config.timeout,
            retry=RetryOptions.from_config(config),
            max_nested_depth=config.max_nested_depth,
            follow_nested=config.follow_nested_sitemaps,
            max_urls=config.max_urls,
            include_patterns=tuple(config.include_patterns),
            exclude_patterns=tuple(config.exclude_patterns),
        )


class SitemapResolver:
    """Resolves a sitemap tree into page targets.

    Can be used as an async context manager, in which case it owns its
    :class:`aiohttp.ClientSession`; otherwise pass an open session in.
    """

    _RETRY_ON: Tuple[type[BaseException], ...] = (ClientError, asyncio.TimeoutError, SitemapFetchError)

    def __init__(self, options: ResolverOptions | None = None, session: ClientSession | None = None) -> None:
        self.options = options or ResolverOptions()
        self.session = session
        self._owns_session = session is None
        self.visited: set[str] = set()
        self.states: Dict[str, SitemapNodeState] = {}
        self.failures: List[SitemapFailure] = []
        self.logger = get_logger("sitemap")

    async def __aenter__(self) -> SitemapResolver:
        if self.session is None:
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.options.timeout),
                headers={"User-Agent": self.options.user_agent},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def resolve(self, root_url: str) -> List[PageTarget]:
        """Fetch *root_url* and every nested sitemap it leads to."""
        start = time.monotonic()
        self.visited.clear()
        self.states.clear()
        self.failures.clear()

        found: List[PageTarget] = []
        worklist: Deque[Tuple[str, int]] = deque([(root_url, 0)])
        semaphore = asyncio.Semaphore(self.options.fetch_concurrency)

        while worklist:
            depth = worklist[0][1]
            level: List[str] = []
            while worklist and worklist[0][1] == depth:
                url, _ = worklist.popleft()
                if url in self.visited:
                    continue
                if depth > self.options.max_nested_depth:
                    self.logger.warning(
                        "Skipping nested sitemap %s because max depth (%d) was reached.",
                        url,
                        self.options.max_nested_depth,
                    )
                    self.states[url] = SitemapNodeState.SKIPPED_DEPTH
                    continue
                self.visited.add(url)
                self.states[url] = SitemapNodeState.UNVISITED
                level.append(url)

            parsed_level = await asyncio.gather(*(self._visit(url, semaphore) for url in level))

            for url, parsed in zip(level, parsed_level):
                if parsed is None:
                    continue
                found.extend(PageTarget(to_absolute_url(loc, url), sitemap=url) for loc in parsed.urls)
                if not self.options.follow_nested:
                    continue
                for nested in parsed.nested_sitemaps:
                    nested_url = to_absolute_url(nested, url)
                    if nested_url not in self.visited:
                        worklist.append((nested_url, depth + 1))

        targets = self._finalize(found)
        self.logger.info(
            "Resolved %d URLs from %d sitemap(s) in %.2f s (%d failed)",
            len(targets),
            len(self.visited),
            time.monotonic() - start,
            len(self.failures),
        )
        if not targets:
            self.logger.warning("No URLs discovered from sitemap %s.", root_url)
        return targets

    def _finalize(self, found: List[PageTarget]) -> List[PageTarget]:
        first_seen: Dict[str, PageTarget] = {}
        for target in found:
            first_seen.setdefault(target.url, target)
        urls = remove_duplicates([t.url for t in found])
        urls = filter_urls(urls, self.options.include_patterns, self.options.exclude_patterns)
        if self.options.max_urls and self.options.max_urls > 0:
            urls = urls[: self.options.max_urls]
        return [first_seen[u] for u in urls]

    async def _visit(self, url: str, semaphore: asyncio.Semaphore) -> Optional[ParsedSitemap]:
        async with semaphore:
            self.states[url] = SitemapNodeState.FETCHING
            self.logger.info("Fetching sitemap from %s...", url)
            try:
                content = await with_retry(
                    lambda: self._fetch(url),
                    self._retry_options(),
                    label=f"fetchSitemap({url})",
                )
            except Exception as exc:
                self.logger.error("Unable to fetch sitemap %s: %s", url, error_message(exc))
                self.states[url] = SitemapNodeState.FETCH_FAILED
                self.failures.append(SitemapFailure(url, exc))
                return None

        try:
            parsed = parse_sitemap(content)
        except SitemapParseError as exc:
            self.logger.error("Unable to parse sitemap %s: %s", url, exc)
            self.states[url] = SitemapNodeState.PARSE_FAILED
            self.failures.append(SitemapFailure(url, exc))
            return None

        self.states[url] = (
            SitemapNodeState.PARSED_AS_INDEX if parsed.is_index else SitemapNodeState.PARSED_AS_URLSET
        )
        self.logger.debug(
            "Sitemap %s: %d URLs, %d nested sitemaps", url, len(parsed.urls), len(parsed.nested_sitemaps)
        )
        return parsed

    def _retry_options(self) -> RetryOptions:
        retry = self.options.retry
        return RetryOptions(
            retries=retry.retries,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            multiplier=retry.multiplier,
            jitter=retry.jitter,
            retry_on=self._RETRY_ON,
        )

    async def _fetch(self, url: str) -> bytes:
        if not self.session:
            raise RuntimeError("Session not initialized")
        async with self.session.get(url, timeout=ClientTimeout(total=self.options.timeout)) as resp:
            if resp.status >= 400:
                raise SitemapFetchError(f"Failed to fetch sitemap {url}: HTTP {resp.status}")
            body = await resp.read()
        if body.startswith(_GZIP_MAGIC):
            try:
                body = gzip.decompress(body)
            except OSError as exc:
                raise SitemapFetchError(f"Corrupt gzip sitemap {url}: {exc}") from exc
        if not body.strip():
            raise SitemapFetchError(f"Empty sitemap response from {url}")
        return body


async def resolve_sitemap(root_url: str, options: ResolverOptions | None = None) -> List[PageTarget]:
    """Convenience wrapper that opens its own session."""
    async with SitemapResolver(options) as resolver:
        return await resolver.resolve(root_url)
