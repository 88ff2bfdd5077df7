# File: site_diff/engine.py
"""site_diff.engine: Orchestration layer: запуск сценариев сравнения и формирование отчётов."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, TypeVar
from urllib.parse import urlparse

from aiohttp import ClientSession, ClientTimeout

from site_diff.branches import BranchSwitcher
from site_diff.cache import ScreenshotCache
from site_diff.capture.screenshot import ScreenshotClient
from site_diff.config import DiffConfig, load_config
from site_diff.crawler.models import PageTarget, ScreenshotArtifact
from site_diff.crawler.resolver import ResolverOptions, SitemapResolver
from site_diff.diff.engine import DiffEngine
from site_diff.errors import RunAbortedError
from site_diff.logger import logger, run_log
from site_diff.pipeline import (
    CachedBaseline,
    ComparisonPipeline,
    ConcurrencyPools,
    PipelineOptions,
    PreloadedBaseline,
    RunLayout,
)
from site_diff.report.html_report import render_html
from site_diff.report.json_report import render_json
from site_diff.report.reporter import RunReporter, RunSummary
from site_diff.retry import error_message

__all__ = [
    "Engine",
    "compare_sitemap",
    "compare_urls",
    "compare_branches",
    "take_screenshots",
    "run_flow",
]

T = TypeVar("T")

_USER_AGENT = "SiteDiffBot/1.0"


def _looks_like_sitemap(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith((".xml", ".xml.gz"))


async def _unless_cancelled(
    factory: Callable[[], Awaitable[T]], cancel: Optional[asyncio.Event], stage: str
) -> T:
    """Выполняет этап запуска, пока не выставлен `cancel`; отмена прерывает запуск."""
    if cancel is None:
        return await factory()
    if cancel.is_set():
        raise RunAbortedError(f"Run cancelled before {stage}.")

    work = asyncio.ensure_future(factory())
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
    if work.cancelled():
        logger.warning("Cancellation requested during %s", stage)
        raise RunAbortedError(f"Run cancelled during {stage}.")
    return work.result()


class Engine:
    """Фасад для CLI и тестов: сборка компонентов запуска и выполнение сценариев."""

    @staticmethod
    def load_config(path: Optional[str]) -> DiffConfig:
        """Загружает конфиг из YAML/JSON."""
        return load_config(path)

    def __init__(
        self,
        config: DiffConfig,
        *,
        diff_engine: Optional[DiffEngine] = None,
        branch_switcher: Optional[BranchSwitcher] = None,
        template_dir: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.diff_engine = diff_engine or DiffEngine()
        self.branch_switcher = branch_switcher or BranchSwitcher(settle_delay=config.branch_settle_delay)
        self.template_dir = template_dir
        self.layout: Optional[RunLayout] = None
        self.reporter: Optional[RunReporter] = None

    # ------------------------------------------------------------------ #
    # run context                                                        #
    # ------------------------------------------------------------------ #

    def _session(self) -> ClientSession:
        return ClientSession(
            timeout=ClientTimeout(total=self.config.timeout),
            headers={"User-Agent": _USER_AGENT},
        )

    @contextlib.contextmanager
    def _run(self) -> Iterator[RunLayout]:
        """Новая папка запуска; все записи лога на время запуска дублируются в run.log."""
        self.layout = RunLayout.create(self.config.output_dir, self.config.run_name)
        self.reporter = RunReporter(self.layout.error_log)
        with run_log(self.layout.run_log):
            logger.info("Run directory: %s", self.layout.root)
            yield self.layout

    def _pipeline(self, client: ScreenshotClient, pools: ConcurrencyPools, baseline, **kwargs) -> ComparisonPipeline:
        assert self.layout is not None and self.reporter is not None
        return ComparisonPipeline(
            client,
            baseline,
            self.diff_engine,
            self.reporter,
            pools,
            self.layout,
            PipelineOptions(
                allow_resize=self.config.allow_resize,
                grace_period=self.config.cancel_grace_period,
                preview_domain=self.config.preview_domain,
            ),
            **kwargs,
        )

    async def _prepare_cache(self) -> Optional[ScreenshotCache]:
        if not self.config.cache_enabled:
            return None
        cache = ScreenshotCache(self.config.cache_dir, self.config.cache_ttl)
        await cache.sweep(self.config.cache_cleanup_age)
        return cache

    async def resolve_targets(
        self,
        session: ClientSession,
        root_url: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[PageTarget]:
        """Собирает URL из sitemap; ноль URL считается фатальной ошибкой запуска.

        Упавшие вложенные sitemap попадают в журнал ошибок, но не в счётчики
        целевых страниц.
        """
        url = root_url or (str(self.config.sitemap_url) if self.config.sitemap_url else None)
        if not url:
            raise RunAbortedError("A sitemap URL is required for this run.")
        resolver = SitemapResolver(ResolverOptions.from_config(self.config), session=session)
        targets = await _unless_cancelled(lambda: resolver.resolve(url), cancel, "sitemap resolution")
        if self.reporter is not None:
            for failure in resolver.failures:
                self.reporter.record_failure(failure.url, failure.error, count=False)
        if not targets:
            raise RunAbortedError(f"No URLs found from the sitemap {url}.")
        logger.info("Found %d unique URLs.", len(targets))
        return targets

    def _finish(self) -> RunSummary:
        assert self.layout is not None and self.reporter is not None
        summary = self.reporter.finalize(self.layout.root)
        render_json(summary, self.layout.summary_json)
        render_html(summary, self.template_dir, self.layout.report_html)
        logger.info(
            "Done: %d processed, %d with changes, %d failed (%.1f s). Report: %s",
            summary.processed,
            summary.with_changes,
            summary.failed,
            summary.duration,
            self.layout.report_html,
        )
        return summary

    # ------------------------------------------------------------------ #
    # flows                                                              #
    # ------------------------------------------------------------------ #

    async def compare_sitemap(self, cancel: Optional[asyncio.Event] = None) -> RunSummary:
        """Продакшен (baseline, с кэшем) против превью для всех URL из sitemap."""
        with self._run():
            cache = await self._prepare_cache()
            async with self._session() as session:
                targets = await self.resolve_targets(session, cancel=cancel)
                pools = ConcurrencyPools.from_config(self.config)
                client = ScreenshotClient.from_config(session, self.config)
                pipeline = self._pipeline(client, pools, CachedBaseline(client, pools, cache))
                await pipeline.run(targets, cancel)
            return self._finish()

    async def compare_urls(self, url1: str, url2: str, cancel: Optional[asyncio.Event] = None) -> RunSummary:
        """Сравнение двух произвольных URL без кэша."""
        with self._run():
            async with self._session() as session:
                pools = ConcurrencyPools.from_config(self.config)
                client = ScreenshotClient.from_config(session, self.config)
                pipeline = self._pipeline(
                    client, pools, CachedBaseline(client, pools, None), comparison_url=lambda _: url2
                )
                logger.info("Comparing URLs\n1. %s\n2. %s", url1, url2)
                await pipeline.run([PageTarget(url1)], cancel)
            return self._finish()

    async def take_screenshots(self, cancel: Optional[asyncio.Event] = None) -> RunSummary:
        """Снимки всех страниц sitemap без сравнения."""
        with self._run():
            async with self._session() as session:
                targets = await self.resolve_targets(session, cancel=cancel)
                pools = ConcurrencyPools.from_config(self.config)
                client = ScreenshotClient.from_config(session, self.config)
                pipeline = self._pipeline(client, pools, CachedBaseline(client, pools, None))
                await pipeline.snapshot(targets, cancel)
            return self._finish()

    async def compare_branches(
        self, url: str, branch: str, cancel: Optional[asyncio.Event] = None
    ) -> RunSummary:
        """Снимки на базовой ветке, переключение на `branch` и сравнение.

        `url`: страница или sitemap (если путь оканчивается на .xml/.xml.gz).
        Ошибка захвата любого baseline прерывает весь запуск.
        """
        with self._run():
            async with self._session() as session:
                if _looks_like_sitemap(url):
                    targets = await self.resolve_targets(session, url, cancel)
                else:
                    targets = [PageTarget(url)]
                pools = ConcurrencyPools.from_config(self.config)
                client = ScreenshotClient.from_config(session, self.config)

                await self.branch_switcher.switch(self.config.base_branch)
                baselines = await _unless_cancelled(
                    lambda: self._capture_baselines(client, pools, targets), cancel, "baseline capture"
                )

                await self.branch_switcher.switch(branch)
                pipeline = self._pipeline(
                    client, pools, PreloadedBaseline(baselines), comparison_url=lambda u: u
                )
                await pipeline.run(targets, cancel)
            return self._finish()

    async def _capture_baselines(
        self, client: ScreenshotClient, pools: ConcurrencyPools, targets: List[PageTarget]
    ) -> Dict[str, ScreenshotArtifact]:
        async def one(target: PageTarget) -> ScreenshotArtifact:
            async with pools.capture:
                return await client.capture(target.url)

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = {t.url: tg.create_task(one(t)) for t in targets}
        except BaseExceptionGroup as group:
            first = group.exceptions[0]
            raise RunAbortedError(f"Baseline capture failed: {error_message(first)}") from first
        return {url: task.result() for url, task in tasks.items()}


# --------------------------------------------------------------------------- #
# Module-level entry points used by the CLI                                   #
# --------------------------------------------------------------------------- #


async def compare_sitemap(cfg: DiffConfig, cancel: Optional[asyncio.Event] = None) -> RunSummary:
    return await Engine(cfg).compare_sitemap(cancel)


async def compare_urls(cfg: DiffConfig, url1: str, url2: str, cancel: Optional[asyncio.Event] = None) -> RunSummary:
    return await Engine(cfg).compare_urls(url1, url2, cancel)


async def take_screenshots(cfg: DiffConfig, cancel: Optional[asyncio.Event] = None) -> RunSummary:
    return await Engine(cfg).take_screenshots(cancel)


async def compare_branches(
    cfg: DiffConfig, url: str, branch: str, cancel: Optional[asyncio.Event] = None
) -> RunSummary:
    return await Engine(cfg).compare_branches(url, branch, cancel)


def run_flow(flow: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Запускает сценарий в новом цикле событий; SIGINT переводит запуск в режим отмены."""

    async def _runner() -> T:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = False
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(signal.SIGINT, cancel.set)
            installed = True
        try:
            return await flow(cancel)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_runner())
