# === FILE: site_diff/pipeline.py ===
"""
Concurrency-bounded comparison pipeline.

Each target goes through: baseline (cache or capture) → fresh capture of the
comparison side → both screenshots written to disk → pixel comparison → diff
artifact when pixels differ. Capture, comparison and file I/O are gated by
three independent semaphores owned by the run, so a slow capture service
cannot starve local comparison work and vice versa.

A failure is contained to its own target: it is classified, recorded by the
:class:`~site_diff.report.reporter.RunReporter` and the remaining targets keep
running.
"""
from __future__ import annotations

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Protocol, Sequence

from site_diff.cache import ScreenshotCache, cache_key
from site_diff.capture.screenshot import ScreenshotClient
from site_diff.crawler.models import PageTarget, ScreenshotArtifact
from site_diff.diff.engine import DiffEngine
from site_diff.errors import RunAbortedError
from site_diff.logger import get_logger
from site_diff.report.reporter import Outcome, RunReporter
from site_diff.retry import error_message
from site_diff.utils import ensure_dir, run_directory_name, transform_url, url_to_filename

__all__ = (
    "ConcurrencyPools",
    "RunLayout",
    "PipelineOptions",
    "TargetOutcome",
    "BaselineSource",
    "CachedBaseline",
    "PreloadedBaseline",
    "ProgressTracker",
    "ComparisonPipeline",
)

log = get_logger("pipeline")


@dataclass(slots=True)
class ConcurrencyPools:
    """Three independent concurrency ceilings for one run."""

    capture: asyncio.Semaphore
    compare: asyncio.Semaphore
    file_io: asyncio.Semaphore
    limits: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def create(cls, capture: int, compare: int, file_io: int) -> ConcurrencyPools:
        for name, value in (("capture", capture), ("compare", compare), ("file_io", file_io)):
            if value < 1:
                raise ValueError(f"{name} concurrency must be >= 1")
        return cls(
            capture=asyncio.Semaphore(capture),
            compare=asyncio.Semaphore(compare),
            file_io=asyncio.Semaphore(file_io),
            limits={"capture": capture, "compare": compare, "file_io": file_io},
        )

    @classmethod
    def from_config(cls, config) -> ConcurrencyPools:
        return cls.create(config.capture_concurrency, config.compare_concurrency, config.file_io_concurrency)

    @property
    def total(self) -> int:
        return sum(self.limits.values())


@dataclass(frozen=True, slots=True)
class RunLayout:
    """Per-run output directory: screenshots/, changes/, error log and reports."""

    root: Path

    @classmethod
    def create(cls, output_dir: Path | str, run_name: Optional[str] = None) -> RunLayout:
        layout = cls(Path(output_dir) / run_directory_name(run_name))
        ensure_dir(layout.screenshots_dir)
        ensure_dir(layout.changes_dir)
        return layout

    @property
    def screenshots_dir(self) -> Path:
        return self.root / "screenshots"

    @property
    def changes_dir(self) -> Path:
        return self.root / "changes"

    @property
    def error_log(self) -> Path:
        return self.root / "errors.jsonl"

    @property
    def run_log(self) -> Path:
        return self.root / "run.log"

    @property
    def summary_json(self) -> Path:
        return self.root / "summary.json"

    @property
    def report_html(self) -> Path:
        return self.root / "report.html"

    def before_path(self, key: str) -> Path:
        return self.screenshots_dir / f"{key}_before.png"

    def after_path(self, key: str) -> Path:
        return self.screenshots_dir / f"{key}_after.png"

    def snapshot_path(self, key: str) -> Path:
        return self.screenshots_dir / f"{key}.png"

    def diff_path(self, key: str) -> Path:
        return self.changes_dir / f"{key}_diff.png"


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    allow_resize: bool = True
    grace_period: float = 10.0
    progress_every: int = 10
    preview_domain: Optional[str] = None


@dataclass(slots=True)
class TargetOutcome:
    url: str
    status: str
    diff_pixels: Optional[int] = None
    before_path: Optional[Path] = None
    after_path: Optional[Path] = None
    diff_path: Optional[Path] = None
    error: Optional[str] = None


class BaselineSource(Protocol):
    async def get(self, target: PageTarget) -> ScreenshotArtifact: ...


class CachedBaseline:
    """Baseline from the on-disk cache, captured (and cached) on a miss."""

    def __init__(
        self,
        client: ScreenshotClient,
        pools: ConcurrencyPools,
        cache: Optional[ScreenshotCache] = None,
    ) -> None:
        self.client = client
        self.pools = pools
        self.cache = cache

    async def get(self, target: PageTarget) -> ScreenshotArtifact:
        key = cache_key(target.url)
        if self.cache is not None:
            async with self.pools.file_io:
                cached = await self.cache.get(key)
            if cached is not None:
                log.debug("Baseline cache hit for %s", target.url)
                return ScreenshotArtifact(url=target.url, content=cached, from_cache=True)

        async with self.pools.capture:
            artifact = await self.client.capture(target.url)

        if self.cache is not None:
            try:
                async with self.pools.file_io:
                    await self.cache.put(key, artifact.content)
            except OSError as exc:
                log.warning("Cannot cache baseline for %s: %s", target.url, exc)
        return artifact


class PreloadedBaseline:
    """Baselines captured up front, e.g. before switching branches."""

    def __init__(self, artifacts: Mapping[str, ScreenshotArtifact]) -> None:
        self.artifacts = dict(artifacts)

    async def get(self, target: PageTarget) -> ScreenshotArtifact:
        try:
            return self.artifacts[target.url]
        except KeyError:
            raise LookupError(f"No baseline screenshot found for {target.url}") from None


class ProgressTracker:
    """Logs throughput and ETA every *every* completions and on the last one."""

    def __init__(self, total: int, every: int = 10, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.total = total
        self.every = max(1, every)
        self.done = 0
        self._clock = clock
        self._start = clock()

    def tick(self) -> Optional[str]:
        self.done += 1
        if self.done % self.every and self.done != self.total:
            return None
        elapsed = max(self._clock() - self._start, 1e-9)
        rate = self.done / elapsed
        remaining = max(self.total - self.done, 0)
        eta = remaining / rate if rate else 0.0
        line = (
            f"Progress: {self.done}/{self.total} ({100.0 * self.done / max(self.total, 1):.1f}%) "
            f"- {rate:.2f} targets/s - ETA {eta:.0f}s"
        )
        log.info(line)
        return line


def _write_bytes(path: Path, content: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(content)
    os.replace(tmp, path)
    return path


class ComparisonPipeline:
    """Runs the per-target steps for a whole URL list under bounded concurrency."""

    def __init__(
        self,
        client: ScreenshotClient,
        baseline: BaselineSource,
        diff_engine: DiffEngine,
        reporter: RunReporter,
        pools: ConcurrencyPools,
        layout: RunLayout,
        options: PipelineOptions | None = None,
        *,
        comparison_url: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.client = client
        self.baseline = baseline
        self.diff_engine = diff_engine
        self.reporter = reporter
        self.pools = pools
        self.layout = layout
        self.options = options or PipelineOptions()
        self._comparison_url = comparison_url or (lambda url: transform_url(url, self.options.preview_domain))
        self._progress: Optional[ProgressTracker] = None

    # ------------------------------------------------------------------ #
    # scheduling                                                         #
    # ------------------------------------------------------------------ #

    async def run(
        self, targets: Sequence[PageTarget], cancel: Optional[asyncio.Event] = None
    ) -> List[TargetOutcome]:
        """Compare every target; per-target failures never abort the run."""
        return await self._schedule(targets, self.process, cancel)

    async def snapshot(
        self, targets: Sequence[PageTarget], cancel: Optional[asyncio.Event] = None
    ) -> List[TargetOutcome]:
        """Capture and save every target without comparing."""
        return await self._schedule(targets, self.capture_only, cancel)

    async def _schedule(
        self,
        targets: Sequence[PageTarget],
        worker: Callable[[PageTarget], Awaitable[TargetOutcome]],
        cancel: Optional[asyncio.Event],
    ) -> List[TargetOutcome]:
        if not targets:
            raise RunAbortedError("No targets to process.")
        cancel = cancel or asyncio.Event()
        self._progress = ProgressTracker(len(targets), self.options.progress_every)
        max_in_flight = max(1, self.pools.total)
        log.info(
            "Processing %d targets (capture=%s, compare=%s, file_io=%s)",
            len(targets),
            self.pools.limits.get("capture"),
            self.pools.limits.get("compare"),
            self.pools.limits.get("file_io"),
        )

        queue: Deque[PageTarget] = deque(targets)
        in_flight: Dict[asyncio.Task[TargetOutcome], PageTarget] = {}
        outcomes: List[TargetOutcome] = []
        cancel_waiter = asyncio.create_task(cancel.wait())

        async def wait_some() -> None:
            done, _ = await asyncio.wait(
                set(in_flight) | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if task is not cancel_waiter:
                    in_flight.pop(task)
                    outcomes.append(task.result())

        try:
            while queue and not cancel.is_set():
                if len(in_flight) < max_in_flight:
                    target = queue.popleft()
                    in_flight[asyncio.create_task(worker(target))] = target
                else:
                    await wait_some()

            while in_flight and not cancel.is_set():
                await wait_some()

            if queue:
                log.warning("Cancellation requested: %d targets not started", len(queue))
            for target in queue:
                self.reporter.record_outcome(target.url, Outcome.SKIPPED)
                outcomes.append(TargetOutcome(target.url, Outcome.SKIPPED))

            if in_flight:
                done, pending = await asyncio.wait(set(in_flight), timeout=self.options.grace_period)
                outcomes.extend(task.result() for task in done)
                if pending:
                    log.warning("Aborting %d in-flight targets after grace period", len(pending))
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for task in pending:
                        url = in_flight[task].url
                        self.reporter.record_outcome(url, Outcome.SKIPPED)
                        outcomes.append(TargetOutcome(url, Outcome.SKIPPED, error="cancelled"))
        finally:
            cancel_waiter.cancel()
        return outcomes

    async def process(self, target: PageTarget) -> TargetOutcome:
        key = url_to_filename(target.url)
        try:
            baseline = await self.baseline.get(target)
            after_url = self._comparison_url(target.url)
            async with self.pools.capture:
                current = await self.client.capture(after_url)

            before_path = self.layout.before_path(key)
            after_path = self.layout.after_path(key)
            async with self.pools.file_io:
                await asyncio.gather(
                    asyncio.to_thread(_write_bytes, before_path, baseline.content),
                    asyncio.to_thread(_write_bytes, after_path, current.content),
                )

            async with self.pools.compare:
                result = await asyncio.to_thread(
                    self.diff_engine.measure, baseline.content, current.content, self.options.allow_resize
                )
            diff_pixels = result.diff_pixels

            outcome = TargetOutcome(
                target.url,
                Outcome.UNCHANGED,
                diff_pixels=diff_pixels,
                before_path=before_path,
                after_path=after_path,
            )
            if diff_pixels > 0:
                async with self.pools.compare:
                    composite = await asyncio.to_thread(self.diff_engine.compose, result)
                diff_path = self.layout.diff_path(key)
                async with self.pools.file_io:
                    await asyncio.to_thread(composite.save, diff_path, "PNG")
                outcome.status = Outcome.CHANGED
                outcome.diff_path = diff_path
                log.debug("Visual changes for %s: %d pixels different", target.url, diff_pixels)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failed(target, exc)

        self.reporter.record_outcome(target.url, outcome.status)
        self._tick()
        return outcome

    async def capture_only(self, target: PageTarget) -> TargetOutcome:
        key = url_to_filename(target.url)
        try:
            async with self.pools.capture:
                artifact = await self.client.capture(target.url)
            path = self.layout.snapshot_path(key)
            async with self.pools.file_io:
                await asyncio.to_thread(_write_bytes, path, artifact.content)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failed(target, exc)
        self.reporter.record_outcome(target.url, Outcome.UNCHANGED)
        self._tick()
        return TargetOutcome(target.url, Outcome.UNCHANGED, after_path=path)

    def _failed(self, target: PageTarget, exc: BaseException) -> TargetOutcome:
        record = self.reporter.record_failure(target.url, exc)
        log.debug("Target %s failed [%s]: %s", target.url, record.kind.value, error_message(exc))
        self._tick()
        return TargetOutcome(target.url, Outcome.FAILED, error=record.message)

    def _tick(self) -> None:
        if self._progress is not None:
            self._progress.tick()
