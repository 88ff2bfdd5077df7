# File: tests/test_pipeline.py
from __future__ import annotations

import asyncio
import json
from typing import Dict, Optional, Set

import pytest
from site_diff.cache import ScreenshotCache
from site_diff.crawler.models import PageTarget, ScreenshotArtifact
from site_diff.diff import DiffEngine
from site_diff.errors import RunAbortedError, ScreenshotError
from site_diff.pipeline import (
    CachedBaseline,
    ComparisonPipeline,
    ConcurrencyPools,
    PipelineOptions,
    PreloadedBaseline,
    ProgressTracker,
    RunLayout,
)
from site_diff.report.reporter import Outcome, RunReporter
from site_diff.utils import url_to_filename

from tests.conftest import make_png

WHITE = make_png()
CHANGED = make_png(pixels={(2, 2): (0, 0, 0), (3, 3): (0, 0, 0)})


class FakeClient:
    """Stands in for ScreenshotClient: serves PNG bytes per URL."""

    def __init__(
        self,
        images: Optional[Dict[str, bytes]] = None,
        failing: Optional[Set[str]] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.images = images or {}
        self.failing = failing or set()
        self.delay = delay
        self.gate = gate
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def capture(self, url: str) -> ScreenshotArtifact:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if url in self.failing:
                raise ScreenshotError("Failed to take screenshot: 500 Internal Server Error", 500)
            return ScreenshotArtifact(url=url, content=self.images.get(url, WHITE))
        finally:
            self.active -= 1


def build_pipeline(tmp_path, client, baseline=None, pools=None, diff_engine=None, **options):
    pools = pools or ConcurrencyPools.create(4, 2, 2)
    layout = RunLayout.create(tmp_path, "test")
    reporter = RunReporter(layout.error_log)
    pipeline = ComparisonPipeline(
        client,
        baseline or CachedBaseline(client, pools),
        diff_engine or DiffEngine(),
        reporter,
        pools,
        layout,
        PipelineOptions(**options),
    )
    return pipeline, reporter, layout


def targets(*urls: str):
    return [PageTarget(u) for u in urls]


@pytest.mark.asyncio()
async def test_outcomes_and_failure_isolation(tmp_path):
    client = FakeClient(
        images={"https://preview.test/b": CHANGED},
        failing={"https://prod.test/c"},
    )
    pipeline, reporter, layout = build_pipeline(tmp_path, client, preview_domain="preview.test")
    outcomes = await pipeline.run(targets("https://prod.test/a", "https://prod.test/b", "https://prod.test/c"))

    by_url = {o.url: o for o in outcomes}
    assert by_url["https://prod.test/a"].status == Outcome.UNCHANGED
    assert by_url["https://prod.test/a"].diff_pixels == 0
    assert by_url["https://prod.test/b"].status == Outcome.CHANGED
    assert by_url["https://prod.test/b"].diff_pixels == 2
    assert by_url["https://prod.test/c"].status == Outcome.FAILED

    key = url_to_filename("https://prod.test/b")
    assert layout.before_path(key).exists()
    assert layout.after_path(key).exists()
    assert layout.diff_path(key).exists()
    assert not layout.diff_path(url_to_filename("https://prod.test/a")).exists()

    summary = reporter.finalize(layout.root)
    assert (summary.processed, summary.with_changes, summary.unchanged, summary.failed) == (3, 1, 1, 1)
    assert summary.by_kind == {"ScreenshotFailure": 1}

    lines = layout.error_log.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["url"] == "https://prod.test/c"


class CountingDiffEngine(DiffEngine):
    def __init__(self) -> None:
        super().__init__()
        self.normalized = 0

    def normalize(self, image_a, image_b, allow_resize=True):
        self.normalized += 1
        return super().normalize(image_a, image_b, allow_resize)


@pytest.mark.asyncio()
async def test_changed_target_is_decoded_once(tmp_path):
    client = FakeClient(images={"https://preview.test/b": CHANGED})
    diff_engine = CountingDiffEngine()
    pipeline, _, layout = build_pipeline(
        tmp_path, client, diff_engine=diff_engine, preview_domain="preview.test"
    )
    (outcome,) = await pipeline.run(targets("https://prod.test/b"))
    assert outcome.status == Outcome.CHANGED
    assert outcome.diff_path == layout.diff_path(url_to_filename("https://prod.test/b"))
    assert outcome.diff_path.exists()
    assert diff_engine.normalized == 1


@pytest.mark.asyncio()
async def test_comparison_side_uses_preview_domain(tmp_path):
    client = FakeClient()
    pipeline, _, _ = build_pipeline(tmp_path, client, preview_domain="https://preview.test")
    await pipeline.run(targets("https://prod.test/page?x=1"))
    assert client.calls == ["https://prod.test/page?x=1", "https://preview.test/page?x=1"]


@pytest.mark.asyncio()
async def test_empty_targets_abort(tmp_path):
    pipeline, _, _ = build_pipeline(tmp_path, FakeClient())
    with pytest.raises(RunAbortedError):
        await pipeline.run([])


@pytest.mark.asyncio()
async def test_capture_pool_bounds_concurrency(tmp_path):
    client = FakeClient(delay=0.02)
    pools = ConcurrencyPools.create(2, 1, 1)
    pipeline, reporter, _ = build_pipeline(tmp_path, client, pools=pools)
    urls = [f"https://prod.test/{i}" for i in range(8)]
    outcomes = await pipeline.run(targets(*urls))
    assert len(outcomes) == 8
    assert client.max_active <= 2
    assert reporter.counts[Outcome.UNCHANGED] == 8


@pytest.mark.asyncio()
async def test_cancellation_skips_pending_and_aborts_stragglers(tmp_path):
    gate = asyncio.Event()
    client = FakeClient(gate=gate)
    pools = ConcurrencyPools.create(1, 1, 1)
    baseline = PreloadedBaseline(
        {f"https://prod.test/{i}": ScreenshotArtifact(f"https://prod.test/{i}", WHITE) for i in range(5)}
    )
    pipeline, reporter, _ = build_pipeline(tmp_path, client, baseline=baseline, pools=pools, grace_period=0.05)
    cancel = asyncio.Event()

    async def cancel_soon():
        await asyncio.sleep(0.05)
        cancel.set()

    canceller = asyncio.create_task(cancel_soon())
    outcomes = await pipeline.run(targets(*baseline.artifacts), cancel)
    await canceller

    assert len(outcomes) == 5
    assert all(o.status == Outcome.SKIPPED for o in outcomes)
    assert sum(1 for o in outcomes if o.error == "cancelled") == 3
    summary = reporter.finalize()
    assert summary.skipped == 5
    assert summary.processed == 0


@pytest.mark.asyncio()
async def test_cancel_before_start_skips_everything(tmp_path):
    client = FakeClient()
    pipeline, reporter, _ = build_pipeline(tmp_path, client)
    cancel = asyncio.Event()
    cancel.set()
    outcomes = await pipeline.run(targets("https://prod.test/a", "https://prod.test/b"), cancel)
    assert [o.status for o in outcomes] == [Outcome.SKIPPED, Outcome.SKIPPED]
    assert client.calls == []
    assert reporter.counts == {Outcome.SKIPPED: 2}


@pytest.mark.asyncio()
async def test_missing_preloaded_baseline_is_a_failure(tmp_path):
    client = FakeClient()
    pipeline, reporter, _ = build_pipeline(tmp_path, client, baseline=PreloadedBaseline({}))
    outcomes = await pipeline.run(targets("https://prod.test/a"))
    assert outcomes[0].status == Outcome.FAILED
    assert "No baseline screenshot found" in outcomes[0].error
    assert reporter.finalize().failed == 1


@pytest.mark.asyncio()
async def test_size_mismatch_without_resize_is_a_comparison_failure(tmp_path):
    client = FakeClient(images={"https://preview.test/a": make_png(size=(20, 30))})
    pipeline, reporter, _ = build_pipeline(
        tmp_path, client, preview_domain="preview.test", allow_resize=False
    )
    outcomes = await pipeline.run(targets("https://prod.test/a"))
    assert outcomes[0].status == Outcome.FAILED
    assert reporter.finalize().by_kind == {"ComparisonError": 1}


@pytest.mark.asyncio()
async def test_cached_baseline_captures_once(tmp_path):
    client = FakeClient()
    pools = ConcurrencyPools.create(1, 1, 1)
    cache = ScreenshotCache(tmp_path / "cache", ttl=60)
    baseline = CachedBaseline(client, pools, cache)

    first = await baseline.get(PageTarget("https://prod.test/a"))
    second = await baseline.get(PageTarget("https://prod.test/a"))
    assert client.calls == ["https://prod.test/a"]
    assert not first.from_cache
    assert second.from_cache
    assert second.content == first.content


@pytest.mark.asyncio()
async def test_snapshot_writes_one_file_per_target(tmp_path):
    client = FakeClient(failing={"https://prod.test/bad"})
    pipeline, reporter, layout = build_pipeline(tmp_path, client)
    outcomes = await pipeline.snapshot(targets("https://prod.test/a", "https://prod.test/bad"))
    statuses = {o.url: o.status for o in outcomes}
    assert statuses == {"https://prod.test/a": Outcome.UNCHANGED, "https://prod.test/bad": Outcome.FAILED}
    assert layout.snapshot_path(url_to_filename("https://prod.test/a")).read_bytes() == WHITE
    assert reporter.finalize().failed == 1


def test_progress_cadence():
    now = [0.0]
    tracker = ProgressTracker(25, every=10, clock=lambda: now[0])
    lines = []
    for _ in range(25):
        now[0] += 1.0
        lines.append(tracker.tick())
    reported = [i + 1 for i, line in enumerate(lines) if line]
    assert reported == [10, 20, 25]
    assert lines[9].startswith("Progress: 10/25 (40.0%)")
    assert "1.00 targets/s" in lines[9]
    assert "ETA 15s" in lines[9]


def test_pools_reject_zero():
    with pytest.raises(ValueError):
        ConcurrencyPools.create(0, 1, 1)


def test_pools_from_config(basic_config):
    pools = ConcurrencyPools.from_config(basic_config)
    assert pools.limits == {"capture": 4, "compare": 2, "file_io": 2}
    assert pools.total == 8
