# File: tests/conftest.py
from __future__ import annotations

from collections.abc import AsyncIterator
from io import BytesIO
from pathlib import Path
from typing import Dict, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from PIL import Image

from site_diff.config import DiffConfig

Colour = Tuple[int, int, int]


def make_png(
    size: Tuple[int, int] = (20, 10),
    colour: Colour = (255, 255, 255),
    pixels: Optional[Dict[Tuple[int, int], Colour]] = None,
) -> bytes:
    """Build a solid-colour PNG, optionally with individual pixels changed."""
    img = Image.new("RGB", size, colour)
    for xy, value in (pixels or {}).items():
        img.putpixel(xy, value)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def urlset(*locs: str) -> str:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'
    )


def sitemap_index(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'
    )


async def serve_app(app: web.Application, port: int) -> AsyncIterator[str]:
    """Start *app* on *port*, yield base URL, ensure cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "localhost", port)
    await site.start()
    try:
        yield f"http://localhost:{port}"
    finally:
        await runner.cleanup()


class FakeScreenshotService:
    """Browserless-like ``POST /screenshot`` that renders a PNG per requested URL."""

    def __init__(self) -> None:
        self.images: Dict[str, bytes] = {}
        self.default: bytes = make_png()
        self.failures: Dict[str, int] = {}
        self.status_on_failure = 500
        self.requests: list[dict] = []
        self.tokens: list[Optional[str]] = []

    def fail(self, url: str, times: int = 10_000) -> None:
        self.failures[url] = times

    async def handle(self, request: web.Request) -> web.Response:
        payload = await request.json()
        self.requests.append(payload)
        self.tokens.append(request.query.get("token"))
        url = payload["url"]
        remaining = self.failures.get(url, 0)
        if remaining > 0:
            self.failures[url] = remaining - 1
            return web.Response(status=self.status_on_failure, text="boom")
        return web.Response(body=self.images.get(url, self.default), content_type="image/png")

    def captured(self, url: str) -> int:
        return sum(1 for r in self.requests if r["url"] == url)


@pytest_asyncio.fixture
async def screenshot_service(unused_tcp_port_factory) -> AsyncIterator[Tuple[str, FakeScreenshotService]]:
    service = FakeScreenshotService()
    app = web.Application()
    app.router.add_post("/screenshot", service.handle)
    async for base in serve_app(app, unused_tcp_port_factory()):
        yield base, service


@pytest.fixture()
def basic_config(tmp_path: Path) -> DiffConfig:
    """Return a valid DiffConfig writing everything under tmp_path, with fast retries."""
    return DiffConfig(
        capture_endpoint="http://localhost:1",
        timeout=5.0,
        retries=1,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_jitter=False,
        cache_dir=tmp_path / "cache",
        output_dir=tmp_path / "runs",
        capture_concurrency=4,
        compare_concurrency=2,
        file_io_concurrency=2,
        branch_settle_delay=0,
    )
