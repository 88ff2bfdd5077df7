# File: tests/test_resolver.py
# Sitemap resolution against a local aiohttp server
from __future__ import annotations

import gzip
from collections import Counter
from typing import Dict, Tuple, Union

import pytest
from aiohttp import web
from site_diff.crawler.models import SitemapNodeState
from site_diff.crawler.resolver import ResolverOptions, SitemapResolver, resolve_sitemap
from site_diff.errors import SitemapFetchError, SitemapParseError
from site_diff.retry import RetryOptions

from tests.conftest import serve_app, sitemap_index, urlset

Route = Union[str, bytes, Tuple[int, str]]

FAST_RETRY = RetryOptions(retries=1, base_delay=0.01, max_delay=0.02, jitter=False)


def build_app(routes: Dict[str, Route], hits: Counter) -> web.Application:
    """Serve *routes*; ``{base}`` in string bodies is replaced by the server origin."""
    app = web.Application()

    def make_handler(path: str, route: Route):
        async def handler(request: web.Request) -> web.Response:
            hits[path] += 1
            base = str(request.url.origin())
            if isinstance(route, tuple):
                status, text = route
                return web.Response(status=status, text=text)
            if isinstance(route, bytes):
                return web.Response(body=route, content_type="application/octet-stream")
            return web.Response(text=route.replace("{base}", base), content_type="application/xml")

        return handler

    for path, route in routes.items():
        app.router.add_get(path, make_handler(path, route))
    return app


async def resolve(routes: Dict[str, Route], port: int, root: str = "/sitemap.xml", **opts):
    hits: Counter = Counter()
    options = ResolverOptions(timeout=5.0, retry=FAST_RETRY, **opts)
    async for base in serve_app(build_app(routes, hits), port):
        async with SitemapResolver(options) as resolver:
            targets = await resolver.resolve(base + root)
    return base, [t.url for t in targets], resolver, hits


@pytest.mark.asyncio()
async def test_plain_urlset(unused_tcp_port: int):
    routes = {"/sitemap.xml": urlset("{base}/a", "{base}/b")}
    base, urls, resolver, _ = await resolve(routes, unused_tcp_port)
    assert urls == [f"{base}/a", f"{base}/b"]
    assert resolver.states[f"{base}/sitemap.xml"] is SitemapNodeState.PARSED_AS_URLSET
    assert resolver.failures == []


@pytest.mark.asyncio()
async def test_index_with_overlapping_children_is_deduplicated(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/s1.xml", "{base}/s2.xml", "{base}/s3.xml"),
        "/s1.xml": urlset("{base}/a", "{base}/b"),
        "/s2.xml": urlset("{base}/b", "{base}/c"),
        "/s3.xml": urlset("{base}/a", "{base}/c", "{base}/d"),
    }
    base, urls, resolver, _ = await resolve(routes, unused_tcp_port)
    assert urls == [f"{base}/{p}" for p in "abcd"]
    assert resolver.states[f"{base}/sitemap.xml"] is SitemapNodeState.PARSED_AS_INDEX


@pytest.mark.asyncio()
async def test_cycle_between_indexes_terminates(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/b.xml"),
        "/b.xml": sitemap_index("{base}/sitemap.xml", "{base}/pages.xml"),
        "/pages.xml": urlset("{base}/x"),
    }
    base, urls, _, hits = await resolve(routes, unused_tcp_port)
    assert urls == [f"{base}/x"]
    assert hits == Counter({"/sitemap.xml": 1, "/b.xml": 1, "/pages.xml": 1})


@pytest.mark.asyncio()
async def test_relative_locs_resolve_against_their_sitemap(unused_tcp_port: int):
    routes = {
        "/sitemaps/index.xml": sitemap_index("child.xml"),
        "/sitemaps/child.xml": urlset("page", "/root-page"),
    }
    base, urls, _, _ = await resolve(routes, unused_tcp_port, root="/sitemaps/index.xml")
    assert urls == [f"{base}/sitemaps/page", f"{base}/root-page"]


@pytest.mark.asyncio()
async def test_depth_limit_skips_deeper_sitemaps(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/l1.xml"),
        "/l1.xml": (
            '<?xml version="1.0"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<sitemap><loc>{base}/l2.xml</loc></sitemap></sitemapindex>"
        ),
        "/l2.xml": urlset("{base}/deep"),
    }
    base, urls, resolver, hits = await resolve(routes, unused_tcp_port, max_nested_depth=1)
    assert urls == []
    assert hits["/l2.xml"] == 0
    assert resolver.states[f"{base}/l2.xml"] is SitemapNodeState.SKIPPED_DEPTH


@pytest.mark.asyncio()
async def test_failing_branches_are_isolated(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/good.xml", "{base}/broken.xml", "{base}/garbage.xml",
                                      "{base}/missing.xml"),
        "/good.xml": urlset("{base}/ok"),
        "/broken.xml": (500, "boom"),
        "/garbage.xml": "this is not xml",
    }
    base, urls, resolver, hits = await resolve(routes, unused_tcp_port)
    assert urls == [f"{base}/ok"]
    # one retry for the 500; parse failures are not retried
    assert hits["/broken.xml"] == 2
    assert hits["/garbage.xml"] == 1
    failed = {f.url: f.error for f in resolver.failures}
    assert isinstance(failed[f"{base}/broken.xml"], SitemapFetchError)
    assert isinstance(failed[f"{base}/garbage.xml"], SitemapParseError)
    assert isinstance(failed[f"{base}/missing.xml"], SitemapFetchError)
    assert resolver.states[f"{base}/broken.xml"] is SitemapNodeState.FETCH_FAILED
    assert resolver.states[f"{base}/garbage.xml"] is SitemapNodeState.PARSE_FAILED


@pytest.mark.asyncio()
async def test_root_failure_yields_no_targets(unused_tcp_port: int):
    routes = {"/sitemap.xml": (404, "nope")}
    _, urls, resolver, _ = await resolve(routes, unused_tcp_port)
    assert urls == []
    assert len(resolver.failures) == 1


@pytest.mark.asyncio()
async def test_max_urls_applies_after_dedup_and_filters(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/s1.xml", "{base}/s2.xml"),
        "/s1.xml": urlset("{base}/a", "{base}/file.pdf", "{base}/b"),
        "/s2.xml": urlset("{base}/a", "{base}/b", "{base}/c", "{base}/d"),
    }
    base, urls, _, _ = await resolve(
        routes, unused_tcp_port, max_urls=3, exclude_patterns=(r"\.pdf$",)
    )
    assert urls == [f"{base}/a", f"{base}/b", f"{base}/c"]


@pytest.mark.asyncio()
async def test_nested_sitemaps_not_followed_when_disabled(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/s1.xml"),
        "/s1.xml": urlset("{base}/a"),
    }
    _, urls, _, hits = await resolve(routes, unused_tcp_port, follow_nested=False)
    assert urls == []
    assert hits["/s1.xml"] == 0


@pytest.mark.asyncio()
async def test_gzipped_sitemap(unused_tcp_port: int):
    port = unused_tcp_port
    body = gzip.compress(urlset(f"http://localhost:{port}/zipped").encode("utf-8"))
    routes = {"/sitemap.xml.gz": body}
    _, urls, _, _ = await resolve(routes, port, root="/sitemap.xml.gz")
    assert urls == [f"http://localhost:{port}/zipped"]


@pytest.mark.asyncio()
async def test_resolution_is_repeatable(unused_tcp_port: int):
    routes = {
        "/sitemap.xml": sitemap_index("{base}/s1.xml"),
        "/s1.xml": urlset("{base}/a", "{base}/b"),
    }
    hits: Counter = Counter()
    options = ResolverOptions(timeout=5.0, retry=FAST_RETRY)
    async for base in serve_app(build_app(routes, hits), unused_tcp_port):
        first = await resolve_sitemap(base + "/sitemap.xml", options)
        second = await resolve_sitemap(base + "/sitemap.xml", options)
    assert first == second
    assert [t.sitemap for t in first] == [f"{base}/s1.xml"] * 2
