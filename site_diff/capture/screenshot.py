# site_diff/capture/screenshot.py
"""
Client for a browserless-compatible screenshot service.

The service receives ``POST <endpoint>/screenshot?token=...`` with a JSON body
describing the page and viewport, and answers with PNG bytes.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from site_diff.crawler.models import ScreenshotArtifact
from site_diff.errors import ScreenshotError
from site_diff.logger import get_logger
from site_diff.retry import RetryOptions, with_retry

_LAUNCH_ARGS = {
    "args": [
        "--ignore-certificate-errors",
        "--ignore-certificate-errors-spki-list",
        "--ignore-ssl-errors",
        "--disable-web-security",
    ],
}


@dataclass(frozen=True, slots=True)
class CaptureOptions:
    """Rendering options sent with every capture request."""

    viewport_width: int = 1700
    viewport_height: int = 2000
    full_page: bool = True
    scroll_page: bool = True
    image_type: str = "png"

    def payload(self, url: str) -> Dict[str, Any]:
        return {
            "url": url,
            "options": {"fullPage": self.full_page, "type": self.image_type},
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "scrollPage": self.scroll_page,
        }


class ScreenshotClient:
    """Captures full-page screenshots through the remote service, with retries."""

    _RETRY_ON = (ClientError, asyncio.TimeoutError, ScreenshotError)

    def __init__(
        self,
        session: ClientSession,
        endpoint: str,
        token: Optional[str] = None,
        *,
        options: CaptureOptions | None = None,
        timeout: float = 30.0,
        retry: RetryOptions | None = None,
    ) -> None:
        self.session = session
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.options = options or CaptureOptions()
        self.timeout = timeout
        base = retry or RetryOptions()
        self.retry = RetryOptions(
            retries=base.retries,
            base_delay=base.base_delay,
            max_delay=base.max_delay,
            multiplier=base.multiplier,
            jitter=base.jitter,
            retry_on=self._RETRY_ON,
        )
        self.logger = get_logger("capture")

    @classmethod
    def from_config(cls, session: ClientSession, config) -> ScreenshotClient:
        return cls(
            session,
            str(config.capture_endpoint),
            config.capture_token,
            options=CaptureOptions(
                viewport_width=config.viewport_width,
                viewport_height=config.viewport_height,
            ),
            timeout=config.timeout,
            retry=RetryOptions.from_config(config),
        )

    def _params(self) -> Dict[str, str]:
        params = {"launch": json.dumps(_LAUNCH_ARGS)}
        if self.token:
            params["token"] = self.token
        return params

    async def capture(self, url: str) -> ScreenshotArtifact:
        """Capture *url*; raises the last error once the retry budget is spent."""
        return await with_retry(lambda: self._capture_once(url), self.retry, label=f"screenshot({url})")

    async def _capture_once(self, url: str) -> ScreenshotArtifact:
        async with self.session.post(
            f"{self.endpoint}/screenshot",
            params=self._params(),
            json=self.options.payload(url),
            headers={"Cache-Control": "no-cache"},
            timeout=ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status >= 400:
                raise ScreenshotError(
                    f"Failed to take screenshot: {resp.status} {resp.reason or ''}".rstrip(),
                    status=resp.status,
                )
            content = await resp.read()
        if not content:
            raise ScreenshotError("Failed to take screenshot: empty response body")
        self.logger.debug("Captured %s (%d bytes)", url, len(content))
        return ScreenshotArtifact(url=url, content=content)
