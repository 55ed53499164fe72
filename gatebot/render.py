"""Markdown/HTML rendering helpers offered to plugins.

Plugins use these through ``PluginContext.utils`` to answer with an
image instead of long text:

    html = ctx.utils.md2html("# Title")
    png = await ctx.utils.html2img(html)
    png = await ctx.utils.md2img("# Title")

Screenshots are taken with a pooled headless Chromium. The browser is
launched on first use and closed after ``idle_timeout`` seconds without
a render.
"""

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Optional

import structlog
from markdown_it import MarkdownIt
from playwright.async_api import Browser, async_playwright

logger = structlog.get_logger("gatebot.plugins")

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
]

_COMMON_CHROME_PATHS = {
    "win32": [
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
    ],
    "darwin": [
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
    ],
    "linux": [
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
    ],
}

# GitHub-like dark theme
_STYLE = """
body {
  font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
  line-height: 1.6; color: #c9d1d9; padding: 30px; max-width: 800px;
  margin: 0 auto; background: #0d1117;
}
h1, h2, h3, h4, h5, h6 {
  margin-top: 1.2em; margin-bottom: 0.6em; font-weight: 600;
  line-height: 1.25; color: #e6edf3;
}
p { margin-top: 0; margin-bottom: 1em; }
a { color: #58a6ff; text-decoration: none; }
code {
  background-color: #161b22; border-radius: 6px; padding: 0.2em 0.4em;
  font-family: SFMono-Regular, Consolas, "Liberation Mono", Menlo, monospace;
}
pre {
  background-color: #161b22; border-radius: 6px; padding: 16px; overflow: auto;
  font-size: 14px; line-height: 1.45; border: 1px solid #30363d;
}
pre code { background: none; padding: 0; border-radius: 0; }
img { max-width: 100%; border-radius: 6px; }
blockquote {
  border-left: 4px solid #3fb950; padding: 0 1em; color: #8b949e;
  margin-left: 0; background: rgba(56, 139, 253, 0.1);
}
table { border-collapse: collapse; width: 100%; margin-bottom: 16px; border: 1px solid #30363d; }
th, td { border: 1px solid #30363d; padding: 6px 13px; text-align: left; }
th { background-color: #161b22; font-weight: 600; }
"""


def find_chrome(configured: Optional[str] = None) -> Optional[str]:
    """Locate a Chrome/Chromium executable.

    Resolution order: explicit path → ``CHROME_PATH`` env → common
    install locations. Returns None to let Playwright use its own
    bundled Chromium.
    """
    for candidate in (configured, os.environ.get("CHROME_PATH")):
        if candidate and Path(candidate).exists():
            return candidate
    platform = "linux" if sys.platform.startswith("linux") else sys.platform
    for path in _COMMON_CHROME_PATHS.get(platform, []):
        if Path(path).exists():
            return path
    return None


def md2html(markdown_text: str, *, html: bool = True, linkify: bool = True, typographer: bool = True) -> str:
    """Render markdown to a standalone, styled HTML document."""
    options = {"html": html, "linkify": linkify, "typographer": typographer}
    md = MarkdownIt("commonmark", options).enable("table")
    if linkify:
        md.enable("linkify")
    if typographer:
        md.enable(["replacements", "smartquotes"])
    body = md.render(markdown_text)
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        '<meta charset="UTF-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"<style>{_STYLE}</style>\n"
        f"</head>\n<body>\n{body}\n</body>\n</html>\n"
    )


class BrowserPool:
    """Single shared headless browser with idle shutdown."""

    def __init__(self, chrome_path: Optional[str] = None, idle_timeout: float = 30.0):
        self.chrome_path = chrome_path
        self.idle_timeout = idle_timeout
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._last_used = 0.0
        self._launch_lock = asyncio.Lock()
        self._idle_task: Optional[asyncio.Task] = None

    async def get_browser(self) -> Browser:
        self._schedule_idle_close()
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                self._browser = await self._launch()
            self._last_used = time.monotonic()
            return self._browser

    async def _launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        executable = find_chrome(self.chrome_path)
        logger.info("render_browser_launching", executable=executable or "bundled")
        return await self._playwright.chromium.launch(
            executable_path=executable,
            headless=True,
            args=BROWSER_ARGS,
            timeout=30000,
        )

    def _schedule_idle_close(self) -> None:
        if self._idle_task and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = asyncio.get_running_loop().create_task(self._close_when_idle())

    async def _close_when_idle(self) -> None:
        try:
            await asyncio.sleep(self.idle_timeout)
        except asyncio.CancelledError:
            return
        if time.monotonic() - self._last_used >= self.idle_timeout:
            logger.debug("render_browser_idle_close")
            await self._close_browser()

    async def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is not None and browser.is_connected():
            try:
                await browser.close()
            except Exception as e:
                logger.warning("render_browser_close_error", error=str(e))

    async def close(self) -> None:
        """Close the browser and the Playwright driver."""
        if self._idle_task and not self._idle_task.done():
            self._idle_task.cancel()
        await self._close_browser()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class Renderer:
    """Bound set of rendering helpers handed to plugins."""

    def __init__(self, pool: BrowserPool):
        self._pool = pool

    @staticmethod
    def md2html(markdown_text: str, **options) -> str:
        return md2html(markdown_text, **options)

    async def html2img(
        self,
        html_content: str,
        *,
        width: int = 450,
        height: Optional[int] = None,
        image_type: str = "png",
        quality: int = 90,
        full_page: bool = True,
        transparent: bool = False,
        device_scale_factor: float = 2,
        timeout: float = 30000,
        wait_for: float = 0,
    ) -> bytes:
        """Screenshot an HTML document and return the image bytes.

        Raises:
            RuntimeError: If the page could not be rendered.
        """
        browser = await self._pool.get_browser()
        page = await browser.new_page(
            viewport={"width": width, "height": height or 600},
            device_scale_factor=device_scale_factor,
        )
        try:
            await page.set_content(html_content, wait_until="networkidle", timeout=timeout)
            if wait_for > 0:
                await asyncio.sleep(wait_for / 1000)

            options = {
                "type": image_type,
                "omit_background": transparent,
                "full_page": full_page,
                "timeout": timeout,
            }
            if image_type == "jpeg":
                options["quality"] = quality
            if not full_page and height:
                content_height = await page.evaluate(
                    "Math.max(document.body.scrollHeight, document.body.offsetHeight,"
                    " document.documentElement.clientHeight,"
                    " document.documentElement.scrollHeight,"
                    " document.documentElement.offsetHeight)"
                )
                options["clip"] = {"x": 0, "y": 0, "width": width, "height": min(content_height, height)}
            return await page.screenshot(**options)
        except Exception as e:
            raise RuntimeError(f"Screenshot failed: {e}") from e
        finally:
            if not page.is_closed():
                await page.close()

    async def md2img(self, markdown_text: str, md_options: Optional[dict] = None, **img_options) -> bytes:
        """Render markdown straight to image bytes."""
        return await self.html2img(md2html(markdown_text, **(md_options or {})), **img_options)

    async def close(self) -> None:
        await self._pool.close()
