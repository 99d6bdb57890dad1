"""URL context for the first agent turn.

URLs in the user's request are fetched in parallel before the agent runs.
Each fetch has its own timeout and degrades to "no context" on any
failure, so a slow or broken site never stalls a run.
"""

import asyncio
import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

import httpx
import structlog
import trafilatura

from config import settings

logger = structlog.get_logger()

URL_RE = re.compile(r"(https?://[^\s\]\)\"'<>]+)", re.IGNORECASE)

MAX_CONTEXT_CHARS = 20_000
USER_AGENT = "codegen-orchestrator/0.1 (+context-fetcher)"


@dataclass
class FetchedContent:
    """Text extracted from one URL.

    Attributes:
        url: The fetched URL
        content: Visible page text, truncated
        screenshots: Preview image URLs advertised by the page
    """

    url: str
    content: str
    screenshots: list[str] = field(default_factory=list)

    def as_message(self) -> dict[str, str]:
        return {"role": "user", "content": f"Crawled context from {self.url}:\n{self.content}"}


def extract_urls(text: str, limit: int | None = None) -> list[str]:
    """Extract distinct http(s) URLs in order of appearance.

    Example:
        >>> extract_urls("copy https://a.dev and https://a.dev/x", limit=2)
        ['https://a.dev', 'https://a.dev/x']
    """
    max_urls = limit if limit is not None else settings.max_context_urls
    urls: list[str] = []
    for match in URL_RE.finditer(text or ""):
        url = match.group(1)
        try:
            parsed = urlparse(url)
        except ValueError:
            logger.debug("context_url_unparseable", url=url)
            continue
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        if url not in urls:
            urls.append(url)
        if len(urls) >= max_urls:
            break
    return urls


def html_to_text(html: str) -> tuple[str, list[str]]:
    """Return ``(main text, preview image URLs)`` for an HTML document.

    Pages too small for main-content extraction fall back to their whole
    body text.
    """
    text = trafilatura.extract(html, include_comments=False, include_tables=False)
    if not text:
        text = trafilatura.html2txt(html)
    metadata = trafilatura.extract_metadata(html)
    images = [metadata.image] if metadata is not None and metadata.image else []
    return text or "", images


class ContextFetcher:
    """Fetches request URLs with httpx.

    Usage:
        >>> fetcher = ContextFetcher()
        >>> contexts = await fetcher.fetch_all(extract_urls(request))
    """

    def __init__(
        self,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout or settings.url_fetch_timeout_seconds
        self._client = client

    async def fetch(self, url: str) -> FetchedContent:
        """Fetch one URL and extract its text.

        Raises:
            httpx.HTTPError: On transport failures or non-2xx responses.
            httpx.InvalidURL: If the URL is not an absolute http(s) URL.
            ValueError: If the URL cannot be parsed at all.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise httpx.InvalidURL(f"Unsupported URL: {url}")
        if self._client is not None:
            response = await self._client.get(url)
        else:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                response = await client.get(url)
        response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            text, images = html_to_text(response.text)
        else:
            text, images = response.text, []

        return FetchedContent(
            url=url,
            content=text[:MAX_CONTEXT_CHARS],
            screenshots=[urljoin(url, image) for image in images],
        )

    async def _fetch_with_timeout(self, url: str) -> FetchedContent | None:
        try:
            return await asyncio.wait_for(self.fetch(url), timeout=self.timeout)
        except TimeoutError:
            logger.warning("context_fetch_timeout", url=url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("context_fetch_failed", url=url, error=str(e) or type(e).__name__)
        except (httpx.InvalidURL, ValueError) as e:
            logger.warning("context_url_invalid", url=url, error=str(e))
        return None

    async def fetch_all(self, urls: list[str]) -> list[FetchedContent]:
        """Fetch all URLs in parallel, dropping the ones that fail."""
        if not urls:
            return []
        results = await asyncio.gather(*(self._fetch_with_timeout(url) for url in urls))
        fetched = [result for result in results if result is not None]
        logger.info("context_fetched", requested=len(urls), fetched=len(fetched))
        return fetched
