"""Same-site link discovery and budgeted multi-page fetching.

A crawl starts at a source's URL and follows links breadth-first up to
``CrawlSettings.max_depth`` hops, never leaving the seed's host and never
issuing more than ``page_budget`` fetches. Every page goes through the shared
``PoliteFetcher``, so robots.txt, the politeness delay and the retry policy
apply to each one exactly as they do to single-page sources.
"""

import re
from collections import deque
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from evidence_pipeline.fetcher import PoliteFetcher
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import CrawlSettings, RawFetchResult, SourceDescriptor

log = get_logger(__name__)

_SKIPPED_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:")


class CrawlResult(BaseModel):
    """Pages fetched during one crawl, in fetch order."""

    pages: list[RawFetchResult] = Field(default_factory=list)
    failed: list[RawFetchResult] = Field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [f"[{raw.url}] {raw.error or f'HTTP {raw.status_code}'}" for raw in self.failed]


def canonical_url(url: str) -> str:
    """Scheme, host and path only, without a trailing slash."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}".rstrip("/")


def discover_links(html: str, base_url: str, settings: CrawlSettings) -> list[str]:
    """Canonical same-host links found in ``html``, in document order.

    Relative hrefs are resolved against ``base_url``. Query strings and
    fragments are dropped before deduplication, so ``/tiles?page=2`` and
    ``/tiles#top`` both collapse to ``/tiles``.
    """
    host = urlsplit(base_url).hostname
    includes = [re.compile(p, re.IGNORECASE) for p in settings.include_patterns]
    excludes = [re.compile(p, re.IGNORECASE) for p in settings.exclude_patterns]

    seen: set[str] = set()
    links: list[str] = []
    for anchor in BeautifulSoup(html, "html.parser").find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith(_SKIPPED_PREFIXES):
            continue
        try:
            resolved = urlsplit(urljoin(base_url, href))
            hostname = resolved.hostname
        except ValueError:
            continue
        if resolved.scheme not in ("http", "https") or hostname != host:
            continue

        url = canonical_url(resolved.geturl())
        if url in seen:
            continue
        seen.add(url)
        if any(p.search(url) for p in excludes):
            continue
        if includes and not any(p.search(url) for p in includes):
            continue
        links.append(url)
    return links


async def crawl_pages(
    fetcher: PoliteFetcher,
    descriptor: SourceDescriptor,
    settings: CrawlSettings,
) -> CrawlResult:
    """Fetch the descriptor's URL and the same-site pages it links to.

    Args:
        fetcher: Shared fetcher; applies robots.txt and politeness per page.
        descriptor: Source whose URL seeds the crawl.
        settings: Depth, budget and URL filters.

    Returns:
        CrawlResult. The seed page, when it fails, is the first entry of
        ``failed``; failed pages are not expanded.
    """
    result = CrawlResult()
    queue: deque[tuple[str, int]] = deque([(descriptor.url, 0)])
    queued = {canonical_url(descriptor.url)}
    fetches = 0

    while queue and fetches < settings.page_budget:
        url, depth = queue.popleft()
        fetches += 1
        raw = await fetcher.fetch(descriptor.model_copy(update={"url": url}))
        if raw.error or raw.is_hard_failure:
            result.failed.append(raw)
            log.debug("Crawl page failed", source_id=descriptor.id, url=url, error=raw.error)
            continue

        result.pages.append(raw)
        if depth >= settings.max_depth or not raw.body_text or raw.body_json is not None:
            continue
        for link in discover_links(raw.body_text, url, settings):
            if link not in queued:
                queued.add(link)
                queue.append((link, depth + 1))

    log.info(
        "Crawl finished",
        source_id=descriptor.id,
        pages=len(result.pages),
        failed=len(result.failed),
        unvisited=len(queue),
    )
    return result
