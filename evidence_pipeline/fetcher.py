"""Compliance-aware HTTP fetch primitive.

``PoliteFetcher.fetch`` is the only way connectors reach the network:
- robots.txt is consulted per origin (cached with a TTL) before any request
- the source's politeness delay is applied before the first attempt
- a user-agent is drawn from the configured pool for every call
- timeouts, connection errors and anti-bot challenge pages are retried with
  exponential backoff (tenacity); HTTP error statuses are returned as-is
- JSON is detected by content type or sniffed from the body

The method never raises; every failure is encoded in ``RawFetchResult.error``.
"""

import asyncio
import json
import random
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Self
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import GlobalConfig, get_config
from evidence_pipeline.exceptions import (
    AntiBotDetectedError,
    RobotsDisallowedError,
    TransientFetchError,
)
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import RawFetchResult, SourceDescriptor, utc_now

log = get_logger(__name__)

CHALLENGE_MARKERS = (
    "cf-browser-verification",
    "checking your browser",
    "enable javascript and cookies to continue",
    "just a moment...",
    "_cf_chl_opt",
    "cf-spinner",
    "attention required! | cloudflare",
)

CAPTCHA_MARKERS = (
    "g-recaptcha",
    "hcaptcha",
    "cf-turnstile",
    "arkose",
    "captcha",
)

PAYWALL_MARKERS = (
    "subscribe to continue reading",
    "subscribers only",
    "this content is for subscribers",
    "sign in to continue reading",
    "paywall",
)

Sleeper = Callable[[float], Awaitable[None]]


def detect_bot_challenge(body: str) -> str | None:
    """Return the first anti-bot or paywall marker found in ``body``."""
    lowered = body.lower()
    for group, markers in (
        ("challenge", CHALLENGE_MARKERS),
        ("captcha", CAPTCHA_MARKERS),
        ("paywall", PAYWALL_MARKERS),
    ):
        for marker in markers:
            if marker in lowered:
                return f"{group}:{marker}"
    return None


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class RobotsPolicy:
    """Parsed robots.txt rules for one origin."""

    def __init__(
        self,
        parser: RobotFileParser | None = None,
        allow_all: bool = False,
        disallow_all: bool = False,
    ) -> None:
        self._parser = parser
        self.allow_all = allow_all
        self.disallow_all = disallow_all

    @classmethod
    def from_text(cls, text: str) -> "RobotsPolicy":
        parser = RobotFileParser()
        parser.parse(text.splitlines())
        return cls(parser=parser)

    def allows(self, user_agent: str, url: str) -> bool:
        if self.disallow_all:
            return False
        if self.allow_all or self._parser is None:
            return True
        return self._parser.can_fetch(user_agent, url)


class RobotsCache:
    """Origin-keyed robots.txt cache with TTL expiry and a size bound.

    The oldest entry is evicted once ``max_entries`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, RobotsPolicy]] = OrderedDict()

    def get(self, origin: str) -> RobotsPolicy | None:
        entry = self._entries.get(origin)
        if entry is None:
            return None
        expires_at, policy = entry
        if self._clock() >= expires_at:
            del self._entries[origin]
            return None
        return policy

    def put(self, origin: str, policy: RobotsPolicy) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries.pop(origin, None)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[origin] = (self._clock() + self.ttl_seconds, policy)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, origin: object) -> bool:
        return isinstance(origin, str) and self.get(origin) is not None


class PoliteFetcher:
    """HTTP fetcher enforcing robots.txt, politeness pacing and retry discipline.

    Attributes:
        config: GlobalConfig with timeout, retry and user-agent settings.
        robots_cache: Per-origin robots.txt cache owned by this fetcher.

    Example:
        async with PoliteFetcher.create() as fetcher:
            result = await fetcher.fetch(descriptor)
    """

    def __init__(
        self,
        config: GlobalConfig | None = None,
        client: httpx.AsyncClient | None = None,
        robots_cache: RobotsCache | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or get_config()
        self._deadline = self.config.request_timeout_ms / 1000
        self._timeout = httpx.Timeout(self._deadline)
        self._client = client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        self._owns_client = client is None
        self.robots_cache = robots_cache or RobotsCache(
            ttl_seconds=self.config.robots_cache_ttl_sec,
            max_entries=self.config.robots_cache_max_entries,
        )
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    @asynccontextmanager
    async def create(cls, config: GlobalConfig | None = None, **kwargs: Any) -> AsyncGenerator[Self, None]:
        """Yield a fetcher whose HTTP client is closed on exit."""
        instance = cls(config, **kwargs)
        try:
            yield instance
        finally:
            await instance.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def select_user_agent(self) -> str:
        return self._rng.choice(self.config.user_agents)

    async def is_allowed(self, url: str, user_agent: str) -> bool:
        """Check robots.txt for ``url``; failures to read robots.txt allow."""
        origin = _origin(url)
        policy = self.robots_cache.get(origin)
        if policy is None:
            policy = await self._load_robots(origin, user_agent)
        return policy.allows(user_agent, url)

    async def _load_robots(self, origin: str, user_agent: str) -> RobotsPolicy:
        robots_url = f"{origin}/robots.txt"
        try:
            async with asyncio.timeout(self._deadline):
                response = await self._client.get(
                    robots_url, headers={"User-Agent": user_agent}, timeout=self._timeout
                )
        except (httpx.HTTPError, TimeoutError) as exc:
            # Not cached: the next fetch asks again
            log.warning("robots.txt unreachable, allowing fetch", robots_url=robots_url, error=str(exc))
            return RobotsPolicy(allow_all=True)

        status = response.status_code
        if status in (401, 403):
            policy = RobotsPolicy(disallow_all=True)
        elif 400 <= status < 500:
            policy = RobotsPolicy(allow_all=True)
        elif status >= 500:
            log.warning("robots.txt server error, allowing fetch", robots_url=robots_url, status=status)
            return RobotsPolicy(allow_all=True)
        else:
            policy = RobotsPolicy.from_text(response.text)

        self.robots_cache.put(origin, policy)
        log.debug("robots.txt loaded", robots_url=robots_url, status=status)
        return policy

    async def _attempt(self, url: str, user_agent: str) -> httpx.Response:
        # httpx timeouts are per phase; the deadline bounds the whole exchange
        try:
            async with asyncio.timeout(self._deadline):
                response = await self._client.get(
                    url,
                    headers={
                        "User-Agent": user_agent,
                        "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
                    },
                    timeout=self._timeout,
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise TransientFetchError(
                url, f"timeout after {self._deadline}s ({type(exc).__name__})"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(url, f"{type(exc).__name__}: {exc}") from exc

        if response.is_success and not _is_json_content_type(response):
            marker = detect_bot_challenge(response.text)
            if marker is not None:
                raise AntiBotDetectedError(url, marker)
        return response

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "Fetch attempt failed, backing off",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=getattr(exc, "message", str(exc)),
        )

    async def fetch(self, descriptor: SourceDescriptor) -> RawFetchResult:
        """Fetch a source's URL under the compliance and retry contract.

        Args:
            descriptor: Source to fetch; supplies URL and politeness delay.

        Returns:
            RawFetchResult. Robots disallow yields status 403, exhausted
            retries yield status 0, HTTP errors carry their status.
        """
        url = descriptor.url
        user_agent = self.select_user_agent()
        fetched_at = utc_now()

        try:
            if not await self.is_allowed(url, user_agent):
                blocked = RobotsDisallowedError(url, user_agent)
                log.warning("Fetch blocked by robots.txt", source_id=descriptor.id, url=url)
                return RawFetchResult(
                    url=url,
                    fetched_at=fetched_at,
                    status_code=403,
                    error=blocked.message,
                    attempts=0,
                    user_agent=user_agent,
                )

            delay_ms = descriptor.request_delay_ms
            if delay_ms is None:
                delay_ms = self.config.default_request_delay_ms
            if delay_ms > 0:
                await self._sleep(delay_ms / 1000)

            max_attempts = self.config.retry_max_attempts
            attempts = 0
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(
                    multiplier=self.config.retry_base_delay_sec,
                    max=self.config.retry_max_delay_sec,
                ),
                retry=retry_if_exception_type((TransientFetchError, AntiBotDetectedError)),
                sleep=self._sleep,
                before_sleep=self._log_retry,
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        fetched_at = utc_now()
                        response = await self._attempt(url, user_agent)
            except (TransientFetchError, AntiBotDetectedError) as exc:
                log.error(
                    "Fetch failed after retries",
                    source_id=descriptor.id,
                    url=url,
                    attempts=attempts,
                    error=exc.message,
                )
                return RawFetchResult(
                    url=url,
                    fetched_at=fetched_at,
                    status_code=0,
                    error=f"Failed after {attempts} attempts: {exc.message}",
                    attempts=attempts,
                    user_agent=user_agent,
                )

            return self._build_result(response, url, fetched_at, attempts, user_agent)

        except Exception as exc:
            log.exception("Unexpected fetch failure", source_id=descriptor.id, url=url)
            return RawFetchResult(
                url=url,
                fetched_at=fetched_at,
                status_code=0,
                error=f"Unexpected fetch failure: {type(exc).__name__}: {exc}",
                user_agent=user_agent,
            )

    def _build_result(
        self,
        response: httpx.Response,
        url: str,
        fetched_at: datetime,
        attempts: int,
        user_agent: str,
    ) -> RawFetchResult:
        text = response.text
        error = None
        if response.status_code >= 400:
            error = f"HTTP {response.status_code} {response.reason_phrase}".strip()
            log.warning("HTTP error status", url=url, status=response.status_code)

        body_json = None
        if _is_json_content_type(response) or text.lstrip().startswith(("{", "[")):
            try:
                body_json = json.loads(text)
            except json.JSONDecodeError:
                body_json = None

        log.info(
            "Fetch complete",
            url=url,
            status=response.status_code,
            attempts=attempts,
            json=body_json is not None,
            bytes=len(text),
        )
        return RawFetchResult(
            url=url,
            fetched_at=fetched_at,
            status_code=response.status_code,
            body_text=text,
            body_json=body_json,
            error=error,
            attempts=attempts,
            user_agent=user_agent,
        )


def _is_json_content_type(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "").lower()
    return "application/json" in content_type or "+json" in content_type
