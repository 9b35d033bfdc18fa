from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import aiohttp

from .fetcher_config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    FETCH_BUDGET_SECONDS,
    HDR_ACCEPT,
    HDR_USER_AGENT,
    MAX_ATTEMPTS,
    RETRYABLE_STATUS_FLOOR,
    USER_AGENT,
    WORD_LIMIT,
)
from .fetcher_utils import domain_of, is_http_url
from .extract_utils import Content, extract_content
from .html_normalize import decode_bytes_auto, minimal_text_fix

logger = logging.getLogger(__name__)


class FetchErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"


@dataclass(frozen=True)
class FetchError:
    """Typed failure for a fetch that exhausted its retries or its budget."""

    kind: FetchErrorKind
    message: str
    status: Optional[int] = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class FetchRequest:
    """A single page retrieval, bounded by one wall-clock budget (seconds)."""

    target_url: str
    execution_budget: float = FETCH_BUDGET_SECONDS
    filter_markup: bool = False
    word_limit: int = WORD_LIMIT
    store: bool = False

    def __post_init__(self) -> None:
        if not is_http_url(self.target_url):
            raise ValueError(f"target_url must be an absolute http(s) URL: {self.target_url!r}")
        if self.execution_budget <= 0:
            raise ValueError("execution_budget must be positive")
        if self.word_limit <= 0:
            raise ValueError("word_limit must be positive")

    @property
    def budget_ms(self) -> int:
        return int(round(self.execution_budget * 1000))


@dataclass
class FetchConfig:
    """Retry and header policy shared by every fetch issued through one fetcher."""

    max_attempts: int = MAX_ATTEMPTS
    backoff_base: float = BACKOFF_BASE_SECONDS
    backoff_max: float = BACKOFF_MAX_SECONDS
    # Optional cap on a single attempt; the request budget always applies on top.
    attempt_timeout: Optional[float] = None
    user_agent: str = USER_AGENT
    accept: str = "*/*"

    def backoff_delay(self, attempt_index: int) -> float:
        return min(self.backoff_base * (2 ** attempt_index), self.backoff_max)


@dataclass
class FetchResult:
    """Outcome of one fetch: either raw body bytes or a FetchError."""

    url: str
    domain: str
    status: int = 0
    content_type: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    elapsed_ms: int = 0
    fetched_at: str = ""
    error: Optional[FetchError] = None
    raw_bytes: Optional[bytes] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def text(self) -> str:
        if self.raw_bytes is None:
            return ""
        return minimal_text_fix(decode_bytes_auto(self.raw_bytes, self.headers))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": self.url,
            "domain": self.domain,
            "status": self.status,
            "content_type": self.content_type,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
            "fetched_at": self.fetched_at,
            "body_length": len(self.raw_bytes or b""),
        }
        if self.error is not None:
            payload["error"] = {
                "kind": self.error.kind.value,
                "message": self.error.message,
                "status": self.error.status,
            }
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class _AttemptsExhausted(Exception):
    def __init__(self, error: FetchError) -> None:
        super().__init__(error.message)
        self.error = error


class _BudgetExhausted(Exception):
    pass


@dataclass
class _AttemptTracker:
    attempts: int = 0


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ResilientFetcher:
    """Async GET with sequential retries, exponential backoff and one overall deadline.

    ``fetch`` never raises for network, timeout or HTTP failures; they come back
    as ``FetchResult.error``. Only cancellation by the caller propagates.

    A shared ``aiohttp.ClientSession`` may be injected so many fetches reuse one
    connection pool; otherwise each call opens and closes its own session.
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or FetchConfig()
        if self.config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session = session

    async def fetch(self, request: FetchRequest) -> FetchResult:
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + request.execution_budget
        tracker = _AttemptTracker()
        result = FetchResult(url=request.target_url, domain=domain_of(request.target_url), fetched_at=_utc_now())
        try:
            status, content_type, headers, body = await asyncio.wait_for(
                self._run(request.target_url, deadline, tracker),
                timeout=request.execution_budget,
            )
        except (asyncio.TimeoutError, _BudgetExhausted):
            result.error = FetchError(
                FetchErrorKind.TIMEOUT,
                f"Request timed out after {request.budget_ms}ms",
            )
        except _AttemptsExhausted as exc:
            result.error = exc.error
            result.status = exc.error.status or 0
        else:
            result.status = status
            result.content_type = content_type
            result.headers = headers
            result.raw_bytes = body
        result.attempts = tracker.attempts
        result.elapsed_ms = int((loop.time() - start) * 1000)
        if result.ok:
            logger.info(
                "Successfully fetched content from %s (%d bytes, %d attempt(s))",
                request.target_url,
                len(result.raw_bytes or b""),
                result.attempts,
            )
        else:
            logger.warning(
                "Fetch failed for %s after %d attempt(s): %s",
                request.target_url,
                result.attempts,
                result.error,
            )
        return result

    async def _run(
        self,
        url: str,
        deadline: float,
        tracker: _AttemptTracker,
    ) -> Tuple[int, str, Dict[str, str], bytes]:
        if self._session is not None:
            return await self._fetch_with_retries(self._session, url, deadline, tracker)
        async with aiohttp.ClientSession() as session:
            return await self._fetch_with_retries(session, url, deadline, tracker)

    async def _fetch_with_retries(
        self,
        session: aiohttp.ClientSession,
        url: str,
        deadline: float,
        tracker: _AttemptTracker,
    ) -> Tuple[int, str, Dict[str, str], bytes]:
        loop = asyncio.get_running_loop()
        last_error: Optional[FetchError] = None
        max_attempts = self.config.max_attempts
        for attempt in range(max_attempts):
            tracker.attempts += 1
            try:
                status, content_type, headers, body = await self._fetch_once(session, url)
            except asyncio.TimeoutError:
                last_error = FetchError(FetchErrorKind.TIMEOUT, "Attempt timed out")
            except aiohttp.ClientError as exc:
                last_error = FetchError(FetchErrorKind.NETWORK, f"{type(exc).__name__}: {exc}")
            else:
                if 200 <= status < 300:
                    return status, content_type, headers, body
                last_error = FetchError(
                    FetchErrorKind.HTTP_STATUS,
                    f"HTTP error! status: {status}",
                    status=status,
                )
                if status < RETRYABLE_STATUS_FLOOR:
                    raise _AttemptsExhausted(last_error)
            logger.debug("Attempt %d/%d for %s failed: %s", attempt + 1, max_attempts, url, last_error)
            if attempt == max_attempts - 1:
                break
            delay = self.config.backoff_delay(attempt)
            if delay >= deadline - loop.time():
                raise _BudgetExhausted()
            await asyncio.sleep(delay)
        assert last_error is not None
        raise _AttemptsExhausted(last_error)

    async def _fetch_once(
        self,
        session: aiohttp.ClientSession,
        url: str,
    ) -> Tuple[int, str, Dict[str, str], bytes]:
        request_headers = {
            HDR_USER_AGENT: self.config.user_agent,
            HDR_ACCEPT: self.config.accept,
        }
        async with session.get(
            url,
            headers=request_headers,
            timeout=aiohttp.ClientTimeout(total=self.config.attempt_timeout),
        ) as resp:
            status = resp.status
            content_type = resp.headers.get("Content-Type", "text/html").split(";")[0].strip()
            headers = {key.lower(): value for key, value in resp.headers.items()}
            raw_bytes = await resp.read()
        return status, content_type, headers, raw_bytes


async def fetch_content(
    request: FetchRequest,
    fetcher: Optional[ResilientFetcher] = None,
) -> Union[Content, FetchError]:
    """Fetch ``request`` and extract its bounded body text."""

    result = await (fetcher or ResilientFetcher()).fetch(request)
    if result.error is not None:
        return result.error
    content = extract_content(result.text, request.filter_markup, request.word_limit)
    logger.info("Extracted %d characters of cleaned text", len(content.text))
    return content


__all__ = [
    "fetch_content",
    "FetchConfig",
    "FetchError",
    "FetchErrorKind",
    "FetchRequest",
    "FetchResult",
    "ResilientFetcher",
]
