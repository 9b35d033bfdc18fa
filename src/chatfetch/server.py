"""HTTP scrape service: ``POST /api/scrape`` returns the bounded text of a page."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
from aiohttp import web

from .core.keys import K_CONTENT, K_ERROR, K_FILTER, K_MAX_EXECUTION_TIME, K_MAX_WORDS, K_STORE, K_URL
from .workflows.fetcher_config import SERVICE_HOST, SERVICE_PORT, STORE_PREVIEW_CHARS
from .workflows.pipeline import DEFAULT_POLICY, ChatPolicy
from .workflows.web_fetch import FetchError, FetchRequest, ResilientFetcher, fetch_content

logger = logging.getLogger(__name__)

FETCHER_KEY = web.AppKey("fetcher", ResilientFetcher)
POLICY_KEY = web.AppKey("policy", ChatPolicy)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({K_ERROR: message}, status=status)


def _build_request(body: Dict[str, Any], policy: ChatPolicy) -> FetchRequest:
    budget_ms = body.get(K_MAX_EXECUTION_TIME)
    if budget_ms is None:
        budget_ms = policy.fetch_budget_ms
    word_limit = body.get(K_MAX_WORDS)
    if word_limit is None:
        word_limit = policy.word_limit
    if isinstance(budget_ms, bool) or not isinstance(budget_ms, (int, float)) or not math.isfinite(budget_ms):
        raise ValueError(f"{K_MAX_EXECUTION_TIME} must be a number of milliseconds")
    if isinstance(word_limit, bool) or not isinstance(word_limit, int):
        raise ValueError(f"{K_MAX_WORDS} must be an integer")
    return FetchRequest(
        target_url=str(body[K_URL]).strip(),
        execution_budget=budget_ms / 1000,
        filter_markup=bool(body.get(K_FILTER, False)),
        word_limit=word_limit,
        store=bool(body.get(K_STORE, False)),
    )


async def handle_scrape(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error("Request body must be JSON", 400)
    if not isinstance(body, dict) or not body.get(K_URL):
        return _error("URL is required", 400)
    try:
        fetch_request = _build_request(body, request.app[POLICY_KEY])
    except (ValueError, OverflowError) as exc:
        return _error(str(exc), 400)

    outcome = await fetch_content(fetch_request, request.app[FETCHER_KEY])
    if isinstance(outcome, FetchError):
        message = f"Failed to scrape {fetch_request.target_url}: {outcome.message}"
        logger.error("Scrape API error: %s", message)
        return _error(message, 500)
    if fetch_request.store:
        logger.info(
            "Storing content (first %d characters): %s",
            STORE_PREVIEW_CHARS,
            outcome.text[:STORE_PREVIEW_CHARS],
        )
    return web.json_response({K_CONTENT: outcome.text})


def create_app(
    fetcher: Optional[ResilientFetcher] = None,
    policy: Optional[ChatPolicy] = None,
) -> web.Application:
    """Build the service; without an injected fetcher one shared session is opened per app."""

    active = policy or DEFAULT_POLICY
    app = web.Application()
    app[POLICY_KEY] = active

    if fetcher is not None:
        app[FETCHER_KEY] = fetcher
    else:
        async def _session_ctx(app: web.Application) -> AsyncIterator[None]:
            async with aiohttp.ClientSession() as session:
                app[FETCHER_KEY] = ResilientFetcher(active.fetch_config(), session=session)
                yield

        app.cleanup_ctx.append(_session_ctx)

    app.router.add_post("/api/scrape", handle_scrape)
    return app


def run_server(host: str = SERVICE_HOST, port: int = SERVICE_PORT, policy: Optional[ChatPolicy] = None) -> None:
    web.run_app(create_app(policy=policy), host=host, port=port)


__all__ = ["create_app", "handle_scrape", "run_server", "FETCHER_KEY", "POLICY_KEY"]
