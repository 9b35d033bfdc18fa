"""Chat pipeline: resolve directives, then stream the reply into the conversation."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from dotenv import load_dotenv

from .conversation import Conversation
from .directives import CommandRewriter
from .event_stream import CancelSignal, GenerationConfig, StreamingTokenClient, StreamOutcome, TokenSink
from .extract_utils import Content, extract_content
from .fetcher_config import (
    BACKOFF_BASE_SECONDS,
    CHAT_ENDPOINT,
    FETCH_BUDGET_SECONDS,
    MAX_ATTEMPTS,
    STREAM_READ_TIMEOUT_SECONDS,
    USER_AGENT,
    WORD_LIMIT,
)
from .fetcher_utils import _env_bool, _env_float, _env_int
from .web_fetch import FetchConfig, FetchRequest, FetchResult, ResilientFetcher

load_dotenv()

logger = logging.getLogger(__name__)


# Central policy object; every knob can be overridden through CHATFETCH_* env vars.
@dataclass(frozen=True, slots=True)
class ChatPolicy:
    chat_endpoint: str = CHAT_ENDPOINT
    api_token: Optional[str] = None
    model: Optional[str] = None
    user_agent: str = USER_AGENT
    max_attempts: int = MAX_ATTEMPTS
    backoff_base: float = BACKOFF_BASE_SECONDS
    fetch_budget_ms: int = int(FETCH_BUDGET_SECONDS * 1000)
    word_limit: int = WORD_LIMIT
    stream_read_timeout: float = STREAM_READ_TIMEOUT_SECONDS
    strict_directives: bool = False

    def fetch_config(self) -> FetchConfig:
        return FetchConfig(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            user_agent=self.user_agent,
        )

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            endpoint=self.chat_endpoint,
            model=self.model,
            api_token=self.api_token,
            user_agent=self.user_agent,
            read_timeout=self.stream_read_timeout,
        )


def load_policy() -> ChatPolicy:
    """Build a policy from CHATFETCH_* environment variables."""

    defaults = ChatPolicy()
    return ChatPolicy(
        chat_endpoint=os.getenv("CHATFETCH_CHAT_ENDPOINT") or defaults.chat_endpoint,
        api_token=os.getenv("CHATFETCH_API_TOKEN") or None,
        model=os.getenv("CHATFETCH_MODEL") or None,
        user_agent=os.getenv("CHATFETCH_USER_AGENT") or defaults.user_agent,
        max_attempts=max(1, _env_int("CHATFETCH_MAX_ATTEMPTS", defaults.max_attempts)),
        backoff_base=max(0.0, _env_float("CHATFETCH_BACKOFF_BASE", defaults.backoff_base)),
        fetch_budget_ms=max(1, _env_int("CHATFETCH_FETCH_BUDGET_MS", defaults.fetch_budget_ms)),
        word_limit=max(1, _env_int("CHATFETCH_WORD_LIMIT", defaults.word_limit)),
        stream_read_timeout=max(1.0, _env_float("CHATFETCH_STREAM_READ_TIMEOUT", defaults.stream_read_timeout)),
        strict_directives=_env_bool("CHATFETCH_STRICT_DIRECTIVES", "0"),
    )


DEFAULT_POLICY = load_policy()

# ---------------- Single event loop helper for sync callers ------------------
_FETCH_LOOP: asyncio.AbstractEventLoop | None = None


def _run_in_fetch_loop(coro: "asyncio.coroutines.Coroutine"):
    global _FETCH_LOOP
    if _FETCH_LOOP is None or _FETCH_LOOP.is_closed():
        _FETCH_LOOP = asyncio.new_event_loop()
    return _FETCH_LOOP.run_until_complete(coro)


class ChatPipeline:
    """One conversation plus the collaborators needed to extend it.

    Each send/retry/edit opens its own stream session; the pipeline itself is
    not meant to be shared between concurrent callers.
    """

    def __init__(
        self,
        conversation: Optional[Conversation] = None,
        *,
        policy: Optional[ChatPolicy] = None,
        client: Optional[StreamingTokenClient] = None,
        rewriter: Optional[CommandRewriter] = None,
    ) -> None:
        self.policy = policy or DEFAULT_POLICY
        self.conversation = conversation if conversation is not None else Conversation()
        self.client = client or StreamingTokenClient(self.policy.generation_config())
        self.rewriter = rewriter or CommandRewriter(
            ResilientFetcher(self.policy.fetch_config()),
            strict=self.policy.strict_directives,
        )

    async def send_message(
        self,
        text: str,
        on_token: Optional[TokenSink] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> StreamOutcome:
        if not (text or "").strip():
            raise ValueError("message must not be blank")
        resolved = await self.rewriter.resolve(text)
        self.conversation.append_user(resolved)
        return await self._stream(on_token, cancel)

    async def retry_last(
        self,
        on_token: Optional[TokenSink] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> StreamOutcome:
        self.conversation.prepare_retry()
        return await self._stream(on_token, cancel)

    async def edit_and_resend(
        self,
        index: int,
        text: str,
        on_token: Optional[TokenSink] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> StreamOutcome:
        resolved = await self.rewriter.resolve(text)
        self.conversation.edit(index, resolved)
        return await self._stream(on_token, cancel)

    async def _stream(self, on_token: Optional[TokenSink], cancel: Optional[CancelSignal]) -> StreamOutcome:
        snapshot = self.conversation.snapshot()

        def sink(token: str) -> None:
            self.conversation.append_token(token)
            if on_token is not None:
                on_token(token)

        outcome = await self.client.send(snapshot, sink, cancel)
        if not outcome.ok:
            logger.info("Reply ended %s; keeping %d partial token(s)", outcome.state.value, outcome.tokens)
        return outcome


def fetch_url(
    url: str,
    *,
    execution_budget_ms: Optional[int] = None,
    filter_markup: bool = False,
    word_limit: Optional[int] = None,
    policy: Optional[ChatPolicy] = None,
) -> Tuple[FetchResult, Optional[Content]]:
    """Fetch a single URL synchronously and extract its text when it succeeds."""

    normalized = (url or "").strip()
    if not normalized:
        raise ValueError("url must be a non-empty string")
    active = policy or DEFAULT_POLICY
    request = FetchRequest(
        target_url=normalized,
        execution_budget=(execution_budget_ms or active.fetch_budget_ms) / 1000,
        filter_markup=filter_markup,
        word_limit=word_limit or active.word_limit,
    )
    result = _run_in_fetch_loop(ResilientFetcher(active.fetch_config()).fetch(request))
    if not result.ok:
        return result, None
    return result, extract_content(result.text, request.filter_markup, request.word_limit)


def resolve_text(text: str, *, strict: Optional[bool] = None, policy: Optional[ChatPolicy] = None) -> str:
    """Synchronous wrapper around :meth:`CommandRewriter.resolve`."""

    active = policy or DEFAULT_POLICY
    if strict is not None:
        active = replace(active, strict_directives=strict)
    rewriter = CommandRewriter(ResilientFetcher(active.fetch_config()), strict=active.strict_directives)
    return _run_in_fetch_loop(rewriter.resolve(text))


__all__ = [
    "ChatPipeline",
    "ChatPolicy",
    "DEFAULT_POLICY",
    "fetch_url",
    "load_policy",
    "resolve_text",
]
