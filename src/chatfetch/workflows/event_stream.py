"""Streaming token client for a server-sent-events generation endpoint.

The endpoint answers one POST with a chunked ``text/event-stream`` body made of
``data: <payload>`` frames separated by blank lines. Payloads are JSON objects
carrying a ``content`` delta, or the literal ``[DONE]`` terminator.

Frames are decoded as bytes arrive and each non-empty delta is handed to the
caller's ``on_token`` callback in arrival order. Every wait on the transport is
raced against the caller's :class:`CancelSignal`, so a cancel interrupts a read
that is already blocked and closes the connection.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

import aiohttp

from ..core.keys import (
    K_CONTENT,
    K_ERROR,
    K_MAX_TOKENS,
    K_MESSAGES,
    K_MODEL,
    K_STREAM,
    K_TEMPERATURE,
    K_TOP_P,
)
from .conversation import Conversation, WireConversation
from .fetcher_config import (
    CHAT_ENDPOINT,
    HDR_ACCEPT,
    HDR_AUTHORIZATION,
    HDR_USER_AGENT,
    MAX_TOKENS,
    SSE_DATA_PREFIX,
    SSE_DONE,
    STREAM_CONNECT_TIMEOUT_SECONDS,
    STREAM_READ_TIMEOUT_SECONDS,
    TEMPERATURE,
    TOP_P,
    USER_AGENT,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
TokenSink = Callable[[str], Any]


class StreamState(str, Enum):
    PENDING = "pending"
    DONE = "done"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not StreamState.PENDING


class FrameKind(str, Enum):
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    kind: FrameKind
    content: str = ""


def parse_frame(frame: str) -> Optional[StreamEvent]:
    """Decode one blank-line delimited frame; None for frames to skip."""

    data_lines: List[str] = []
    for line in frame.split("\n"):
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        value = line[len(SSE_DATA_PREFIX):]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    payload = "\n".join(data_lines).strip()
    if payload == SSE_DONE:
        return StreamEvent(FrameKind.DONE)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream frame (not JSON): %.100s", payload)
        return None
    if not isinstance(data, dict):
        logger.warning("Skipping malformed stream frame (not an object): %.100s", payload)
        return None
    content = data.get(K_CONTENT)
    if content is None and data.get(K_ERROR):
        return StreamEvent(FrameKind.ERROR, str(data[K_ERROR]))
    if not isinstance(content, str):
        logger.warning("Skipping stream frame without string content: %.100s", payload)
        return None
    return StreamEvent(FrameKind.TOKEN, content)


class SSEFrameDecoder:
    """Incremental decoder: feed raw chunks, get complete frames back."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        frames = self._buffer.split("\n\n")
        self._buffer = frames.pop()
        return self._parse(frames)

    def flush(self) -> List[StreamEvent]:
        """Parse whatever is left once the transport reaches EOF."""

        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = ""
        return self._parse([tail]) if tail.strip() else []

    @staticmethod
    def _parse(frames: Iterable[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for frame in frames:
            event = parse_frame(frame)
            if event is not None:
                events.append(event)
        return events


class CancelSignal:
    """Caller-owned cancellation handle for one streaming call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class StreamOutcome:
    state: StreamState
    error: Optional[str] = None
    tokens: int = 0
    text: str = ""

    @property
    def ok(self) -> bool:
        return self.state is StreamState.DONE


@dataclass
class StreamSession:
    """State of one in-flight generation call; finishes exactly once."""

    conversation: WireConversation
    cancel: CancelSignal
    state: StreamState = StreamState.PENDING
    error: Optional[str] = None
    delivered: List[str] = field(default_factory=list)

    def deliver(self, token: str, on_token: TokenSink) -> bool:
        if self.state.terminal or self.cancel.is_set:
            return False
        self.delivered.append(token)
        on_token(token)
        return True

    def finish(self, state: StreamState, error: Optional[str] = None) -> StreamOutcome:
        if self.state.terminal:
            raise RuntimeError(f"stream session already finished as {self.state.value}")
        if not state.terminal:
            raise ValueError("finish() needs a terminal state")
        self.state = state
        self.error = error
        return StreamOutcome(state, error, len(self.delivered), "".join(self.delivered))


@dataclass
class GenerationConfig:
    """Endpoint plus opaque generation parameters forwarded upstream."""

    endpoint: str = CHAT_ENDPOINT
    model: Optional[str] = None
    temperature: float = TEMPERATURE
    max_tokens: int = MAX_TOKENS
    top_p: float = TOP_P
    api_token: Optional[str] = None
    request_stream_flag: bool = False
    user_agent: str = USER_AGENT
    connect_timeout: float = STREAM_CONNECT_TIMEOUT_SECONDS
    read_timeout: float = STREAM_READ_TIMEOUT_SECONDS

    def payload(self, conversation: WireConversation) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            K_MESSAGES: [dict(message) for message in conversation],
            K_TEMPERATURE: self.temperature,
            K_MAX_TOKENS: self.max_tokens,
            K_TOP_P: self.top_p,
        }
        if self.model:
            body[K_MODEL] = self.model
        if self.request_stream_flag:
            body[K_STREAM] = True
        return body

    def headers(self) -> Dict[str, str]:
        headers = {
            HDR_ACCEPT: "text/event-stream",
            HDR_USER_AGENT: self.user_agent,
        }
        if self.api_token:
            headers[HDR_AUTHORIZATION] = f"Bearer {self.api_token}"
        return headers


class _StreamCanceled(Exception):
    pass


class StreamingTokenClient:
    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or GenerationConfig()
        self._session = session

    async def send(
        self,
        conversation: Union[Conversation, WireConversation, Iterable[Dict[str, str]]],
        on_token: TokenSink,
        cancel: Optional[CancelSignal] = None,
    ) -> StreamOutcome:
        """Stream one reply for ``conversation`` into ``on_token``.

        Returns the single terminal outcome: DONE on the ``[DONE]`` frame,
        CANCELED when ``cancel`` fires, FAILED on any transport problem or an
        upstream error frame. Tokens already delivered are never retracted.
        """

        if isinstance(conversation, Conversation):
            snapshot = conversation.snapshot()
        else:
            snapshot = tuple(dict(message) for message in conversation)
        stream = StreamSession(snapshot, cancel or CancelSignal())
        if self._session is not None:
            outcome = await self._send(self._session, stream, on_token)
        else:
            async with aiohttp.ClientSession() as http:
                outcome = await self._send(http, stream, on_token)
        if outcome.state is StreamState.FAILED:
            logger.warning("Stream failed after %d token(s): %s", outcome.tokens, outcome.error)
        else:
            logger.info("Stream finished %s after %d token(s)", outcome.state.value, outcome.tokens)
        return outcome

    async def _send(
        self,
        http: aiohttp.ClientSession,
        stream: StreamSession,
        on_token: TokenSink,
    ) -> StreamOutcome:
        waiter = asyncio.ensure_future(stream.cancel.wait())
        try:
            try:
                resp = await self._race(self._open(http, stream), stream, waiter)
            except _StreamCanceled:
                return stream.finish(StreamState.CANCELED)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                return stream.finish(StreamState.FAILED, f"{type(exc).__name__}: {exc}")
            try:
                return await self._consume(resp, stream, on_token, waiter)
            finally:
                resp.release()
        finally:
            waiter.cancel()

    async def _open(self, http: aiohttp.ClientSession, stream: StreamSession) -> aiohttp.ClientResponse:
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.config.connect_timeout,
            sock_read=self.config.read_timeout,
        )
        return await http.post(
            self.config.endpoint,
            json=self.config.payload(stream.conversation),
            headers=self.config.headers(),
            timeout=timeout,
        )

    async def _consume(
        self,
        resp: aiohttp.ClientResponse,
        stream: StreamSession,
        on_token: TokenSink,
        waiter: "asyncio.Future[None]",
    ) -> StreamOutcome:
        if not 200 <= resp.status < 300:
            resp.close()
            return stream.finish(StreamState.FAILED, f"Generation endpoint returned HTTP {resp.status}")
        decoder = SSEFrameDecoder()
        try:
            while True:
                chunk = await self._race(resp.content.readany(), stream, waiter)
                events = decoder.feed(chunk) if chunk else decoder.flush()
                for event in events:
                    if stream.cancel.is_set:
                        raise _StreamCanceled()
                    if event.kind is FrameKind.DONE:
                        resp.close()
                        return stream.finish(StreamState.DONE)
                    if event.kind is FrameKind.ERROR:
                        resp.close()
                        return stream.finish(StreamState.FAILED, event.content)
                    if event.content:
                        stream.deliver(event.content, on_token)
                if not chunk:
                    return stream.finish(StreamState.FAILED, "Stream ended before the [DONE] terminator")
        except _StreamCanceled:
            resp.close()
            logger.info("Request canceled by the caller")
            return stream.finish(StreamState.CANCELED)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            resp.close()
            return stream.finish(StreamState.FAILED, f"{type(exc).__name__}: {exc}")

    @staticmethod
    async def _race(aw: Awaitable[T], stream: StreamSession, waiter: "asyncio.Future[None]") -> T:
        """Await ``aw`` unless the cancel signal fires first."""

        task = asyncio.ensure_future(aw)
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        if stream.cancel.is_set:
            if task.done() and not task.cancelled() and task.exception() is None:
                result = task.result()
                if isinstance(result, aiohttp.ClientResponse):
                    result.close()
            else:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            raise _StreamCanceled()
        return task.result()


__all__ = [
    "CancelSignal",
    "FrameKind",
    "GenerationConfig",
    "SSEFrameDecoder",
    "StreamEvent",
    "StreamOutcome",
    "StreamSession",
    "StreamState",
    "StreamingTokenClient",
    "TokenSink",
    "parse_frame",
]
