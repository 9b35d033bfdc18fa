import asyncio

import pytest

from chatfetch.workflows import directives
from chatfetch.workflows.directives import DirectiveResolutionError, parse_directive
from chatfetch.workflows.event_stream import StreamOutcome, StreamState
from chatfetch.workflows.pipeline import ChatPipeline, ChatPolicy, fetch_url, load_policy, resolve_text
from chatfetch.workflows.web_fetch import FetchError, FetchErrorKind, FetchResult, ResilientFetcher


class FakeClient:
    """Replays canned tokens and records the conversation it was sent."""

    def __init__(self, tokens, state=StreamState.DONE):
        self.tokens = list(tokens)
        self.state = state
        self.sent = []

    async def send(self, conversation, on_token, cancel=None):
        self.sent.append(conversation)
        for token in self.tokens:
            on_token(token)
        error = "upstream broke" if self.state is StreamState.FAILED else None
        return StreamOutcome(self.state, error, len(self.tokens), "".join(self.tokens))


class FakeRewriter:
    def __init__(self, fail=False):
        self.fail = fail
        self.seen = []

    async def resolve(self, text):
        self.seen.append(text)
        if self.fail:
            directive = parse_directive("[include-url: https://down.example/]")
            raise DirectiveResolutionError(directive, FetchError(FetchErrorKind.NETWORK, "refused"))
        return text.replace("[include-url: https://a.example/]", "page A")


def _pipeline(client, rewriter=None):
    return ChatPipeline(policy=ChatPolicy(), client=client, rewriter=rewriter or FakeRewriter())


def test_send_message_resolves_then_streams_reply():
    client = FakeClient(["Hi", " there"])
    chat = _pipeline(client)
    received = []

    outcome = asyncio.run(chat.send_message("Read [include-url: https://a.example/]", received.append))

    assert outcome.ok
    assert received == ["Hi", " there"]
    assert client.sent[0] == ({"role": "user", "content": "Read page A"},)
    assert chat.conversation.snapshot() == (
        {"role": "user", "content": "Read page A"},
        {"role": "assistant", "content": "Hi there"},
    )


def test_blank_message_is_rejected():
    chat = _pipeline(FakeClient([]))
    with pytest.raises(ValueError):
        asyncio.run(chat.send_message("   "))
    assert len(chat.conversation) == 0


def test_strict_failure_leaves_conversation_untouched():
    client = FakeClient(["never"])
    chat = _pipeline(client, FakeRewriter(fail=True))

    with pytest.raises(DirectiveResolutionError):
        asyncio.run(chat.send_message("[include-url: https://down.example/]"))

    assert len(chat.conversation) == 0
    assert client.sent == []


def test_partial_reply_is_kept_when_stream_fails():
    chat = _pipeline(FakeClient(["half"], state=StreamState.FAILED))

    outcome = asyncio.run(chat.send_message("question"))

    assert outcome.state is StreamState.FAILED
    assert chat.conversation.last.content == "half"


def test_retry_last_replaces_previous_reply():
    client = FakeClient(["first"])
    chat = _pipeline(client)
    asyncio.run(chat.send_message("question"))
    client.tokens = ["second"]

    asyncio.run(chat.retry_last())

    assert client.sent[1] == ({"role": "user", "content": "question"},)
    assert [message.content for message in chat.conversation] == ["question", "second"]


def test_edit_and_resend_truncates_history():
    client = FakeClient(["reply"])
    chat = _pipeline(client)
    asyncio.run(chat.send_message("one"))
    asyncio.run(chat.send_message("two"))

    asyncio.run(chat.edit_and_resend(0, "Read [include-url: https://a.example/]"))

    assert client.sent[-1] == ({"role": "user", "content": "Read page A"},)
    assert [message.content for message in chat.conversation] == ["Read page A", "reply"]


def test_load_policy_reads_environment(monkeypatch):
    monkeypatch.setenv("CHATFETCH_CHAT_ENDPOINT", "https://llm.example/api/chat")
    monkeypatch.setenv("CHATFETCH_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CHATFETCH_BACKOFF_BASE", "0.25")
    monkeypatch.setenv("CHATFETCH_WORD_LIMIT", "not-a-number")
    monkeypatch.setenv("CHATFETCH_STRICT_DIRECTIVES", "true")
    monkeypatch.setenv("CHATFETCH_API_TOKEN", "tok")

    policy = load_policy()

    assert policy.chat_endpoint == "https://llm.example/api/chat"
    assert policy.max_attempts == 5
    assert policy.backoff_base == 0.25
    assert policy.word_limit == 4000
    assert policy.strict_directives is True
    assert policy.fetch_config().max_attempts == 5
    assert policy.generation_config().api_token == "tok"


def test_load_policy_clamps_attempts(monkeypatch):
    monkeypatch.setenv("CHATFETCH_MAX_ATTEMPTS", "0")
    assert load_policy().max_attempts == 1


def test_fetch_url_extracts_text(monkeypatch):
    async def fake_fetch(self, request):
        return FetchResult(
            url=request.target_url,
            domain="example.com",
            status=200,
            content_type="text/html",
            headers={"content-type": "text/html; charset=utf-8"},
            attempts=1,
            raw_bytes=b"<html><body><p>alpha beta gamma</p></body></html>",
        )

    monkeypatch.setattr(ResilientFetcher, "fetch", fake_fetch)

    result, content = fetch_url("https://example.com/", word_limit=2, policy=ChatPolicy())

    assert result.ok
    assert content.text == "alpha beta..."
    assert content.truncated


def test_fetch_url_returns_error_without_content(monkeypatch):
    async def fake_fetch(self, request):
        return FetchResult(
            url=request.target_url,
            domain="example.com",
            error=FetchError(FetchErrorKind.NETWORK, "ClientConnectorError: refused"),
        )

    monkeypatch.setattr(ResilientFetcher, "fetch", fake_fetch)

    result, content = fetch_url("https://example.com/", policy=ChatPolicy())

    assert content is None
    assert result.error.kind is FetchErrorKind.NETWORK


def test_fetch_url_rejects_blank_url():
    with pytest.raises(ValueError):
        fetch_url("  ")


def test_resolve_text_honours_strict_override(monkeypatch):
    async def failing_fetch_content(request, fetcher=None):
        return FetchError(FetchErrorKind.TIMEOUT, "Request timed out after 10ms")

    monkeypatch.setattr(directives, "fetch_content", failing_fetch_content)
    text = "[include-url: https://slow.example/ max_execution_time:10]"

    annotated = resolve_text(text, strict=False, policy=ChatPolicy())
    assert "[include-url error: Failed to scrape https://slow.example/: Request timed out after 10ms]" in annotated

    with pytest.raises(DirectiveResolutionError):
        resolve_text(text, strict=True, policy=ChatPolicy())
