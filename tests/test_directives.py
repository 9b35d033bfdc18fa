import asyncio
import logging

import pytest

from chatfetch.workflows import directives
from chatfetch.workflows.directives import (
    CommandRewriter,
    DirectiveResolutionError,
    build_directive,
    find_directives,
    parse_directive,
)
from chatfetch.workflows.extract_utils import Content
from chatfetch.workflows.web_fetch import FetchConfig, FetchError, FetchErrorKind, ResilientFetcher
from stub_servers import page_app, serve


def _fake_fetch_content(pages, calls):
    async def fake_fetch_content(request, fetcher=None):
        calls.append(request)
        text = pages.get(request.target_url)
        if text is None:
            return FetchError(FetchErrorKind.HTTP_STATUS, "HTTP error! status: 503", status=503)
        return Content(text=text, original_length=len(text))

    return fake_fetch_content


def test_parse_directive_reads_all_parameters():
    raw = "[include-url: https://example.com/a max_execution_time:5000 filter:true store:false]"

    directive = parse_directive(raw)

    assert directive.target_url == "https://example.com/a"
    assert directive.budget_ms == 5000
    assert directive.filter_markup is True
    assert directive.store is False
    assert directive.raw_text == raw


def test_parse_directive_defaults_and_any_order():
    directive = parse_directive("[include-url: https://example.com store:true max_words:20]")

    assert directive.budget_ms == 300000
    assert directive.filter_markup is False
    assert directive.store is True
    assert directive.word_limit == 20


@pytest.mark.parametrize(
    "raw",
    [
        "[include-url: https://example.com filter:yes]",
        "[include-url: https://example.com colour:red]",
        "[include-url: https://example.com filter:true filter:false]",
        "[include-url: https://example.com max_execution_time:0]",
        "[include-url: https://example.com max_execution_time:-5]",
        "[include-url: ftp://example.com]",
        "[include-url: ]",
        "[include-url: https://example.com store]",
        "[include-url: https://example.com max_execution_time:" + "9" * 400 + "]",
        "[include-url: https://example.com max_execution_time:86400001]",
        "[include-url: https://example.com max_words:" + "1" * 5000 + "]",
    ],
)
def test_parse_directive_rejects_malformed_text(raw):
    assert parse_directive(raw) is None


def test_build_directive_emits_the_grammar():
    raw = build_directive("https://example.com/x", max_execution_time_ms=1200, filter_markup=True)

    assert raw == "[include-url: https://example.com/x max_execution_time:1200 filter:true store:false]"
    assert parse_directive(raw).budget_ms == 1200


def test_find_directives_reports_malformed_candidates():
    found = list(find_directives("a [include-url: https://ok.example] b [include-url: nope] c"))

    assert [directive is not None for _, directive in found] == [True, False]


def test_text_without_directives_is_returned_unchanged(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({}, calls))
    text = "Plain [text] with brackets but no directive"

    assert asyncio.run(CommandRewriter().resolve(text)) == text
    assert calls == []


def test_directives_are_replaced_in_order(monkeypatch):
    calls = []
    pages = {"https://a.example/": "page A", "https://b.example/": "page B"}
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content(pages, calls))
    text = "First [include-url: https://a.example/] then [include-url: https://b.example/ filter:true] end"

    resolved = asyncio.run(CommandRewriter().resolve(text))

    assert resolved == "First page A then page B end"
    assert [request.target_url for request in calls] == ["https://a.example/", "https://b.example/"]
    assert calls[1].filter_markup is True


def test_repeated_directive_is_fetched_each_time(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({"https://a.example/": "A"}, calls))
    directive = "[include-url: https://a.example/]"

    resolved = asyncio.run(CommandRewriter().resolve(f"{directive} and {directive}"))

    assert resolved == "A and A"
    assert len(calls) == 2


def test_malformed_directive_is_left_literal(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({"https://a.example/": "A"}, calls))
    text = "[include-url: https://a.example/ filter:maybe] and [include-url: https://a.example/]"

    resolved = asyncio.run(CommandRewriter().resolve(text))

    assert resolved == "[include-url: https://a.example/ filter:maybe] and A"


def test_unclosed_directive_prefix_does_not_hide_later_directive(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({"https://a.example/": "A"}, calls))
    text = "Syntax is [include-url: <url>, e.g. [include-url: https://a.example/]"

    resolved = asyncio.run(CommandRewriter().resolve(text))

    assert resolved == "Syntax is [include-url: <url>, e.g. A"
    assert [request.target_url for request in calls] == ["https://a.example/"]


def test_oversized_budget_is_left_literal(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({"https://a.example/": "A"}, calls))
    text = "[include-url: https://a.example/ max_execution_time:" + "9" * 400 + "]"

    assert asyncio.run(CommandRewriter().resolve(text)) == text
    assert calls == []


def test_failed_directive_is_annotated_inline(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({}, calls))
    raw = "[include-url: https://down.example/]"

    resolved = asyncio.run(CommandRewriter().resolve(f"Read {raw} please"))

    assert resolved == (
        f"Read {raw} [include-url error: Failed to scrape https://down.example/: "
        "HTTP error! status: 503] please"
    )


def test_strict_mode_raises_on_first_failure(monkeypatch):
    calls = []
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({}, calls))
    text = "[include-url: https://down.example/] [include-url: https://other.example/]"

    with pytest.raises(DirectiveResolutionError) as excinfo:
        asyncio.run(CommandRewriter(strict=True).resolve(text))

    assert str(excinfo.value) == "Failed to scrape https://down.example/: HTTP error! status: 503"
    assert excinfo.value.error.status == 503
    assert len(calls) == 1


def test_store_keeps_text_and_logs_preview(monkeypatch, caplog):
    calls = []
    long_text = "x" * 100
    monkeypatch.setattr(directives, "fetch_content", _fake_fetch_content({"https://a.example/": long_text}, calls))
    rewriter = CommandRewriter()

    with caplog.at_level(logging.INFO, logger="chatfetch.workflows.directives"):
        resolved = asyncio.run(rewriter.resolve("[include-url: https://a.example/ store:true]"))

    assert resolved == long_text
    assert rewriter.stored == {"https://a.example/": long_text}
    assert f"Storing content (first 60 characters): {'x' * 60}" in caplog.text


def test_unreachable_page_is_annotated_after_three_attempts():
    hits = []
    app = page_app({"/down": (503, "unavailable"), "/up": (200, "<body><p>live text</p></body>")}, hits)
    fetcher = ResilientFetcher(FetchConfig(max_attempts=3, backoff_base=0.0))

    async def run_once():
        async with serve(app) as server:
            down = str(server.make_url("/down"))
            up = str(server.make_url("/up"))
            text = f"{build_directive(down, 5000)} / {build_directive(up, 5000)}"
            return down, await CommandRewriter(fetcher).resolve(text)

    down, resolved = asyncio.run(run_once())

    assert resolved.endswith(
        f"[include-url error: Failed to scrape {down}: HTTP error! status: 503] / live text"
    )
    assert sum(1 for hit in hits if hit.path == "/down") == 3
