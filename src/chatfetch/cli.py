from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import replace
from typing import List, Optional

import typer

from .server import run_server
from .workflows.directives import DirectiveResolutionError, build_directive
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.event_stream import CancelSignal, StreamOutcome, StreamState
from .workflows.fetcher_config import SERVICE_HOST, SERVICE_PORT
from .workflows.pipeline import ChatPipeline, _run_in_fetch_loop, fetch_url, load_policy, resolve_text

app = typer.Typer(add_help_option=False, no_args_is_help=False)

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELED = 130


def _minimal_help() -> str:
    return """chatfetch

Usage:
  chatfetch get <url> [--filter] [--max-words N] [--budget-ms MS] [--json]
  chatfetch resolve <text|-> [--strict]
  chatfetch chat <message> [--include <url>]... [--strict]
  chatfetch serve [--host H] [--port P]
  chatfetch doctor

Discoverability:
  --help-full     Expanded help + env vars.
  --find <query>  Search commands, flags, env vars.
  --verbose       Log at DEBUG level.
"""


def _help_full() -> str:
    return """chatfetch CLI

Commands:
  get        Fetch one URL (retries, backoff, overall budget) and print its text.
  resolve    Replace [include-url: ...] directives in text with page text.
  chat       Resolve directives, then stream a reply from the generation endpoint.
             Ctrl-C stops the reply and keeps what already arrived.
  serve      Run the scrape service (POST /api/scrape).
  doctor     Print configuration and dependency diagnostics.

Directive grammar:
  [include-url: <url> max_execution_time:<ms> filter:<true|false> store:<true|false>]
  Optional: max_words:<n>. Failed directives stay in the text with an
  "[include-url error: ...]" note unless --strict is given.

Env vars:
  CHATFETCH_CHAT_ENDPOINT
  CHATFETCH_API_TOKEN
  CHATFETCH_MODEL
  CHATFETCH_USER_AGENT
  CHATFETCH_MAX_ATTEMPTS
  CHATFETCH_BACKOFF_BASE
  CHATFETCH_FETCH_BUDGET_MS
  CHATFETCH_WORD_LIMIT
  CHATFETCH_STREAM_READ_TIMEOUT
  CHATFETCH_STRICT_DIRECTIVES
  CHATFETCH_LOG_LEVEL

Exit codes:
  0 ok, 1 fetch/stream failure, 2 usage, 130 stopped by the user.
"""


_FIND_INDEX = [
    ("command", "get", "Fetch one URL and print its text."),
    ("command", "resolve", "Resolve include-url directives in text."),
    ("command", "chat", "Stream a reply from the generation endpoint."),
    ("command", "serve", "Run the scrape service."),
    ("command", "doctor", "Print configuration and dependency diagnostics."),
    ("flag", "--filter", "Drop script and style content before extracting text."),
    ("flag", "--max-words", "Word budget for extracted text."),
    ("flag", "--budget-ms", "Overall fetch budget in milliseconds."),
    ("flag", "--json", "Print the fetch result as JSON."),
    ("flag", "--strict", "Abort on the first failed directive."),
    ("flag", "--include", "Append an include-url directive for this URL."),
    ("flag", "--help-full", "Expanded help and env vars."),
    ("flag", "--find", "Search commands, flags, env vars."),
    ("env", "CHATFETCH_CHAT_ENDPOINT", "Generation endpoint URL."),
    ("env", "CHATFETCH_API_TOKEN", "Bearer token for the generation endpoint."),
    ("env", "CHATFETCH_MODEL", "Model name forwarded upstream."),
    ("env", "CHATFETCH_USER_AGENT", "User-Agent sent on every request."),
    ("env", "CHATFETCH_MAX_ATTEMPTS", "Fetch attempts before giving up."),
    ("env", "CHATFETCH_BACKOFF_BASE", "Base backoff delay in seconds."),
    ("env", "CHATFETCH_FETCH_BUDGET_MS", "Default overall fetch budget."),
    ("env", "CHATFETCH_WORD_LIMIT", "Default word budget for page text."),
    ("env", "CHATFETCH_STREAM_READ_TIMEOUT", "Seconds to wait for the next stream chunk."),
    ("env", "CHATFETCH_STRICT_DIRECTIVES", "Abort on failed directives by default."),
    ("env", "CHATFETCH_LOG_LEVEL", "Logging level (default WARNING)."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv("CHATFETCH_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)
    _configure_logging(verbose)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print configuration and dependency diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.ok else EXIT_USAGE)


@app.command("get", add_help_option=True)
def get_url(
    url: str = typer.Argument(..., help="URL to fetch."),
    filter_markup: bool = typer.Option(False, "--filter", help="Drop script and style content."),
    max_words: Optional[int] = typer.Option(None, "--max-words", min=1, help="Word budget for the text."),
    budget_ms: Optional[int] = typer.Option(None, "--budget-ms", min=1, help="Overall fetch budget (ms)."),
    json_out: bool = typer.Option(False, "--json", help="Print the fetch result as JSON."),
) -> None:
    try:
        result, content = fetch_url(
            url,
            execution_budget_ms=budget_ms,
            filter_markup=filter_markup,
            word_limit=max_words,
            policy=load_policy(),
        )
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE)
    if json_out:
        payload = result.to_dict()
        if content is not None:
            payload["text"] = content.text
            payload["original_length"] = content.original_length
            payload["truncated"] = content.truncated
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    elif content is not None:
        typer.echo(content.text)
    else:
        typer.echo(f"Failed to scrape {url}: {result.error}", err=True)
    raise typer.Exit(code=0 if result.ok else EXIT_FAILED)


@app.command("resolve", add_help_option=True)
def resolve_cmd(
    text: str = typer.Argument(..., help="Text containing directives, or '-' for stdin."),
    strict: bool = typer.Option(False, "--strict", help="Abort on the first failed directive."),
) -> None:
    source = sys.stdin.read() if text == "-" else text
    try:
        resolved = resolve_text(source, strict=strict or None, policy=load_policy())
    except DirectiveResolutionError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED)
    typer.echo(resolved)


async def _stream_reply(pipeline: ChatPipeline, text: str) -> StreamOutcome:
    cancel = CancelSignal()
    loop = asyncio.get_running_loop()
    handler_installed = False
    # Signal handlers are unavailable on some platforms and outside the main thread.
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        handler_installed = True
    try:
        return await pipeline.send_message(
            text,
            on_token=lambda token: typer.echo(token, nl=False),
            cancel=cancel,
        )
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("chat", add_help_option=True)
def chat_cmd(
    message: str = typer.Argument(..., help="Message to send."),
    include: List[str] = typer.Option([], "--include", help="Append an include-url directive for this URL."),
    filter_markup: bool = typer.Option(False, "--filter", help="Use filter:true on --include directives."),
    strict: bool = typer.Option(False, "--strict", help="Abort on the first failed directive."),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", help="Override CHATFETCH_CHAT_ENDPOINT."),
) -> None:
    policy = load_policy()
    overrides = {}
    if endpoint:
        overrides["chat_endpoint"] = endpoint
    if strict:
        overrides["strict_directives"] = True
    if overrides:
        policy = replace(policy, **overrides)
    text = " ".join([message, *(build_directive(url, filter_markup=filter_markup) for url in include)])
    pipeline = ChatPipeline(policy=policy)
    try:
        outcome = _run_in_fetch_loop(_stream_reply(pipeline, text))
    except DirectiveResolutionError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE)
    typer.echo("")
    if outcome.state is StreamState.CANCELED:
        typer.echo("[stopped]", err=True)
        raise typer.Exit(code=EXIT_CANCELED)
    if outcome.state is StreamState.FAILED:
        typer.echo(f"error: {outcome.error}", err=True)
        raise typer.Exit(code=EXIT_FAILED)


@app.command("serve", add_help_option=True)
def serve_cmd(
    host: str = typer.Option(SERVICE_HOST, "--host", help="Interface to bind."),
    port: int = typer.Option(SERVICE_PORT, "--port", help="Port to bind."),
) -> None:
    """Run the scrape service (POST /api/scrape)."""
    run_server(host=host, port=port, policy=load_policy())
