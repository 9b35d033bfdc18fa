"""Inline ``[include-url: ...]`` directives and the rewriter that resolves them.

Grammar::

    [include-url: <url> max_execution_time:<int-ms> filter:<true|false> store:<true|false>]

Parameters after the URL are whitespace-separated ``key:value`` pairs in any
order. ``max_words:<int>`` is also accepted. Omitted booleans are false and an
omitted ``max_execution_time`` means 300000 ms. Integer values must lie in
1..86400000. A directive body never contains ``[`` or ``]``. Text that does
not parse is left alone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .fetcher_config import DIRECTIVE_BUDGET_MS, DIRECTIVE_INT_MAX, DIRECTIVE_TAG, STORE_PREVIEW_CHARS, WORD_LIMIT
from .fetcher_utils import is_http_url
from .web_fetch import FetchError, FetchRequest, ResilientFetcher, fetch_content

logger = logging.getLogger(__name__)

DIRECTIVE_PATTERN = re.compile(r"\[" + re.escape(DIRECTIVE_TAG) + r":(?P<body>[^\[\]]*)\]")
ERROR_ANNOTATION = "{raw} [include-url error: {message}]"


def _parse_positive_int(value: str) -> Optional[int]:
    if not (value.isascii() and value.isdigit()) or len(value) > len(str(DIRECTIVE_INT_MAX)):
        return None
    number = int(value)
    return number if 0 < number <= DIRECTIVE_INT_MAX else None


def _parse_bool(value: str) -> Optional[bool]:
    return {"true": True, "false": False}.get(value)


_PARAMS: Dict[str, Callable[[str], object]] = {
    "max_execution_time": _parse_positive_int,
    "filter": _parse_bool,
    "store": _parse_bool,
    "max_words": _parse_positive_int,
}


@dataclass(frozen=True)
class Directive:
    raw_text: str
    target_url: str
    execution_budget: float
    filter_markup: bool = False
    store: bool = False
    word_limit: int = WORD_LIMIT

    @property
    def budget_ms(self) -> int:
        return int(round(self.execution_budget * 1000))

    def to_request(self) -> FetchRequest:
        return FetchRequest(
            target_url=self.target_url,
            execution_budget=self.execution_budget,
            filter_markup=self.filter_markup,
            word_limit=self.word_limit,
            store=self.store,
        )


def parse_directive(raw: str) -> Optional[Directive]:
    """Parse one directive; None when the text does not follow the grammar."""

    match = DIRECTIVE_PATTERN.fullmatch(raw)
    if match is None:
        return None
    tokens = match.group("body").split()
    if not tokens or not is_http_url(tokens[0]):
        return None
    params: Dict[str, object] = {}
    for token in tokens[1:]:
        key, sep, value = token.partition(":")
        parser = _PARAMS.get(key)
        if not sep or parser is None or key in params:
            return None
        parsed = parser(value)
        if parsed is None:
            return None
        params[key] = parsed
    return Directive(
        raw_text=raw,
        target_url=tokens[0],
        execution_budget=int(params.get("max_execution_time", DIRECTIVE_BUDGET_MS)) / 1000,
        filter_markup=bool(params.get("filter", False)),
        store=bool(params.get("store", False)),
        word_limit=int(params.get("max_words", WORD_LIMIT)),
    )


def find_directives(text: str) -> Iterator[Tuple[re.Match, Optional[Directive]]]:
    """Yield every candidate left to right with its parsed directive (or None)."""

    for match in DIRECTIVE_PATTERN.finditer(text or ""):
        yield match, parse_directive(match.group(0))


def build_directive(
    url: str,
    max_execution_time_ms: int = DIRECTIVE_BUDGET_MS,
    filter_markup: bool = False,
    store: bool = False,
) -> str:
    return (
        f"[{DIRECTIVE_TAG}: {url} max_execution_time:{max_execution_time_ms} "
        f"filter:{str(filter_markup).lower()} store:{str(store).lower()}]"
    )


class DirectiveResolutionError(RuntimeError):
    """Raised in strict mode when a directive cannot be resolved."""

    def __init__(self, directive: Directive, error: FetchError) -> None:
        super().__init__(f"Failed to scrape {directive.target_url}: {error.message}")
        self.directive = directive
        self.error = error


class CommandRewriter:
    """Replace directives in user text with the text of the pages they name.

    Directives resolve one at a time, left to right. A failed directive is kept
    in place with an inline error annotation; with ``strict=True`` the first
    failure raises :class:`DirectiveResolutionError` instead.
    """

    def __init__(self, fetcher: Optional[ResilientFetcher] = None, *, strict: bool = False) -> None:
        self.fetcher = fetcher or ResilientFetcher()
        self.strict = strict
        self.stored: Dict[str, str] = {}

    async def resolve(self, text: str) -> str:
        pieces: List[str] = []
        cursor = 0
        for match, directive in find_directives(text):
            if directive is None:
                logger.debug("Leaving malformed directive as literal text: %.80s", match.group(0))
                continue
            pieces.append(text[cursor:match.start()])
            pieces.append(await self._resolve_one(directive))
            cursor = match.end()
        if not pieces:
            return text
        pieces.append(text[cursor:])
        return "".join(pieces)

    async def _resolve_one(self, directive: Directive) -> str:
        outcome = await fetch_content(directive.to_request(), self.fetcher)
        if isinstance(outcome, FetchError):
            if self.strict:
                raise DirectiveResolutionError(directive, outcome)
            message = f"Failed to scrape {directive.target_url}: {outcome.message}"
            logger.warning("Error executing command: %s", message)
            return ERROR_ANNOTATION.format(raw=directive.raw_text, message=message)
        if directive.store:
            self.stored[directive.target_url] = outcome.text
            logger.info(
                "Storing content (first %d characters): %s",
                STORE_PREVIEW_CHARS,
                outcome.text[:STORE_PREVIEW_CHARS],
            )
        return outcome.text


__all__ = [
    "CommandRewriter",
    "Directive",
    "DirectiveResolutionError",
    "DIRECTIVE_PATTERN",
    "ERROR_ANNOTATION",
    "build_directive",
    "find_directives",
    "parse_directive",
]
