"""Utilities for page text extraction and word-budget truncation (BeautifulSoup)."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .fetcher_config import TRUNCATION_MARKER
from .html_normalize import parse_html

_WHITESPACE = re.compile(r"\s+")
_FILTERED_TAGS = ("script", "style")


@dataclass(frozen=True)
class Content:
    """Extracted page text, bounded to a word budget."""

    text: str
    original_length: int
    truncated: bool = False


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def truncate_words(text: str, word_limit: int) -> str:
    """Keep the first ``word_limit`` words and append the truncation marker.

    The limit is a word count, not a character count. Text within the limit is
    returned unchanged.
    """

    if word_limit <= 0:
        raise ValueError("word_limit must be positive")
    words = text.split()
    if len(words) <= word_limit:
        return text
    return " ".join(words[:word_limit]) + TRUNCATION_MARKER


def body_text(raw_html: str, filter_markup: bool) -> str:
    """Return the whitespace-normalized text of the document body."""

    soup = parse_html(raw_html or "")
    if filter_markup:
        for tag in soup.find_all(_FILTERED_TAGS):
            tag.decompose()
    root = soup.body if soup.body is not None else soup
    return normalize_whitespace(root.get_text())


def extract_content(raw_html: str, filter_markup: bool, word_limit: int) -> Content:
    text = body_text(raw_html, filter_markup)
    truncated = len(text.split()) > word_limit
    bounded = truncate_words(text, word_limit) if truncated else text
    return Content(text=bounded, original_length=len(text), truncated=truncated)


def extract_text(raw_html: str, filter_markup: bool, word_limit: int) -> str:
    """Extract body text, optionally dropping script/style, bounded to ``word_limit`` words."""

    return extract_content(raw_html, filter_markup, word_limit).text


__all__ = [
    "Content",
    "normalize_whitespace",
    "truncate_words",
    "body_text",
    "extract_content",
    "extract_text",
]
