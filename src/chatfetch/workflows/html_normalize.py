"""Turn fetched HTTP bodies into clean unicode and parse them.

Decoding prefers the charset the server declared and falls back to
charset-normalizer detection. Text repair (ftfy) runs on the decoded string so
the extractor never sees mojibake or invisible characters.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Mapping, Optional

import ftfy
from bs4 import BeautifulSoup, FeatureNotFound
from charset_normalizer import from_bytes

_CHARSET_RE = re.compile(r"charset=[\"']?([\w.:-]+)", re.IGNORECASE)

# Zero-width marks and stray control characters are dropped outright; C1
# controls usually come from a wrong codec and become spaces.
_INVISIBLE = "\u200b\u200c\u200d\u2060\ufeff\x00\x0b\x0c"
_CLEANUP_TABLE = {**dict.fromkeys(map(ord, _INVISIBLE)), **{code: " " for code in range(0x80, 0xA0)}}


def declared_charset(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if not headers:
        return None
    content_type = headers.get("content-type") or headers.get("Content-Type") or ""
    found = _CHARSET_RE.search(content_type)
    return found.group(1).lower() if found else None


def decode_bytes_auto(body: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Decode a response body: declared charset, then detection, then lenient UTF-8."""

    if not body:
        return ""
    charset = declared_charset(headers)
    if charset:
        try:
            return body.decode(charset, errors="replace")
        except LookupError:
            pass
    guess = from_bytes(body).best()
    return str(guess) if guess is not None else body.decode("utf-8", errors="replace")


def minimal_text_fix(text: str) -> str:
    """Repair mojibake and drop invisible characters; whitespace layout is kept."""

    if not text:
        return ""
    repaired = ftfy.fix_text(unicodedata.normalize("NFC", text), normalization="NFC")
    return repaired.translate(_CLEANUP_TABLE)


def parse_html(html: str) -> BeautifulSoup:
    """Parse with lxml when it is installed, otherwise with the stdlib parser."""

    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


__all__ = ["declared_charset", "decode_bytes_auto", "minimal_text_fix", "parse_html"]
