"""
HTML → plain text for the text/plain part of outgoing email.

Rules:
- <style>, <script>, <head> and comments are dropped; <img> is skipped
- <a href="X">Y</a> renders as "Y [X]", or just "Y" when X and Y are the same
  ("mailto:" is ignored for the comparison, "#fragment" links render bare)
- headings are upper-cased; paragraphs are separated by a blank line, other
  block elements start a new line, and adjacent breaks merge
- list items render as "* item"
- entities are decoded, whitespace collapsed, lines wrapped at `wordwrap`
"""
from __future__ import annotations

import html
import re
import textwrap
from typing import Optional

_DROPPED = re.compile(r"<(style|script|head)\b[^>]*>.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_IMG = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_LINK = re.compile(r"<a\b([^>]*)>(.*?)</a\s*>", re.DOTALL | re.IGNORECASE)
_HREF = re.compile(r"""\bhref\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+))""", re.IGNORECASE)
_HEADING = re.compile(r"<h([1-6])\b[^>]*>(.*?)</h\1\s*>", re.DOTALL | re.IGNORECASE)
_LIST_ITEM = re.compile(r"<li\b[^>]*>", re.IGNORECASE)
_PARAGRAPH = re.compile(r"</?(p|ul|ol|table|blockquote|pre)\b[^>]*>", re.IGNORECASE)
_BLOCK = re.compile(r"<hr\b[^>]*>|</?(div|li|tr|section|header|footer|article)\b[^>]*>", re.IGNORECASE)
_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_WS = re.compile(r"\s+")

# Break markers, resolved once all tags are gone
_SOFT = "\x01"   # block boundary: one line break
_HARD = "\x02"   # paragraph boundary: blank line
_BREAKS = re.compile(rf"[ \t]*[{_SOFT}{_HARD}][{_SOFT}{_HARD} \t]*")

BULLET = "* "


def _strip_tags(fragment: str) -> str:
    return _WS.sub(" ", _TAG.sub("", fragment)).strip()


def _link_href(attrs: str) -> str:
    match = _HREF.search(attrs)
    if not match:
        return ""
    href = html.unescape(next(g for g in match.groups() if g is not None)).strip()
    if href.startswith("#"):
        return ""
    return href[len("mailto:"):] if href.lower().startswith("mailto:") else href


def _render_link(match: re.Match) -> str:
    href = _link_href(match.group(1))
    text = _strip_tags(match.group(2))
    if not text:
        return href
    if not href or html.unescape(text) == href:
        return text
    return f"{text} [{href}]"


def _resolve_break(match: re.Match) -> str:
    return "\n\n" if _HARD in match.group(0) else "\n"


def _wrap(line: str, width: Optional[int]) -> str:
    if not width or len(line) <= width:
        return line
    indent = " " * len(BULLET) if line.startswith(BULLET) else ""
    return textwrap.fill(line, width=width, subsequent_indent=indent,
                         break_long_words=False, break_on_hyphens=False)


def html_to_text(source: str, wordwrap: Optional[int] = 80) -> str:
    """Convert an HTML document or fragment to readable plain text."""
    text = _COMMENT.sub("", source)
    text = _DROPPED.sub("", text)
    text = _IMG.sub("", text)
    text = _WS.sub(" ", text)

    text = _LINK.sub(_render_link, text)
    text = _HEADING.sub(lambda m: f"{_HARD}{_strip_tags(m.group(2)).upper()}{_HARD}", text)
    text = _LIST_ITEM.sub(f"{_SOFT}{BULLET}", text)
    text = _PARAGRAPH.sub(_HARD, text)
    text = _BLOCK.sub(_SOFT, text)
    text = _BR.sub("\n", text)
    text = _TAG.sub("", text)
    text = _BREAKS.sub(_resolve_break, text)
    text = html.unescape(text).replace("\xa0", " ")

    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n")]
    text = "\n".join(_wrap(line, wordwrap) for line in lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
