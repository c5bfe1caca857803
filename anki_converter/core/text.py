"""Plain-text extraction from Anki field HTML.

WHY: Anki fields are HTML fragments full of editor noise (divs, spans,
inline styles), media references, and entities. JSON consumers want the
words, plus a hint of emphasis, with every non-ASCII character exactly
as the author typed it.

HOW: One cleaning pass runs regex substitutions in a fixed order:
  1. drop comments, <script>/<style>, media tags and [sound:...] tokens
  2. turn emphasis tags into lightweight markers (**b**, *i*, _u_, ~~s~~,
     ^sup^, [sub]) when preserve_formatting is on
  3. turn block tags into line breaks and drop every other tag
  4. drop an unterminated tag at the very end of the text
  5. decode entities (&nbsp; becomes a plain space)
  6. normalize ASCII whitespace
The pass is repeated until the text stops changing. Every pass that
changes the text makes it shorter, or as long with fewer tabs/CRs, so
the loop ends, and the result is a fixed point: extract(extract(x)) ==
extract(x).

RULES:
- Only the media reference is removed, never the surrounding text
- Tag names match whole words (<b> never matches <br>, <s> never <span>)
- Only ASCII space, tab, CR and LF are normalized; U+00A0 and other
  Unicode whitespace typed into a field are preserved
- Cloze markers {{cN::...}} are ordinary text here and survive unchanged
- Never raises on malformed markup
"""

from __future__ import annotations

import html
import re

_FLAGS = re.IGNORECASE | re.DOTALL

_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_CONTAINER_RE = re.compile(
    r"<(script|style|audio|video|object|iframe)\b[^>]*>.*?</\1\s*>", _FLAGS
)
_SOUND_RE = re.compile(r"\[sound:[^\]]*\]", re.IGNORECASE)
_MEDIA_TAG_RE = re.compile(
    r"</?(?:img|source|track|embed|audio|video|object|iframe|script|style)\b[^>]*>", _FLAGS
)

_FORMATTING = (
    (re.compile(r"<(b|strong)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "**{}**"),
    (re.compile(r"<(i|em)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "*{}*"),
    (re.compile(r"<(u)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "_{}_"),
    (re.compile(r"<(s|strike|del)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "~~{}~~"),
    (re.compile(r"<(sup)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "^{}^"),
    (re.compile(r"<(sub)\b[^>]*>(.*?)</\1\s*>", _FLAGS), "[{}]"),
)

_BLOCK_TAG_RE = re.compile(
    r"</?(?:div|p|br|hr|h[1-6]|ul|ol|li|dl|dt|dd|blockquote|pre|table|tr|td|th|"
    r"thead|tbody|tfoot|section|article|header|footer)\b[^>]*>",
    _FLAGS,
)
_ANY_TAG_RE = re.compile(r"</?[A-Za-z!][^<>]*>")
_DANGLING_TAG_RE = re.compile(r"<(?:!|/?[A-Za-z][\w:-]*[\s/=])[^<>]*\Z")
_NBSP_ENTITY_RE = re.compile(r"&nbsp;?", re.IGNORECASE)

_SPACES_RE = re.compile(r" {2,}")
_NEWLINES_RE = re.compile(r"\n{3,}")
_LINE_EDGE_RE = re.compile(r" *\n *")


def _emphasis(marker: str):
    def replace(match: "re.Match[str]") -> str:
        inner = match.group(2)
        if not inner.strip(" \t\r\n"):
            return inner
        return marker.format(inner)
    return replace


def remove_media(text: str) -> str:
    """Drop comments, scripts, styles, media tags and [sound:...] tokens."""
    text = _COMMENT_RE.sub("", text)
    text = _CONTAINER_RE.sub("", text)
    text = _SOUND_RE.sub("", text)
    return _MEDIA_TAG_RE.sub("", text)


def convert_formatting(text: str) -> str:
    """Replace emphasis tags with plain-text markers."""
    for pattern, marker in _FORMATTING:
        text = pattern.sub(_emphasis(marker), text)
    return text


def strip_tags(text: str) -> str:
    """Turn block tags into line breaks and remove all other tags."""
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _ANY_TAG_RE.sub("", text)
    return _DANGLING_TAG_RE.sub("", text)


def decode_entities(text: str) -> str:
    text = _NBSP_ENTITY_RE.sub(" ", text)
    return html.unescape(text)


def normalize_whitespace(text: str) -> str:
    """Collapse ASCII whitespace; other characters are left alone."""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    text = _SPACES_RE.sub(" ", text)
    text = _LINE_EDGE_RE.sub("\n", text)
    text = _NEWLINES_RE.sub("\n\n", text)
    return text.strip(" \n")


def _clean_once(text: str, preserve_formatting: bool) -> str:
    text = remove_media(text)
    if preserve_formatting:
        text = convert_formatting(text)
    text = strip_tags(text)
    text = decode_entities(text)
    return normalize_whitespace(text)


def extract(raw: str, preserve_formatting: bool = True) -> str:
    """Extract clean text from a field's HTML.

    Args:
        raw: Field content as stored by Anki.
        preserve_formatting: Convert emphasis tags to markers instead of
            dropping them.

    Returns:
        Clean text; "" for empty input.
    """
    if not raw:
        return ""
    text = raw
    while True:
        cleaned = _clean_once(text, preserve_formatting)
        if cleaned == text:
            return cleaned
        text = cleaned


class TextExtractor:
    """Field cleaner bound to one formatting setting."""

    def __init__(self, preserve_formatting: bool = True) -> None:
        self.preserve_formatting = preserve_formatting

    def __call__(self, raw: str) -> str:
        return extract(raw, self.preserve_formatting)
