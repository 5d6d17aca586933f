"""Weighted tag formatting and parsing.

Emphasis is expressed by nesting a tag in bracket pairs:

    weight  3  ->  {{{artist:name}}}
    weight  0  ->  artist:name
    weight -2  ->  [[artist:name]]

:func:`format_tag` and :func:`parse_tag` are exact inverses for every weight
in [-3, 3] and every name without bracket characters.  Parsing never raises:
unbalanced or mixed brackets are kept in the name and the weight is 0.

The list helpers implement clipboard export (``format_tag_list``) and batch
import (``parse_tag_list``) of comma/newline separated tag strings.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from chainlab.core.models import MAX_WEIGHT, MIN_WEIGHT, Tag

DEFAULT_PREFIX = "artist"

# ASCII comma, full-width comma, newline.
_LIST_SEPARATORS = re.compile(r"[,，\n]")

_BRACKETS = {"{": "}", "[": "]"}


def clamp_weight(weight: int) -> int:
    """Clamp ``weight`` to [-3, 3]."""
    return max(MIN_WEIGHT, min(MAX_WEIGHT, weight))


def adjust_weight(tag: Tag, delta: int) -> Tag:
    """Return a copy of ``tag`` with its weight moved by ``delta`` (clamped)."""
    return Tag(name=tag.name, weight=clamp_weight(tag.weight + delta))


def format_tag(tag: Tag, prefix: str | None = DEFAULT_PREFIX) -> str:
    """Render a tag as ``prefix:name`` wrapped in its emphasis brackets.

    Args:
        tag: Tag to render.
        prefix: Prefix placed before the name (without the colon).  Pass
            ``None`` or an empty string for the bare name.
    """
    text = f"{prefix}:{tag.name}" if prefix else tag.name
    weight = clamp_weight(tag.weight)
    if weight > 0:
        return "{" * weight + text + "}" * weight
    if weight < 0:
        return "[" * -weight + text + "]" * -weight
    return text


def _strip_prefix(text: str, prefix: str | None) -> str:
    if prefix and text.lower().startswith(prefix.lower() + ":"):
        return text[len(prefix) + 1 :]
    return text


def _bracket_depth(text: str, opener: str) -> int:
    closer = _BRACKETS[opener]
    leading = len(text) - len(text.lstrip(opener))
    trailing = len(text) - len(text.rstrip(closer))
    if leading == 0 or leading != trailing or leading * 2 > len(text):
        return 0
    inner = text[leading : len(text) - trailing]
    # Any other bracket inside means the nesting is not a clean wrap.
    if any(ch in inner for ch in "{}[]"):
        return 0
    return leading


def parse_tag(raw: str, prefix: str | None = DEFAULT_PREFIX) -> Tag:
    """Parse a bracket-annotated tag back into a :class:`Tag`.

    The prefix is matched case-insensitively, both outside the brackets
    (``artist:{{name}}``) and inside them (``{{artist:name}}``).  Depths above
    3 are clamped.  Whitespace is part of the name; trimming list input is
    left to :func:`parse_tag_list`.

    Args:
        raw: Tag text, e.g. ``"{{artist:foo}}"``.
        prefix: Prefix to strip (without the colon), or ``None``.

    Returns:
        The parsed tag.  Malformed input yields weight 0 with the text
        (minus any prefix) as the name.
    """
    text = _strip_prefix(raw, prefix)

    weight = 0
    for opener, sign in (("{", 1), ("[", -1)):
        depth = _bracket_depth(text, opener)
        if depth:
            weight = sign * depth
            text = text[depth : len(text) - depth]
            text = _strip_prefix(text, prefix)
            break

    return Tag(name=text, weight=clamp_weight(weight))


def format_tag_list(tags: Iterable[Tag], prefix: str | None = DEFAULT_PREFIX) -> str:
    """Join formatted tags with ``", "`` for copying into a prompt."""
    return ", ".join(format_tag(tag, prefix) for tag in tags)


def parse_tag_list(
    text: str,
    known_names: Iterable[str] | None = None,
    prefix: str | None = DEFAULT_PREFIX,
) -> list[Tag]:
    """Parse a pasted list of tags.

    Tags are separated by commas (ASCII or full-width) or newlines.  Blank
    entries are skipped and duplicates (case-insensitive) keep their first
    occurrence.

    Args:
        text: Raw pasted text.
        known_names: If given, only tags whose name matches one of these
            (case-insensitively) are kept, renamed to the known spelling.
        prefix: Prefix to strip from each tag.

    Returns:
        Parsed tags in input order.
    """
    lookup = None
    if known_names is not None:
        lookup = {name.lower(): name for name in known_names}

    tags: list[Tag] = []
    seen: set[str] = set()
    for piece in _LIST_SEPARATORS.split(text):
        piece = piece.strip()
        if not piece:
            continue
        tag = parse_tag(piece, prefix)
        key = tag.name.lower()
        if lookup is not None:
            if key not in lookup:
                continue
            tag = Tag(name=lookup[key], weight=tag.weight)
        if key in seen:
            continue
        seen.add(key)
        tags.append(tag)
    return tags
