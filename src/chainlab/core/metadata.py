"""Generation metadata recovery from PNG files.

Generated images carry their prompt and parameters in PNG ``tEXt`` chunks.
This module walks the chunk list of a raw PNG buffer (no image decoding) and
recovers a :class:`GenerationRecord` from either of the two encodings in use:

JSON (current)::

    {"prompt": "...", "uc": "...", "steps": 28, "scale": 5, "seed": 1,
     "sampler": "k_euler_ancestral", "width": 832, "height": 1216, ...}

Legacy free text::

    <prompt> Negative prompt: <negative> Steps: 28, Sampler: Euler a,
    CFG scale: 7, Seed: 42, Size: 832x1216, ...

Parsing is resolved once into a tagged result
(:class:`ParsedJsonMetadata`, :class:`ParsedTextMetadata` or
:class:`UnrecognizedMetadata`) so downstream code never has to sniff the
payload again.

Nothing in this module raises on malformed input: a buffer that is not a PNG
yields ``None``, truncated chunk data ends the walk, and fields that cannot be
read are left as ``None``.

Chunk Layout
------------
After the 8-byte signature a PNG is a sequence of::

    [4-byte big-endian length][4-byte type][payload][4-byte CRC]

``tEXt`` payloads are ``keyword\\0text`` in Latin-1.
"""

from __future__ import annotations

import json
import logging
import math
import re
import struct
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel

from chainlab.core.models import MAX_DIMENSION, MAX_STEPS, MIN_DIMENSION, GenerationParameters

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_CANDIDATE_KEYWORDS = ("Description", "Comment")
_CONTENT_MARKERS = ("Steps:", '"prompt":', '"steps":')

_NEGATIVE_LABEL = "Negative prompt:"
_STEPS_LABEL = "Steps:"


class GenerationRecord(BaseModel):
    """Generation parameters recovered from an image.  All fields optional."""

    prompt: str | None = None
    negative_prompt: str | None = None
    sampler: str | None = None
    steps: int | None = None
    scale: float | None = None
    seed: int | None = None
    width: int | None = None
    height: int | None = None

    def to_parameters(self, base: GenerationParameters | None = None) -> GenerationParameters:
        """Overlay the recovered fields onto ``base`` (or the defaults).

        Values the model would reject (e.g. more than 28 steps) are clamped
        or skipped so that importing a foreign image never fails.
        """
        base = base or GenerationParameters()
        updates: dict[str, Any] = {}
        if self.width:
            updates["width"] = _clamp_dimension(self.width)
        if self.height:
            updates["height"] = _clamp_dimension(self.height)
        if self.steps:
            updates["steps"] = max(1, min(self.steps, MAX_STEPS))
        if self.scale is not None and math.isfinite(self.scale) and self.scale >= 0:
            updates["scale"] = self.scale
        if self.sampler:
            updates["sampler"] = self.sampler
        if self.seed is not None:
            updates["seed"] = self.seed if self.seed >= 0 else None
        return base.model_copy(update=updates)


@dataclass(frozen=True)
class ParsedJsonMetadata:
    raw: str
    record: GenerationRecord
    data: dict = field(default_factory=dict)
    kind: Literal["json"] = "json"


@dataclass(frozen=True)
class ParsedTextMetadata:
    raw: str
    record: GenerationRecord
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class UnrecognizedMetadata:
    raw: str | None = None
    record: GenerationRecord = field(default_factory=GenerationRecord)
    kind: Literal["unrecognized"] = "unrecognized"


ParsedMetadata = Union[ParsedJsonMetadata, ParsedTextMetadata, UnrecognizedMetadata]


# ---------------------------------------------------------------------------
# Chunk walk.
# ---------------------------------------------------------------------------


def iter_chunks(data: bytes) -> Iterator[tuple[str, bytes]]:
    """Yield ``(type, payload)`` for each complete chunk after the signature.

    Stops silently at the end of the buffer or at the first truncated chunk.
    The CRC is not verified.
    """
    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(data):
        length, raw_type = struct.unpack_from(">I4s", data, offset)
        start = offset + 8
        end = start + length
        if end > len(data):
            logger.debug(f"Truncated {raw_type!r} chunk at offset {offset}")
            return
        yield raw_type.decode("latin-1"), data[start:end]
        offset = end + 4


def read_text_chunks(data: bytes) -> Iterator[tuple[str, str]]:
    """Yield ``(keyword, text)`` for every ``tEXt`` chunk in a PNG buffer."""
    if not data.startswith(PNG_SIGNATURE):
        return
    for chunk_type, payload in iter_chunks(data):
        if chunk_type != "tEXt":
            continue
        keyword, sep, text = payload.partition(b"\x00")
        if not sep:
            continue
        yield keyword.decode("latin-1"), text.decode("latin-1")


def extract_metadata(data: bytes) -> str | None:
    """Return the raw generation-metadata text embedded in a PNG, if any.

    Only ``Description`` and ``Comment`` text chunks are candidates, and a
    candidate is accepted only if it looks like generation data.  The first
    accepted chunk wins.

    Args:
        data: Complete file contents.

    Returns:
        The chunk text, or ``None`` if the buffer is not a PNG or carries no
        generation metadata.
    """
    if not data.startswith(PNG_SIGNATURE):
        return None
    for keyword, text in read_text_chunks(data):
        if keyword not in _CANDIDATE_KEYWORDS:
            continue
        if any(marker in text for marker in _CONTENT_MARKERS):
            return text
    return None


# ---------------------------------------------------------------------------
# Interpretation.
# ---------------------------------------------------------------------------


def _as_float(value) -> float | None:
    """Return ``value`` as a finite float, or ``None``."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _as_int(value) -> int | None:
    number = _as_float(value)
    return None if number is None else int(number)


def _clamp_dimension(value: int) -> int:
    return max(MIN_DIMENSION, min(value, MAX_DIMENSION))


def _as_str(value) -> str | None:
    return value if isinstance(value, str) else None


def _caption(data: dict, key: str) -> str | None:
    caption = data.get(key)
    if isinstance(caption, dict):
        caption = caption.get("caption")
    if isinstance(caption, dict):
        return _as_str(caption.get("base_caption"))
    return None


def _parse_json(text: str) -> ParsedJsonMetadata | None:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if not (data.get("prompt") or data.get("steps") or data.get("v4_prompt")):
        return None

    prompt = _as_str(data.get("prompt"))
    if prompt is None:
        prompt = _caption(data, "v4_prompt")
    negative = _as_str(data.get("uc"))
    if negative is None:
        negative = _caption(data, "v4_negative_prompt")

    record = GenerationRecord(
        prompt=prompt,
        negative_prompt=negative,
        sampler=_as_str(data.get("sampler")),
        steps=_as_int(data.get("steps")),
        scale=_as_float(data.get("scale")),
        seed=_as_int(data.get("seed")),
        width=_as_int(data.get("width")),
        height=_as_int(data.get("height")),
    )
    return ParsedJsonMetadata(raw=text, record=record, data=data)


def _text_field(block: str, key: str) -> str | None:
    match = re.search(rf"{re.escape(key)}:\s*([^,]+)", block)
    return match.group(1).strip() if match else None


def _clean_segment(text: str) -> str:
    return text.strip().strip(",").strip()


def normalise_sampler(name: str) -> str:
    """Convert a display name such as ``"Euler a"`` to ``"euler_a"``."""
    return name.strip().lower().replace(" ", "_")


def _parse_text(text: str) -> ParsedTextMetadata | None:
    steps_at = text.find(_STEPS_LABEL)
    if steps_at < 0:
        return None
    negative_at = text.find(_NEGATIVE_LABEL)

    negative = None
    if 0 <= negative_at < steps_at:
        prompt = text[:negative_at]
        negative = _clean_segment(text[negative_at + len(_NEGATIVE_LABEL) : steps_at])
    else:
        prompt = text[:steps_at]

    block = text[steps_at:]
    sampler = _text_field(block, "Sampler")
    size = _text_field(block, "Size")
    width = height = None
    if size and "x" in size:
        w, _, h = size.partition("x")
        width, height = _as_int(w), _as_int(h)

    record = GenerationRecord(
        prompt=_clean_segment(prompt),
        negative_prompt=negative,
        sampler=normalise_sampler(sampler) if sampler else None,
        steps=_as_int(_text_field(block, "Steps")),
        scale=_as_float(_text_field(block, "CFG scale")),
        seed=_as_int(_text_field(block, "Seed")),
        width=width,
        height=height,
    )
    return ParsedTextMetadata(raw=text, record=record)


def parse_generation_metadata(text: str | None) -> ParsedMetadata:
    """Interpret extracted metadata text.

    JSON-looking text that fails to parse falls back to the legacy text
    parser.

    Args:
        text: Output of :func:`extract_metadata`.

    Returns:
        A tagged parse result; :class:`UnrecognizedMetadata` when neither
        encoding matches.
    """
    if not text:
        return UnrecognizedMetadata(raw=text)
    if text.lstrip().startswith("{"):
        parsed = _parse_json(text)
        if parsed is not None:
            return parsed
    return _parse_text(text) or UnrecognizedMetadata(raw=text)


def read_generation_metadata(data: bytes) -> ParsedMetadata:
    """Extract and interpret the generation metadata of a PNG buffer."""
    return parse_generation_metadata(extract_metadata(data))
