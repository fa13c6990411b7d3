"""Sentence-bounded segmentation of long text into synthesis units.

Segmentation is span based: each unit owns a contiguous slice of the input,
inter-sentence whitespace included, so joining every unit's ``source``
reproduces the input exactly.
"""

from __future__ import annotations

import re
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field

_CLOSING_PUNCTUATION = "\"'”’)]}»"
_ABBREVIATIONS = {
    "mr.",
    "mrs.",
    "ms.",
    "dr.",
    "prof.",
    "sr.",
    "jr.",
    "st.",
    "vs.",
    "etc.",
    "e.g.",
    "i.e.",
    "no.",
    "mt.",
    "lt.",
    "col.",
    "gen.",
    "capt.",
    "sgt.",
}
_WORD_RE = re.compile(r"\S+")
_TRAILING_TOKEN_RE = re.compile(r"\S+$")
_OPENING_PUNCTUATION = "\"'“‘([{«"


class TextUnit(BaseModel):
    """One synthesis-sized slice of the input."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: int = Field(ge=0)
    text: str = Field(description="Trimmed text sent to the synthesizer.")
    source: str = Field(description="Exact input slice, surrounding whitespace included.")
    start: int = Field(ge=0)
    end: int = Field(ge=0)

    @property
    def word_count(self) -> int:
        return count_words(self.text)


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text))


def sentence_spans(text: str) -> List[Tuple[int, int]]:
    """Return (start, end) spans covering ``text`` end to end, one per sentence.

    A sentence ends at ``.``, ``!`` or ``?`` plus any closing quotes or
    brackets; the whitespace after it belongs to that sentence. Ellipses,
    decimals and common abbreviations do not end a sentence.
    """
    spans: List[Tuple[int, int]] = []
    length = len(text)
    start = 0
    i = 0
    while i < length:
        ch = text[i]
        if ch == "." and text[i : i + 3] == "...":
            i += 3
            continue
        if ch in ".!?":
            if (
                ch == "."
                and i > 0
                and i + 1 < length
                and text[i - 1].isdigit()
                and text[i + 1].isdigit()
            ):
                i += 1
                continue

            end = i + 1
            while end < length and text[end] in ".!?":
                end += 1
            while end < length and text[end] in _CLOSING_PUNCTUATION:
                end += 1

            token = _TRAILING_TOKEN_RE.search(text[start : i + 1])
            prev_word = token.group().lstrip(_OPENING_PUNCTUATION).lower() if token else ""
            if ch == "." and prev_word in _ABBREVIATIONS:
                i = end
                continue
            if end < length and not text[end].isspace():
                i = end
                continue

            while end < length and text[end].isspace():
                end += 1
            spans.append((start, end))
            start = end
            i = end
            continue
        i += 1

    if start < length:
        spans.append((start, length))
    return spans


def chunk(text: str, max_words: int = 200) -> List[TextUnit]:
    """Split text into units of at most ``max_words`` words at sentence boundaries.

    A sentence longer than the ceiling becomes a unit of its own; sentences are
    never split. Blank input yields no units.

    Raises:
        ValueError: If ``max_words`` is below 1.
    """
    if max_words < 1:
        raise ValueError(f"max_words must be >= 1, got {max_words}")
    if not text.strip():
        return []

    groups: List[Tuple[int, int]] = []
    group_start = 0
    group_end = 0
    group_words = 0
    for start, end in sentence_spans(text):
        words = count_words(text[start:end])
        if group_end > group_start and group_words + words > max_words:
            groups.append((group_start, group_end))
            group_start = start
            group_words = 0
        group_end = end
        group_words += words
    if group_end > group_start:
        groups.append((group_start, group_end))

    # Whitespace-only tails join the previous unit so no unit is blank.
    merged: List[Tuple[int, int]] = []
    for start, end in groups:
        if merged and not text[start:end].strip():
            merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))

    return [
        TextUnit(
            index=index,
            text=text[start:end].strip(),
            source=text[start:end],
            start=start,
            end=end,
        )
        for index, (start, end) in enumerate(merged)
    ]
