"""Screenplay parsing (Fountain-style plain text) into ordered script elements.

The parser works paragraph by paragraph, the way screenplay text is laid out:

* a scene heading starts with ``INT.``/``EXT.``/``EST.``/``INT./EXT.``/``I/E`` or
  is forced with a leading ``.``;
* a character cue is an upper-case line (or one forced with ``@``) followed,
  without a blank line, by parentheticals and dialogue;
* everything else is action.

Parsing is pure and deterministic: the same text always yields the same
element sequence, with ``index`` values 0..n-1 in script order.
"""

from __future__ import annotations

import hashlib
import re
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from voxcast.errors import ParseError

_HEADING_RE = re.compile(
    r"^(?P<prefix>INT\.?/EXT|INT/EXT|I/E|INT|EXT|EST)(?:\.|\s|$)\s*(?P<rest>.*)$",
    re.IGNORECASE,
)
_FORCED_HEADING_RE = re.compile(r"^\.(?!\.)\s*(?P<rest>.*)$")
_SCENE_NUMBER_RE = re.compile(r"\s*#[^#]*#\s*$")
# Any trailing cue extension, e.g. (V.O.) or (ON PHONE).
_CUE_EXTENSION_RE = re.compile(r"\s*\([^()]*\)\s*$")
_CUE_NAME_RE = re.compile(r"^[A-Z0-9][A-Z0-9 .'’\-]*$")
_PARENTHETICAL_RE = re.compile(r"^\(.*\)$")
_TRANSITION_RE = re.compile(r"^[A-Z\s]+TO:$")
_BONEYARD_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_NOTE_RE = re.compile(r"\[\[.*?\]\]", re.DOTALL)
# An upper-case name introduced with an age or an appositive: "VIKTOR (50s)", "NED, a guard".
_INTRODUCTION_RE = re.compile(
    r"\b(?P<name>[A-Z][A-Z'’\-]+(?:\s+[A-Z][A-Z'’\-]+)*)\b"
    r"(?=\s*(?:,|\([^)]*\d[^)]*\)))"
)

_TITLE_PAGE_KEYS = {
    "title",
    "credit",
    "author",
    "authors",
    "source",
    "draft date",
    "date",
    "contact",
    "copyright",
    "notes",
    "revision",
}
_TITLE_KEY_RE = re.compile(r"^(?P<key>[A-Za-z ]+):")

# Upper-case tokens that appear in action lines without naming anyone.
_CAPS_STOPWORDS = {
    "INT",
    "EXT",
    "CUT",
    "FADE",
    "FADE IN",
    "FADE OUT",
    "DISSOLVE",
    "CONTINUOUS",
    "LATER",
    "NIGHT",
    "DAY",
    "MORNING",
    "EVENING",
    "POV",
    "OS",
    "VO",
    "OC",
    "CLOSE",
    "CLOSE ON",
    "ANGLE",
    "ANGLE ON",
    "BACK TO",
    "SCENE",
    "THE END",
    "END",
    "SFX",
    "TV",
    "OK",
}


class ElementKind(str, Enum):
    SCENE_HEADING = "scene_heading"
    ACTION = "action"
    DIALOGUE = "dialogue"
    PARENTHETICAL = "parenthetical"


class ScriptElement(BaseModel):
    """One parsed unit of the script, immutable once parsed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: int = Field(ge=0, description="0-based script order, gap-free.")
    kind: ElementKind
    character: Optional[str] = Field(
        default=None, description="Speaking character for dialogue/parentheticals."
    )
    text: str
    scene_heading: Optional[str] = Field(
        default=None, description="Heading of the scene this element belongs to."
    )
    mentions: Tuple[str, ...] = Field(
        default=(), description="Characters named in an action line."
    )
    line_number: int = Field(ge=1, description="1-based source line of the element.")


class ScriptDocument(BaseModel):
    """Parsed script persisted alongside its source digest."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    digest: str
    elements: List[ScriptElement]


def script_digest(text: str) -> str:
    """Content hash of a script, insensitive to line-ending style."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_character_name(raw: str) -> str:
    """Upper-case a cue and strip Fountain extensions such as ``(V.O.)``."""
    name = raw.strip()
    if name.startswith("@"):
        name = name[1:]
    name = name.rstrip("^").strip()
    previous = None
    while previous != name:
        previous = name
        name = _CUE_EXTENSION_RE.sub("", name).strip()
    return " ".join(name.upper().split())


def _strip_markup(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Keep line numbering stable by replacing removed spans with their newlines.
    text = _BONEYARD_RE.sub(lambda m: "\n" * m.group().count("\n"), text)
    return _NOTE_RE.sub(lambda m: "\n" * m.group().count("\n"), text)


def _paragraphs(lines: Sequence[str]) -> List[Tuple[int, List[str]]]:
    """Group non-blank lines into (first_line_number, lines) paragraphs."""
    paragraphs: List[Tuple[int, List[str]]] = []
    current: List[str] = []
    start = 0
    for number, raw in enumerate(lines, start=1):
        line = raw.rstrip()
        if not line.strip():
            if current:
                paragraphs.append((start, current))
                current = []
            continue
        if not current:
            start = number
        current.append(line.strip())
    if current:
        paragraphs.append((start, current))
    return paragraphs


def _skip_title_page(
    paragraphs: List[Tuple[int, List[str]]],
) -> List[Tuple[int, List[str]]]:
    if not paragraphs:
        return paragraphs
    _, first = paragraphs[0]
    match = _TITLE_KEY_RE.match(first[0])
    if match and match.group("key").strip().lower() in _TITLE_PAGE_KEYS:
        logger.debug("parse.title_page lines={count}", count=len(first))
        return paragraphs[1:]
    return paragraphs


def _parse_heading(line: str, line_number: int) -> Optional[str]:
    """Return the cleaned heading text, None when the line is not a heading."""
    forced = _FORCED_HEADING_RE.match(line)
    if forced:
        rest = _SCENE_NUMBER_RE.sub("", forced.group("rest")).strip()
        if not rest:
            raise ParseError("forced scene heading has no text", line_number)
        return rest.upper()
    match = _HEADING_RE.match(line)
    if not match:
        return None
    rest = _SCENE_NUMBER_RE.sub("", match.group("rest")).strip(" .-")
    if not rest:
        raise ParseError(
            f"scene heading {line!r} is missing a location", line_number
        )
    return _SCENE_NUMBER_RE.sub("", line).strip().upper()


def _is_cue(line: str) -> bool:
    if line.startswith("@"):
        return bool(normalize_character_name(line))
    if _TRANSITION_RE.match(line) or _PARENTHETICAL_RE.match(line):
        return False
    name = normalize_character_name(line)
    if not name or not any(ch.isalpha() for ch in name):
        return False
    stripped = line.rstrip("^").strip()
    stripped = _CUE_EXTENSION_RE.sub("", stripped).strip()
    return stripped == stripped.upper() and bool(_CUE_NAME_RE.match(stripped))


def _action_text(lines: Iterable[str]) -> str:
    cleaned = []
    for line in lines:
        if line.startswith("!"):
            line = line[1:]
        elif line.startswith(">") and line.endswith("<"):
            line = line[1:-1].strip()
        elif line.startswith(">"):
            line = line[1:].strip()
        cleaned.append(line)
    return "\n".join(cleaned)


def _caps_introductions(text: str) -> List[str]:
    """Upper-case names introduced in mixed-case action text."""
    letters = [ch for ch in text if ch.isalpha()]
    if not letters or all(ch.isupper() for ch in letters):
        return []
    names = []
    for match in _INTRODUCTION_RE.finditer(text):
        candidate = " ".join(match.group("name").split())
        if candidate in _CAPS_STOPWORDS or len(candidate) < 2:
            continue
        names.append(candidate)
    return names


def _mentions(text: str, known: Sequence[str]) -> Tuple[str, ...]:
    upper = text.upper()
    found: Dict[str, None] = {}
    for name in known:
        if re.search(rf"(?<![A-Z0-9]){re.escape(name)}(?![A-Z0-9])", upper):
            found[name] = None
    for name in _caps_introductions(text):
        found[name] = None
    return tuple(found)


def parse(text: str) -> List[ScriptElement]:
    """Parse screenplay text into an ordered, gap-free element sequence.

    Raises:
        ParseError: On malformed heading syntax, an empty character cue, or text
            with no recognizable script structure at all.
    """
    lines = _strip_markup(text).split("\n")
    paragraphs = _skip_title_page(_paragraphs(lines))

    # (kind, character, text, scene, line_number); mentions are resolved once all cues are known.
    raw: List[Tuple[ElementKind, Optional[str], str, Optional[str], int]] = []
    cue_names: Dict[str, None] = {}
    scene: Optional[str] = None

    for start, para in paragraphs:
        first = para[0]
        heading = _parse_heading(first, start)
        if heading is not None:
            scene = heading
            raw.append((ElementKind.SCENE_HEADING, None, heading, scene, start))
            if len(para) > 1:
                raw.append(
                    (ElementKind.ACTION, None, _action_text(para[1:]), scene, start + 1)
                )
            continue

        if len(para) > 1 and _is_cue(first):
            name = normalize_character_name(first)
            if not name:
                raise ParseError("character cue has no name", start)
            cue_names[name] = None
            dialogue: List[str] = []
            dialogue_start = start + 1

            def flush() -> None:
                if dialogue:
                    raw.append(
                        (
                            ElementKind.DIALOGUE,
                            name,
                            " ".join(dialogue),
                            scene,
                            dialogue_start,
                        )
                    )
                    dialogue.clear()

            for offset, line in enumerate(para[1:], start=1):
                if _PARENTHETICAL_RE.match(line):
                    flush()
                    raw.append(
                        (ElementKind.PARENTHETICAL, name, line, scene, start + offset)
                    )
                    continue
                if not dialogue:
                    dialogue_start = start + offset
                dialogue.append(line)
            flush()
            continue

        raw.append((ElementKind.ACTION, None, _action_text(para), scene, start))

    if not raw:
        raise ParseError("no scene, character or dialogue structure found")

    known = list(cue_names)
    elements = [
        ScriptElement(
            index=index,
            kind=kind,
            character=character,
            text=body,
            scene_heading=scene_heading,
            mentions=_mentions(body, known) if kind is ElementKind.ACTION else (),
            line_number=line_number,
        )
        for index, (kind, character, body, scene_heading, line_number) in enumerate(raw)
    ]
    logger.debug(
        "parse.done elements={count} characters={characters}",
        count=len(elements),
        characters=len(known),
    )
    return elements


def characters(elements: Sequence[ScriptElement]) -> List[str]:
    """Every character in first-appearance order, speaking or action-only."""
    names: Dict[str, None] = {}
    for element in elements:
        if element.character:
            names[element.character] = None
        for name in element.mentions:
            names[name] = None
    return list(names)


def speaking_characters(elements: Sequence[ScriptElement]) -> List[str]:
    names: Dict[str, None] = {}
    for element in elements:
        if element.kind is ElementKind.DIALOGUE and element.character:
            names[element.character] = None
    return list(names)


def dialogue_for(
    character: str, elements: Sequence[ScriptElement]
) -> List[Tuple[ScriptElement, Optional[ScriptElement]]]:
    """Dialogue elements of one character paired with their governing parenthetical.

    A parenthetical governs the dialogue element that directly follows it in the
    same speech block.
    """
    pairs: List[Tuple[ScriptElement, Optional[ScriptElement]]] = []
    pending: Optional[ScriptElement] = None
    for element in elements:
        if element.kind is ElementKind.PARENTHETICAL:
            pending = element if element.character == character else None
            continue
        if element.kind is ElementKind.DIALOGUE and element.character == character:
            pairs.append((element, pending))
        pending = None
    return pairs
