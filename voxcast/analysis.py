"""Character evidence assembly and language-model profile analysis."""

from __future__ import annotations

import hashlib
import re
from enum import Enum
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence

import tiktoken
from langchain_core.callbacks import UsageMetadataCallbackHandler
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic_xml import BaseXmlModel, attr, element, wrapped

from voxcast.errors import AnalysisFailed
from voxcast.script import ElementKind, ScriptElement, normalize_character_name


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    NON_BINARY = "non-binary"
    UNSPECIFIED = "unspecified"


class CharacterEvidence(BaseModel):
    """Everything the script says about one character, in script order."""

    model_config = ConfigDict(extra="forbid")

    character_name: str
    dialogue_lines: List[str] = Field(default_factory=list)
    parentheticals: List[str] = Field(default_factory=list)
    scene_headings: List[str] = Field(default_factory=list)
    action_mentions: List[str] = Field(default_factory=list)
    addressed_by: List[str] = Field(
        default_factory=list,
        description="Other characters' lines that name this character.",
    )


class ProfileAnalysis(BaseModel):
    """Structured fields requested from the language model."""

    model_config = ConfigDict(extra="ignore")

    gender: Gender = Field(
        description=(
            "Gender stated or unambiguously implied by the evidence "
            "(pronouns, titles). Use 'unspecified' when the evidence is silent."
        )
    )
    age_range: str = Field(
        description="Short approximate age such as '30s', 'elderly', 'teenager'; 'adult' if unknown."
    )
    description: str = Field(
        description="1-3 sentences on personality and vocal qualities grounded in the evidence."
    )
    voice_traits: List[str] = Field(
        min_length=1,
        max_length=8,
        description="3-6 short voice-trait phrases (e.g. 'gravelly', 'clipped speech').",
    )
    summary: str = Field(
        description="1-2 sentence voice description combining gender, age and key traits."
    )


class CharacterProfile(BaseModel):
    """Derived voice profile; always replaced wholesale, never patched."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    gender: Gender = Gender.UNSPECIFIED
    age_range: str = "adult"
    description: str = ""
    voice_traits: List[str] = Field(default_factory=list)
    summary: str = ""
    line_count: int = Field(default=0, ge=0)
    scene_headings: List[str] = Field(default_factory=list)
    evidence_digest: Optional[str] = None


class EvidencePayload(BaseXmlModel, tag="character-evidence", skip_empty=True):
    """Bounded evidence sent to the language model."""

    model_config = ConfigDict(extra="forbid")

    name: str = attr()
    total_dialogue_lines: int = attr(name="total-dialogue-lines", ge=0)
    total_action_mentions: int = attr(name="total-action-mentions", ge=0)
    omitted: int = attr(default=0, ge=0)
    dialogue: List[str] = wrapped("dialogue", element(tag="line", default_factory=list))
    parentheticals: List[str] = wrapped(
        "parentheticals", element(tag="direction", default_factory=list)
    )
    scenes: List[str] = wrapped("scenes", element(tag="scene", default_factory=list))
    actions: List[str] = wrapped("actions", element(tag="action", default_factory=list))
    addressed_by: List[str] = wrapped(
        "addressed-by", element(tag="line", default_factory=list)
    )


ANALYSIS_PROMPT = """
You are a voice casting director preparing a screenplay character for text-to-speech voice design.

You receive an XML evidence record: the character's dialogue lines, parenthetical directions,
scene headings where they appear, action lines that mention them, and lines in which other
characters address or describe them.

Rules:
- Use ONLY the supplied evidence. Do not draw on outside knowledge of any story, actor or
  adaptation, and do not invent traits the evidence does not support.
- Do not infer emotional states that no parenthetical or action line states.
- When gender is not stated or unambiguously implied, answer 'unspecified'. When age is not
  indicated, answer 'adult'.
- Voice traits are short phrases a voice designer can act on (timbre, pace, register, accent
  only when stated).

Return data that conforms to the provided schema exactly, with no text outside it.
"""


@lru_cache(maxsize=1)
def _token_encoder():
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception:  # noqa: BLE001
        logger.warning("analysis.tokenizer_unavailable falling back to char estimate")
        return None


def estimate_tokens(text: str) -> int:
    encoder = _token_encoder()
    if encoder is not None:
        return len(encoder.encode(text))
    text = text.strip()
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


def _names_line(name: str, text: str) -> bool:
    return bool(
        re.search(rf"(?<![A-Za-z0-9]){re.escape(name)}(?![A-Za-z0-9])", text, re.IGNORECASE)
    )


def extract_evidence(
    elements: Sequence[ScriptElement],
) -> Dict[str, CharacterEvidence]:
    """Collect evidence for every character, keyed by normalized name.

    Speaking characters collect their dialogue and parentheticals; every
    character (action-only ones included) collects the action lines that
    mention them, the scenes they appear in, and other characters' lines that
    name them.
    """
    evidence: Dict[str, CharacterEvidence] = {}

    def entry(name: str) -> CharacterEvidence:
        if name not in evidence:
            evidence[name] = CharacterEvidence(character_name=name)
        return evidence[name]

    def appears(name: str, scene: Optional[str]) -> None:
        record = entry(name)
        if scene and scene not in record.scene_headings:
            record.scene_headings.append(scene)

    for item in elements:
        if item.kind is ElementKind.DIALOGUE and item.character:
            entry(item.character).dialogue_lines.append(item.text)
            appears(item.character, item.scene_heading)
        elif item.kind is ElementKind.PARENTHETICAL and item.character:
            entry(item.character).parentheticals.append(item.text)
            appears(item.character, item.scene_heading)
        elif item.kind is ElementKind.ACTION:
            for name in item.mentions:
                entry(name).action_mentions.append(item.text)
                appears(name, item.scene_heading)

    names = list(evidence)
    for item in elements:
        if item.kind is not ElementKind.DIALOGUE or not item.character:
            continue
        for name in names:
            if name != item.character and _names_line(name, item.text):
                evidence[name].addressed_by.append(f"{item.character}: {item.text}")
    return evidence


def build_payload(
    evidence: CharacterEvidence,
    max_dialogue: int = 20,
    max_actions: int = 10,
    max_tokens: int = 3000,
    token_counter: Callable[[str], int] = estimate_tokens,
) -> EvidencePayload:
    """Cap evidence lists, then trim from the tail until the XML fits the token budget.

    Nothing but script text enters the payload.
    """
    dialogue = list(evidence.dialogue_lines[:max_dialogue])
    actions = list(evidence.action_mentions[:max_actions])
    addressed = list(evidence.addressed_by[:max_actions])
    omitted = (
        len(evidence.dialogue_lines)
        - len(dialogue)
        + len(evidence.action_mentions)
        - len(actions)
        + len(evidence.addressed_by)
        - len(addressed)
    )

    def render() -> EvidencePayload:
        return EvidencePayload(
            name=evidence.character_name,
            total_dialogue_lines=len(evidence.dialogue_lines),
            total_action_mentions=len(evidence.action_mentions),
            omitted=omitted,
            dialogue=dialogue,
            parentheticals=list(dict.fromkeys(evidence.parentheticals)),
            scenes=list(evidence.scene_headings),
            actions=actions,
            addressed_by=addressed,
        )

    payload = render()
    while token_counter(payload_xml(payload)) > max_tokens:
        if addressed:
            addressed.pop()
        elif actions:
            actions.pop()
        elif len(dialogue) > 1:
            dialogue.pop()
        else:
            break
        omitted += 1
        payload = render()
    return payload


def payload_xml(payload: EvidencePayload) -> str:
    xml = payload.to_xml(encoding="unicode", pretty_print=True, skip_empty=True)
    assert isinstance(xml, str)
    return xml


class CharacterAnalyzer:
    """Turns script evidence into a `CharacterProfile` via a structured-output LLM."""

    def __init__(
        self,
        llm,
        max_dialogue: int = 20,
        max_actions: int = 10,
        max_tokens: int = 3000,
        token_counter: Callable[[str], int] = estimate_tokens,
    ) -> None:
        self.llm = llm
        self.max_dialogue = max_dialogue
        self.max_actions = max_actions
        self.max_tokens = max_tokens
        self.token_counter = token_counter

    def payload_for(
        self, character: str, elements: Sequence[ScriptElement]
    ) -> tuple[CharacterEvidence, EvidencePayload]:
        name = normalize_character_name(character)
        evidence = extract_evidence(elements).get(name)
        if evidence is None:
            raise AnalysisFailed(name, "character does not appear in the script")
        payload = build_payload(
            evidence,
            max_dialogue=self.max_dialogue,
            max_actions=self.max_actions,
            max_tokens=self.max_tokens,
            token_counter=self.token_counter,
        )
        return evidence, payload

    def evidence_digest(self, character: str, elements: Sequence[ScriptElement]) -> str:
        _, payload = self.payload_for(character, elements)
        return hashlib.sha256(payload_xml(payload).encode("utf-8")).hexdigest()

    def analyze(
        self, character: str, elements: Sequence[ScriptElement]
    ) -> CharacterProfile:
        """Analyze one character. Raises `AnalysisFailed` on any LLM or parse failure."""
        evidence, payload = self.payload_for(character, elements)
        name = evidence.character_name
        xml = payload_xml(payload)
        messages = [
            SystemMessage(content=ANALYSIS_PROMPT),
            HumanMessage(content="== EVIDENCE ==\n" f"{xml}"),
        ]
        logger.info(
            "analyze.character name={name} dialogue={dialogue} actions={actions} omitted={omitted}",
            name=name,
            dialogue=len(payload.dialogue),
            actions=len(payload.actions),
            omitted=payload.omitted,
        )
        callback = UsageMetadataCallbackHandler()
        try:
            res = self.llm.with_structured_output(
                ProfileAnalysis, include_raw=True
            ).invoke(messages, config=RunnableConfig(callbacks=[callback]))
        except Exception as exc:  # noqa: BLE001
            raise AnalysisFailed(name, exc) from exc
        parsed = res.get("parsed") if isinstance(res, dict) else None
        if not isinstance(parsed, ProfileAnalysis):
            cause = res.get("parsing_error") if isinstance(res, dict) else None
            raise AnalysisFailed(name, cause or "unparsable model response")
        logger.debug("analyze.tokens usage={usage}", usage=callback.usage_metadata)

        traits = [trait.strip() for trait in parsed.voice_traits if trait.strip()]
        return CharacterProfile(
            name=name,
            gender=parsed.gender,
            age_range=parsed.age_range.strip() or "adult",
            description=parsed.description.strip(),
            voice_traits=traits,
            summary=parsed.summary.strip(),
            line_count=len(evidence.dialogue_lines),
            scene_headings=list(evidence.scene_headings),
            evidence_digest=hashlib.sha256(xml.encode("utf-8")).hexdigest(),
        )
