"""Parenthetical direction mapping.

Screenplay parentheticals mix vocal direction (``(whispering)``) with blocking
(``(beat)``, ``(turning to her)``). Only vocal direction becomes a synthesis
hint; blocking is dropped so it never leaks into the rendered voice.
"""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from langchain_core.callbacks import UsageMetadataCallbackHandler
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

VOCAL_DIRECTIONS: Dict[str, str] = {
    "whispering": "whisper",
    "whispers": "whisper",
    "whispered": "whisper",
    "quietly": "soft",
    "softly": "soft",
    "gently": "soft",
    "under her breath": "whisper",
    "under his breath": "whisper",
    "sotto voce": "whisper",
    "shouting": "shout",
    "shouts": "shout",
    "yelling": "shout",
    "screaming": "shout",
    "loudly": "shout",
    "angrily": "angry",
    "angry": "angry",
    "furious": "angry",
    "sarcastically": "sarcastic",
    "sarcastic": "sarcastic",
    "dryly": "sarcastic",
    "sadly": "sad",
    "sad": "sad",
    "tearfully": "sad",
    "crying": "sad",
    "happily": "happy",
    "cheerfully": "happy",
    "excited": "excited",
    "excitedly": "excited",
    "laughing": "laughing",
    "nervously": "nervous",
    "nervous": "nervous",
    "hesitant": "nervous",
    "hesitantly": "nervous",
    "stammering": "nervous",
    "fearfully": "nervous",
    "coldly": "cold",
    "flatly": "cold",
    "calmly": "calm",
    "tenderly": "soft",
    "urgently": "urgent",
    "pleading": "urgent",
    "firmly": "firm",
    "sternly": "firm",
}

BLOCKING_DIRECTIONS = frozenset(
    {
        "beat",
        "a beat",
        "pause",
        "a pause",
        "long pause",
        "continuing",
        "cont'd",
        "turning",
        "turns",
        "sitting",
        "standing",
        "walking away",
        "into phone",
        "on phone",
        "to himself",
        "to herself",
        "to camera",
        "off screen",
        "reading",
        "re: letter",
        "then",
        "smiling",
        "nodding",
        "shrugging",
    }
)


class DirectionClass(str, Enum):
    VOCAL = "vocal"
    BLOCKING = "blocking"


class DirectionClassification(BaseModel):
    """Structured answer for an unrecognised parenthetical."""

    model_config = ConfigDict(extra="ignore")

    classification: DirectionClass = Field(
        description="'vocal' if it changes how the line sounds, 'blocking' if it describes movement or timing."
    )
    hint: Optional[str] = Field(
        default=None,
        description="For vocal directions, one or two lowercase words describing the delivery.",
    )


DIRECTION_PROMPT = """
Classify a screenplay parenthetical. Vocal directions change how the line sounds (tone, volume,
emotion, pace). Blocking directions describe movement, gesture, addressee or timing and do not
change the voice. For vocal directions give a one- or two-word delivery hint.
"""


def _normalize(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = cleaned[1:-1]
    return " ".join(cleaned.lower().strip(" .,;:!").split())


class DirectionMapper:
    """Maps parenthetical text to an optional delivery hint.

    Lookups are memoized per mapper so each distinct parenthetical reaches the
    language model at most once.
    """

    def __init__(self, llm=None) -> None:
        self.llm = llm
        self._classify = lru_cache(maxsize=512)(self._classify_uncached)

    def hint_for(self, parenthetical: Optional[str]) -> Optional[str]:
        if not parenthetical:
            return None
        key = _normalize(parenthetical)
        if not key:
            return None
        if key in VOCAL_DIRECTIONS:
            return VOCAL_DIRECTIONS[key]
        if key in BLOCKING_DIRECTIONS:
            return None
        for word in re.findall(r"[a-z']+", key):
            if word in VOCAL_DIRECTIONS:
                return VOCAL_DIRECTIONS[word]
        if self.llm is None:
            return key
        return self._classify(key)

    def _classify_uncached(self, key: str) -> Optional[str]:
        messages = [
            SystemMessage(content=DIRECTION_PROMPT),
            HumanMessage(content=f"== PARENTHETICAL ==\n({key})"),
        ]
        callback = UsageMetadataCallbackHandler()
        try:
            res = self.llm.with_structured_output(
                DirectionClassification, include_raw=True
            ).invoke(messages, config=RunnableConfig(callbacks=[callback]))
            parsed = res["parsed"]
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "directions.classify_failed direction={direction} error={error}",
                direction=key,
                error=exc,
            )
            return key
        if not isinstance(parsed, DirectionClassification):
            return key
        logger.debug(
            "directions.classified direction={direction} class={cls} hint={hint}",
            direction=key,
            cls=parsed.classification.value,
            hint=parsed.hint,
        )
        if parsed.classification is DirectionClass.BLOCKING:
            return None
        return (parsed.hint or key).strip().lower() or key
