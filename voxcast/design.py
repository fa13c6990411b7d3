"""Voice design: profile → instruction → independently sampled candidates."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from langchain_core.callbacks import UsageMetadataCallbackHandler
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from voxcast.analysis import CharacterProfile, Gender
from voxcast.assembly import AudioFormat, export_atomic
from voxcast.chunking import count_words
from voxcast.config import PHONEME_PANGRAM
from voxcast.errors import RESOURCE_ERRORS, VoiceDesignFailed
from voxcast.resources import CancelToken
from voxcast.store import VoiceCandidate, slugify
from voxcast.tts import TTSBackend

_GENDER_WORDS = {
    Gender.MALE: "male",
    Gender.FEMALE: "female",
    Gender.NON_BINARY: "non-binary",
    Gender.UNSPECIFIED: "neutral",
}


def compose_instruction(profile: CharacterProfile) -> str:
    """One natural-language design instruction from gender, age, summary and traits."""
    summary = profile.summary.strip().rstrip(".")
    instruction = f"A {_GENDER_WORDS[profile.gender]} voice, {profile.age_range}."
    if summary:
        instruction += f" {summary}."
    if profile.voice_traits:
        instruction += f" Voice traits: {', '.join(profile.voice_traits)}."
    return instruction


SAMPLE_PROMPT = """
You are a dialogue writer. Given a character voice description, write a single natural-sounding
sentence (15-30 words) that this character might say. The sentence should let a listener judge
the voice's tone, pace and personality.

Rules:
- One sentence only, no quotes, attribution or explanation.
- Do not open with a greeting.
- Conversational, not a tongue-twister, with a mix of vowel and consonant sounds.
"""


class SampleSentence(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = Field(description="The sentence, 15-30 words.")


class SampleSentenceWriter:
    """Asks the language model for a character-appropriate audition sentence."""

    min_words = 15
    max_words = 30

    def __init__(self, llm, fallback: str = PHONEME_PANGRAM) -> None:
        self.llm = llm
        self.fallback = fallback

    def write(self, profile: CharacterProfile) -> str:
        messages = [
            SystemMessage(content=SAMPLE_PROMPT),
            HumanMessage(
                content=(
                    f"Character: {profile.name}\n"
                    f"Gender: {profile.gender.value}\n"
                    f"Age: {profile.age_range}\n"
                    f"Voice: {profile.summary}\n"
                    f"Traits: {', '.join(profile.voice_traits)}"
                )
            ),
        ]
        callback = UsageMetadataCallbackHandler()
        try:
            res = self.llm.with_structured_output(
                SampleSentence, include_raw=True
            ).invoke(messages, config=RunnableConfig(callbacks=[callback]))
            parsed = res["parsed"]
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "design.sample_failed character={character} error={error}",
                character=profile.name,
                error=exc,
            )
            return self.fallback
        text = parsed.text.strip().strip('"') if isinstance(parsed, SampleSentence) else ""
        words = count_words(text)
        if not self.min_words <= words <= self.max_words:
            logger.warning(
                "design.sample_rejected character={character} words={words}",
                character=profile.name,
                words=words,
            )
            return self.fallback
        return text


class VoiceDesigner:
    """Generates audition candidates through the TTS backend."""

    def __init__(
        self,
        tts: TTSBackend,
        sample_text: str = PHONEME_PANGRAM,
        sentence_writer: Optional[SampleSentenceWriter] = None,
    ) -> None:
        self.tts = tts
        self.sample_text = sample_text
        self.sentence_writer = sentence_writer

    def design(
        self,
        profile: CharacterProfile,
        count: int,
        output_dir: Path | str,
        cancel: Optional[CancelToken] = None,
    ) -> List[VoiceCandidate]:
        """Issue ``count`` independent design calls and save each sample.

        Returns the successful candidates in ordinal order; the list is shorter
        than ``count`` when some calls fail.

        Raises:
            ValueError: If ``count`` is below 1.
            VoiceDesignFailed: If every call fails.
        """
        if count < 1:
            raise ValueError(f"candidate count must be >= 1, got {count}")
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        instruction = compose_instruction(profile)
        sample_text = (
            self.sentence_writer.write(profile) if self.sentence_writer else self.sample_text
        )
        logger.info(
            "design.start character={character} count={count}",
            character=profile.name,
            count=count,
        )
        logger.debug("design.instruction text={text}", text=instruction)

        candidates: List[VoiceCandidate] = []
        last_error: Optional[Exception] = None
        for index in range(count):
            if cancel is not None:
                cancel.raise_if_cancelled(f"design of {profile.name}")
            try:
                audio = self.tts.design_from_instruction(instruction, sample_text)
                path = export_atomic(
                    audio,
                    output_dir / f"{slugify(profile.name)}-{index:02d}.wav",
                    AudioFormat.WAV,
                )
            except RESOURCE_ERRORS:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "design.candidate_failed character={character} index={index} error={error}",
                    character=profile.name,
                    index=index,
                    error=exc,
                )
                continue
            candidates.append(
                VoiceCandidate(
                    character=profile.name,
                    index=index,
                    audio_path=path,
                    instruction=instruction,
                )
            )

        if not candidates:
            raise VoiceDesignFailed(profile.name, last_error) from last_error
        # Samples from an earlier batch that this batch did not rewrite.
        current = {candidate.audio_path.name for candidate in candidates}
        for leftover in output_dir.glob(f"{slugify(profile.name)}-[0-9][0-9].wav"):
            if leftover.name not in current:
                leftover.unlink()
        logger.info(
            "design.done character={character} candidates={ok}/{count}",
            character=profile.name,
            ok=len(candidates),
            count=count,
        )
        return candidates
