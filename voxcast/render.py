"""Per-line dialogue rendering with a locked voice."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydub import AudioSegment

from voxcast.assembly import AudioFormat, export_atomic
from voxcast.chunking import chunk
from voxcast.directions import DirectionMapper
from voxcast.errors import RESOURCE_ERRORS, PipelineCancelled, RenderFailed
from voxcast.resources import CancelToken
from voxcast.scheduler import synthesize_all
from voxcast.script import ScriptElement, dialogue_for
from voxcast.store import VoiceLock
from voxcast.tts import TTSBackend


class RenderedLine(BaseModel):
    """One synthesized dialogue line, keyed by its script-order index."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    character: str
    index: int = Field(ge=0, description="Script-order index of the dialogue element.")
    text: str
    parenthetical: Optional[str] = None
    hint: Optional[str] = Field(default=None, description="Hint passed to the synthesizer.")
    scene_heading: Optional[str] = None
    audio_path: Path
    duration_seconds: float = Field(ge=0)


class RenderReport(BaseModel):
    """Successful lines plus per-line failures; callers decide what is acceptable."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    character: str
    lines: List[RenderedLine] = Field(default_factory=list)
    failures: List[RenderFailed] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_indices(self) -> List[int]:
        return [failure.line_index for failure in self.failures]


class LineRenderer:
    """Renders every dialogue line of one character from its lock's clone.

    The clone blob is read once per `render` call and reused for every line.
    Parenthetical hints go to the synthesizer verbatim; nothing from the
    character profile is added.
    """

    def __init__(
        self,
        tts: TTSBackend,
        directions: Optional[DirectionMapper] = None,
        max_words: int = 200,
        lookahead: int = 2,
        timeout: Optional[float] = None,
    ) -> None:
        self.tts = tts
        self.directions = directions or DirectionMapper()
        self.max_words = max_words
        self.lookahead = lookahead
        self.timeout = timeout

    def _synthesize(
        self,
        text: str,
        clone: bytes,
        hint: Optional[str],
        cancel: Optional[CancelToken],
    ) -> AudioSegment:
        units = chunk(text, self.max_words)
        if not units:
            raise ValueError("dialogue line has no text")
        return synthesize_all(
            units,
            lambda unit: self.tts.synthesize_with_clone(unit.text, clone, hint),
            lookahead=self.lookahead,
            timeout=self.timeout,
            cancel=cancel,
        )

    def render(
        self,
        character: str,
        elements: Sequence[ScriptElement],
        lock: VoiceLock,
        output_dir: Path | str,
        cancel: Optional[CancelToken] = None,
    ) -> RenderReport:
        if lock.character != character:
            raise ValueError(
                f"Lock belongs to '{lock.character}', cannot render '{character}'."
            )
        output_dir = Path(output_dir)
        pairs = dialogue_for(character, elements)
        clone = lock.read_clone()
        report = RenderReport(character=character)
        logger.info(
            "render.start character={character} lines={count} lock_version={version}",
            character=character,
            count=len(pairs),
            version=lock.version,
        )

        for dialogue, parenthetical in pairs:
            if cancel is not None:
                cancel.raise_if_cancelled(f"render of {character}")
            direction = parenthetical.text if parenthetical else None
            hint = self.directions.hint_for(direction)
            try:
                audio = self._synthesize(dialogue.text, clone, hint, cancel)
                path = export_atomic(
                    audio, output_dir / f"{dialogue.index:05d}.wav", AudioFormat.WAV
                )
            except PipelineCancelled:
                raise
            except RESOURCE_ERRORS as exc:
                logger.error(
                    "render.aborted character={character} index={index} error={error}",
                    character=character,
                    index=dialogue.index,
                    error=exc,
                )
                raise
            except Exception as exc:  # noqa: BLE001
                failure = RenderFailed(dialogue.index, exc, character)
                report.failures.append(failure)
                logger.warning(
                    "render.line_failed character={character} index={index} error={error}",
                    character=character,
                    index=dialogue.index,
                    error=exc,
                )
                continue
            report.lines.append(
                RenderedLine(
                    character=character,
                    index=dialogue.index,
                    text=dialogue.text,
                    parenthetical=direction,
                    hint=hint,
                    scene_heading=dialogue.scene_heading,
                    audio_path=path,
                    duration_seconds=audio.duration_seconds,
                )
            )
            logger.debug(
                "render.line character={character} index={index} hint={hint} duration={duration:.2f}s",
                character=character,
                index=dialogue.index,
                hint=hint,
                duration=audio.duration_seconds,
            )

        logger.info(
            "render.done character={character} ok={ok} failed={failed}",
            character=character,
            ok=len(report.lines),
            failed=len(report.failures),
        )
        return report
