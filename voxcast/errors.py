"""Error taxonomy for the character voice pipeline.

Every failure that crosses a collaborator boundary (language model, TTS runtime,
filesystem) is wrapped in one of these types with the character, line or stage
that was being processed, so callers can report per-character outcomes without
parsing messages.
"""

from __future__ import annotations

from typing import Optional


class VoxCastError(Exception):
    """Base class for all pipeline errors."""


class ParseError(VoxCastError):
    """The script could not be tokenized into scene/character/dialogue structure."""

    def __init__(self, reason: str, line_number: Optional[int] = None) -> None:
        self.reason = reason
        self.line_number = line_number
        where = f" (line {line_number})" if line_number is not None else ""
        super().__init__(f"Script parse failed{where}: {reason}")


class AnalysisFailed(VoxCastError):
    def __init__(self, character: str, cause: object) -> None:
        self.character = character
        self.cause = cause
        super().__init__(f"Character analysis failed for '{character}': {cause}")


class VoiceDesignFailed(VoxCastError):
    def __init__(self, character: str, cause: object) -> None:
        self.character = character
        self.cause = cause
        super().__init__(f"Voice design failed for '{character}': {cause}")


class InvalidSelection(VoxCastError):
    """An audition selection was not a valid index into the presented candidates."""

    def __init__(self, index: object, count: int) -> None:
        self.index = index
        self.count = count
        super().__init__(
            f"Selection {index!r} is out of range; choose 0..{count - 1}."
            if count
            else f"Selection {index!r} is invalid; no candidates were presented."
        )


class AuditionCancelled(VoxCastError):
    def __init__(self, character: str) -> None:
        self.character = character
        super().__init__(f"Audition for '{character}' was cancelled.")


class VoiceNotLocked(VoxCastError):
    def __init__(self, character: str, project_id: str) -> None:
        self.character = character
        self.project_id = project_id
        super().__init__(
            f"No voice locked for '{character}' in project '{project_id}'. "
            "Run `audition` and `lock` first."
        )


class CloningFailed(VoxCastError):
    def __init__(self, character: str, cause: object) -> None:
        self.character = character
        self.cause = cause
        super().__init__(f"Voice cloning failed for '{character}': {cause}")


class RenderFailed(VoxCastError):
    def __init__(self, line_index: int, cause: object, character: str = "") -> None:
        self.line_index = line_index
        self.cause = cause
        self.character = character
        who = f" ({character})" if character else ""
        super().__init__(f"Rendering line {line_index}{who} failed: {cause}")


class VoicePackageError(VoxCastError):
    """An exported voice archive is unreadable, incomplete or built for another model."""

    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Voice package {path} is unusable: {reason}")


class SynthesisFailed(VoxCastError):
    def __init__(self, unit_index: int, cause: object) -> None:
        self.unit_index = unit_index
        self.cause = cause
        super().__init__(f"Synthesis of unit {unit_index} failed: {cause}")


class AssemblyFailed(VoxCastError):
    """Programmer error: empty input or duplicate script-order index."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Track assembly failed: {reason}")


class InsufficientMemory(VoxCastError):
    def __init__(self, model: str, available: int, required: int) -> None:
        self.model = model
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient memory for '{model}': {available // (1024 * 1024)} MB "
            f"available, {required // (1024 * 1024)} MB required."
        )


class ModelNotAvailable(VoxCastError):
    def __init__(self, model: str, cause: object) -> None:
        self.model = model
        self.cause = cause
        super().__init__(f"Model not available: {model} ({cause})")


class SlotTimeout(VoxCastError):
    def __init__(self, model: str, timeout: float) -> None:
        self.model = model
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for an inference slot on '{model}'."
        )


class PipelineCancelled(VoxCastError):
    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Pipeline cancelled during {stage}.")


# Resource errors abort the current character instead of failing one line or candidate.
RESOURCE_ERRORS = (InsufficientMemory, ModelNotAvailable, SlotTimeout)
