"""TTS collaborator interface and in-memory audio helpers.

The pipeline only talks to speech synthesis through `TTSBackend`, which lets
tests run without a neural runtime installed.
"""

from __future__ import annotations

from io import BytesIO
from typing import Optional, Protocol, runtime_checkable

from pydub import AudioSegment


@runtime_checkable
class TTSBackend(Protocol):
    """Three operations: design, clone, synthesize."""

    def design_from_instruction(
        self, instruction: str, sample_text: str
    ) -> AudioSegment: ...

    def compute_clone_representation(self, sample: AudioSegment) -> bytes: ...

    def synthesize_with_clone(
        self, text: str, clone: bytes, hint: Optional[str] = None
    ) -> AudioSegment: ...


def wav_bytes(segment: AudioSegment) -> bytes:
    buf = BytesIO()
    segment.export(buf, format="wav")
    return buf.getvalue()


def segment_from_wav(data: bytes) -> AudioSegment:
    return AudioSegment.from_file(BytesIO(data), format="wav")


def concatenate(segments) -> AudioSegment:
    """Join segments back to back with no added silence."""
    combined = AudioSegment.empty()
    for segment in segments:
        combined += segment
    return combined
