"""Track assembly and output-format handling."""

from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydub import AudioSegment

from voxcast.errors import AssemblyFailed


class AudioFormat(str, Enum):
    """Output container, tagged with how pydub exports it."""

    WAV = "wav"
    AIFF = "aiff"
    M4A = "m4a"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def export_format(self) -> str:
        return _EXPORT_FORMATS[self]

    @property
    def needs_ffmpeg(self) -> bool:
        return self is not AudioFormat.WAV

    @property
    def codec(self) -> Optional[str]:
        return "aac" if self is AudioFormat.M4A else None

    @classmethod
    def from_extension(cls, ext: str) -> Optional["AudioFormat"]:
        return _ALIASES.get(ext.lower().lstrip("."))

    @classmethod
    def infer(
        cls, path: Path | str, override: Optional[str] = None
    ) -> "AudioFormat":
        """Resolve the format from an explicit override, else the path suffix, else wav.

        Raises:
            ValueError: If ``override`` names no known format.
        """
        if override:
            fmt = cls.from_extension(override)
            if fmt is None:
                raise ValueError(
                    f"Unknown audio format {override!r}; expected one of "
                    f"{', '.join(f.value for f in cls)}."
                )
            return fmt
        return cls.from_extension(Path(path).suffix) or cls.WAV


_EXPORT_FORMATS: Dict[AudioFormat, str] = {
    AudioFormat.WAV: "wav",
    AudioFormat.AIFF: "aiff",
    AudioFormat.M4A: "ipod",
}
_ALIASES: Dict[str, AudioFormat] = {
    "wav": AudioFormat.WAV,
    "wave": AudioFormat.WAV,
    "aiff": AudioFormat.AIFF,
    "aif": AudioFormat.AIFF,
    "m4a": AudioFormat.M4A,
}


def export_atomic(
    segment: AudioSegment, path: Path, fmt: AudioFormat = AudioFormat.WAV
) -> Path:
    """Write to a sibling temp file, then publish with an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.stem}-", suffix=f".{fmt.extension}.tmp", dir=path.parent
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        kwargs = {"codec": fmt.codec} if fmt.codec else {}
        segment.export(tmp_path, format=fmt.export_format, **kwargs)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


class TrackHandle(BaseModel):
    """One character's assembled track on disk."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    character: str
    path: Path
    format: AudioFormat = AudioFormat.WAV
    duration_seconds: float = Field(ge=0)
    line_indices: List[int] = Field(
        description="Script-order indices of the lines in playback order."
    )


def assemble(
    lines: Sequence,
    output_path: Path | str,
    fmt: Optional[AudioFormat] = None,
    character: Optional[str] = None,
) -> TrackHandle:
    """Concatenate rendered lines by ascending script index into one track.

    No silence or crossfade is inserted between lines.

    Raises:
        AssemblyFailed: If ``lines`` is empty or two lines share an index.
    """
    if not lines:
        raise AssemblyFailed("no rendered lines to assemble")
    seen: Dict[int, object] = {}
    for line in lines:
        if line.index in seen:
            raise AssemblyFailed(f"duplicate script-order index {line.index}")
        seen[line.index] = line

    output_path = Path(output_path)
    fmt = fmt or AudioFormat.infer(output_path)
    ordered = sorted(lines, key=lambda line: line.index)

    track = AudioSegment.empty()
    for line in ordered:
        track += AudioSegment.from_file(line.audio_path, format="wav")

    export_atomic(track, output_path, fmt)
    owner = character or ordered[0].character
    logger.info(
        "assemble.done character={character} lines={count} duration={duration:.1f}s path={path}",
        character=owner,
        count=len(ordered),
        duration=track.duration_seconds,
        path=output_path,
    )
    return TrackHandle(
        character=owner,
        path=output_path,
        format=fmt,
        duration_seconds=track.duration_seconds,
        line_indices=[line.index for line in ordered],
    )
