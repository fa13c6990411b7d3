from pathlib import Path
from typing import List

import pytest
from pydub import AudioSegment

from voxcast.assembly import AudioFormat, assemble, export_atomic
from voxcast.errors import AssemblyFailed
from voxcast.render import RenderedLine


def _lines(tmp_path: Path, indices: List[int]) -> List[RenderedLine]:
    lines = []
    for index in indices:
        audio = AudioSegment.silent(duration=100 * index)
        path = export_atomic(audio, tmp_path / "lines" / f"{index:05d}.wav")
        lines.append(
            RenderedLine(
                character="MARA",
                index=index,
                text=f"Line {index}.",
                audio_path=path,
                duration_seconds=audio.duration_seconds,
            )
        )
    return lines


def test_assemble_orders_by_script_index(tmp_path: Path) -> None:
    track = assemble(_lines(tmp_path, [3, 1, 2]), tmp_path / "tracks" / "mara.wav")
    assert track.line_indices == [1, 2, 3]
    assert track.character == "MARA"
    assert track.format is AudioFormat.WAV
    audio = AudioSegment.from_file(track.path, format="wav")
    assert len(audio) == 600, "lines are joined with no added silence"


def test_assemble_rejects_empty(tmp_path: Path) -> None:
    with pytest.raises(AssemblyFailed):
        assemble([], tmp_path / "out.wav")


def test_assemble_rejects_duplicate_indices(tmp_path: Path) -> None:
    lines = _lines(tmp_path, [1, 2])
    with pytest.raises(AssemblyFailed) as info:
        assemble(lines + [lines[0]], tmp_path / "out.wav")
    assert "1" in info.value.reason
    assert not (tmp_path / "out.wav").exists()


@pytest.mark.parametrize(
    ("path", "override", "expected"),
    [
        ("out.wav", None, AudioFormat.WAV),
        ("out.AIF", None, AudioFormat.AIFF),
        ("out.m4a", None, AudioFormat.M4A),
        ("out.mp3", None, AudioFormat.WAV),
        ("out", None, AudioFormat.WAV),
        ("out.wav", "m4a", AudioFormat.M4A),
        ("out.m4a", ".aiff", AudioFormat.AIFF),
    ],
)
def test_format_inference(path: str, override, expected: AudioFormat) -> None:
    assert AudioFormat.infer(path, override) is expected


def test_unknown_override_rejected() -> None:
    with pytest.raises(ValueError):
        AudioFormat.infer("out.wav", "flac")


def test_format_export_details() -> None:
    assert AudioFormat.M4A.export_format == "ipod"
    assert AudioFormat.M4A.codec == "aac"
    assert not AudioFormat.WAV.needs_ffmpeg
    assert AudioFormat.AIFF.needs_ffmpeg


def test_export_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "clip.wav"
    export_atomic(AudioSegment.silent(duration=50), target)
    assert [p.name for p in tmp_path.iterdir()] == ["clip.wav"]
