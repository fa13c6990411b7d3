from pathlib import Path

import pytest

from conftest import FakeLLM, FakeTTS, default_responder
from voxcast.errors import VoiceNotLocked
from voxcast.workflow import Toolchain


@pytest.fixture()
def toolchain(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Toolchain:
    monkeypatch.setattr("voxcast.analysis._token_encoder", lambda: None)
    return Toolchain(
        in_dir=tmp_path / "in",
        voices_dir=tmp_path / "voices",
        workspace_dir=tmp_path / "ws",
        llm=FakeLLM(default_responder),
        tts=FakeTTS(),
    )


def test_stage_commands(toolchain: Toolchain, script_file: Path, tmp_path: Path) -> None:
    project_id = toolchain.parse(script_file)
    assert project_id.startswith("kitchen-")

    assert toolchain.analyze(script_file) == ["JONAH", "MARA"]
    paths = toolchain.design(script_file, "mara", count=2)
    assert len(paths) == 2 and all(Path(p).exists() for p in paths)
    assert toolchain.lock(script_file, "mara", select=1) == 1

    report = toolchain.render(script_file, select=0)
    assert "MARA" in report and "JONAH" in report
    assert "FAILED" not in report

    status = toolchain.status(script_file)
    assert "lock=v1" in status
    assert toolchain.history(script_file, "MARA")[0].startswith("v1 ")

    output = toolchain.speak(
        script_file, "MARA", text="Hello there. Is anyone home?", output=tmp_path / "hi.wav"
    )
    assert output.exists()


def test_relock_and_rollback(toolchain: Toolchain, script_file: Path) -> None:
    toolchain.design(script_file, "MARA", count=2)
    toolchain.lock(script_file, "MARA", select=0)
    assert toolchain.lock(script_file, "MARA", select=1) == 2
    assert toolchain.rollback(script_file, "MARA", 1) == 1


def test_speak_requires_lock(toolchain: Toolchain, script_file: Path) -> None:
    toolchain.parse(script_file)
    with pytest.raises(VoiceNotLocked):
        toolchain.speak(script_file, "JONAH", text="Hi.")
    with pytest.raises(ValueError):
        toolchain.speak(script_file, "JONAH", text="   ")


def test_export_and_import_voice(toolchain: Toolchain, script_file: Path, tmp_path: Path) -> None:
    toolchain.design(script_file, "MARA", count=2)
    toolchain.lock(script_file, "MARA", select=1)
    archive = toolchain.export_voice(script_file, "mara", output=tmp_path / "mara.voice.zip")
    assert archive.exists()

    sequel = tmp_path / "sequel.fountain"
    sequel.write_text("INT. CAR - DAY\n\nMARA\nWe should have left sooner.\n")
    assert toolchain.import_voice(sequel, archive) == 1
    assert toolchain.history(sequel, "MARA")[0].startswith("v1 ")
    output = toolchain.speak(sequel, "MARA", text="Drive.", output=tmp_path / "drive.wav")
    assert output.exists()
