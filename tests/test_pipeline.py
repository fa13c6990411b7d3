from pathlib import Path

import pytest
from pydub import AudioSegment

from conftest import SAMPLE_SCRIPT, FakeLLM, FakeTTS, default_responder, word_tokens
from voxcast.analysis import CharacterAnalyzer, Gender, ProfileAnalysis
from voxcast.audition import AuditionGate
from voxcast.config import VoxCastConfig
from voxcast.design import VoiceDesigner
from voxcast.directions import DirectionMapper
from voxcast.errors import AnalysisFailed, InsufficientMemory
from voxcast.pipeline import VoicePipeline
from voxcast.render import LineRenderer
from voxcast.script import parse
from voxcast.store import VoiceLockStore


def _pipeline(tmp_path: Path, tts: FakeTTS, llm: FakeLLM, pick: int = 0) -> VoicePipeline:
    config = VoxCastConfig(workspace_dir=tmp_path / "ws", candidate_count=3)
    return VoicePipeline(
        store=VoiceLockStore(config.workspace_dir, "kitchen"),
        tts=tts,
        analyzer=CharacterAnalyzer(llm, token_counter=word_tokens),
        designer=VoiceDesigner(tts, sample_text=config.sample_text),
        gate=AuditionGate(chooser=lambda request: pick),
        renderer=LineRenderer(tts, directions=DirectionMapper()),
        config=config,
    )


def test_end_to_end_two_characters(tmp_path: Path) -> None:
    tts = FakeTTS()
    pipeline = _pipeline(tmp_path, tts, FakeLLM(default_responder))
    document = pipeline.ingest(SAMPLE_SCRIPT, tmp_path / "kitchen.fountain")
    summary = pipeline.run(document.elements)

    assert summary.ok, summary.format()
    assert [r.character for r in summary.results] == ["JONAH", "MARA"]
    assert summary.total_lines == 6
    assert len(tts.design_calls) == 6
    assert tts.clone_calls == 2
    assert pipeline.store.locked_characters() == ["JONAH", "MARA"]

    for result in summary.results:
        assert result.lock_version == 1
        assert result.track is not None and result.track.path.exists()
        assert result.track.path.parent == pipeline.store.tracks_dir
        audio = AudioSegment.from_file(result.track.path, format="wav")
        assert audio.duration_seconds == pytest.approx(result.track.duration_seconds, abs=0.01)

    mara = next(r for r in summary.results if r.character == "MARA")
    assert mara.track.line_indices == [4, 7, 10]
    whispered = [c for c in tts.synth_calls if c["hint"] == "whisper"]
    assert [c["text"] for c in whispered] == ["Keep your voice down. The baby's asleep."]


def test_rerun_reuses_profiles_and_locks(tmp_path: Path) -> None:
    llm = FakeLLM(default_responder)
    elements = parse(SAMPLE_SCRIPT)
    _pipeline(tmp_path, FakeTTS(), llm).run(elements)
    analyses = llm.calls_for(ProfileAnalysis)

    tts = FakeTTS()
    summary = _pipeline(tmp_path, tts, llm).run(elements)
    assert summary.ok
    assert llm.calls_for(ProfileAnalysis) == analyses
    assert not any(r.reanalyzed for r in summary.results)
    assert not tts.design_calls and tts.clone_calls == 0
    assert all(r.lock_version == 1 and r.stale is False for r in summary.results)


def test_relock_creates_new_version(tmp_path: Path) -> None:
    elements = parse(SAMPLE_SCRIPT)
    llm = FakeLLM(default_responder)
    _pipeline(tmp_path, FakeTTS(), llm).run(elements)
    summary = _pipeline(tmp_path, FakeTTS(), llm, pick=2).run(elements, ["mara"], relock=True)
    assert [r.character for r in summary.results] == ["MARA"]
    assert summary.results[0].lock_version == 2
    store = VoiceLockStore(tmp_path / "ws", "kitchen")
    assert store.load("MARA").candidate_index == 2
    assert store.load("JONAH").version == 1


def test_changed_evidence_reanalyzes_and_flags_stale_lock(tmp_path: Path) -> None:
    _pipeline(tmp_path, FakeTTS(), FakeLLM(default_responder)).run(parse(SAMPLE_SCRIPT))

    def aged(schema, messages):
        parsed = default_responder(schema, messages)
        if schema is ProfileAnalysis and 'name="MARA"' in messages[-1].content:
            return parsed.model_copy(
                update={"age_range": "elderly", "voice_traits": ["frail", "quavering"]}
            )
        return parsed

    edited = SAMPLE_SCRIPT.replace("Try harder.", "Try harder, old man.")
    summary = _pipeline(tmp_path, FakeTTS(), FakeLLM(aged)).run(parse(edited))
    mara = next(r for r in summary.results if r.character == "MARA")
    assert mara.reanalyzed
    assert mara.stale is True
    assert mara.lock_version == 1, "a stale lock is reported, never replaced"
    assert mara.ok


def test_one_character_failure_does_not_block_others(tmp_path: Path) -> None:
    def flaky(schema, messages):
        if schema is ProfileAnalysis and 'name="JONAH"' in messages[-1].content:
            raise ConnectionError("model unavailable")
        return default_responder(schema, messages)

    summary = _pipeline(tmp_path, FakeTTS(), FakeLLM(flaky)).run(parse(SAMPLE_SCRIPT))
    by_name = {r.character: r for r in summary.results}
    assert not summary.ok
    assert by_name["JONAH"].stage == "analyze"
    assert "JONAH" in by_name["JONAH"].error
    assert by_name["MARA"].ok
    assert "FAILED at analyze" in summary.format()


def test_failed_lines_are_reported_per_character(tmp_path: Path) -> None:
    tts = FakeTTS(fail_texts={"Try harder"})
    summary = _pipeline(tmp_path, tts, FakeLLM(default_responder)).run(parse(SAMPLE_SCRIPT))
    mara = next(r for r in summary.results if r.character == "MARA")
    assert not mara.ok
    assert mara.stage == "render"
    assert mara.failed_lines == [10]
    assert mara.lines == 2
    assert mara.track is not None and mara.track.line_indices == [4, 7]
    jonah = next(r for r in summary.results if r.character == "JONAH")
    assert jonah.ok


def test_cancelled_audition_stops_before_lock(tmp_path: Path) -> None:
    tts = FakeTTS()
    pipeline = _pipeline(tmp_path, tts, FakeLLM(default_responder))
    pipeline.gate = AuditionGate(chooser=lambda request: None)
    summary = pipeline.run(parse(SAMPLE_SCRIPT))
    assert all(r.stage == "audition" and not r.ok for r in summary.results)
    assert tts.clone_calls == 0
    assert pipeline.store.locked_characters() == []


def test_out_of_range_selection_creates_no_lock(tmp_path: Path) -> None:
    tts = FakeTTS()
    pipeline = _pipeline(tmp_path, tts, FakeLLM(default_responder))
    pipeline.gate = AuditionGate(chooser=lambda request: 5, max_attempts=1)
    summary = pipeline.run(parse(SAMPLE_SCRIPT), ["MARA"])
    mara = summary.results[0]
    assert mara.stage == "audition"
    assert "out of range" in mara.error
    assert len(pipeline.store.list_candidates("MARA")) == 3
    assert not pipeline.store.has_lock("MARA")
    assert tts.clone_calls == 0


def test_failed_analysis_keeps_previous_profile(tmp_path: Path) -> None:
    elements = parse(SAMPLE_SCRIPT)
    pipeline = _pipeline(tmp_path, FakeTTS(), FakeLLM(default_responder))
    profile, _ = pipeline.analyze("MARA", elements)

    def down(schema, messages):
        raise ConnectionError("offline")

    pipeline.analyzer = CharacterAnalyzer(FakeLLM(down), token_counter=word_tokens)
    with pytest.raises(AnalysisFailed):
        pipeline.analyze("MARA", elements, force=True)
    assert pipeline.store.load_profile("MARA") == profile
    assert profile.gender is Gender.FEMALE


def test_resource_error_fails_character_with_memory_figures(tmp_path: Path) -> None:
    error = InsufficientMemory("chatterbox", 1024 * 1024 * 1024, 3 * 1024 * 1024 * 1024)
    tts = FakeTTS(synth_error=error)
    summary = _pipeline(tmp_path, tts, FakeLLM(default_responder)).run(
        parse(SAMPLE_SCRIPT), ["MARA"]
    )
    mara = summary.results[0]
    assert not mara.ok
    assert mara.stage == "render"
    assert "1024 MB available, 3072 MB required" in mara.error
    assert mara.lines == 0 and mara.track is None
    assert len(tts.synth_calls) == 1
