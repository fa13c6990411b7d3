import os

import pytest

from conftest import FakeLLM, default_responder, word_tokens
from voxcast.analysis import (
    CharacterAnalyzer,
    CharacterEvidence,
    Gender,
    build_payload,
    extract_evidence,
    payload_xml,
)
from voxcast.errors import AnalysisFailed
from voxcast.script import parse


def _has_openai() -> bool:
    return bool(os.environ.get("OPENAI_API_KEY"))


def test_extract_evidence_collects_every_source(script_elements) -> None:
    evidence = extract_evidence(script_elements)
    mara = evidence["MARA"]
    assert mara.dialogue_lines == [
        "Keep your voice down. The baby's asleep.",
        "Then start thinking, Jonah.",
        "Try harder.",
    ]
    assert mara.parentheticals == ["(whispering)"]
    assert mara.scene_headings == ["INT. KITCHEN - NIGHT", "EXT. PORCH - CONTINUOUS"]
    assert mara.action_mentions == ["MARA stands at the sink. JONAH enters, dripping wet."]
    assert mara.addressed_by == ["JONAH: You left the door open again, Mara."]
    assert evidence["JONAH"].addressed_by == ["MARA: Then start thinking, Jonah."]


def test_payload_caps_and_counts_omissions() -> None:
    evidence = CharacterEvidence(
        character_name="NED",
        dialogue_lines=[f"Line number {i}." for i in range(30)],
        action_mentions=[f"NED does thing {i}." for i in range(12)],
    )
    payload = build_payload(
        evidence, max_dialogue=20, max_actions=10, token_counter=word_tokens
    )
    assert len(payload.dialogue) == 20
    assert len(payload.actions) == 10
    assert payload.total_dialogue_lines == 30
    assert payload.omitted == 12


def test_payload_trims_to_token_budget() -> None:
    evidence = CharacterEvidence(
        character_name="NED",
        dialogue_lines=[" ".join(["word"] * 50) for _ in range(10)],
        action_mentions=["NED waits."] * 5,
    )
    payload = build_payload(evidence, max_tokens=200, token_counter=word_tokens)
    assert word_tokens(payload_xml(payload)) <= 200
    assert not payload.actions
    assert 1 <= len(payload.dialogue) < 10


def test_payload_contains_only_script_text(script_elements) -> None:
    evidence = extract_evidence(script_elements)["JONAH"]
    xml = payload_xml(build_payload(evidence, token_counter=word_tokens))
    assert xml.startswith("<character-evidence")
    assert 'name="JONAH"' in xml
    assert "<line>I'm trying.</line>" in xml
    assert "<direction>(beat)</direction>" in xml


def test_analyze_builds_profile(script_elements, fake_llm: FakeLLM) -> None:
    analyzer = CharacterAnalyzer(fake_llm, token_counter=word_tokens)
    profile = analyzer.analyze("Mara", script_elements)
    assert profile.name == "MARA"
    assert profile.gender is Gender.FEMALE
    assert profile.voice_traits == ["low", "tired", "firm"]
    assert profile.line_count == 3
    assert profile.evidence_digest == analyzer.evidence_digest("MARA", script_elements)


def test_evidence_digest_tracks_character_lines(script_elements) -> None:
    analyzer = CharacterAnalyzer(FakeLLM(default_responder), token_counter=word_tokens)
    before = analyzer.evidence_digest("MARA", script_elements)
    edited = parse(
        "INT. KITCHEN - NIGHT\n\nMARA\nKeep your voice down. The baby's asleep.\n\n"
        "JONAH\nSorry.\n"
    )
    assert analyzer.evidence_digest("MARA", edited) != before


def test_analyze_wraps_llm_errors(script_elements) -> None:
    def boom(schema, messages):
        raise ConnectionError("rate limited")

    analyzer = CharacterAnalyzer(FakeLLM(boom), token_counter=word_tokens)
    with pytest.raises(AnalysisFailed) as info:
        analyzer.analyze("JONAH", script_elements)
    assert info.value.character == "JONAH"
    assert isinstance(info.value.cause, ConnectionError)


def test_analyze_rejects_unparsed_response(script_elements) -> None:
    analyzer = CharacterAnalyzer(FakeLLM(lambda schema, messages: None), token_counter=word_tokens)
    with pytest.raises(AnalysisFailed):
        analyzer.analyze("JONAH", script_elements)


def test_analyze_unknown_character(script_elements, fake_llm: FakeLLM) -> None:
    analyzer = CharacterAnalyzer(fake_llm, token_counter=word_tokens)
    with pytest.raises(AnalysisFailed):
        analyzer.analyze("NOBODY", script_elements)
    assert not fake_llm.calls


@pytest.mark.skipif(not _has_openai(), reason="OPENAI_API_KEY not set")
def test_analyze_with_openai(script_elements) -> None:
    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(model="gpt-5-mini", temperature=0, max_retries=3)
    profile = CharacterAnalyzer(llm).analyze("MARA", script_elements)
    assert profile.voice_traits, "analysis returned no voice traits"
    assert profile.gender in set(Gender)
