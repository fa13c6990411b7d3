import pytest

from conftest import FakeLLM
from voxcast.directions import DirectionClassification, DirectionMapper


@pytest.mark.parametrize(
    ("parenthetical", "expected"),
    [
        ("(whispering)", "whisper"),
        ("(Angrily, to Sam)", "angry"),
        ("(sadly)", "sad"),
        ("(beat)", None),
        ("(Into Phone)", None),
        ("()", None),
        (None, None),
        ("", None),
    ],
)
def test_known_directions(parenthetical, expected) -> None:
    assert DirectionMapper().hint_for(parenthetical) == expected


def test_unknown_direction_passes_through_without_llm() -> None:
    assert DirectionMapper().hint_for("(wistful)") == "wistful"


def test_unknown_direction_is_classified_once() -> None:
    llm = FakeLLM(
        lambda schema, messages: DirectionClassification(
            classification="vocal", hint="Wistful"
        )
    )
    mapper = DirectionMapper(llm)
    assert mapper.hint_for("(longingly)") == "wistful"
    assert mapper.hint_for("(Longingly.)") == "wistful"
    assert llm.calls_for(DirectionClassification) == 1


def test_blocking_classification_drops_hint() -> None:
    llm = FakeLLM(
        lambda schema, messages: DirectionClassification(classification="blocking")
    )
    assert DirectionMapper(llm).hint_for("(pacing the room)") is None


def test_table_hits_skip_the_llm() -> None:
    llm = FakeLLM(lambda schema, messages: pytest.fail("llm should not be called"))
    mapper = DirectionMapper(llm)
    assert mapper.hint_for("(whispering)") == "whisper"
    assert mapper.hint_for("(beat)") is None


def test_llm_failure_falls_back_to_direction_text() -> None:
    def boom(schema, messages):
        raise TimeoutError("llm down")

    assert DirectionMapper(FakeLLM(boom)).hint_for("(wryly)") == "wryly"
