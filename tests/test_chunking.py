import pytest

from voxcast.chunking import chunk, count_words, sentence_spans

LONG_TEXT = (
    "Dr. Hale checked the gauge at 3.5 bar... then frowned. "
    "\"Is that right?\" she asked! Nobody answered. "
    "The pump rattled, coughed, and died. "
) * 12


def test_sentence_spans_cover_text() -> None:
    text = "Mr. Smith paid $4.50 today. Was it enough? \"Yes!\" he said...  Fine."
    spans = sentence_spans(text)
    assert "".join(text[s:e] for s, e in spans) == text
    sentences = [text[s:e].strip() for s, e in spans]
    assert sentences == [
        "Mr. Smith paid $4.50 today.",
        "Was it enough?",
        "\"Yes!\"",
        "he said...  Fine.",
    ]


@pytest.mark.parametrize(
    "text",
    [
        "Bring tools, e.g. a wrench and tape. Then wait.",
        "Use the back door, i.e. the one by the shed. Then wait.",
        "He lives on Elm St. near the school. Then wait.",
        "(Dr. Hale knows.) Then wait.",
    ],
)
def test_abbreviations_do_not_end_sentences(text: str) -> None:
    sentences = [text[s:e].strip() for s, e in sentence_spans(text)]
    assert len(sentences) == 2
    assert sentences[1] == "Then wait."


@pytest.mark.parametrize("max_words", [1, 5, 12, 40, 200])
def test_chunk_reassembles_input(max_words: int) -> None:
    units = chunk(LONG_TEXT, max_words)
    assert "".join(unit.source for unit in units) == LONG_TEXT
    assert [unit.index for unit in units] == list(range(len(units)))
    assert all(unit.text and unit.text == unit.source.strip() for unit in units)


def test_chunk_respects_ceiling() -> None:
    units = chunk(LONG_TEXT, 12)
    assert len(units) > 1
    assert all(unit.word_count <= 12 for unit in units), [u.word_count for u in units]


def test_oversize_sentence_is_its_own_unit() -> None:
    long_sentence = " ".join(["word"] * 30) + "."
    text = f"Short one. {long_sentence} Another short one."
    units = chunk(text, 10)
    assert [u.word_count for u in units] == [2, 30, 3]


def test_short_text_is_one_unit() -> None:
    units = chunk("  Just a line.  ", 200)
    assert len(units) == 1
    assert units[0].text == "Just a line."
    assert units[0].source == "  Just a line.  "


@pytest.mark.parametrize("text", ["", "   ", "\n\t\n"])
def test_blank_text_yields_no_units(text: str) -> None:
    assert chunk(text) == []


def test_invalid_ceiling() -> None:
    with pytest.raises(ValueError):
        chunk("Hello there.", 0)


def test_count_words() -> None:
    assert count_words("  one two\nthree  ") == 3
