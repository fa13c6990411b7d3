import hashlib
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import pytest
from pydub import AudioSegment
from pydub.generators import Sine

from voxcast.analysis import Gender, ProfileAnalysis
from voxcast.design import SampleSentence
from voxcast.directions import DirectionClassification
from voxcast.script import ScriptElement, parse

SAMPLE_SCRIPT = """\
INT. KITCHEN - NIGHT

MARA stands at the sink. JONAH enters, dripping wet.

JONAH
You left the door open again, Mara.

MARA
(whispering)
Keep your voice down. The baby's asleep.

JONAH
Sorry. I didn't think.

EXT. PORCH - CONTINUOUS

MARA
Then start thinking, Jonah.

JONAH
(beat)
I'm trying.

MARA
Try harder.
"""


def word_tokens(text: str) -> int:
    """Offline stand-in for the tiktoken counter."""
    return len(text.split())


class _Structured:
    def __init__(self, llm: "FakeLLM", schema: type) -> None:
        self.llm = llm
        self.schema = schema

    def invoke(self, messages, config=None):
        with self.llm._lock:
            self.llm.calls.append((self.schema, messages))
        parsed = self.llm.responder(self.schema, messages)
        return {"raw": None, "parsed": parsed, "parsing_error": None}


class FakeLLM:
    """Mimics ``with_structured_output(..., include_raw=True).invoke``."""

    def __init__(self, responder: Callable) -> None:
        self.responder = responder
        self.calls: List = []
        self._lock = threading.Lock()

    def with_structured_output(self, schema, include_raw: bool = False):
        assert include_raw
        return _Structured(self, schema)

    def calls_for(self, schema: type) -> int:
        return sum(1 for called, _ in self.calls if called is schema)


def default_responder(schema, messages):
    if schema is ProfileAnalysis:
        evidence = messages[-1].content
        if 'name="MARA"' in evidence:
            return ProfileAnalysis(
                gender=Gender.FEMALE,
                age_range="30s",
                description="Tired parent who keeps the household together.",
                voice_traits=["low", "tired", "firm"],
                summary="A low, tired but firm female voice",
            )
        return ProfileAnalysis(
            gender=Gender.MALE,
            age_range="30s",
            description="Apologetic partner, slightly scattered.",
            voice_traits=["warm", "hesitant", "soft"],
            summary="A warm, hesitant male voice",
        )
    if schema is SampleSentence:
        return SampleSentence(
            text=(
                "I have been standing in this kitchen for an hour waiting for you to "
                "remember that we share this house together."
            )
        )
    if schema is DirectionClassification:
        return DirectionClassification(classification="vocal", hint="wistful")
    raise AssertionError(f"unexpected schema {schema}")


class FakeTTS:
    """In-process TTS with call recording and failure injection."""

    def __init__(
        self,
        fail_design: Optional[Set[int]] = None,
        fail_texts: Optional[Set[str]] = None,
        fail_clone: bool = False,
        delay: float = 0.0,
        design_error: Optional[Exception] = None,
        synth_error: Optional[Exception] = None,
    ) -> None:
        self.fail_design = fail_design or set()
        self.fail_texts = fail_texts or set()
        self.fail_clone = fail_clone
        self.delay = delay
        self.design_error = design_error
        self.synth_error = synth_error
        self.design_calls: List[str] = []
        self.clone_calls = 0
        self.synth_calls: List[Dict] = []
        self._lock = threading.Lock()

    def design_from_instruction(self, instruction: str, sample_text: str) -> AudioSegment:
        with self._lock:
            ordinal = len(self.design_calls)
            self.design_calls.append(instruction)
        if self.design_error is not None:
            raise self.design_error
        if ordinal in self.fail_design:
            raise RuntimeError(f"design call {ordinal} failed")
        return Sine(220 + 40 * ordinal).to_audio_segment(duration=150)

    def compute_clone_representation(self, sample: AudioSegment) -> bytes:
        with self._lock:
            self.clone_calls += 1
        if self.fail_clone:
            raise RuntimeError("speaker encoder crashed")
        return b"clone-" + hashlib.sha256(sample.raw_data).hexdigest().encode()

    def synthesize_with_clone(
        self, text: str, clone: bytes, hint: Optional[str] = None
    ) -> AudioSegment:
        with self._lock:
            self.synth_calls.append({"text": text, "clone": clone, "hint": hint})
        if self.delay:
            time.sleep(self.delay)
        if self.synth_error is not None:
            raise self.synth_error
        if any(marker in text for marker in self.fail_texts):
            raise RuntimeError(f"synthesis failed for {text!r}")
        return AudioSegment.silent(duration=100 * max(1, len(text.split())))


@pytest.fixture()
def script_elements() -> List[ScriptElement]:
    return parse(SAMPLE_SCRIPT)


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM(default_responder)


@pytest.fixture()
def fake_tts() -> FakeTTS:
    return FakeTTS()


@pytest.fixture()
def script_file(tmp_path: Path) -> Path:
    path = tmp_path / "kitchen.fountain"
    path.write_text(SAMPLE_SCRIPT)
    return path
