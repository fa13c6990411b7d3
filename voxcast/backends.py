"""Chatterbox implementation of the TTS collaborator.

Chatterbox clones from reference audio rather than designing voices from text,
so design works from a library of seed voices: each candidate conditions on a
seed matching the instruction's gender word and samples the audition sentence
with instruction-derived engine parameters. The clone representation is the
serialized ``Conditionals`` (speaker embedding + prompt tokens) from
``prepare_conditionals``.
"""

from __future__ import annotations

import hashlib
import random
import re
import tempfile
from collections import OrderedDict
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import soundfile as sf
import torch
import torchaudio  # type: ignore[import]
from chatterbox.tts import ChatterboxTTS, Conditionals  # type: ignore[import]
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydub import AudioSegment

from voxcast.resources import CancelToken, ModelPool

MODEL_NAME = "chatterbox"


class EngineParams(BaseModel):
    """Exact knobs passed to ``ChatterboxTTS.generate()``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    exaggeration: float = Field(0.5, ge=0.25, le=1.1, description="Emotion intensity.")
    cfg_weight: float = Field(
        0.5, ge=0.3, le=0.7, description="CFG weight; lower = slower, more deliberate."
    )
    temperature: float = Field(0.8, ge=0.5, le=1.0, description="Sampling variability.")
    repetition_penalty: float = Field(1.2, ge=1.0, le=2.0)
    min_p: float = Field(0.05, ge=0.0, le=1.0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)


EngineParamVector = Dict[str, float]

_ENGINE_PARAM_FIELD_LIMITS: Dict[str, Tuple[float, float]] = {
    "exaggeration": (0.25, 1.1),
    "cfg_weight": (0.3, 0.7),
    "temperature": (0.5, 1.0),
    "repetition_penalty": (1.0, 2.0),
    "min_p": (0.0, 1.0),
    "top_p": (0.0, 1.0),
}

# Delivery hints from parentheticals, as offsets from the neutral defaults.
_HINT_MODIFIERS: Dict[str, EngineParamVector] = {
    "whisper": {"exaggeration": -0.2, "cfg_weight": -0.1, "temperature": -0.1},
    "soft": {"exaggeration": -0.15, "cfg_weight": -0.05},
    "shout": {"exaggeration": 0.45, "cfg_weight": 0.1, "temperature": 0.05},
    "angry": {"exaggeration": 0.4, "cfg_weight": 0.05, "temperature": 0.05},
    "excited": {"exaggeration": 0.35, "temperature": 0.1},
    "happy": {"exaggeration": 0.2, "temperature": 0.05},
    "laughing": {"exaggeration": 0.3, "temperature": 0.1},
    "sad": {"exaggeration": 0.15, "cfg_weight": -0.15, "temperature": -0.05},
    "nervous": {"exaggeration": 0.15, "cfg_weight": -0.1, "temperature": 0.1},
    "sarcastic": {"exaggeration": 0.1, "cfg_weight": -0.05},
    "cold": {"exaggeration": -0.2, "temperature": -0.15},
    "calm": {"exaggeration": -0.1, "cfg_weight": -0.05, "temperature": -0.1},
    "urgent": {"exaggeration": 0.25, "cfg_weight": 0.15},
    "firm": {"exaggeration": 0.1, "cfg_weight": 0.05, "temperature": -0.1},
}

# Instruction keywords nudge the design sampling the same way.
_TRAIT_MODIFIERS: Dict[str, EngineParamVector] = {
    "energetic": {"exaggeration": 0.15, "temperature": 0.05},
    "booming": {"exaggeration": 0.2},
    "intense": {"exaggeration": 0.2},
    "dramatic": {"exaggeration": 0.2},
    "calm": {"exaggeration": -0.1, "cfg_weight": -0.05},
    "measured": {"cfg_weight": -0.1},
    "slow": {"cfg_weight": -0.15},
    "deliberate": {"cfg_weight": -0.1},
    "fast": {"cfg_weight": 0.1},
    "clipped": {"cfg_weight": 0.1},
    "soft": {"exaggeration": -0.1},
    "monotone": {"exaggeration": -0.2, "temperature": -0.1},
    "warm": {"temperature": 0.05},
}


def _apply_adjustments(base: EngineParamVector, adjustments: EngineParamVector) -> None:
    for key, delta in adjustments.items():
        base[key] = base.get(key, 0.0) + delta


def _clamp_param(name: str, value: float) -> float:
    lower, upper = _ENGINE_PARAM_FIELD_LIMITS[name]
    return max(lower, min(upper, value))


def engine_params(hint: Optional[str] = None, instruction: str = "") -> EngineParams:
    """Neutral defaults shifted by a delivery hint and instruction keywords."""
    vector: EngineParamVector = EngineParams().model_dump()
    if hint:
        for word in re.findall(r"[a-z]+", hint.lower()):
            _apply_adjustments(vector, _HINT_MODIFIERS.get(word, {}))
    for word in set(re.findall(r"[a-z]+", instruction.lower())):
        _apply_adjustments(vector, _TRAIT_MODIFIERS.get(word, {}))
    return EngineParams(**{k: _clamp_param(k, v) for k, v in vector.items()})


def _segment_from_tensor(wav, sample_rate: int) -> AudioSegment:
    waveform = wav.detach().cpu()
    if waveform.ndim == 1:
        samples = waveform.unsqueeze(1).contiguous().numpy()
    elif waveform.ndim == 2:
        samples = waveform.transpose(0, 1).contiguous().numpy()
    else:
        raise ValueError(f"Unexpected waveform shape: {tuple(waveform.shape)}")
    buf = BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV")
    buf.seek(0)
    return AudioSegment.from_file(buf, format="wav")


def _gender_word(instruction: str) -> Optional[str]:
    match = re.match(r"^A (male|female|non-binary|neutral) voice", instruction)
    return match.group(1) if match else None


class ChatterboxBackend:
    """`TTSBackend` over a pooled ``ChatterboxTTS`` model."""

    def __init__(
        self,
        pool: ModelPool,
        voices_dir: Path | str,
        device: Optional[str] = None,
        required_bytes: int = 0,
        slot_timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.pool = pool
        self.voices_dir = Path(voices_dir)
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self.slot_timeout = slot_timeout
        self.cancel = cancel
        self._rng = random.Random(seed)
        self._conds: "OrderedDict[str, Conditionals]" = OrderedDict()
        self._builtin_conds: Optional[Conditionals] = None
        pool.register(MODEL_NAME, self._load_model, required_bytes=required_bytes)
        logger.info(
            "torchaudio.version={version} device={device}",
            version=torchaudio.__version__,
            device=self.device,
        )

    def _load_model(self) -> ChatterboxTTS:
        model = ChatterboxTTS.from_pretrained(device=self.device)
        # Clone and seed-voice calls overwrite model.conds; keep the shipped voice.
        self._builtin_conds = model.conds
        return model

    def _builtin_voice(self) -> Conditionals:
        if self._builtin_conds is None:
            raise ValueError(
                f"No seed voices in {self.voices_dir} and the model ships no built-in voice."
            )
        return self._builtin_conds

    def _slot(self):
        return self.pool.slot(MODEL_NAME, timeout=self.slot_timeout, cancel=self.cancel)

    def seed_voices(self, gender: Optional[str] = None) -> List[Path]:
        voices = sorted(self.voices_dir.glob("*.wav"))
        if gender in {"male", "female"}:
            matching = [
                path
                for path in voices
                if gender in re.split(r"[^a-z]+", path.stem.lower())
            ]
            if matching:
                return matching
        return voices

    def design_from_instruction(self, instruction: str, sample_text: str) -> AudioSegment:
        voices = self.seed_voices(_gender_word(instruction))
        seed_voice = self._rng.choice(voices) if voices else None
        params = engine_params(instruction=instruction)
        # Independent sampling per candidate.
        temperature = _clamp_param(
            "temperature", params.temperature + self._rng.uniform(-0.1, 0.1)
        )
        logger.debug(
            "tts.design seed_voice={voice} temperature={temperature:.2f}",
            voice=seed_voice.stem if seed_voice else "builtin",
            temperature=temperature,
        )
        with self._slot() as model:
            if seed_voice is not None:
                model.prepare_conditionals(str(seed_voice), exaggeration=params.exaggeration)
            else:
                model.conds = self._builtin_voice()
            wav = model.generate(
                text=sample_text,
                exaggeration=params.exaggeration,
                cfg_weight=params.cfg_weight,
                temperature=temperature,
                repetition_penalty=params.repetition_penalty,
                min_p=params.min_p,
                top_p=params.top_p,
            )
            return _segment_from_tensor(wav, int(model.sr))

    def compute_clone_representation(self, sample: AudioSegment) -> bytes:
        with tempfile.TemporaryDirectory() as tmp:
            ref_path = Path(tmp) / "reference.wav"
            sample.export(ref_path, format="wav")
            with self._slot() as model:
                model.prepare_conditionals(str(ref_path), exaggeration=0.5)
                buf = BytesIO()
                model.conds.save(buf)
        logger.debug("tts.clone bytes={size}", size=buf.tell())
        return buf.getvalue()

    def _conditionals(self, clone: bytes) -> Conditionals:
        key = hashlib.sha256(clone).hexdigest()
        conds = self._conds.get(key)
        if conds is None:
            conds = Conditionals.load(BytesIO(clone), map_location=self.device).to(
                self.device
            )
            self._conds[key] = conds
            while len(self._conds) > 8:
                self._conds.popitem(last=False)
        else:
            self._conds.move_to_end(key)
        return conds

    def synthesize_with_clone(
        self, text: str, clone: bytes, hint: Optional[str] = None
    ) -> AudioSegment:
        params = engine_params(hint=hint)
        with self._slot() as model:
            model.conds = self._conditionals(clone)
            wav = model.generate(
                text=text,
                exaggeration=params.exaggeration,
                cfg_weight=params.cfg_weight,
                temperature=params.temperature,
                repetition_penalty=params.repetition_penalty,
                min_p=params.min_p,
                top_p=params.top_p,
            )
            return _segment_from_tensor(wav, int(model.sr))
