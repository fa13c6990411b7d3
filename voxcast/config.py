from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

WORKSPACE_DIR = Path(os.environ.get("WORKSPACE_DIR", "/data/workspace"))

# Covers every English phoneme; read by every candidate unless a sentence writer is configured.
PHONEME_PANGRAM = (
    "That quick beige fox jumped in the air over each thin dog. "
    "Look out, I shout, for he's foiled you again, creating chaos."
)

# Conservative resident-memory estimates once loaded (weights + activations).
DEFAULT_MODEL_MEMORY: Dict[str, int] = {
    "chatterbox": 3_200_000_000,
}


class VoxCastConfig(BaseModel):
    """Tunables for analysis, design, rendering and scheduling."""

    model_config = ConfigDict(extra="forbid")

    workspace_dir: Path = Field(
        default=WORKSPACE_DIR / "voxcast",
        description="Root under which one directory per project is created.",
    )
    analysis_model: str = Field(default="gpt-5-mini")
    llm_timeout_s: float = Field(default=120.0, gt=0)
    llm_max_retries: int = Field(default=3, ge=0)

    candidate_count: int = Field(default=3, ge=1)
    sample_text: str = Field(default=PHONEME_PANGRAM, min_length=1)

    max_words_per_chunk: int = Field(default=200, ge=1)
    synthesis_lookahead: int = Field(
        default=2, ge=1, description="Units dispatched ahead of the consumer."
    )
    synthesis_timeout_s: float = Field(default=300.0, gt=0)
    slot_timeout_s: Optional[float] = Field(
        default=None, description="Bound on waiting for a model slot; None waits."
    )

    staleness_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    max_dialogue_evidence: int = Field(default=20, ge=1)
    max_action_evidence: int = Field(default=10, ge=0)
    max_evidence_tokens: int = Field(default=3000, ge=200)

    character_workers: int = Field(default=4, ge=1)
    output_format: str = Field(default="wav")

    device: Optional[str] = Field(
        default=None, description="Torch device; auto-detected when omitted."
    )
    model_memory_bytes: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_MEMORY)
    )
    memory_headroom: float = Field(default=1.5, ge=1.0)

    @classmethod
    def load(cls, path: Optional[Path | str] = None) -> "VoxCastConfig":
        """Read a JSON config file, or return defaults when no path is given."""
        if not path:
            return cls()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file {config_path} does not exist.")
        config = cls.model_validate_json(config_path.read_text())
        logger.debug("config.loaded path={path}", path=config_path)
        return config
