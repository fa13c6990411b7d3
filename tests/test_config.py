import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from voxcast.config import VoxCastConfig


def test_defaults() -> None:
    config = VoxCastConfig.load()
    assert config.candidate_count == 3
    assert config.max_words_per_chunk == 200
    assert config.staleness_threshold == 0.5
    assert config.model_memory_bytes["chatterbox"] > 0


def test_load_from_json(tmp_path: Path) -> None:
    path = tmp_path / "voxcast.json"
    path.write_text(json.dumps({"candidate_count": 5, "output_format": "m4a"}))
    config = VoxCastConfig.load(path)
    assert config.candidate_count == 5
    assert config.output_format == "m4a"


@pytest.mark.parametrize(
    "payload",
    [{"candidate_count": 0}, {"staleness_threshold": 1.5}, {"unknown_key": 1}],
)
def test_invalid_config_rejected(tmp_path: Path, payload) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(payload))
    with pytest.raises(ValidationError):
        VoxCastConfig.load(path)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        VoxCastConfig.load(tmp_path / "nope.json")
