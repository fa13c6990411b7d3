"""
Character Voice Toolchain (Parse → Analyze → Design → Audition → Lock → Render)

Each lifecycle stage is an explicit CLI command operating on one script and,
optionally, one character. State lives in a per-script project directory under
the workspace, so any stage can be rerun on its own:

    script.fountain → profile.json → candidates/ → locks/vNNNN/ → lines/ → tracks/

``render`` drives every stage for all (or the selected) characters and prints a
per-character summary instead of stopping at the first failure.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import fire
from langchain_openai import ChatOpenAI
from loguru import logger

from voxcast.analysis import CharacterAnalyzer, CharacterProfile
from voxcast.assembly import AudioFormat
from voxcast.audition import AuditionGate, AuditionRequest
from voxcast.chunking import chunk
from voxcast.config import WORKSPACE_DIR, VoxCastConfig
from voxcast.design import SampleSentenceWriter, VoiceDesigner
from voxcast.directions import DirectionMapper
from voxcast.pipeline import VoicePipeline
from voxcast.render import LineRenderer
from voxcast.resources import CancelToken, ModelPool
from voxcast.scheduler import synthesize_to_file
from voxcast.script import (
    ScriptElement,
    characters,
    normalize_character_name,
    script_digest,
    speaking_characters,
)
from voxcast.store import VoiceLock, VoiceLockStore, project_id_for, slugify
from voxcast.tts import TTSBackend


def sk_chooser(request: AuditionRequest) -> Optional[str]:
    """Interactive candidate picker using `sk`; an empty pick cancels."""
    choices = [
        f"{position}\t{candidate.audio_path}"
        for position, candidate in enumerate(request.candidates)
    ]
    result = subprocess.run(
        ["sk", "--prompt", f"{request.character}> "],
        input="\n".join(choices),
        text=True,
        capture_output=True,
        check=False,
    )
    picked = result.stdout.strip()
    if not picked:
        return None
    return picked.split("\t", 1)[0]


class Toolchain:
    """Character voice lifecycle exposed as CLI stages."""

    def __init__(
        self,
        debug: bool = False,
        in_dir: Path | str = WORKSPACE_DIR / "in",
        voices_dir: Path | str = WORKSPACE_DIR / "voices",
        workspace_dir: Optional[Path | str] = None,
        config: Optional[Path | str] = None,
        model_name: Optional[str] = None,
        llm=None,
        tts: Optional[TTSBackend] = None,
    ) -> None:
        self.debug = debug
        logger.remove()
        logger.add(sys.stderr, level="DEBUG" if debug else "INFO")

        self.config = VoxCastConfig.load(config)
        if workspace_dir:
            self.config = self.config.model_copy(update={"workspace_dir": Path(workspace_dir)})
        self.in_dir = Path(in_dir)
        self.in_dir.mkdir(parents=True, exist_ok=True)
        self.voices_dir = Path(voices_dir)
        self.voices_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_dir = Path(self.config.workspace_dir)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

        self.llm = llm or ChatOpenAI(
            model=model_name or self.config.analysis_model,
            temperature=0,
            max_retries=self.config.llm_max_retries,
            timeout=self.config.llm_timeout_s,
        )
        self.cancel = CancelToken()
        self.pool = ModelPool(
            device=self.config.device, headroom=self.config.memory_headroom
        )
        if tts is None:
            # torch and chatterbox load only when a real synthesizer is needed.
            from voxcast.backends import MODEL_NAME, ChatterboxBackend

            tts = ChatterboxBackend(
                self.pool,
                self.voices_dir,
                device=self.config.device,
                required_bytes=self.config.model_memory_bytes.get(MODEL_NAME, 0),
                slot_timeout=self.config.slot_timeout_s,
                cancel=self.cancel,
            )
        self.tts: TTSBackend = tts

    # —————————————————— Utilities ——————————————————

    def choose_script(self) -> Path:
        """Interactive selection of a script from the input directory using `sk`."""
        scripts = [
            path
            for pattern in ("*.fountain", "*.txt", "*.spmd")
            for path in self.in_dir.rglob(pattern)
        ]
        if not scripts:
            raise ValueError("No script files found in the input directory.")
        choices = [str(path.relative_to(self.in_dir)) for path in sorted(scripts)]
        result = subprocess.run(
            ["sk"], input="\n".join(choices), text=True, capture_output=True, check=True
        )
        return self.in_dir / result.stdout.strip()

    def _script_path(self, script_file: Path | str) -> Path:
        path = Path(script_file) if script_file else self.choose_script()
        if not path.exists():
            raise FileNotFoundError(f"Script file {path} does not exist.")
        return path

    def _store(self, script_path: Path) -> VoiceLockStore:
        return VoiceLockStore(self.workspace_dir, project_id_for(script_path))

    def _pipeline(
        self, store: VoiceLockStore, select: Optional[int] = None
    ) -> VoicePipeline:
        if select is None:
            gate = AuditionGate(chooser=sk_chooser)
        else:
            gate = AuditionGate(chooser=lambda _request: select, max_attempts=1)
        return VoicePipeline(
            store=store,
            tts=self.tts,
            analyzer=CharacterAnalyzer(
                self.llm,
                max_dialogue=self.config.max_dialogue_evidence,
                max_actions=self.config.max_action_evidence,
                max_tokens=self.config.max_evidence_tokens,
            ),
            designer=VoiceDesigner(
                self.tts,
                sample_text=self.config.sample_text,
                sentence_writer=SampleSentenceWriter(self.llm, self.config.sample_text),
            ),
            gate=gate,
            renderer=LineRenderer(
                self.tts,
                directions=DirectionMapper(self.llm),
                max_words=self.config.max_words_per_chunk,
                lookahead=self.config.synthesis_lookahead,
                timeout=self.config.synthesis_timeout_s,
            ),
            config=self.config,
            cancel=self.cancel,
        )

    def _elements(self, pipeline: VoicePipeline, script_path: Path) -> List[ScriptElement]:
        """Re-parse when the script changed since the last stored version."""
        text = script_path.read_text()
        stored = pipeline.store.load_script()
        if stored is not None and stored.digest == script_digest(text):
            return stored.elements
        return pipeline.ingest(text, script_path).elements

    def _profile(
        self, pipeline: VoicePipeline, character: str, elements: List[ScriptElement]
    ) -> CharacterProfile:
        profile = pipeline.store.load_profile(character)
        if profile is None:
            profile, _ = pipeline.analyze(character, elements)
        return profile

    # —————————————————— Stage commands ——————————————————

    def parse(self, script_file: Path | str = "") -> str:
        """Parse a script into the project workspace; returns the project id."""
        script_path = self._script_path(script_file)
        store = self._store(script_path)
        document = self._pipeline(store).ingest(script_path.read_text(), script_path)
        speaking = set(speaking_characters(document.elements))
        for name in characters(document.elements):
            logger.info(
                "parse.character name={name} speaking={speaking}",
                name=name,
                speaking=name in speaking,
            )
        return store.project_id

    def analyze(
        self, script_file: Path | str = "", character: str = "", force: bool = False
    ) -> List[str]:
        """Profile one character (or every speaking character)."""
        script_path = self._script_path(script_file)
        pipeline = self._pipeline(self._store(script_path))
        elements = self._elements(pipeline, script_path)
        names = [normalize_character_name(character)] if character else speaking_characters(elements)
        for name in names:
            profile, reanalyzed = pipeline.analyze(name, elements, force=force)
            logger.info(
                "analyze.profile name={name} gender={gender} age={age} traits={traits} fresh={fresh}",
                name=profile.name,
                gender=profile.gender.value,
                age=profile.age_range,
                traits=profile.voice_traits,
                fresh=reanalyzed,
            )
        return names

    def design(
        self, script_file: Path | str, character: str, count: Optional[int] = None
    ) -> List[str]:
        """Generate audition candidates for one character."""
        script_path = self._script_path(script_file)
        pipeline = self._pipeline(self._store(script_path))
        elements = self._elements(pipeline, script_path)
        name = normalize_character_name(character)
        candidates = pipeline.design(self._profile(pipeline, name, elements), count)
        return [str(candidate.audio_path) for candidate in candidates]

    def audition(self, script_file: Path | str, character: str) -> int:
        """Pick a candidate interactively and lock it."""
        script_path = self._script_path(script_file)
        store = self._store(script_path)
        name = normalize_character_name(character)
        candidates = store.list_candidates(name)
        if not candidates:
            raise FileNotFoundError(f"No candidates for '{name}'. Run `design` first.")
        selected = AuditionGate(chooser=sk_chooser).audition(name, candidates)
        self.lock(script_path, name, selected)
        return selected

    def lock(self, script_file: Path | str, character: str, select: int) -> int:
        """Lock candidate ``select`` as the character's voice; returns the lock version."""
        script_path = self._script_path(script_file)
        pipeline = self._pipeline(self._store(script_path), select=select)
        elements = self._elements(pipeline, script_path)
        name = normalize_character_name(character)
        candidates = pipeline.store.list_candidates(name)
        if not candidates:
            raise FileNotFoundError(f"No candidates for '{name}'. Run `design` first.")
        chosen = pipeline.audition(name, candidates)
        record = pipeline.lock(chosen, self._profile(pipeline, name, elements))
        return record.version

    def render(
        self,
        script_file: Path | str = "",
        character: str = "",
        relock: bool = False,
        select: Optional[int] = None,
    ) -> str:
        """Run every stage end to end for all (or one) speaking characters."""
        script_path = self._script_path(script_file)
        pipeline = self._pipeline(self._store(script_path), select=select)
        elements = self._elements(pipeline, script_path)
        try:
            summary = pipeline.run(
                elements, [character] if character else None, relock=relock
            )
        finally:
            self.pool.shutdown()
        return summary.format()

    def status(self, script_file: Path | str = "") -> str:
        """Per-character lifecycle report for a script's project."""
        script_path = self._script_path(script_file)
        report = self._store(script_path).status(self.config.staleness_threshold)
        return report.format()

    def history(self, script_file: Path | str, character: str) -> List[str]:
        store = self._store(self._script_path(script_file))
        return [
            f"v{lock.version} {lock.locked_at:%Y-%m-%d %H:%M:%S} candidate={lock.candidate_index}"
            for lock in store.history(normalize_character_name(character))
        ]

    def rollback(self, script_file: Path | str, character: str, version: int) -> int:
        store = self._store(self._script_path(script_file))
        return store.rollback(normalize_character_name(character), version).version

    def export_voice(
        self,
        script_file: Path | str,
        character: str,
        output: Path | str = "",
        version: Optional[int] = None,
    ) -> Path:
        """Write a locked voice to a portable archive other projects can import."""
        store = self._store(self._script_path(script_file))
        name = normalize_character_name(character)
        path = Path(output) if output else Path.cwd() / f"{slugify(name)}.voice.zip"
        return store.export_lock(name, path, version=version)

    def import_voice(
        self, script_file: Path | str, package: Path | str, character: str = ""
    ) -> int:
        """Lock an exported voice for a character of this script; returns the lock version."""
        store = self._store(self._script_path(script_file))
        return store.import_lock(package, character=character or None).version

    def speak(
        self,
        script_file: Path | str,
        character: str,
        text: str = "",
        text_file: Path | str = "",
        output: Path | str = "",
        file_format: Optional[str] = None,
    ) -> Path:
        """Synthesize arbitrary text in a locked character voice to an audio file."""
        if text_file:
            text = Path(text_file).read_text()
        if not text.strip():
            raise ValueError("Nothing to speak; pass --text or --text_file.")
        store = self._store(self._script_path(script_file))
        lock: VoiceLock = store.load(normalize_character_name(character))
        clone = lock.read_clone()
        output_path = Path(output) if output else Path.cwd() / f"{store.project_id}-speak.wav"
        fmt = AudioFormat.infer(output_path, file_format)
        units = chunk(text, self.config.max_words_per_chunk)
        try:
            return synthesize_to_file(
                units,
                lambda unit: self.tts.synthesize_with_clone(unit.text, clone),
                output_path,
                fmt,
                lookahead=self.config.synthesis_lookahead,
                timeout=self.config.synthesis_timeout_s,
                cancel=self.cancel,
            )
        finally:
            self.pool.shutdown()


def main() -> None:
    fire.Fire(Toolchain)


if __name__ == "__main__":
    main()
