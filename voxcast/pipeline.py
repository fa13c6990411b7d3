"""Per-character lifecycle orchestration.

Within one character the stages run strictly in order (analyze, design,
audition, lock, render, assemble). Characters are independent and run in
parallel; a failure is recorded in that character's result and never aborts
its siblings.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from voxcast.analysis import CharacterAnalyzer, CharacterProfile
from voxcast.assembly import AudioFormat, TrackHandle, assemble
from voxcast.audition import AuditionGate
from voxcast.config import VoxCastConfig
from voxcast.design import VoiceDesigner
from voxcast.errors import VoxCastError
from voxcast.render import LineRenderer, RenderReport
from voxcast.resources import CancelToken
from voxcast.script import (
    ScriptDocument,
    ScriptElement,
    normalize_character_name,
    parse,
    script_digest,
    speaking_characters,
)
from voxcast.store import (
    VoiceCandidate,
    VoiceLock,
    VoiceLockStore,
    check_staleness,
    slugify,
)
from voxcast.tts import TTSBackend


class CharacterResult(BaseModel):
    """Outcome of one character's run."""

    model_config = ConfigDict(extra="forbid")

    character: str
    ok: bool = False
    stage: str = Field(default="analyze", description="Last stage reached.")
    reanalyzed: bool = False
    lock_version: Optional[int] = None
    stale: Optional[bool] = None
    lines: int = 0
    failed_lines: List[int] = Field(default_factory=list)
    track: Optional[TrackHandle] = None
    error: Optional[str] = None


class RunSummary(BaseModel):
    project_id: str
    results: List[CharacterResult]

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def total_lines(self) -> int:
        return sum(result.lines for result in self.results)

    def format(self) -> str:
        rows = [f"project {self.project_id}"]
        for result in self.results:
            if result.ok:
                detail = f"ok lines={result.lines} lock=v{result.lock_version}"
                if result.stale:
                    detail += " (stale profile: consider re-auditioning)"
            else:
                detail = f"FAILED at {result.stage}: {result.error}"
                if result.lines:
                    detail += f" (lines ok={result.lines} failed={result.failed_lines})"
            rows.append(f"  {result.character:<20} {detail}")
        return "\n".join(rows)


class VoicePipeline:
    """Wires the stage components around one project store."""

    def __init__(
        self,
        store: VoiceLockStore,
        tts: TTSBackend,
        analyzer: CharacterAnalyzer,
        designer: VoiceDesigner,
        gate: AuditionGate,
        renderer: LineRenderer,
        config: Optional[VoxCastConfig] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.store = store
        self.tts = tts
        self.analyzer = analyzer
        self.designer = designer
        self.gate = gate
        self.renderer = renderer
        self.config = config or VoxCastConfig()
        self.cancel = cancel or CancelToken()

    # —————————————————— Stages ——————————————————

    def ingest(self, text: str, script_path: Optional[Path] = None) -> ScriptDocument:
        """Parse and persist a script version, replacing the previous one whole."""
        document = ScriptDocument(digest=script_digest(text), elements=parse(text))
        previous = self.store.load_script()
        self.store.save_script(document, script_path)
        logger.info(
            "parse.done project={project} elements={count} changed={changed}",
            project=self.store.project_id,
            count=len(document.elements),
            changed=previous is None or previous.digest != document.digest,
        )
        return document

    def analyze(
        self,
        character: str,
        elements: Sequence[ScriptElement],
        force: bool = False,
    ) -> tuple[CharacterProfile, bool]:
        """Return (profile, reanalyzed). Unchanged evidence reuses the stored profile.

        A failed analysis leaves the stored profile untouched.
        """
        name = normalize_character_name(character)
        stored = self.store.load_profile(name)
        if stored is not None and not force:
            digest = self.analyzer.evidence_digest(name, elements)
            if stored.evidence_digest == digest:
                logger.info("analyze.skip character={character} reason=unchanged", character=name)
                return stored, False
        profile = self.analyzer.analyze(name, elements)
        self.store.save_profile(profile)
        return profile, True

    def design(self, profile: CharacterProfile, count: Optional[int] = None) -> List[VoiceCandidate]:
        candidates = self.designer.design(
            profile,
            count if count is not None else self.config.candidate_count,
            self.store.candidates_dir(profile.name),
            cancel=self.cancel,
        )
        self.store.save_candidates(profile.name, candidates)
        return candidates

    def audition(self, character: str, candidates: Sequence[VoiceCandidate]) -> VoiceCandidate:
        self.cancel.raise_if_cancelled(f"audition of {character}")
        return candidates[self.gate.audition(character, candidates)]

    def lock(self, candidate: VoiceCandidate, profile: CharacterProfile) -> VoiceLock:
        self.cancel.raise_if_cancelled(f"lock of {candidate.character}")
        return self.store.lock(candidate, profile, self.tts)

    def staleness(self, lock: VoiceLock, profile: CharacterProfile) -> bool:
        stale = check_staleness(lock, profile, self.config.staleness_threshold)
        if stale:
            logger.warning(
                "lock.stale character={character} version={version} locked_at={locked_at}",
                character=lock.character,
                version=lock.version,
                locked_at=lock.locked_at,
            )
        return stale

    def render(self, character: str, elements: Sequence[ScriptElement]) -> RenderReport:
        lock = self.store.load(character)
        return self.renderer.render(
            character,
            elements,
            lock,
            self.store.lines_dir(character),
            cancel=self.cancel,
        )

    def assemble(self, report: RenderReport) -> TrackHandle:
        fmt = AudioFormat.infer("", self.config.output_format)
        path = self.store.tracks_dir / f"{slugify(report.character)}.{fmt.extension}"
        return assemble(report.lines, path, fmt, character=report.character)

    # —————————————————— Drivers ——————————————————

    def run_character(
        self,
        character: str,
        elements: Sequence[ScriptElement],
        relock: bool = False,
    ) -> CharacterResult:
        """Drive one character end to end, recording where it stopped."""
        name = normalize_character_name(character)
        result = CharacterResult(character=name)
        try:
            self.cancel.raise_if_cancelled(f"analysis of {name}")
            profile, result.reanalyzed = self.analyze(name, elements)

            if self.store.has_lock(name) and not relock:
                lock = self.store.load(name)
                result.stale = self.staleness(lock, profile)
            else:
                result.stage = "design"
                candidates = self.design(profile)
                result.stage = "audition"
                chosen = self.audition(name, candidates)
                result.stage = "lock"
                lock = self.lock(chosen, profile)
                result.stale = False
            result.lock_version = lock.version

            result.stage = "render"
            report = self.render(name, elements)
            result.lines = len(report.lines)
            result.failed_lines = report.failed_indices
            if report.lines:
                result.stage = "assemble"
                result.track = self.assemble(report)
            if not report.ok:
                result.stage = "render"
                result.error = f"{len(report.failures)} line(s) failed: {report.failures[0]}"
                return result
            result.stage = "done"
            result.ok = True
        except VoxCastError as exc:
            result.error = str(exc)
            logger.warning(
                "pipeline.character_failed character={character} stage={stage} error={error}",
                character=name,
                stage=result.stage,
                error=exc,
            )
        except Exception as exc:  # noqa: BLE001
            result.error = f"{type(exc).__name__}: {exc}"
            logger.opt(exception=exc).error(
                "pipeline.character_crashed character={character} stage={stage}",
                character=name,
                stage=result.stage,
            )
        return result

    def run(
        self,
        elements: Sequence[ScriptElement],
        characters: Optional[Sequence[str]] = None,
        relock: bool = False,
    ) -> RunSummary:
        """Run every selected speaking character in parallel and summarize."""
        names = (
            [normalize_character_name(name) for name in characters]
            if characters
            else speaking_characters(elements)
        )
        logger.info(
            "pipeline.start project={project} characters={names}",
            project=self.store.project_id,
            names=names,
        )
        results: Dict[str, CharacterResult] = {}
        workers = max(1, min(self.config.character_workers, len(names) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="character") as ex:
            futures = {
                ex.submit(self.run_character, name, elements, relock): name for name in names
            }
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            except BaseException:
                self.cancel.cancel()
                self.gate.cancel_all()
                raise

        summary = RunSummary(
            project_id=self.store.project_id,
            results=[results[name] for name in names],
        )
        logger.info(
            "pipeline.done project={project} ok={ok} lines={lines}",
            project=self.store.project_id,
            ok=sum(1 for r in summary.results if r.ok),
            lines=summary.total_lines,
        )
        return summary

    def shutdown(self) -> None:
        self.cancel.cancel()
        self.gate.cancel_all()
