"""Project persistence: profiles, candidates, versioned voice locks, manifest.

Layout under ``<root>/<project_id>/``::

    manifest.json                      active lock per character
    script.json                        last parsed script + digest
    characters/<slug>/profile.json     latest successful analysis
    characters/<slug>/candidates/      audition samples
    characters/<slug>/locks/v0001/     reference.wav + clone.bin + lock.json
    characters/<slug>/active.json      pointer to the active lock version
    characters/<slug>/lines/           rendered dialogue lines
    tracks/                            assembled per-character tracks

A lock version directory is staged under a temporary name and renamed into
place only once the reference clip, clone blob and record are all written, so
a reader never sees one without the others. The active pointer and manifest
are replaced atomically afterwards.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
import threading
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydub import AudioSegment

from voxcast.analysis import CharacterProfile
from voxcast.errors import CloningFailed, VoiceNotLocked, VoicePackageError, VoxCastError
from voxcast.script import ScriptDocument, normalize_character_name
from voxcast.script import characters as script_characters
from voxcast.tts import TTSBackend

_VERSION_RE = re.compile(r"^v(\d{4,})$")

PACKAGE_FORMAT_VERSION = 1
DEFAULT_CLONE_MODEL = "chatterbox"


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "unnamed"


def project_id_for(script_path: Path | str) -> str:
    """Stable id from the script's resolved location, so edits keep their project."""
    path = Path(script_path).expanduser().resolve()
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:10]
    return f"{slugify(path.stem)}-{digest}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class VoiceCandidate(BaseModel):
    """One audition sample; ephemeral until a lock promotes it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    character: str
    index: int = Field(ge=0, description="Ordinal within the generated batch.")
    audio_path: Path
    instruction: str


class VoiceLock(BaseModel):
    """Durable voice identity: reference clip plus precomputed clone blob."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    character: str
    project_id: str
    version: int = Field(ge=1)
    reference_clip: Path
    clone_path: Path
    clone_digest: str
    design_instruction: str
    candidate_index: int = Field(ge=0)
    locked_at: datetime
    profile: CharacterProfile = Field(
        description="Profile snapshot active when the voice was locked."
    )

    def read_clone(self) -> bytes:
        data = self.clone_path.read_bytes()
        if hashlib.sha256(data).hexdigest() != self.clone_digest:
            raise VoxCastError(
                f"Clone blob for '{self.character}' v{self.version} is corrupt: {self.clone_path}"
            )
        return data


class LockEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int
    locked_at: datetime


class ProjectManifest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str
    script_path: Optional[str] = None
    script_digest: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    locks: Dict[str, LockEntry] = Field(default_factory=dict)


class _ActivePointer(BaseModel):
    version: int


class VoicePackage(BaseModel):
    """``voice.json`` of an exported voice archive.

    The archive also holds ``reference.wav`` and one ``clones/<model>.bin`` per
    model listed in ``clones``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    format_version: int = PACKAGE_FORMAT_VERSION
    character: str
    source_project: str
    source_version: int = Field(ge=1)
    exported_at: datetime
    design_instruction: str
    candidate_index: int = Field(ge=0)
    profile: CharacterProfile
    clones: Dict[str, str] = Field(
        description="Model name to sha256 of its clone blob."
    )


# ─────────────────────────────────────────────────────────────────────────────
# Staleness
# ─────────────────────────────────────────────────────────────────────────────


def _trait_words(traits: List[str]) -> Set[str]:
    words: Set[str] = set()
    for trait in traits:
        words.update(re.findall(r"[a-z0-9']+", trait.lower()))
    return words


def trait_similarity(before: List[str], after: List[str]) -> float:
    """Jaccard overlap of the word sets of two trait lists (1.0 when both empty)."""
    a, b = _trait_words(before), _trait_words(after)
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def check_staleness(
    lock: VoiceLock, current: CharacterProfile, threshold: float = 0.5
) -> bool:
    """True when ``current`` differs significantly from the profile locked with the voice.

    Significant: gender or age range changed, or trait similarity fell below
    ``threshold``. Summary and description rewording are ignored.
    """
    snapshot = lock.profile
    if snapshot.gender != current.gender:
        return True
    if snapshot.age_range.strip().lower() != current.age_range.strip().lower():
        return True
    return trait_similarity(snapshot.voice_traits, current.voice_traits) < threshold


# ─────────────────────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────────────────────


class VoiceLockStore:
    """Owns one project directory; the only shared mutable state in a run."""

    def __init__(self, root: Path | str, project_id: str) -> None:
        self.project_id = project_id
        self.project_dir = Path(root) / project_id
        self.project_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # —————————————————— Layout ——————————————————

    @property
    def manifest_path(self) -> Path:
        return self.project_dir / "manifest.json"

    @property
    def tracks_dir(self) -> Path:
        return self.project_dir / "tracks"

    def character_dir(self, character: str) -> Path:
        return self.project_dir / "characters" / slugify(character)

    def candidates_dir(self, character: str) -> Path:
        return self.character_dir(character) / "candidates"

    def lines_dir(self, character: str) -> Path:
        return self.character_dir(character) / "lines"

    def _locks_dir(self, character: str) -> Path:
        return self.character_dir(character) / "locks"

    def _active_path(self, character: str) -> Path:
        return self.character_dir(character) / "active.json"

    # —————————————————— Manifest ——————————————————

    def manifest(self) -> ProjectManifest:
        if not self.manifest_path.exists():
            return ProjectManifest(project_id=self.project_id)
        return ProjectManifest.model_validate_json(self.manifest_path.read_text())

    def _save_manifest(self, manifest: ProjectManifest) -> None:
        manifest.updated_at = _utcnow()
        write_text_atomic(self.manifest_path, manifest.model_dump_json(indent=2))

    # —————————————————— Script & profiles ——————————————————

    def save_script(self, document: ScriptDocument, script_path: Optional[Path] = None) -> None:
        write_text_atomic(
            self.project_dir / "script.json", document.model_dump_json(indent=2)
        )
        with self._lock:
            manifest = self.manifest()
            manifest.script_digest = document.digest
            if script_path is not None:
                manifest.script_path = str(script_path)
            self._save_manifest(manifest)

    def load_script(self) -> Optional[ScriptDocument]:
        path = self.project_dir / "script.json"
        if not path.exists():
            return None
        return ScriptDocument.model_validate_json(path.read_text())

    def save_profile(self, profile: CharacterProfile) -> Path:
        path = self.character_dir(profile.name) / "profile.json"
        write_text_atomic(path, profile.model_dump_json(indent=2))
        logger.debug("store.profile_saved character={character}", character=profile.name)
        return path

    def load_profile(self, character: str) -> Optional[CharacterProfile]:
        path = self.character_dir(character) / "profile.json"
        if not path.exists():
            return None
        return CharacterProfile.model_validate_json(path.read_text())

    def list_candidates(self, character: str) -> List[VoiceCandidate]:
        path = self.candidates_dir(character) / "candidates.json"
        if not path.exists():
            return []
        return _CandidateList.model_validate_json(path.read_text()).candidates

    def save_candidates(self, character: str, candidates: List[VoiceCandidate]) -> None:
        path = self.candidates_dir(character) / "candidates.json"
        write_text_atomic(
            path,
            _CandidateList(candidates=list(candidates)).model_dump_json(indent=2),
        )

    # —————————————————— Locks ——————————————————

    def _versions(self, character: str) -> List[int]:
        locks_dir = self._locks_dir(character)
        if not locks_dir.exists():
            return []
        versions = []
        for child in locks_dir.iterdir():
            match = _VERSION_RE.match(child.name)
            if match and (child / "lock.json").exists():
                versions.append(int(match.group(1)))
        return sorted(versions)

    def _read_lock(self, character: str, version: int) -> VoiceLock:
        path = self._locks_dir(character) / f"v{version:04d}" / "lock.json"
        return VoiceLock.model_validate_json(path.read_text())

    def lock(
        self,
        candidate: VoiceCandidate,
        profile: CharacterProfile,
        tts: TTSBackend,
    ) -> VoiceLock:
        """Promote ``candidate`` to the character's active voice.

        The clone representation is computed here, once, and every later
        render reuses it. Earlier lock versions are kept for rollback.

        Raises:
            CloningFailed: If the TTS backend cannot derive a clone.
        """
        character = candidate.character
        if profile.name != character:
            raise ValueError(
                f"Profile for '{profile.name}' does not match candidate of '{character}'."
            )
        if not candidate.audio_path.exists():
            raise ValueError(f"Candidate audio missing: {candidate.audio_path}")

        try:
            sample = AudioSegment.from_file(candidate.audio_path, format="wav")
            clone = tts.compute_clone_representation(sample)
        except Exception as exc:  # noqa: BLE001
            raise CloningFailed(character, exc) from exc
        if not clone:
            raise CloningFailed(character, "backend returned an empty clone representation")

        record = self._commit(
            profile,
            candidate.audio_path.read_bytes(),
            clone,
            design_instruction=candidate.instruction,
            candidate_index=candidate.index,
        )
        logger.info(
            "lock.created character={character} version={version} candidate={index}",
            character=character,
            version=record.version,
            index=candidate.index,
        )
        return record

    def _commit(
        self,
        profile: CharacterProfile,
        reference: bytes,
        clone: bytes,
        design_instruction: str,
        candidate_index: int,
    ) -> VoiceLock:
        """Stage a new lock version, rename it into place and make it active."""
        character = profile.name
        locks_dir = self._locks_dir(character)
        locks_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            version = (self._versions(character) or [0])[-1] + 1
            final_dir = locks_dir / f"v{version:04d}"
            staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=locks_dir))
            try:
                (staging / "reference.wav").write_bytes(reference)
                (staging / "clone.bin").write_bytes(clone)
                record = VoiceLock(
                    character=character,
                    project_id=self.project_id,
                    version=version,
                    reference_clip=final_dir / "reference.wav",
                    clone_path=final_dir / "clone.bin",
                    clone_digest=hashlib.sha256(clone).hexdigest(),
                    design_instruction=design_instruction,
                    candidate_index=candidate_index,
                    locked_at=_utcnow(),
                    profile=profile,
                )
                (staging / "lock.json").write_text(record.model_dump_json(indent=2))
                os.rename(staging, final_dir)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            self._activate(record)
        return record

    def _activate(self, record: VoiceLock) -> None:
        write_text_atomic(
            self._active_path(record.character),
            _ActivePointer(version=record.version).model_dump_json(),
        )
        manifest = self.manifest()
        manifest.locks[record.character] = LockEntry(
            version=record.version, locked_at=record.locked_at
        )
        self._save_manifest(manifest)

    def load(self, character: str) -> VoiceLock:
        """Return the active lock. Raises `VoiceNotLocked` when none exists."""
        pointer = self._active_path(character)
        if not pointer.exists():
            raise VoiceNotLocked(character, self.project_id)
        version = _ActivePointer.model_validate_json(pointer.read_text()).version
        try:
            return self._read_lock(character, version)
        except FileNotFoundError as exc:
            raise VoiceNotLocked(character, self.project_id) from exc

    def has_lock(self, character: str) -> bool:
        return self._active_path(character).exists()

    def history(self, character: str) -> List[VoiceLock]:
        """Every retained lock version, oldest first."""
        return [self._read_lock(character, v) for v in self._versions(character)]

    def rollback(self, character: str, version: int) -> VoiceLock:
        """Make an earlier (or later) retained version the active lock."""
        with self._lock:
            if version not in self._versions(character):
                raise VoiceNotLocked(character, self.project_id)
            record = self._read_lock(character, version)
            self._activate(record)
        logger.info(
            "lock.rollback character={character} version={version}",
            character=character,
            version=version,
        )
        return record

    # —————————————————— Portable voices ——————————————————

    def export_lock(
        self,
        character: str,
        path: Path | str,
        model: str = DEFAULT_CLONE_MODEL,
        version: Optional[int] = None,
    ) -> Path:
        """Write the active (or given) lock version to a zip archive at ``path``."""
        if version is None:
            record = self.load(character)
        elif version in self._versions(character):
            record = self._read_lock(character, version)
        else:
            raise VoiceNotLocked(character, self.project_id)
        clone = record.read_clone()
        package = VoicePackage(
            character=record.character,
            source_project=self.project_id,
            source_version=record.version,
            exported_at=_utcnow(),
            design_instruction=record.design_instruction,
            candidate_index=record.candidate_index,
            profile=record.profile,
            clones={model: record.clone_digest},
        )

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
        os.close(fd)
        try:
            with zipfile.ZipFile(tmp_name, "w", zipfile.ZIP_DEFLATED) as archive:
                archive.writestr("voice.json", package.model_dump_json(indent=2))
                archive.write(record.reference_clip, "reference.wav")
                archive.writestr(f"clones/{model}.bin", clone)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info(
            "lock.exported character={character} version={version} model={model} path={path}",
            character=record.character,
            version=record.version,
            model=model,
            path=path,
        )
        return path

    def import_lock(
        self,
        path: Path | str,
        model: str = DEFAULT_CLONE_MODEL,
        character: Optional[str] = None,
    ) -> VoiceLock:
        """Add an exported voice as a new, active lock version in this project.

        ``character`` renames the voice on the way in; by default it keeps the
        name it was exported under.

        Raises:
            VoicePackageError: If the archive is malformed, has no clone for
                ``model``, or its clone blob does not match the recorded digest.
        """
        path = Path(path)
        try:
            with zipfile.ZipFile(path) as archive:
                package = VoicePackage.model_validate_json(archive.read("voice.json"))
                if model not in package.clones:
                    available = ", ".join(sorted(package.clones)) or "none"
                    raise VoicePackageError(
                        path, f"no clone for model '{model}' (has: {available})"
                    )
                reference = archive.read("reference.wav")
                clone = archive.read(f"clones/{model}.bin")
        except (zipfile.BadZipFile, KeyError, ValidationError) as exc:
            raise VoicePackageError(path, str(exc)) from exc
        if package.format_version > PACKAGE_FORMAT_VERSION:
            raise VoicePackageError(
                path, f"format version {package.format_version} is newer than supported"
            )
        if hashlib.sha256(clone).hexdigest() != package.clones[model]:
            raise VoicePackageError(path, "clone blob does not match its recorded digest")

        name = normalize_character_name(character or package.character)
        profile = package.profile
        if profile.name != name:
            profile = profile.model_copy(update={"name": name})
        record = self._commit(
            profile,
            reference,
            clone,
            design_instruction=package.design_instruction,
            candidate_index=package.candidate_index,
        )
        logger.info(
            "lock.imported character={character} version={version} source={source}@v{source_version}",
            character=name,
            version=record.version,
            source=package.source_project,
            source_version=package.source_version,
        )
        return record

    def locked_characters(self) -> List[str]:
        return sorted(self.manifest().locks)

    # —————————————————— Status ——————————————————

    def status(self, threshold: float = 0.5) -> "ProjectStatus":
        """Per-character progress through the lifecycle."""
        script = self.load_script()
        names: Dict[str, None] = {}
        if script is not None:
            names.update((name, None) for name in script_characters(script.elements))
        names.update((name, None) for name in self.manifest().locks)

        rows: List[CharacterStatus] = []
        for name in names:
            profile = self.load_profile(name)
            lock = self.load(name) if self.has_lock(name) else None
            stale = (
                check_staleness(lock, profile, threshold)
                if lock is not None and profile is not None
                else None
            )
            lines_dir = self.lines_dir(name)
            rows.append(
                CharacterStatus(
                    character=name,
                    profiled=profile is not None,
                    candidates=len(self.list_candidates(name)),
                    lock_version=lock.version if lock else None,
                    locked_at=lock.locked_at if lock else None,
                    stale=stale,
                    rendered_lines=(
                        len(list(lines_dir.glob("*.wav"))) if lines_dir.exists() else 0
                    ),
                    track=self.tracks_dir.exists()
                    and any(self.tracks_dir.glob(f"{slugify(name)}.*")),
                )
            )
        return ProjectStatus(
            project_id=self.project_id,
            elements=len(script.elements) if script else 0,
            characters=rows,
        )


class _CandidateList(BaseModel):
    candidates: List[VoiceCandidate]


class CharacterStatus(BaseModel):
    character: str
    profiled: bool
    candidates: int
    lock_version: Optional[int] = None
    locked_at: Optional[datetime] = None
    stale: Optional[bool] = None
    rendered_lines: int = 0
    track: bool = False


class ProjectStatus(BaseModel):
    project_id: str
    elements: int
    characters: List[CharacterStatus]

    def format(self) -> str:
        lines = [f"project {self.project_id}: {self.elements} elements"]
        for row in self.characters:
            lock = (
                f"v{row.lock_version} @ {row.locked_at:%Y-%m-%d %H:%M}"
                if row.lock_version
                else "unlocked"
            )
            flag = " STALE" if row.stale else ""
            lines.append(
                f"  {row.character:<20} profile={'yes' if row.profiled else 'no':<3} "
                f"candidates={row.candidates} lock={lock}{flag} "
                f"lines={row.rendered_lines} track={'yes' if row.track else 'no'}"
            )
        return "\n".join(lines)
