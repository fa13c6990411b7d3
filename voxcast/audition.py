"""Human selection boundary between voice design and locking.

The pipeline suspends on an `AuditionRequest` until someone fulfils it with a
valid index or cancels it. An invalid index raises `InvalidSelection` and
leaves the request open, so the caller can simply try again.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from voxcast.errors import AuditionCancelled, InvalidSelection
from voxcast.store import VoiceCandidate

# Returns the raw selection (index or its text), or None to cancel.
Chooser = Callable[["AuditionRequest"], Optional[object]]


def _coerce_index(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class AuditionRequest:
    """Presented candidates plus a response channel for exactly one decision."""

    def __init__(self, character: str, candidates: Sequence[VoiceCandidate]) -> None:
        if not candidates:
            raise ValueError(f"No candidates to audition for '{character}'.")
        self.character = character
        self.candidates: List[VoiceCandidate] = list(candidates)
        self._cond = threading.Condition()
        self._selected: Optional[int] = None
        self._cancelled = False

    @property
    def done(self) -> bool:
        with self._cond:
            return self._selected is not None or self._cancelled

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def select(self, selection: object) -> int:
        """Fulfil the request. Invalid input raises and keeps the request open."""
        index = _coerce_index(selection)
        if index is None or not 0 <= index < len(self.candidates):
            raise InvalidSelection(selection, len(self.candidates))
        with self._cond:
            if self._cancelled:
                raise AuditionCancelled(self.character)
            if self._selected is None:
                self._selected = index
            self._cond.notify_all()
            return self._selected

    def cancel(self) -> None:
        with self._cond:
            if self._selected is None:
                self._cancelled = True
            self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> int:
        """Block until resolved. Raises `AuditionCancelled` or `TimeoutError`."""
        with self._cond:
            resolved = self._cond.wait_for(
                lambda: self._selected is not None or self._cancelled, timeout
            )
            if not resolved:
                raise TimeoutError(f"Audition for '{self.character}' is still open.")
            if self._cancelled:
                raise AuditionCancelled(self.character)
            assert self._selected is not None
            return self._selected


class AuditionGate:
    """Resolves candidate lists to a single selected position.

    With a ``chooser`` the gate drives the decision itself, re-prompting on
    invalid input up to ``max_attempts`` times, and concurrent auditions take
    turns at it. Without one it publishes the request (see `pending`) and
    blocks until another thread answers it.
    """

    def __init__(
        self, chooser: Optional[Chooser] = None, max_attempts: Optional[int] = None
    ) -> None:
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.chooser = chooser
        self.max_attempts = max_attempts
        self._pending: Dict[str, AuditionRequest] = {}
        self._lock = threading.Lock()
        # One prompt at a time: characters share a single human and terminal.
        self._prompt_lock = threading.Lock()

    def pending(self, character: Optional[str] = None):
        with self._lock:
            if character is None:
                return dict(self._pending)
            return self._pending.get(character)

    def cancel_all(self) -> None:
        with self._lock:
            requests = list(self._pending.values())
        for request in requests:
            request.cancel()

    def audition(
        self,
        character: str,
        candidates: Sequence[VoiceCandidate],
        timeout: Optional[float] = None,
    ) -> int:
        request = AuditionRequest(character, candidates)
        logger.info(
            "audition.open character={character} candidates={count}",
            character=character,
            count=len(request.candidates),
        )
        with self._lock:
            self._pending[character] = request
        try:
            if self.chooser is None:
                selected = request.wait(timeout)
            else:
                selected = self._drive(request)
        finally:
            with self._lock:
                self._pending.pop(character, None)
        logger.info(
            "audition.selected character={character} index={index}",
            character=character,
            index=selected,
        )
        return selected

    def _drive(self, request: AuditionRequest) -> int:
        assert self.chooser is not None
        attempts = 0
        while True:
            with self._prompt_lock:
                if request.cancelled:
                    raise AuditionCancelled(request.character)
                response = self.chooser(request)
            if response is None:
                request.cancel()
                raise AuditionCancelled(request.character)
            attempts += 1
            try:
                return request.select(response)
            except InvalidSelection:
                logger.warning(
                    "audition.invalid_selection character={character} selection={selection} attempt={attempt}",
                    character=request.character,
                    selection=response,
                    attempt=attempts,
                )
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    raise
