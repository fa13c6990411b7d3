"""Explicitly owned inference resources.

`ModelPool` loads each registered model lazily, checks memory before loading,
and admits one caller at a time per loaded model. Components receive the pool
they should use; nothing here is process-global.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

import psutil
from loguru import logger

from voxcast.errors import (
    InsufficientMemory,
    ModelNotAvailable,
    PipelineCancelled,
    SlotTimeout,
)

_POLL_INTERVAL_S = 0.1


class CancelToken:
    """Cooperative cancellation flag shared by one pipeline run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelled(stage)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def available_memory(device: Optional[str] = None) -> int:
    """Free bytes on the target device: CUDA free memory, else system RAM."""
    if device and device.startswith("cuda"):
        import torch  # lazy import; only CUDA probing needs it

        if torch.cuda.is_available():
            free, _total = torch.cuda.mem_get_info()
            return int(free)
    return int(psutil.virtual_memory().available)


@dataclass
class _Entry:
    loader: Callable[[], Any]
    required_bytes: int
    gate: threading.Semaphore = field(default_factory=lambda: threading.Semaphore(1))
    model: Any = None


class ModelPool:
    """Capacity-one admission gate per registered model, with lazy loading."""

    def __init__(
        self,
        device: Optional[str] = None,
        headroom: float = 1.5,
        memory_reader: Optional[Callable[[], int]] = None,
    ) -> None:
        if headroom < 1.0:
            raise ValueError(f"headroom must be >= 1.0, got {headroom}")
        self.device = device
        self.headroom = headroom
        self._read_memory = memory_reader or (lambda: available_memory(device))
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._closed = False

    def register(
        self, name: str, loader: Callable[[], Any], required_bytes: int = 0
    ) -> None:
        with self._lock:
            if name in self._entries:
                raise ValueError(f"Model {name!r} is already registered.")
            self._entries[name] = _Entry(loader=loader, required_bytes=required_bytes)
        logger.debug(
            "pool.register model={model} required_mb={mb}",
            model=name,
            mb=required_bytes // (1024 * 1024),
        )

    def is_loaded(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry is not None and entry.model is not None

    def _entry(self, name: str) -> _Entry:
        if self._closed:
            raise ModelNotAvailable(name, "model pool is shut down")
        entry = self._entries.get(name)
        if entry is None:
            raise ModelNotAvailable(name, "model is not registered")
        return entry

    def _acquire(
        self,
        name: str,
        entry: _Entry,
        timeout: Optional[float],
        cancel: Optional[CancelToken],
    ) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled(f"waiting for {name}")
            wait = _POLL_INTERVAL_S
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SlotTimeout(name, timeout or 0.0)
                wait = min(wait, remaining)
            if entry.gate.acquire(timeout=wait):
                return

    def _ensure_loaded(self, name: str, entry: _Entry) -> Any:
        if entry.model is not None:
            return entry.model
        required = int(entry.required_bytes * self.headroom)
        if required:
            available = self._read_memory()
            if available < required:
                raise InsufficientMemory(name, available, required)
        logger.info("pool.load model={model} device={device}", model=name, device=self.device)
        try:
            entry.model = entry.loader()
        except Exception as exc:  # noqa: BLE001
            raise ModelNotAvailable(name, exc) from exc
        return entry.model

    @contextmanager
    def slot(
        self,
        name: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[Any]:
        """Hold the model's single inference slot and yield the loaded model."""
        entry = self._entry(name)
        self._acquire(name, entry, timeout, cancel)
        try:
            yield self._ensure_loaded(name, entry)
        finally:
            entry.gate.release()

    def shutdown(self) -> None:
        """Drop every loaded model; later `slot` calls fail."""
        with self._lock:
            self._closed = True
            for name, entry in self._entries.items():
                if entry.model is not None:
                    logger.info("pool.unload model={model}", model=name)
                    entry.model = None

    def __enter__(self) -> "ModelPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
