"""Pipelined synthesis of text units with strictly ordered delivery."""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger
from pydub import AudioSegment

from voxcast.assembly import AudioFormat, export_atomic
from voxcast.chunking import TextUnit
from voxcast.errors import SynthesisFailed, VoxCastError
from voxcast.resources import CancelToken
from voxcast.tts import concatenate

Synthesize = Callable[[TextUnit], AudioSegment]
Consumer = Callable[[TextUnit, AudioSegment], None]

_POLL_INTERVAL_S = 0.1


def _run_unit(synthesize: Synthesize, unit: TextUnit) -> AudioSegment:
    try:
        return synthesize(unit)
    except VoxCastError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise SynthesisFailed(unit.index, exc) from exc


def synthesize_streaming(
    units: Sequence[TextUnit],
    synthesize: Synthesize,
    consumer: Consumer,
    lookahead: int = 2,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Synthesize ``units`` with up to ``lookahead`` in flight, delivering in order.

    Unit ``i + 1`` is dispatched while unit ``i`` is still synthesizing or being
    consumed; completions that arrive early wait in a reorder buffer until
    every earlier unit has been handed to ``consumer``. Returns the number of
    units delivered.

    Raises:
        SynthesisFailed: The first unit (in delivery order) whose synthesis
            failed or did not finish within ``timeout`` seconds of the last
            completion.
        PipelineCancelled: When ``cancel`` is set between deliveries.
    """
    if lookahead < 1:
        raise ValueError(f"lookahead must be >= 1, got {lookahead}")
    total = len(units)
    if not total:
        return 0

    executor = ThreadPoolExecutor(max_workers=lookahead, thread_name_prefix="synth")
    in_flight: Dict[Future, int] = {}
    # Finished futures keyed by position; results (or errors) surface in order.
    ready: Dict[int, Future] = {}
    next_submit = 0
    next_deliver = 0
    finished = False
    try:
        while next_deliver < total:
            if cancel is not None:
                cancel.raise_if_cancelled("synthesis")

            while next_submit < total and next_submit < next_deliver + lookahead:
                unit = units[next_submit]
                in_flight[executor.submit(_run_unit, synthesize, unit)] = next_submit
                logger.debug(
                    "synth.dispatch unit={unit} words={words}",
                    unit=unit.index,
                    words=unit.word_count,
                )
                next_submit += 1

            if next_deliver in ready:
                audio = ready.pop(next_deliver).result()
                consumer(units[next_deliver], audio)
                next_deliver += 1
                continue

            started = time.monotonic()
            done = set()
            while not done:
                if cancel is not None:
                    cancel.raise_if_cancelled("synthesis")
                done, _ = wait(
                    list(in_flight), timeout=_POLL_INTERVAL_S, return_when=FIRST_COMPLETED
                )
                if not done and timeout is not None and time.monotonic() - started > timeout:
                    raise SynthesisFailed(
                        units[next_deliver].index,
                        TimeoutError(f"no unit finished within {timeout:.1f}s"),
                    )
            for future in done:
                ready[in_flight.pop(future)] = future
        finished = True
    finally:
        # A hung backend call must not hold the caller past its deadline.
        executor.shutdown(wait=finished, cancel_futures=True)

    logger.debug("synth.done units={count}", count=total)
    return total


def synthesize_all(
    units: Sequence[TextUnit],
    synthesize: Synthesize,
    lookahead: int = 2,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> AudioSegment:
    """Synthesize every unit and return the ordered concatenation."""
    parts: List[AudioSegment] = []
    synthesize_streaming(
        units,
        synthesize,
        lambda _unit, audio: parts.append(audio),
        lookahead=lookahead,
        timeout=timeout,
        cancel=cancel,
    )
    return concatenate(parts)


def synthesize_to_file(
    units: Sequence[TextUnit],
    synthesize: Synthesize,
    output_path: Path | str,
    fmt: Optional[AudioFormat] = None,
    lookahead: int = 2,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """File mode: nothing reaches ``output_path`` until every unit has synthesized."""
    if not units:
        raise ValueError("no text units to synthesize")
    output_path = Path(output_path)
    audio = synthesize_all(units, synthesize, lookahead, timeout, cancel)
    export_atomic(audio, output_path, fmt or AudioFormat.infer(output_path))
    logger.info(
        "synth.file path={path} units={count} duration={duration:.1f}s",
        path=output_path,
        count=len(units),
        duration=audio.duration_seconds,
    )
    return output_path
