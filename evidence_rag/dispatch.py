"""Bounded concurrent dispatch of probe retrievals."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_INTERVAL_S = 0.05


class RetrievalCancelled(RuntimeError):
    """Raised when the caller cancels a query while probes are outstanding."""


@dataclass(frozen=True)
class ProbeOutcome(Generic[T]):
    probe: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RetrievalCancelled("Query cancelled by caller.")


def _await(
    future: Future[T],
    timeout_s: float,
    cancel_event: threading.Event | None,
) -> T:
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        raise_if_cancelled(cancel_event)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"probe exceeded {timeout_s:.1f}s")
        done, _ = wait([future], timeout=min(remaining, _POLL_INTERVAL_S))
        if done:
            return future.result()


def dispatch_probes(
    probes: Sequence[str],
    task: Callable[[str], T],
    *,
    workers: int,
    timeout_s: float,
    cancel_event: threading.Event | None = None,
) -> Iterator[ProbeOutcome[T]]:
    """Run ``task`` for every probe on a worker pool.

    Outcomes are yielded in probe order regardless of completion order. A
    probe that raises or times out yields a failed outcome. Closing the
    generator early cancels whatever has not started and never blocks on
    running probes.
    """
    if not probes:
        return
    raise_if_cancelled(cancel_event)
    executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="probe")
    futures = [executor.submit(task, probe) for probe in probes]
    try:
        for probe, future in zip(probes, futures):
            try:
                value = _await(future, timeout_s, cancel_event)
            except RetrievalCancelled:
                raise
            except Exception as exc:
                log.warning("Probe %r skipped: %s", probe, exc)
                yield ProbeOutcome(probe=probe, error=exc)
                continue
            yield ProbeOutcome(probe=probe, value=value)
    finally:
        for future in futures:
            future.cancel()
        executor.shutdown(wait=False, cancel_futures=True)
