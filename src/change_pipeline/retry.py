"""Bounded-time calls into external collaborators and retried store writes."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, TypeVar

from change_pipeline.errors import (
    CollaboratorTimeout,
    ExternalCollaboratorFailure,
    PipelineError,
    RunCancelled,
    WriteConflict,
)

T = TypeVar("T")
logger = logging.getLogger(__name__)

CANCEL_POLL_S = 0.05


def _wind_down(
    future: Future[Any],
    collaborator: str,
    stop_signal: threading.Event | None,
    stop_grace_s: float,
) -> None:
    future.cancel()
    if stop_signal is None:
        return
    stop_signal.set()
    done, _ = wait([future], timeout=stop_grace_s)
    if not done:
        logger.error(
            "collaborator_call event=stop_ignored collaborator=%s grace_s=%.1f",
            collaborator,
            stop_grace_s,
        )


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_s: float,
    collaborator: str,
    cancel_event: threading.Event | None = None,
    stop_signal: threading.Event | None = None,
    stop_grace_s: float = 10.0,
    **kwargs: Any,
) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout_s`` for it.

    On timeout or cancellation ``stop_signal`` (when given) is set and the
    worker gets ``stop_grace_s`` to release what it holds before control
    returns; without one the worker is abandoned.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{collaborator}-call")
    try:
        future = pool.submit(fn, *args, **kwargs)
        deadline = time.monotonic() + timeout_s
        while True:
            if cancel_event is not None and cancel_event.is_set():
                _wind_down(future, collaborator, stop_signal, stop_grace_s)
                raise RunCancelled(f"{collaborator} call cancelled", collaborator=collaborator)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _wind_down(future, collaborator, stop_signal, stop_grace_s)
                raise CollaboratorTimeout(collaborator, timeout_s)
            wait_s = remaining if cancel_event is None else min(remaining, CANCEL_POLL_S)
            done, _ = wait([future], timeout=wait_s)
            if not done:
                continue
            try:
                return future.result()
            except PipelineError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise ExternalCollaboratorFailure(collaborator, str(exc) or type(exc).__name__) from exc
    finally:
        pool.shutdown(wait=False)


def retry_store_write(
    operation: Callable[[], T],
    *,
    attempts: int,
    backoff_s: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry transient store failures (lost CAS races, timeouts) with linear backoff."""
    last_error: PipelineError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except (WriteConflict, CollaboratorTimeout) as exc:
            last_error = exc
            logger.warning(
                "store_write event=retry op=%s attempt=%d/%d reason=%s",
                description,
                attempt,
                attempts,
                exc.kind,
            )
            if attempt < attempts and backoff_s > 0:
                sleep(backoff_s * attempt)
    raise ExternalCollaboratorFailure(
        "change_store",
        f"{description} failed after {attempts} attempts: {last_error}",
    ) from last_error
