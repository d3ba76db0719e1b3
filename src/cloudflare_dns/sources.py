"""Event sources feeding the reconciler.

Two independent loops run per process: a watch loop per kind that reacts to
add/modify/delete events, and a sweep loop that periodically lists every
object of every kind and reconciles it. The sweep is the safety net for
missed or dropped watch events.
"""

from __future__ import annotations

import itertools
import logging
import random
import sys
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from kubernetes.client import ApiException

from cloudflare_dns.kube import ResourceKind, describe
from cloudflare_dns.reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)

DEFAULT_WATCH_BACKOFF_SECONDS = 30
DEFAULT_WATCH_TIMEOUT_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 900


def apply_jitter(base: float, rng: Any = random) -> float:
    """Spread ``base`` uniformly over +/-25%."""
    return base - 0.25 * base + rng.uniform(0, 0.5 * base)


class InFlightTracker:
    """Counts reconciliations in progress so shutdown can wait for them."""

    def __init__(self) -> None:
        self._count = 0
        self._condition = threading.Condition()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    @contextmanager
    def track(self) -> Iterator[None]:
        with self._condition:
            self._count += 1
        try:
            yield
        finally:
            with self._condition:
                self._count -= 1
                self._condition.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is in flight; False if ``timeout`` expired first."""
        with self._condition:
            return self._condition.wait_for(lambda: self._count == 0, timeout)


# =============================================================================
# Watch State Machine
# =============================================================================


class WatchState(Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"


class WatchTransition(Enum):
    CONNECTED = "connected"
    STREAM_CLOSED = "stream_closed"
    FAILED = "failed"
    BACKOFF_ELAPSED = "backoff_elapsed"


_WATCH_TRANSITIONS = {
    (WatchState.CONNECTING, WatchTransition.CONNECTED): WatchState.STREAMING,
    (WatchState.CONNECTING, WatchTransition.FAILED): WatchState.BACKOFF,
    (WatchState.STREAMING, WatchTransition.STREAM_CLOSED): WatchState.CONNECTING,
    (WatchState.STREAMING, WatchTransition.FAILED): WatchState.BACKOFF,
    (WatchState.BACKOFF, WatchTransition.BACKOFF_ELAPSED): WatchState.CONNECTING,
}


def next_watch_state(state: WatchState, transition: WatchTransition) -> WatchState:
    try:
        return _WATCH_TRANSITIONS[(state, transition)]
    except KeyError:
        raise ValueError(f"invalid watch transition {transition.value} from {state.value}") from None


class WatchStreamError(Exception):
    """The API server sent an ERROR event on the watch stream."""


# =============================================================================
# Loops
# =============================================================================


class WatchLoop:
    """Streams watch events for one kind into the reconciler."""

    def __init__(
        self,
        kind: ResourceKind,
        reconciler: Reconciler,
        tracker: InFlightTracker,
        *,
        backoff_seconds: float = DEFAULT_WATCH_BACKOFF_SECONDS,
        timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        stop_event: Optional[threading.Event] = None,
        rng: Any = random,
    ):
        self.kind = kind
        self.reconciler = reconciler
        self.tracker = tracker
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.stop_event = stop_event or threading.Event()
        self.rng = rng
        self.state = WatchState.CONNECTING

    def handle_event(self, event: Dict[str, Any]) -> Optional[ReconcileResult]:
        event_type = str(event.get("type", ""))
        obj = event.get("object")

        if event_type == "ERROR":
            raise WatchStreamError(f"watch for {self.kind.name} returned an error: {obj}")
        if obj is None or getattr(obj, "metadata", None) is None:
            return None
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        with self.tracker.track():
            try:
                if event_type == "DELETED":
                    return self.reconciler.delete(self.kind, obj, initiator="watcher")
                return self.reconciler.reconcile(self.kind, obj, initiator="watcher")
            except Exception:
                logger.exception(f"Unexpected error reconciling {self.kind.name} {describe(obj)}")
                return None

    def _log_failure(self, message: str) -> None:
        error = sys.exc_info()[1]
        if isinstance(error, ApiException) and error.status in (401, 403):
            logger.error(
                f"{message}: {error.status} {error.reason}. "
                f"Check that the service account may list and watch {self.kind.name}s"
            )
        else:
            logger.exception(message)

    def _transition(self, transition: WatchTransition) -> None:
        self.state = next_watch_state(self.state, transition)

    def step(self, stream: Optional[Iterator[Dict[str, Any]]] = None) -> Optional[Iterator[Dict[str, Any]]]:
        """Run one state of the loop; returns the open stream while streaming."""
        if self.state == WatchState.CONNECTING:
            try:
                logger.info(f"Watching {self.kind.name}s...")
                stream = iter(self.kind.watch(self.timeout_seconds))
                # the request is only sent once the first event is pulled
                first = next(stream, None)
                self._transition(WatchTransition.CONNECTED)
                if first is None:
                    return iter(())
                return itertools.chain([first], stream)
            except Exception:
                self._log_failure(f"Failed to start watch for {self.kind.name}s")
                self._transition(WatchTransition.FAILED)
                return None

        if self.state == WatchState.STREAMING:
            try:
                for event in stream or iter(()):
                    if self.stop_event.is_set():
                        break
                    self.handle_event(event)
                self._transition(WatchTransition.STREAM_CLOSED)
            except Exception:
                self._log_failure(f"Watch for {self.kind.name}s failed")
                self._transition(WatchTransition.FAILED)
            return None

        delay = apply_jitter(self.backoff_seconds, self.rng)
        logger.info(f"Reconnecting watch for {self.kind.name}s in {delay:.0f} seconds...")
        self.stop_event.wait(delay)
        self._transition(WatchTransition.BACKOFF_ELAPSED)
        return None

    def run(self) -> None:
        stream: Optional[Iterator[Dict[str, Any]]] = None
        while not self.stop_event.is_set():
            stream = self.step(stream)
        logger.info(f"Watch loop for {self.kind.name}s stopped")


class SweepLoop:
    """Periodically lists and reconciles every object of every kind."""

    def __init__(
        self,
        kinds: List[ResourceKind],
        reconciler: Reconciler,
        tracker: InFlightTracker,
        *,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        stop_event: Optional[threading.Event] = None,
        rng: Any = random,
    ):
        self.kinds = kinds
        self.reconciler = reconciler
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event or threading.Event()
        self.rng = rng

    def sweep_once(self) -> List[ReconcileResult]:
        results: List[ReconcileResult] = []
        for kind in self.kinds:
            try:
                objects = kind.list_objects()
            except Exception:
                logger.exception(f"Failed to list {kind.name}s")
                continue

            logger.info(f"Listed {len(objects)} {kind.name}(s)")
            for obj in objects:
                if self.stop_event.is_set():
                    return results
                with self.tracker.track():
                    try:
                        results.append(self.reconciler.reconcile(kind, obj, initiator="poller"))
                    except Exception:
                        logger.exception(f"Unexpected error reconciling {kind.name} {describe(obj)}")
        return results

    def run(self) -> None:
        while not self.stop_event.is_set():
            self.sweep_once()
            delay = apply_jitter(self.interval_seconds, self.rng)
            logger.info(f"Sleeping for {delay:.0f} seconds...")
            self.stop_event.wait(delay)
        logger.info("Sweep loop stopped")
