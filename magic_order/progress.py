"""
Progress & Cancellation - run-scoped state for one analysis.

- progress approaches 95% asymptotically while the pipeline runs and only
  reaches 100 when the run is Done
- the stage label is set by the orchestrator at every phase entry
- the cancellation token is set by the UI and observed between phases

Ticks are plain method calls, so tests drive them deterministically; the
optional ticker thread just calls tick() on an interval.
"""

import time
import uuid
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Event, Lock, Thread
from typing import Optional

from magic_order.error_handler import ErrorClassification


logger = logging.getLogger(__name__)


PROGRESS_CEILING = 95.0
MIN_INCREMENT = 0.5


class RunStatus(str, Enum):
    """Orchestrator states"""
    IDLE = "idle"
    PHASE1 = "phase1"        # Free-text extraction
    PHASE2 = "phase2"        # JSON structuring
    VALIDATE = "validate"
    PHASE3 = "phase3"        # JSON repair
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.FAILED, RunStatus.CANCELLED})

STAGE_LABELS = {
    RunStatus.IDLE: "Waiting...",
    RunStatus.PHASE1: "Analyzing message...",
    RunStatus.PHASE2: "Structuring orders...",
    RunStatus.VALIDATE: "Validating response...",
    RunStatus.PHASE3: "Repairing response...",
    RunStatus.DONE: "Complete!",
    RunStatus.FAILED: "Analysis failed",
    RunStatus.CANCELLED: "Analysis cancelled",
}

# Progress never drops below these on stage entry
STAGE_FLOORS = {
    RunStatus.PHASE1: 5.0,
    RunStatus.PHASE2: 40.0,
    RunStatus.VALIDATE: 70.0,
    RunStatus.PHASE3: 75.0,
}


def new_run_id() -> str:
    return str(uuid.uuid4())[:12]


def next_progress(progress: float) -> float:
    """One simulated step: big jumps early, smaller as it nears the ceiling."""
    if progress >= PROGRESS_CEILING:
        return PROGRESS_CEILING
    increment = max(MIN_INCREMENT, (PROGRESS_CEILING - progress) / 20)
    return min(PROGRESS_CEILING, progress + increment)


class CancellationToken:
    """Cooperative cancellation flag, safe to set from any thread"""

    def __init__(self):
        self._event = Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PipelineRunState:
    """Everything the UI needs to display one run"""
    run_id: str = field(default_factory=new_run_id)
    status: RunStatus = RunStatus.IDLE
    stage: str = STAGE_LABELS[RunStatus.IDLE]
    progress: float = 0.0
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Diagnostics, overwritten if a phase runs again
    phase1_response: Optional[str] = None
    phase2_response: Optional[str] = None
    phase3_response: Optional[str] = None
    error: Optional[ErrorClassification] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_seconds(self, now: Optional[float] = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.completed_at if self.completed_at is not None else (now or time.time())
        return max(0.0, end - self.started_at)


class ProgressController:
    """
    Owns the progress counter and stage label of one run.

    Invariants:
    - progress never decreases
    - progress stays <= 95 until complete() sets it to 100
    - once the run is terminal, ticks and stage changes are ignored
    """

    def __init__(self, state: Optional[PipelineRunState] = None, tick_seconds: float = 0.8):
        self.state = state or PipelineRunState()
        self.tick_seconds = tick_seconds
        self._lock = Lock()
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def cancel_token(self) -> CancellationToken:
        return self.state.cancel_token

    @property
    def is_cancelled(self) -> bool:
        return self.state.cancel_token.is_cancelled

    def start(self, with_ticker: bool = False):
        with self._lock:
            if self.state.started_at is None:
                self.state.started_at = time.time()
        if with_ticker and self._thread is None:
            self._thread = Thread(target=self._run_ticker, daemon=True)
            self._thread.start()

    def tick(self) -> float:
        with self._lock:
            if not self.state.is_terminal:
                self.state.progress = next_progress(self.state.progress)
            return self.state.progress

    def set_stage(self, status: RunStatus, label: Optional[str] = None) -> None:
        with self._lock:
            if self.state.is_terminal:
                return
            self.state.status = status
            self.state.stage = label or STAGE_LABELS[status]
            floor = STAGE_FLOORS.get(status, 0.0)
            self.state.progress = min(PROGRESS_CEILING, max(self.state.progress, floor))
        logger.debug(f"[RUN] {self.state.run_id}: {self.state.stage} ({self.state.progress:.0f}%)")

    def complete(self) -> None:
        self._finish(RunStatus.DONE, progress=100.0)

    def fail(self, error: Optional[ErrorClassification] = None) -> None:
        self._finish(RunStatus.FAILED, error=error)

    def mark_cancelled(self) -> None:
        self._finish(RunStatus.CANCELLED)

    def cancel(self) -> None:
        """Request cancellation; the orchestrator notices at the next phase boundary."""
        self.state.cancel_token.cancel()

    def snapshot(self) -> PipelineRunState:
        """Consistent copy for readers on other threads"""
        with self._lock:
            return replace(self.state)

    def stop_ticker(self) -> None:
        self._stop.set()

    def _finish(
        self,
        status: RunStatus,
        progress: Optional[float] = None,
        error: Optional[ErrorClassification] = None,
    ) -> None:
        with self._lock:
            if self.state.is_terminal:
                return
            self.state.status = status
            self.state.stage = STAGE_LABELS[status]
            if progress is not None:
                self.state.progress = progress
            if error is not None:
                self.state.error = error
            self.state.completed_at = time.time()
        self._stop.set()
        logger.info(f"[RUN] {self.state.run_id}: {status.value}")

    def _run_ticker(self):
        while not self._stop.wait(self.tick_seconds):
            self.tick()
