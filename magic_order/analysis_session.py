"""
Analysis Session - the UI-facing controller for message analysis.

Owns:
- the registry of runs (progress, stage, diagnostics)
- the identity of the current run
- the draft cards of the last successful run (OrderAggregator)
- the catalog snapshot the drafts were reconciled against

Starting a new analysis cancels the previous run. A late result from a
superseded run is discarded by comparing run ids, so it can never overwrite
the drafts of a newer run.
"""

import time
import logging
from threading import Lock, Thread
from typing import Callable, Dict, List, Optional, Tuple

from magic_order.aggregator import OrderAggregator
from magic_order.catalog_store import CatalogStore
from magic_order.completion_client import CompletionService, build_completion_service
from magic_order.config import AnalysisConfig, settings
from magic_order.error_handler import ErrorClassifier
from magic_order.lexical_scanner import scan_message
from magic_order.models import (
    CatalogSnapshot,
    DraftOrderCard,
    DraftPatch,
    ExtractedLineItem,
    MessageAnalysis,
    TextSegment,
    UnknownToken,
)
from magic_order.orchestrator import PhaseOrchestrator
from magic_order.progress import PipelineRunState, ProgressController


logger = logging.getLogger(__name__)


class AnalysisSession:
    """
    Thread-safe session: analyze() returns immediately and the run proceeds on
    a background thread, as the job queue does for long operations.
    """

    def __init__(
        self,
        store: CatalogStore,
        completion: Optional[CompletionService] = None,
        config_factory: Callable[[], AnalysisConfig] = AnalysisConfig.from_settings,
        tick_seconds: float = 0.8,
        retention_minutes: int = 15,
        background: bool = True,
    ):
        self.store = store
        self._completion = completion
        self._config_factory = config_factory
        self._tick_seconds = tick_seconds
        self._retention_seconds = retention_minutes * 60
        self._background = background

        self.aggregator = OrderAggregator()
        self.catalog: Optional[CatalogSnapshot] = None

        self._runs: Dict[str, ProgressController] = {}
        self._threads: Dict[str, Thread] = {}
        self._current_run_id: Optional[str] = None
        self._lock = Lock()

    @property
    def completion(self) -> CompletionService:
        if self._completion is None:
            self._completion = build_completion_service(settings)
        return self._completion

    @property
    def current_run_id(self) -> Optional[str]:
        with self._lock:
            return self._current_run_id

    # ============================================
    # CATALOG + PRE-SCANNER
    # ============================================

    def refresh_catalog(self) -> CatalogSnapshot:
        """Reload the catalog from the store (StoreError propagates)."""
        snapshot = self.store.load_snapshot()
        with self._lock:
            self.catalog = snapshot
        return snapshot

    def scan(self, message: str) -> Tuple[List[UnknownToken], List[TextSegment]]:
        """Pre-scan a message; needs no network and never touches runs."""
        catalog = self.catalog if self.catalog is not None else self.refresh_catalog()
        return scan_message(message, catalog)

    # ============================================
    # RUNS
    # ============================================

    def analyze(self, message: str, config: Optional[AnalysisConfig] = None) -> str:
        """
        Start analyzing `message` and return the new run id.

        The catalog and configuration are snapshotted here, so later edits
        do not affect this run.
        """
        catalog = self.refresh_catalog()
        config = config or self._config_factory()
        controller = ProgressController(PipelineRunState(), tick_seconds=self._tick_seconds)
        run_id = controller.state.run_id

        with self._lock:
            previous = self._runs.get(self._current_run_id) if self._current_run_id else None
            self._runs[run_id] = controller
            self._current_run_id = run_id

        if previous is not None and not previous.state.is_terminal:
            logger.info(f"[RUN] {previous.state.run_id}: superseded by {run_id}, cancelling")
            previous.cancel()

        if self._background:
            thread = Thread(target=self._execute, args=(run_id, message, config, catalog), daemon=True)
            with self._lock:
                self._threads[run_id] = thread
            thread.start()
        else:
            self._execute(run_id, message, config, catalog)

        return run_id

    def _execute(self, run_id: str, message: str, config: AnalysisConfig, catalog: CatalogSnapshot):
        """Run the orchestrator (background thread)"""
        with self._lock:
            controller = self._runs[run_id]
        controller.start(with_ticker=self._background)

        def deliver(results: List[MessageAnalysis]) -> bool:
            return self._deliver(run_id, results, catalog)

        try:
            orchestrator = PhaseOrchestrator(self.completion, config, catalog)
            orchestrator.run(message, controller, on_results=deliver)
        except Exception as e:
            logger.exception(f"[RUN] {run_id}: unexpected error")
            controller.fail(ErrorClassifier.classify(e))
        finally:
            controller.stop_ticker()
            with self._lock:
                self._threads.pop(run_id, None)

    def _deliver(self, run_id: str, results: List[MessageAnalysis], catalog: CatalogSnapshot) -> bool:
        with self._lock:
            controller = self._runs.get(run_id)
            if run_id != self._current_run_id or controller is None or controller.is_cancelled:
                logger.info(f"[RUN] {run_id}: stale result discarded")
                return False
            self.aggregator.ingest(results, catalog)
            return True

    def cancel(self, run_id: str) -> bool:
        """Request cancellation. False if the run is unknown or already finished."""
        with self._lock:
            controller = self._runs.get(run_id)
        if controller is None or controller.state.is_terminal:
            return False
        controller.cancel()
        logger.info(f"[RUN] {run_id}: cancellation requested")
        return True

    def get_run(self, run_id: str) -> Optional[PipelineRunState]:
        with self._lock:
            controller = self._runs.get(run_id)
        return controller.snapshot() if controller is not None else None

    def is_current(self, run_id: str) -> bool:
        with self._lock:
            return run_id == self._current_run_id

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[PipelineRunState]:
        """Block until the run's worker thread exits (tests and scripts)."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run(run_id)

    def cleanup_finished_runs(self) -> int:
        """Drop finished runs older than the retention window."""
        cutoff = time.time() - self._retention_seconds
        with self._lock:
            stale_ids = [
                rid for rid, controller in self._runs.items()
                if rid != self._current_run_id
                and controller.state.is_terminal
                and (controller.state.completed_at or 0) < cutoff
            ]
            for rid in stale_ids:
                self._runs.pop(rid, None)

        if stale_ids:
            logger.info(f"[RUN CLEANUP] Removed {len(stale_ids)} finished runs")
        return len(stale_ids)

    # ============================================
    # DRAFT CARDS (aggregator pass-through)
    # ============================================

    def cards(self) -> List[DraftOrderCard]:
        return self.aggregator.cards()

    def can_save_all(self) -> bool:
        return self.aggregator.can_save_all()

    def update_card(self, index: int, patch: DraftPatch) -> DraftOrderCard:
        return self.aggregator.update(index, patch)

    def delete_card(self, index: int) -> None:
        self.aggregator.delete(index)

    def add_item(self, index: int, item: ExtractedLineItem) -> DraftOrderCard:
        return self.aggregator.add_item(index, item)

    def save_card(self, index: int) -> str:
        return self.aggregator.save_card(index, self.store)

    def save_all(self) -> List[str]:
        return self.aggregator.save_all(self.store)

    def discard(self) -> None:
        """Drop the drafts and stop whatever run is still in flight."""
        with self._lock:
            current = self._runs.get(self._current_run_id) if self._current_run_id else None
        if current is not None and not current.state.is_terminal:
            current.cancel()
        self.aggregator.discard()
