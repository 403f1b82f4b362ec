"""
Tests for the Progress & Cancellation Controller
"""

import time

from magic_order.error_handler import ErrorClassifier, Timeout
from magic_order.progress import (
    PROGRESS_CEILING,
    CancellationToken,
    PipelineRunState,
    ProgressController,
    RunStatus,
    next_progress,
)


class TestNextProgress:
    """Tests for the asymptotic progress step"""

    def test_first_step(self):
        assert next_progress(0) == 4.75

    def test_monotonic_and_bounded(self):
        progress = 0.0
        for _ in range(1000):
            new = next_progress(progress)
            assert new >= progress
            assert new <= PROGRESS_CEILING
            progress = new
        assert progress == PROGRESS_CEILING

    def test_minimum_increment_near_ceiling(self):
        assert next_progress(94.0) == 94.5


class TestProgressController:
    """Tests for ProgressController"""

    def test_ticks_never_reach_100(self):
        controller = ProgressController()
        for _ in range(500):
            controller.tick()
        assert controller.state.progress == PROGRESS_CEILING

    def test_stage_sets_label_and_floor(self):
        controller = ProgressController()
        controller.set_stage(RunStatus.PHASE2)

        assert controller.state.status == RunStatus.PHASE2
        assert controller.state.stage == "Structuring orders..."
        assert controller.state.progress == 40.0

    def test_stage_never_lowers_progress(self):
        controller = ProgressController(PipelineRunState(progress=80.0))
        controller.set_stage(RunStatus.PHASE2)
        assert controller.state.progress == 80.0

    def test_complete_jumps_to_100(self):
        controller = ProgressController()
        controller.start()
        controller.set_stage(RunStatus.PHASE1)
        controller.complete()

        assert controller.state.status == RunStatus.DONE
        assert controller.state.progress == 100.0
        assert controller.state.completed_at is not None

    def test_terminal_state_is_frozen(self):
        controller = ProgressController()
        controller.complete()
        controller.tick()
        controller.set_stage(RunStatus.PHASE3)
        controller.fail()

        assert controller.state.status == RunStatus.DONE
        assert controller.state.progress == 100.0

    def test_fail_keeps_progress_below_100(self):
        controller = ProgressController()
        controller.set_stage(RunStatus.PHASE2)
        controller.fail(ErrorClassifier.classify(Timeout("slow", timeout_ms=10)))

        assert controller.state.status == RunStatus.FAILED
        assert controller.state.progress < 100
        assert controller.state.error.error_type.value == "timeout"

    def test_cancel_sets_token_only(self):
        controller = ProgressController()
        controller.cancel()

        assert controller.is_cancelled
        assert controller.state.cancelled
        assert controller.state.status == RunStatus.IDLE

    def test_ticker_thread_advances_progress(self):
        controller = ProgressController(tick_seconds=0.01)
        controller.start(with_ticker=True)
        time.sleep(0.2)
        controller.complete()

        assert controller.state.progress == 100.0

    def test_ticker_stops_after_finish(self):
        controller = ProgressController(tick_seconds=0.01)
        controller.start(with_ticker=True)
        time.sleep(0.05)
        controller.fail()
        frozen = controller.state.progress
        time.sleep(0.05)

        assert controller.state.progress == frozen

    def test_snapshot_is_a_copy(self):
        controller = ProgressController()
        snapshot = controller.snapshot()
        controller.tick()

        assert snapshot.progress == 0.0
        assert controller.state.progress > 0.0

    def test_elapsed_seconds(self):
        state = PipelineRunState(started_at=100.0, completed_at=102.5)
        assert state.elapsed_seconds() == 2.5
        assert PipelineRunState().elapsed_seconds() == 0.0


class TestCancellationToken:

    def test_token(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.cancel()
        assert token.is_cancelled
