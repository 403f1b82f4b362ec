"""
Tests for the Analysis Session

Tests cover:
1. Run lifecycle and draft ingestion
2. Superseded runs never overwrite newer drafts
3. Cancellation and failures
4. Run cleanup
5. Saving through the store
"""

import pytest

from conftest import FakeCompletionService, client_group, line_item, to_json
from magic_order.analysis_session import AnalysisSession
from magic_order.catalog_store import SqliteCatalogStore
from magic_order.error_handler import TransportError
from magic_order.models import CardState, TokenKind
from magic_order.progress import RunStatus


PHASE1_TEXT = "Client: Juan Perez\nOrder: 3 milks"
ELI_RESPONSE = to_json([client_group("Eli Gomez", "c2", "high", [line_item("Pollo", 2, "p3")])])


@pytest.fixture
def store(tmp_path, catalog):
    store = SqliteCatalogStore(str(tmp_path / "catalog.db"))
    store.seed(catalog)
    return store


def make_session(store, analysis_config, responses, on_call=None, **kwargs):
    completion = FakeCompletionService(responses, on_call=on_call)
    kwargs.setdefault("background", False)
    session = AnalysisSession(
        store=store,
        completion=completion,
        config_factory=lambda: analysis_config,
        **kwargs,
    )
    return session, completion


class TestRunLifecycle:
    """Tests for analyze / get_run"""

    def test_successful_run_creates_drafts(self, store, analysis_config, juan_response):
        session, _ = make_session(store, analysis_config, [PHASE1_TEXT, juan_response])

        run_id = session.analyze("juan 3 leches")
        state = session.get_run(run_id)

        assert state.status == RunStatus.DONE
        assert state.progress == 100.0
        assert session.is_current(run_id)
        cards = session.cards()
        assert len(cards) == 1
        assert cards[0].complete
        assert cards[0].total == 4.5

    def test_background_run(self, store, analysis_config, juan_response):
        session, _ = make_session(
            store, analysis_config, [PHASE1_TEXT, juan_response], background=True, tick_seconds=0.01,
        )

        run_id = session.analyze("juan 3 leches")
        state = session.wait(run_id, timeout=10)

        assert state.status == RunStatus.DONE
        assert len(session.cards()) == 1

    def test_failed_run_keeps_previous_drafts(self, store, analysis_config, juan_response):
        session, _ = make_session(
            store, analysis_config,
            [PHASE1_TEXT, juan_response, TransportError("unavailable", status=503)],
        )
        session.analyze("juan 3 leches")

        run_id = session.analyze("otro mensaje")
        state = session.get_run(run_id)

        assert state.status == RunStatus.FAILED
        assert state.error.error_type.value == "transport_error"
        assert len(session.cards()) == 1

    def test_unknown_run(self, store, analysis_config):
        session, _ = make_session(store, analysis_config, [])
        assert session.get_run("missing") is None
        assert not session.cancel("missing")


class TestSupersededRuns:
    """A newer run always wins over a late result"""

    def test_new_analysis_cancels_in_flight_run(self, store, analysis_config, juan_response):
        holder = {}

        def start_second_run(call_number, prompt):
            # While run A waits for phase 2, the user starts run B
            if call_number == 2:
                holder["second"] = holder["session"].analyze("eli 2 pollos")

        session, completion = make_session(
            store, analysis_config,
            [PHASE1_TEXT, juan_response, "Client: Eli", ELI_RESPONSE],
            on_call=start_second_run,
        )
        holder["session"] = session

        first = session.analyze("juan 3 leches")

        assert session.get_run(first).status == RunStatus.CANCELLED
        assert session.get_run(holder["second"]).status == RunStatus.DONE
        assert session.current_run_id == holder["second"]
        assert [c.client.id for c in session.cards()] == ["c2"]
        assert completion.calls == 4

    def test_stale_delivery_rejected_by_run_id(self, store, analysis_config, juan_response):
        session, _ = make_session(store, analysis_config, [PHASE1_TEXT, ELI_RESPONSE])
        current = session.analyze("eli 2 pollos")

        from magic_order.response_validator import validate_response
        accepted = session._deliver("some-older-run", validate_response(juan_response), session.catalog)

        assert not accepted
        assert session.current_run_id == current
        assert [c.client.id for c in session.cards()] == ["c2"]


class TestCancel:
    """Tests for cancel"""

    def test_cancel_during_phase1(self, store, analysis_config, juan_response):
        holder = {}

        def cancel_current(call_number, prompt):
            session = holder["session"]
            session.cancel(session.current_run_id)

        session, completion = make_session(
            store, analysis_config, [PHASE1_TEXT, juan_response], on_call=cancel_current,
        )
        holder["session"] = session

        run_id = session.analyze("juan 3 leches")
        state = session.get_run(run_id)

        assert state.status == RunStatus.CANCELLED
        assert state.cancelled
        assert completion.calls == 1
        assert session.cards() == []

    def test_cancel_finished_run_is_noop(self, store, analysis_config, juan_response):
        session, _ = make_session(store, analysis_config, [PHASE1_TEXT, juan_response])
        run_id = session.analyze("juan 3 leches")

        assert not session.cancel(run_id)
        assert session.get_run(run_id).status == RunStatus.DONE


class TestScanAndCleanup:

    def test_scan_uses_store_catalog(self, store, analysis_config):
        session, _ = make_session(store, analysis_config, [])
        tokens, segments = session.scan("xyz 5 cosas raras")

        assert tokens[0].word == "xyz"
        assert tokens[0].kind == TokenKind.UNKNOWN_CLIENT
        assert "".join(s.text for s in segments) == "xyz 5 cosas raras"

    def test_cleanup_keeps_current_run(self, store, analysis_config, juan_response):
        session, _ = make_session(
            store, analysis_config, [PHASE1_TEXT, juan_response, PHASE1_TEXT, juan_response],
            retention_minutes=0,
        )
        first = session.analyze("juan 3 leches")
        second = session.analyze("juan 3 leches")

        removed = session.cleanup_finished_runs()

        assert removed == 1
        assert session.get_run(first) is None
        assert session.get_run(second) is not None


class TestSessionSaving:
    """Drafts saved through the session land in the store"""

    def test_save_all_persists_orders(self, store, analysis_config, juan_response):
        session, _ = make_session(store, analysis_config, [PHASE1_TEXT, juan_response])
        session.analyze("juan 3 leches")

        order_ids = session.save_all()

        assert len(order_ids) == 1
        assert store.get_order(order_ids[0])["total"] == 4.5
        assert session.cards()[0].state == CardState.SAVED

    def test_discard_clears_drafts(self, store, analysis_config, juan_response):
        session, _ = make_session(store, analysis_config, [PHASE1_TEXT, juan_response])
        session.analyze("juan 3 leches")

        session.discard()

        assert session.cards() == []
