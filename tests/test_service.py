"""
Tests for WorkflowService.

Covers:
    - board setup              — create_pipeline, add_column, add_card, role list checks
    - reads                    — get_pipeline view roles, column filtering
    - update_column            — partial updates, manage roles, rule validation
    - move_card                — response, audit, events, ownership checks
    - concurrency              — one winner per card, lock table drained, unique ids
    - undo_last_move           — per-actor history, failed undo audited and wrapped
    - from_config              — sink wiring
"""

import sqlite3
import threading
from unittest.mock import patch

import pytest

from kanbanflow.commands import CommandExecutor
from kanbanflow.config import Config
from kanbanflow.errors import (
    ConflictError,
    InvalidInputError,
    InvalidTransitionError,
    NoHistoryError,
    UnauthorizedError,
    UnexpectedError,
    WorkflowError,
)
from kanbanflow.notify import HttpNotificationSink
from kanbanflow.schema import Actor
from kanbanflow.service import WorkflowService
from kanbanflow.telegram_bridge import TelegramMoveNotifier


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Board setup and reads
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoardSetup:

    def test_duplicate_key_rejected(self, service, board):
        with pytest.raises(InvalidInputError, match="key already used"):
            service.add_column(board.pipeline.id, "triagem", "Again", 9)

    def test_duplicate_position_rejected(self, service, board):
        with pytest.raises(InvalidInputError, match="position already used"):
            service.add_column(board.pipeline.id, "novo", "Novo", 0)

    def test_malformed_rules_never_stored(self, service, board):
        with pytest.raises(InvalidTransitionError):
            service.add_column(board.pipeline.id, "novo", "Novo", 5, transition_rules={"transitions": "x"})
        assert len(service.get_pipeline_columns(board.pipeline.id)) == 2

    def test_unknown_column_field(self, service, board):
        with pytest.raises(InvalidInputError, match="Unknown column fields"):
            service.add_column(board.pipeline.id, "novo", "Novo", 5, colour="red")

    @pytest.mark.parametrize("field", [
        "allowed_roles_move_in",
        "allowed_roles_move_out",
        "allowed_roles_view",
        "allowed_entity_types",
    ])
    def test_bare_string_name_list_rejected(self, service, board, field):
        with pytest.raises(InvalidInputError, match=f"{field} must be a list"):
            service.add_column(board.pipeline.id, "novo", "Novo", 5, **{field: "admin"})
        assert len(service.get_pipeline_columns(board.pipeline.id)) == 2

    def test_single_letter_role_cannot_pass_admin_gate(self, service, board):
        restricted = service.add_column(board.pipeline.id, "restrito", "Restrito", 5,
                                        allowed_roles_move_in=["admin"])
        letter_a = Actor(id="u-a", name="A", roles={"a", "reviewer"})
        with pytest.raises(UnauthorizedError, match="into column: restrito"):
            service.move_card(board.pipeline.id, board.card.id, board.triagem.id, restricted.id, letter_a)

    def test_pipeline_roles_must_be_list(self, service):
        with pytest.raises(InvalidInputError, match="allowed_roles_manage must be a list"):
            service.create_pipeline("P", "organization", "org-1", allowed_roles_manage="admin")
        assert service.store.list_pipelines() == []

    def test_card_column_must_belong_to_pipeline(self, service, board):
        other = service.create_pipeline("Other", "organization", "org-2")
        with pytest.raises(InvalidInputError, match="does not belong"):
            service.add_card(other.id, board.triagem.id, "project", "P-1")

    def test_unknown_pipeline(self, service):
        with pytest.raises(InvalidInputError, match="Pipeline not found: 404"):
            service.get_pipeline(404)


class TestReads:

    def test_view_roles_enforced_with_actor(self, service, reviewer, guest):
        pipeline = service.create_pipeline("Private", "organization", "org-1", allowed_roles_view=["reviewer"])
        assert service.get_pipeline(pipeline.id, reviewer).id == pipeline.id
        assert service.get_pipeline(pipeline.id).id == pipeline.id
        with pytest.raises(UnauthorizedError, match="cannot view pipeline"):
            service.get_pipeline(pipeline.id, guest)

    def test_columns_filtered_by_view_roles(self, service, board, guest):
        service.add_column(board.pipeline.id, "interno", "Interno", 2, allowed_roles_view=["reviewer"])
        keys = [c.key for c in service.get_pipeline_columns(board.pipeline.id, guest)]
        assert keys == ["triagem", "aprovado"]
        assert len(service.get_pipeline_columns(board.pipeline.id)) == 3

    def test_column_cards_and_card(self, service, board):
        cards = service.get_column_cards(board.triagem.id)
        assert [c.id for c in cards] == [board.card.id]
        assert service.get_card(board.card.id).entity_id == "P-42"
        with pytest.raises(InvalidInputError, match="Card not found"):
            service.get_card(999)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# update_column
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestUpdateColumn:

    @pytest.fixture
    def managed(self, service):
        pipeline = service.create_pipeline("Managed", "organization", "org-1", allowed_roles_manage=["admin"])
        a = service.add_column(pipeline.id, "a", "A", 0)
        b = service.add_column(pipeline.id, "b", "B", 1)
        return pipeline, a, b

    @pytest.fixture
    def admin(self):
        return Actor(id="u-admin", name="Root", roles={"admin"})

    def test_partial_update(self, service, managed, admin):
        pipeline, a, _ = managed
        updated = service.update_column(pipeline.id, a.id, {"name": "Entrada", "allowed_roles_move_in": ["x"]}, admin)

        assert updated.name == "Entrada"
        stored = service.store.get_column(a.id)
        assert stored.name == "Entrada"
        assert stored.allowed_roles_move_in == ["x"]
        assert stored.position == 0
        assert stored.key == "a"

    def test_none_values_ignored(self, service, managed, admin):
        pipeline, a, _ = managed
        service.update_column(pipeline.id, a.id, {"name": None}, admin)
        assert service.store.get_column(a.id).name == "A"

    def test_requires_manage_role(self, service, managed, guest):
        pipeline, a, _ = managed
        with pytest.raises(UnauthorizedError, match="cannot manage pipeline"):
            service.update_column(pipeline.id, a.id, {"name": "X"}, guest)

    def test_column_of_other_pipeline(self, service, managed, board, admin):
        pipeline, _, _ = managed
        with pytest.raises(InvalidInputError, match="does not belong"):
            service.update_column(pipeline.id, board.triagem.id, {"name": "X"}, admin)

    def test_malformed_rules_rejected(self, service, managed, admin):
        pipeline, a, _ = managed
        with pytest.raises(InvalidTransitionError):
            service.update_column(pipeline.id, a.id, {"transition_rules": [{"from": "a"}]}, admin)
        assert service.store.get_column(a.id).transition_rules is None

    def test_bare_string_roles_rejected(self, service, managed, admin):
        pipeline, a, _ = managed
        with pytest.raises(InvalidInputError, match="allowed_roles_move_out must be a list"):
            service.update_column(pipeline.id, a.id, {"allowed_roles_move_out": "admin"}, admin)
        assert service.store.get_column(a.id).allowed_roles_move_out is None

    def test_position_clash(self, service, managed, admin):
        pipeline, a, b = managed
        with pytest.raises(InvalidInputError, match="position already used"):
            service.update_column(pipeline.id, a.id, {"position": b.position}, admin)

    def test_key_not_updatable(self, service, managed, admin):
        pipeline, a, _ = managed
        with pytest.raises(InvalidInputError, match="Unknown column fields"):
            service.update_column(pipeline.id, a.id, {"key": "z"}, admin)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# move_card
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestMoveCard:

    def test_success_response(self, service, board, reviewer):
        response = service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)

        assert response.success
        assert response.card_id == board.card.id
        assert response.new_column_id == board.aprovado.id
        assert "triagem" in response.message and "aprovado" in response.message
        assert response.to_dict()["timestamp"] == response.timestamp.isoformat()
        assert service.get_card(board.card.id).column_id == board.aprovado.id

    def test_publishes_event(self, service, notifier, board, reviewer):
        events = []
        notifier.subscribe(events.append)

        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)

        assert len(events) == 1
        event = events[0]
        assert (event.card_id, event.from_column_id, event.to_column_id) == (
            board.card.id, board.triagem.id, board.aprovado.id
        )
        assert event.entity_type == "project"
        assert event.actor == reviewer

    def test_rejection_publishes_nothing(self, service, notifier, board, guest):
        events = []
        notifier.subscribe(events.append)

        with pytest.raises(UnauthorizedError):
            service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, guest)
        assert events == []
        assert service.get_card(board.card.id).column_id == board.triagem.id

    def test_failing_listener_does_not_fail_move(self, service, notifier, board, reviewer):
        def broken(event):
            raise RuntimeError("listener bug")

        notifier.subscribe(broken)
        response = service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        assert response.success

    def test_audit_trail(self, service, audit, board, reviewer, guest):
        with pytest.raises(UnauthorizedError):
            service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, guest)
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        service.undo_last_move(service.sessions.executor_for(reviewer.id))

        entries = audit.read_recent()
        assert [e["status"] for e in entries] == ["rejected", "moved", "undone"]
        assert entries[0]["kind"] == "unauthorized"
        assert entries[0]["actor_id"] == guest.id
        assert entries[2]["to_column_id"] == board.triagem.id

    def test_same_columns_rejected_before_lookup(self, service, board, reviewer):
        with patch.object(service.store, "get_card") as get_card, \
                patch.object(service.store, "get_column") as get_column:
            with pytest.raises(InvalidInputError, match="cannot be the same"):
                service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.triagem.id, reviewer)
        get_card.assert_not_called()
        get_column.assert_not_called()

    def test_card_of_other_pipeline(self, service, board, reviewer):
        other = service.create_pipeline("Other", "organization", "org-2")
        with pytest.raises(InvalidInputError, match="does not belong to this pipeline"):
            service.move_card(other.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)

    def test_stale_source_column(self, service, board, reviewer):
        with pytest.raises(ConflictError):
            service.move_card(board.pipeline.id, board.card.id, board.aprovado.id, board.triagem.id, reviewer)

    def test_missing_actor(self, service, board):
        with pytest.raises(InvalidInputError, match="Actor cannot be null"):
            service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, None)

    def test_storage_failure_is_unexpected(self, service, board, reviewer):
        with patch.object(service.store, "get_card", side_effect=RuntimeError("db locked")):
            with pytest.raises(UnexpectedError, match="db locked"):
                service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Concurrency and sessions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestConcurrency:

    def test_one_winner_per_card(self, service, board):
        arquivado = service.add_column(board.pipeline.id, "arquivado", "Arquivado", 2)
        actors = [Actor(id=f"u-{i}", name=f"User {i}", roles={"reviewer"}) for i in range(8)]
        targets = [board.aprovado.id, arquivado.id]

        barrier = threading.Barrier(len(actors))
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker(i, actor):
            barrier.wait()
            try:
                service.move_card(board.pipeline.id, board.card.id, board.triagem.id, targets[i % 2], actor)
                outcome = "ok"
            except WorkflowError as e:
                outcome = e.kind.value
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(i, a)) for i, a in enumerate(actors)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert outcomes.count("ok") == 1
        assert set(outcomes) == {"ok", "conflict"}
        assert service.get_card(board.card.id).column_id in targets

    def test_moves_on_different_cards(self, service, board, reviewer):
        second = service.add_card(board.pipeline.id, board.triagem.id, "project", "P-43")
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        service.move_card(board.pipeline.id, second.id, board.triagem.id, board.aprovado.id, reviewer)
        assert len(service.get_column_cards(board.aprovado.id)) == 2

    def test_card_lock_table_drained(self, service, board, reviewer):
        cards = [service.add_card(board.pipeline.id, board.triagem.id, "project", f"P-{i}") for i in range(50)]
        for card in cards:
            service.move_card(board.pipeline.id, card.id, board.triagem.id, board.aprovado.id, reviewer)
        # rejected moves release their entry too
        with pytest.raises(ConflictError):
            service.move_card(board.pipeline.id, cards[0].id, board.triagem.id, board.aprovado.id, reviewer)

        assert service._card_locks == {}

    def test_concurrent_add_card_gets_unique_ids(self, service, board):
        barrier = threading.Barrier(8)
        ids = []
        ids_lock = threading.Lock()

        def worker(i):
            barrier.wait()
            card = service.add_card(board.pipeline.id, board.triagem.id, "project", f"P-{i}")
            with ids_lock:
                ids.append(card.id)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(ids) == 8
        assert len(set(ids)) == 8
        assert len(service.get_column_cards(board.triagem.id)) == 9


class TestUndoLastMove:

    def test_undo_restores_card(self, service, board, reviewer):
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        service.undo_last_move(service.sessions.executor_for(reviewer.id))
        assert service.get_card(board.card.id).column_id == board.triagem.id

    def test_undo_is_scoped_to_actor(self, service, board, reviewer):
        other_reviewer = Actor(id="u-other", name="Carla", roles={"reviewer"})
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)

        with pytest.raises(NoHistoryError):
            service.undo_last_move(service.sessions.executor_for(other_reviewer.id))
        assert service.get_card(board.card.id).column_id == board.aprovado.id

    def test_explicit_executor(self, service, board, reviewer):
        executor = CommandExecutor()
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer, executor=executor)

        assert executor.history_size() == 1
        assert not service.sessions.executor_for(reviewer.id).has_history()

        service.undo_last_move(executor)
        with pytest.raises(NoHistoryError):
            service.undo_last_move(executor)

    def test_failed_undo_is_wrapped_and_audited(self, service, audit, board, reviewer):
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        executor = service.sessions.executor_for(reviewer.id)

        with patch.object(service.store, "set_card_column",
                          side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(UnexpectedError, match="database is locked"):
                service.undo_last_move(executor)

        assert not executor.has_history()
        assert service.get_card(board.card.id).column_id == board.aprovado.id
        last = audit.read_recent()[-1]
        assert last["status"] == "undo_failed"
        assert last["kind"] == "unexpected"
        assert last["actor_id"] == reviewer.id
        assert last["card_id"] == board.card.id
        assert last["from_column_id"] == board.aprovado.id
        assert last["to_column_id"] == board.triagem.id

    def test_end_session_drops_history(self, service, board, reviewer):
        service.move_card(board.pipeline.id, board.card.id, board.triagem.id, board.aprovado.id, reviewer)
        assert service.end_session(reviewer.id)
        with pytest.raises(NoHistoryError):
            service.undo_last_move(service.sessions.executor_for(reviewer.id))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Wiring
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFromConfig:

    def _config(self, tmp_path, **overrides):
        cfg = Config(
            db_path=str(tmp_path / "wf.db"),
            audit_log=str(tmp_path / "audit.jsonl"),
            notification_fallback_path=str(tmp_path / "notifications.jsonl"),
            **overrides,
        )
        cfg.resolve_paths()
        return cfg

    def test_http_sink_only(self, tmp_path):
        service = WorkflowService.from_config(self._config(tmp_path))
        assert service.notifier.sink_count() == 1
        assert isinstance(service.notifier._sinks[0], HttpNotificationSink)
        assert service.store.db_path == str(tmp_path / "wf.db")
        assert service.audit is not None

    def test_telegram_sink_when_token_present(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KF_TEST_TOKEN", "123:abc")
        cfg = self._config(tmp_path, telegram_token_env="KF_TEST_TOKEN", telegram_chat_ids=[111])

        service = WorkflowService.from_config(cfg)
        assert service.notifier.sink_count() == 2
        assert isinstance(service.notifier._sinks[1], TelegramMoveNotifier)

    def test_telegram_skipped_without_token(self, tmp_path, monkeypatch):
        monkeypatch.delenv("KF_TEST_TOKEN", raising=False)
        cfg = self._config(tmp_path, telegram_token_env="KF_TEST_TOKEN", telegram_chat_ids=[111])
        assert WorkflowService.from_config(cfg).notifier.sink_count() == 1
