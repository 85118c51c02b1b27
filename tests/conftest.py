"""Shared test fixtures for kanbanflow tests."""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from kanbanflow.events import EventNotifier
from kanbanflow.notify import AuditLogger
from kanbanflow.schema import Actor
from kanbanflow.service import WorkflowService
from kanbanflow.store import WorkflowStore


@pytest.fixture
def store(tmp_path):
    return WorkflowStore(str(tmp_path / "workflow.db"))


@pytest.fixture
def notifier():
    return EventNotifier()


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def service(store, notifier, audit):
    return WorkflowService(store, notifier=notifier, audit=audit)


@pytest.fixture
def reviewer():
    return Actor(id="u-reviewer", name="Ana", roles={"reviewer"})


@pytest.fixture
def guest():
    return Actor(id="u-guest", name="Bruno", roles={"guest"})


@pytest.fixture
def board(service):
    """
    Pipeline with triagem (move-out: reviewer) → aprovado (projects only)
    and one project card sitting in triagem.
    """
    pipeline = service.create_pipeline("Projetos", "organization", "org-1")
    triagem = service.add_column(
        pipeline.id, "triagem", "Triagem", 0,
        allowed_roles_move_out=["reviewer"],
    )
    aprovado = service.add_column(
        pipeline.id, "aprovado", "Aprovado", 1,
        allowed_entity_types=["project"],
    )
    card = service.add_card(
        pipeline.id, triagem.id, "project", "P-42",
        data_snapshot={"title": "Solar panels"},
    )
    return SimpleNamespace(pipeline=pipeline, triagem=triagem, aprovado=aprovado, card=card)
