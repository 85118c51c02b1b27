#!/usr/bin/env python3
"""
Quick verification that the move engine works end-to-end.
"""
import os
import tempfile

from kanbanflow.errors import UnauthorizedError, NoHistoryError
from kanbanflow.events import EventNotifier
from kanbanflow.notify import AuditLogger
from kanbanflow.schema import Actor
from kanbanflow.service import WorkflowService
from kanbanflow.store import WorkflowStore


def main():
    print("=" * 60)
    print("kanbanflow Move Engine Verification")
    print("=" * 60)

    workdir = tempfile.mkdtemp(prefix="kanbanflow-verify-")
    db_path = os.path.join(workdir, "workflow.db")
    audit_path = os.path.join(workdir, "audit.jsonl")

    # Create service
    print("\n[1/6] Creating SQLite store and service...")
    notifier = EventNotifier()
    seen = []
    notifier.subscribe(seen.append)
    service = WorkflowService(
        WorkflowStore(db_path),
        notifier=notifier,
        audit=AuditLogger(audit_path),
    )
    print("✅ Service created")

    # Board
    print("\n[2/6] Building a pipeline with two columns...")
    pipeline = service.create_pipeline("Projetos", "organization", "org-1")
    triagem = service.add_column(
        pipeline.id, "triagem", "Triagem", 0,
        allowed_roles_move_out=["reviewer"],
    )
    aprovado = service.add_column(
        pipeline.id, "aprovado", "Aprovado", 1,
        allowed_entity_types=["project"],
    )
    card = service.add_card(pipeline.id, triagem.id, "project", "P-42")
    print(f"✅ Pipeline {pipeline.id}: {triagem.key} → {aprovado.key}, card {card.id}")

    reviewer = Actor(id="u-1", name="Ana", roles={"reviewer"})
    guest = Actor(id="u-2", name="Bruno", roles={"guest"})

    # Rejected move
    print("\n[3/6] Guest tries to move the card...")
    try:
        service.move_card(pipeline.id, card.id, triagem.id, aprovado.id, guest)
        print("❌ Guest move should have been rejected")
        return
    except UnauthorizedError as e:
        print(f"✅ Rejected: {e.message}")

    # Successful move
    print("\n[4/6] Reviewer moves the card...")
    response = service.move_card(pipeline.id, card.id, triagem.id, aprovado.id, reviewer)
    print(f"✅ {response.message}")
    print(f"   Events seen: {len(seen)}")

    # Undo
    print("\n[5/6] Undoing the move...")
    executor = service.sessions.executor_for(reviewer.id)
    service.undo_last_move(executor)
    print(f"✅ Card back in column {service.get_card(card.id).column_id}")
    try:
        service.undo_last_move(executor)
    except NoHistoryError as e:
        print(f"✅ Second undo: {e.message}")

    # Audit
    print("\n[6/6] Reading the audit trail...")
    for entry in service.audit.read_recent():
        print(f"   {entry['status']}: card {entry.get('card_id')} by {entry.get('actor_id')}")

    print("\n" + "=" * 60)
    print("✅ ALL CHECKS PASSED")
    print("=" * 60)
    print(f"\nTest database: {db_path}")


if __name__ == "__main__":
    main()
