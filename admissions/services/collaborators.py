"""
Collaborators consumed by WorkflowService.

    FactProvider        facts_for(application) -> Mapping
    PermissionProvider  permissions_for(actor_id) -> frozenset[str]
    StatusChangeSink    publish(fact: StatusChanged) -> None

The engine treats facts as an opaque read-only map and capabilities as
opaque tags; how they are computed lives behind these protocols. Sinks are
called after the transition has been committed; a failing sink never fails
the operation (see WorkflowService._publish).

Defaults:
    ApplicationFactProvider  reads Application.facts
    RolePermissionProvider   role tables via permission_service (TTL cache)
    AuditSink                AuditLog row, action "application.stage_changed"
    NotificationSink         one in-app Notification per stage trigger
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from admissions.engine.types import EnteredBy
from admissions.models import db
from admissions.models.audit import write_audit
from admissions.models.workflow import WorkflowStage
from admissions.services import permission_service
from admissions.services.notification import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    """Fact emitted for every successful transition (and the initial entry)."""

    application_id: int
    previous_stage_id: str | None
    new_stage_id: str
    transition_id: str | None
    occurred_at: datetime
    entered_by: EnteredBy
    automatic: bool = False
    applicant_ref: str | None = None

    def to_dict(self) -> dict:
        return {
            "application_id": self.application_id,
            "previous_stage_id": self.previous_stage_id,
            "new_stage_id": self.new_stage_id,
            "transition_id": self.transition_id,
            "occurred_at": self.occurred_at.isoformat(),
            "entered_by": {
                "kind": self.entered_by.kind,
                "actor_id": getattr(self.entered_by, "actor_id", None),
            },
            "automatic": self.automatic,
        }


# ── Protocols ─────────────────────────────────────────────────────────────────


class FactProvider(Protocol):
    def facts_for(self, application) -> Mapping: ...


class PermissionProvider(Protocol):
    def permissions_for(self, actor_id: str | None) -> frozenset[str]: ...


class StatusChangeSink(Protocol):
    def publish(self, fact: StatusChanged) -> None: ...


# ── Defaults ──────────────────────────────────────────────────────────────────


class ApplicationFactProvider:
    """Facts are whatever external collaborators stored on the application."""

    def facts_for(self, application) -> Mapping:
        return dict(application.facts or {})


class RolePermissionProvider:
    def permissions_for(self, actor_id: str | None) -> frozenset[str]:
        return permission_service.get_actor_permissions(actor_id)


class AuditSink:
    def publish(self, fact: StatusChanged) -> None:
        write_audit(
            entity_type="application",
            entity_id=fact.application_id,
            action="application.stage_changed",
            actor=getattr(fact.entered_by, "actor_id", None) or "system",
            diff=fact.to_dict(),
        )
        db.session.commit()


class NotificationSink:
    """Creates in-app notifications for the entered stage's triggers.

    A trigger is either a plain tag (``"application_submitted"``) or an
    object ``{"event": "stage_entry", "template": ..., "channels": [...]}``.
    Only stage-entry triggers fire here; other events belong to other
    collaborators.
    """

    def publish(self, fact: StatusChanged) -> None:
        stage = db.session.get(WorkflowStage, fact.new_stage_id)
        if stage is None:
            return
        recipients = [fact.applicant_ref] if fact.applicant_ref else None

        for trigger in stage.notification_triggers or []:
            if isinstance(trigger, Mapping):
                if trigger.get("event", "stage_entry") != "stage_entry":
                    continue
                template = trigger.get("template")
                channels = trigger.get("channels") or ["in_app"]
            else:
                template = str(trigger)
                channels = ["in_app"]

            NotificationService.broadcast(
                title=f"Application #{fact.application_id} entered '{stage.name}'",
                message=stage.description or "",
                category="stage_entry",
                entity_type="application",
                entity_id=fact.application_id,
                template=template,
                channels=channels,
                recipients=recipients,
            )
