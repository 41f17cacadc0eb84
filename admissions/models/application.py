"""
Admissions Workflow Engine
Application and status history models.

Models:
    - Application: an applicant's application bound to one workflow
    - ApplicationStatus: APPEND-ONLY status history row

Design decisions:
    - ApplicationStatus rows are never updated or deleted. The row with the
      highest ``position`` determines the current stage.
    - ``(application_id, position)`` is unique: two writers racing from the
      same stage cannot both append, the loser hits an IntegrityError.
    - ``Application.current_stage_id`` is a denormalised cache of the latest
      history row, maintained by the service in the same transaction.
    - ``entered_by`` is a tagged variant (human | system) stored as
      ``entered_by_kind`` + ``entered_by_id``.
"""

from datetime import datetime, timezone

from admissions.engine.types import SYSTEM, EnteredBy, HistoryEntry, Human
from admissions.models import db

def _now():
    return datetime.now(timezone.utc)


def _aware(value):
    # SQLite drops tzinfo on round-trip
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Application(db.Model):
    __tablename__ = "applications"
    __table_args__ = (
        db.Index("idx_application_stage", "workflow_id", "current_stage_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    application_type = db.Column(db.String(30), nullable=False)
    applicant_ref = db.Column(
        db.String(150), nullable=True, index=True,
        comment="External applicant identifier",
    )
    facts = db.Column(
        db.JSON, default=dict,
        comment='Fact snapshot used by transition conditions: {"decision_recorded": true, ...}',
    )
    current_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id"), nullable=True,
    )
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    workflow = db.relationship("Workflow")
    current_stage = db.relationship("WorkflowStage", foreign_keys=[current_stage_id])
    statuses = db.relationship(
        "ApplicationStatus",
        back_populates="application",
        order_by="ApplicationStatus.position",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        stage = self.current_stage
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "application_type": self.application_type,
            "applicant_ref": self.applicant_ref,
            "facts": dict(self.facts or {}),
            "current_stage_id": self.current_stage_id,
            "current_stage_name": stage.name if stage else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Application {self.id}: {self.application_type} @ {self.current_stage_id}>"


class ApplicationStatus(db.Model):
    """
    Immutable status history row.

    Business rules:
    - Records are NEVER deleted or updated; append-only log.
    - ``transition_id`` is NULL only for the first row (initial stage).
    - ``entered_at`` is strictly increasing per application.
    """

    __tablename__ = "application_statuses"
    __table_args__ = (
        db.UniqueConstraint("application_id", "position", name="uq_application_status_position"),
        db.Index("idx_status_stage", "stage_id"),
        db.Index("idx_status_transition", "transition_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    position = db.Column(db.Integer, nullable=False, comment="0-based order within the application")
    stage_id = db.Column(db.String(36), db.ForeignKey("workflow_stages.id"), nullable=False)
    transition_id = db.Column(db.String(36), db.ForeignKey("workflow_transitions.id"), nullable=True)
    entered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    entered_by_kind = db.Column(db.String(10), nullable=False, comment="human | system")
    entered_by_id = db.Column(db.String(150), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    application = db.relationship("Application", back_populates="statuses")
    stage = db.relationship("WorkflowStage", foreign_keys=[stage_id])

    @classmethod
    def from_entry(cls, application_id: int, position: int, entry: HistoryEntry) -> "ApplicationStatus":
        return cls(
            application_id=application_id,
            position=position,
            stage_id=entry.stage_id,
            transition_id=entry.transition_id,
            entered_at=entry.entered_at,
            entered_by_kind=entry.entered_by.kind,
            entered_by_id=getattr(entry.entered_by, "actor_id", None),
            notes=entry.notes,
        )

    @property
    def entered_by(self) -> EnteredBy:
        if self.entered_by_kind == "human":
            return Human(self.entered_by_id)
        return SYSTEM

    def to_entry(self) -> HistoryEntry:
        return HistoryEntry(
            application_id=self.application_id,
            stage_id=self.stage_id,
            entered_at=_aware(self.entered_at),
            entered_by=self.entered_by,
            transition_id=self.transition_id,
            notes=self.notes,
        )

    def to_dict(self) -> dict:
        entered_at = _aware(self.entered_at)
        return {
            "id": self.id,
            "application_id": self.application_id,
            "position": self.position,
            "stage_id": self.stage_id,
            "stage_name": self.stage.name if self.stage else None,
            "transition_id": self.transition_id,
            "entered_at": entered_at.isoformat() if entered_at else None,
            "entered_by": {"kind": self.entered_by_kind, "actor_id": self.entered_by_id},
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<ApplicationStatus {self.application_id}#{self.position}: {self.stage_id}>"
