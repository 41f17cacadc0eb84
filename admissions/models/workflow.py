"""
Admissions Workflow Engine
Workflow definition models.

Models:
    - Workflow: one validated stage graph per application type
    - WorkflowStage: a step an application occupies
    - WorkflowTransition: a directed, optionally conditioned edge

Stages and transitions are edited only through a full-graph submission
(services/workflow_service.py). Rows removed by an update but still
referenced by status history are kept with ``is_retired=True`` and are
excluded from the live definition returned by ``to_definition()``.
"""

from datetime import datetime, timezone

from admissions.engine.types import Stage, Transition, WorkflowDefinition
from admissions.models import db

# ── Constants ────────────────────────────────────────────────────────────────

APPLICATION_TYPES = frozenset({"undergraduate", "graduate", "transfer"})

NAME_MAX_LENGTH = 100


def _now():
    return datetime.now(timezone.utc)


class Workflow(db.Model):
    """
    Workflow definition for one application type.

    At most one workflow per application type is active at a time; new
    applications always start on the active one.
    """

    __tablename__ = "workflows"
    __table_args__ = (
        db.Index("idx_workflow_type_active", "application_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    application_type = db.Column(
        db.String(30), nullable=False,
        comment="undergraduate | graduate | transfer",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    stages = db.relationship(
        "WorkflowStage",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStage.position",
    )
    transitions = db.relationship(
        "WorkflowTransition",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowTransition.position",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def live_stages(self):
        return [s for s in self.stages if not s.is_retired]

    @property
    def live_transitions(self):
        return [t for t in self.transitions if not t.is_retired]

    def to_definition(self) -> WorkflowDefinition:
        """Immutable snapshot of the live graph for the engine."""
        return WorkflowDefinition(
            id=self.id,
            name=self.name,
            application_type=self.application_type,
            stages=tuple(s.to_stage() for s in self.live_stages),
            transitions=tuple(t.to_transition() for t in self.live_transitions),
            is_active=bool(self.is_active),
        )

    def to_dict(self, include_graph=True) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "application_type": self.application_type,
            "is_active": bool(self.is_active),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_graph:
            definition = self.to_definition()
            initial = definition.initial_stage()
            d["stages"] = [s.to_dict() for s in definition.stages]
            d["transitions"] = [t.to_dict() for t in definition.transitions]
            d["initial_stage_id"] = initial.id if initial else None
            d["terminal_stage_ids"] = [s.id for s in definition.stages if definition.is_terminal(s.id)]
        else:
            d["stage_count"] = len(self.live_stages)
            d["transition_count"] = len(self.live_transitions)
        return d

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name} ({self.application_type})>"


class WorkflowStage(db.Model):
    __tablename__ = "workflow_stages"
    __table_args__ = (
        db.Index("idx_stage_workflow", "workflow_id", "is_retired"),
    )

    id = db.Column(db.String(36), primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False,
    )
    name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.Text, nullable=True)
    sequence = db.Column(db.Integer, nullable=False)
    required_document_types = db.Column(db.JSON, default=list)
    required_actions = db.Column(db.JSON, default=list)
    notification_triggers = db.Column(db.JSON, default=list)
    assigned_role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0, comment="submission order")
    is_retired = db.Column(db.Boolean, nullable=False, default=False)

    workflow = db.relationship("Workflow", back_populates="stages")

    def apply(self, stage: Stage, position: int) -> None:
        """Copy a resolved Stage onto this row (revives retired rows)."""
        self.name = stage.name
        self.description = stage.description
        self.sequence = stage.sequence
        self.required_document_types = list(stage.required_document_types)
        self.required_actions = list(stage.required_actions)
        self.notification_triggers = list(stage.notification_triggers)
        self.assigned_role_id = stage.assigned_role_id
        self.position = position
        self.is_retired = False

    def to_stage(self) -> Stage:
        return Stage(
            id=self.id,
            name=self.name,
            sequence=self.sequence,
            description=self.description,
            required_document_types=tuple(self.required_document_types or ()),
            required_actions=tuple(self.required_actions or ()),
            notification_triggers=tuple(self.notification_triggers or ()),
            assigned_role_id=self.assigned_role_id,
        )

    def __repr__(self):
        return f"<WorkflowStage {self.id}: {self.name} #{self.sequence}>"


class WorkflowTransition(db.Model):
    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.Index("idx_transition_source", "workflow_id", "source_stage_id"),
    )

    id = db.Column(db.String(36), primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False,
    )
    source_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False,
    )
    target_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False,
    )
    name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.Text, nullable=True)
    conditions = db.Column(db.JSON, default=list)
    required_permissions = db.Column(db.JSON, default=list)
    is_automatic = db.Column(db.Boolean, nullable=False, default=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    is_retired = db.Column(db.Boolean, nullable=False, default=False)

    workflow = db.relationship("Workflow", back_populates="transitions")
    # Many-to-one links so the unit of work deletes transitions before stages
    source_stage = db.relationship("WorkflowStage", foreign_keys=[source_stage_id])
    target_stage = db.relationship("WorkflowStage", foreign_keys=[target_stage_id])

    def apply(self, transition: Transition, position: int) -> None:
        self.source_stage_id = transition.source_stage_id
        self.target_stage_id = transition.target_stage_id
        self.name = transition.name
        self.description = transition.description
        self.conditions = list(transition.conditions)
        self.required_permissions = sorted(transition.required_permissions)
        self.is_automatic = transition.is_automatic
        self.position = position
        self.is_retired = False

    def to_transition(self) -> Transition:
        return Transition(
            id=self.id,
            source_stage_id=self.source_stage_id,
            target_stage_id=self.target_stage_id,
            name=self.name,
            description=self.description,
            conditions=tuple(self.conditions or ()),
            required_permissions=frozenset(self.required_permissions or ()),
            is_automatic=bool(self.is_automatic),
        )

    def __repr__(self):
        return f"<WorkflowTransition {self.id}: {self.source_stage_id} -> {self.target_stage_id}>"
