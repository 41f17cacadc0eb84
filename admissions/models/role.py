"""
Admissions Workflow Engine
Role / capability models backing the default permission provider.

An actor's capability set is the union of the codenames granted by every
role assigned to it. Transitions list the codenames they require in
``WorkflowTransition.required_permissions``.
"""

from datetime import datetime, timezone

from admissions.models import db


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    role_permissions = db.relationship(
        "RolePermission", back_populates="role", cascade="all, delete-orphan",
        order_by="RolePermission.codename",
    )
    actor_roles = db.relationship(
        "ActorRole", back_populates="role", cascade="all, delete-orphan",
    )

    @property
    def codenames(self) -> list[str]:
        return [rp.codename for rp in self.role_permissions]

    def to_dict(self, include_actors=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "permissions": self.codenames,
        }
        if include_actors:
            d["actors"] = sorted(ar.actor_id for ar in self.actor_roles)
        return d


class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    codename = db.Column(db.String(100), nullable=False)  # e.g. "make_admission_decision"

    __table_args__ = (
        db.UniqueConstraint("role_id", "codename", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")


class ActorRole(db.Model):
    __tablename__ = "actor_roles"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(150), nullable=False, index=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by = db.Column(db.String(150), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("actor_id", "role_id", name="uq_actor_role"),
    )

    role = db.relationship("Role", back_populates="actor_roles")
