"""
Admissions Workflow Engine
SQLAlchemy extension instance shared by every model module.

Models:
    - workflow:     Workflow, WorkflowStage, WorkflowTransition
    - application:  Application, ApplicationStatus (append-only history)
    - role:         Role, RolePermission, ActorRole
    - audit:        AuditLog
    - notification: Notification
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
