"""
Pure workflow engine: graph validation, submission resolution and the
per-application transition state machine. No Flask or database imports.
"""

from admissions.engine.graph_validator import validate
from admissions.engine.resolver import Submission, resolve_submission
from admissions.engine.transition_engine import (
    apply_manual_transition,
    evaluate_automatic_transitions,
    legal_transitions,
)

__all__ = [
    "Submission",
    "apply_manual_transition",
    "evaluate_automatic_transitions",
    "legal_transitions",
    "resolve_submission",
    "validate",
]
