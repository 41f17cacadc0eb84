"""
Default workflow templates (undergraduate, graduate, transfer).

Seeded through WorkflowService.define_workflow so every template passes the
same resolve + validate path as an editor submission. Transitions reference
stages by ``temp_id``.

Usage:
    flask seed-workflow-templates
"""

import logging

from sqlalchemy import func, select

from admissions.models import db
from admissions.models.role import Role
from admissions.models.workflow import Workflow

logger = logging.getLogger(__name__)


def _on_entry(template, *channels):
    return {"event": "stage_entry", "template": template, "channels": list(channels)}


def _fact(field):
    return {"field": field, "operator": "=", "value": True}


def _stage(temp_id, name, sequence, description, *, documents=(), actions=(), triggers=(), role=None):
    return {
        "temp_id": temp_id,
        "name": name,
        "sequence": sequence,
        "description": description,
        "required_document_types": list(documents),
        "required_actions": list(actions),
        "notification_triggers": list(triggers),
        "assigned_role": role,
    }


def _transition(source, target, name, description, *, automatic=False, conditions=(), permissions=()):
    return {
        "source_stage_id": source,
        "target_stage_id": target,
        "name": name,
        "description": description,
        "is_automatic": automatic,
        "conditions": list(conditions),
        "required_permissions": list(permissions),
    }


_DECISION_TAIL_TRANSITIONS = [
    _transition("decision", "accepted", "Accept", "Accept the applicant",
                permissions=["make_admission_decision"]),
    _transition("decision", "waitlisted", "Waitlist", "Place the applicant on the waitlist",
                permissions=["make_admission_decision"]),
    _transition("decision", "rejected", "Reject", "Reject the application",
                permissions=["make_admission_decision"]),
    _transition("waitlisted", "accepted", "Accept from Waitlist", "Accept an applicant from the waitlist",
                permissions=["make_admission_decision"]),
    _transition("waitlisted", "rejected", "Reject from Waitlist", "Reject an applicant from the waitlist",
                permissions=["make_admission_decision"]),
    _transition("accepted", "enrollment", "Confirm Enrollment", "Applicant confirms enrollment by paying deposit",
                automatic=True, conditions=[_fact("enrollment_deposit_paid")]),
]


def _intake_stages(documents):
    return [
        _stage("draft", "Draft", 1, "Application is being prepared by the applicant",
               triggers=[_on_entry("welcome_to_application", "email")]),
        _stage("submitted", "Submitted", 2, "Application has been submitted and is awaiting initial screening",
               actions=["submit_application", "pay_application_fee"],
               triggers=[_on_entry("application_received", "email", "in_app")]),
        _stage("documents", "Document Verification", 3, "Required documents are being verified",
               documents=documents,
               triggers=[
                   _on_entry("documents_required", "email", "in_app"),
                   {"event": "document_verified", "template": "document_verified", "channels": ["in_app"]},
               ],
               role="verification_team"),
    ]


def _outcome_stages(first_sequence):
    return [
        _stage("decision", "Decision", first_sequence, "Final decision on the application",
               role="admissions_director"),
        _stage("accepted", "Accepted", first_sequence + 1, "Applicant has been accepted",
               triggers=[_on_entry("acceptance_notification", "email", "in_app", "sms")]),
        _stage("waitlisted", "Waitlisted", first_sequence + 2, "Applicant has been placed on the waitlist",
               triggers=[_on_entry("waitlist_notification", "email", "in_app")]),
        _stage("rejected", "Rejected", first_sequence + 3, "Application has been rejected",
               triggers=[_on_entry("rejection_notification", "email", "in_app")]),
        _stage("enrollment", "Enrollment", first_sequence + 4, "Accepted applicant has confirmed enrollment",
               actions=["pay_enrollment_deposit"],
               triggers=[_on_entry("enrollment_confirmation", "email", "in_app")]),
    ]


_INTAKE_TRANSITIONS = [
    _transition("draft", "submitted", "Submit Application", "Applicant submits their application",
                conditions=[_fact("is_submitted")]),
    _transition("submitted", "documents", "Initial Screening Passed", "Application passes initial screening",
                automatic=True, conditions=[_fact("application_fee_paid")]),
]


def _get_default_templates() -> list[dict]:
    """Undergraduate, graduate and transfer templates; every graph is acyclic."""
    return [
        {
            "name": "Undergraduate Admissions",
            "description": "Standard workflow for undergraduate applications",
            "application_type": "undergraduate",
            "stages": _intake_stages(["transcript", "personal_statement", "recommendation_letters"]) + [
                _stage("review", "Under Review", 4, "Application is being reviewed by the admissions committee",
                       triggers=[_on_entry("application_under_review", "email", "in_app")],
                       role="admissions_committee"),
                _stage("additional_info", "Additional Information", 5,
                       "Additional information is required from the applicant",
                       actions=["provide_additional_info"],
                       triggers=[_on_entry("additional_information_required", "email", "in_app", "sms")]),
                _stage("further_review", "Further Review", 6,
                       "Committee reviews the additional information provided",
                       role="admissions_committee"),
            ] + _outcome_stages(7),
            "transitions": _INTAKE_TRANSITIONS + [
                _transition("documents", "review", "Documents Verified", "All required documents have been verified",
                            automatic=True, conditions=[_fact("all_documents_verified")]),
                _transition("review", "additional_info", "Request Information",
                            "Request additional information from applicant",
                            permissions=["request_additional_info"]),
                _transition("additional_info", "further_review", "Information Provided",
                            "Applicant has provided the requested information",
                            automatic=True, conditions=[_fact("additional_info_provided")]),
                _transition("review", "decision", "Review Complete", "Application review is complete",
                            permissions=["complete_review"]),
                _transition("further_review", "decision", "Further Review Complete",
                            "Review of the additional information is complete",
                            permissions=["complete_review"]),
            ] + _DECISION_TAIL_TRANSITIONS,
        },
        {
            "name": "Graduate Admissions",
            "description": "Standard workflow for graduate applications",
            "application_type": "graduate",
            "stages": _intake_stages([
                "transcript", "personal_statement", "recommendation_letters", "resume", "test_scores",
            ]) + [
                _stage("department_review", "Department Review", 4,
                       "Application is being reviewed by the academic department",
                       triggers=[_on_entry("department_review", "email", "in_app")],
                       role="department_reviewer"),
                _stage("interview", "Interview", 5, "Applicant is scheduled for an interview",
                       actions=["complete_interview"],
                       triggers=[_on_entry("interview_scheduled", "email", "in_app", "sms")],
                       role="interview_committee"),
                _stage("committee_review", "Graduate Committee Review", 6,
                       "Application is being reviewed by the graduate committee",
                       triggers=[_on_entry("committee_review", "email", "in_app")],
                       role="graduate_committee"),
            ] + _outcome_stages(7),
            "transitions": _INTAKE_TRANSITIONS + [
                _transition("documents", "department_review", "Documents Verified",
                            "All required documents have been verified",
                            automatic=True, conditions=[_fact("all_documents_verified")]),
                _transition("department_review", "interview", "Schedule Interview",
                            "Schedule an interview with the applicant",
                            permissions=["schedule_interview"]),
                _transition("department_review", "committee_review", "Forward to Committee",
                            "Forward the application to the graduate committee",
                            permissions=["forward_to_committee"]),
                _transition("interview", "committee_review", "Interview Completed",
                            "The interview has been completed",
                            automatic=True, conditions=[_fact("interview_completed")]),
                _transition("committee_review", "decision", "Review Complete",
                            "Graduate committee review is complete",
                            permissions=["complete_committee_review"]),
            ] + _DECISION_TAIL_TRANSITIONS,
        },
        {
            "name": "Transfer Admissions",
            "description": "Standard workflow for transfer applications",
            "application_type": "transfer",
            "stages": _intake_stages(["transcript", "college_transcript", "personal_statement"]) + [
                _stage("credit_evaluation", "Credit Evaluation", 4,
                       "Prior coursework is evaluated for transfer credit",
                       actions=["evaluate_transfer_credits"],
                       triggers=[_on_entry("credit_evaluation", "email", "in_app")],
                       role="registrar"),
                _stage("review", "Under Review", 5, "Application is being reviewed by the admissions committee",
                       triggers=[_on_entry("application_under_review", "email", "in_app")],
                       role="admissions_committee"),
            ] + _outcome_stages(6),
            "transitions": _INTAKE_TRANSITIONS + [
                _transition("documents", "credit_evaluation", "Documents Verified",
                            "All required documents have been verified",
                            automatic=True, conditions=[_fact("all_documents_verified")]),
                _transition("credit_evaluation", "review", "Credits Evaluated",
                            "Transfer credit evaluation is complete",
                            automatic=True, conditions=[_fact("credits_evaluated")]),
                _transition("review", "decision", "Review Complete", "Application review is complete",
                            permissions=["complete_review"]),
            ] + _DECISION_TAIL_TRANSITIONS,
        },
    ]


def _resolve_roles(stages):
    """Map template role names to Role ids where such a role exists."""
    names = {s["assigned_role"] for s in stages if s.get("assigned_role")}
    if not names:
        return
    by_name = dict(db.session.execute(select(Role.name, Role.id).where(Role.name.in_(names))).all())
    missing = sorted(names - by_name.keys())
    if missing:
        logger.info("Template roles not found, stages left unassigned: %s", ", ".join(missing))
    for s in stages:
        role_id = by_name.get(s.pop("assigned_role", None))
        if role_id is not None:
            s["assigned_role_id"] = role_id


def seed_default_templates(service) -> int:
    """
    Create the default templates that do not exist yet (matched by name).
    A template is activated when no workflow of its type is active.

    Returns:
        Number of workflows created.
    """
    created = 0
    for template in _get_default_templates():
        exists = db.session.execute(
            select(Workflow.id).where(func.lower(Workflow.name) == template["name"].lower())
        ).first()
        if exists:
            continue

        has_active = db.session.execute(
            select(Workflow.id).where(
                Workflow.application_type == template["application_type"],
                Workflow.is_active.is_(True),
            )
        ).first()
        _resolve_roles(template["stages"])
        template["is_active"] = not has_active

        _, err = service.define_workflow(template, actor_id="system")
        if err:
            logger.error("Template '%s' rejected: %s %s", template["name"], err.code, err.details)
            continue
        created += 1

    if created > 0:
        logger.info("Seeded %s workflow templates", created)
    return created
