from __future__ import annotations

import copy
from typing import Any

# Starter workflows offered by WORKFLOW_TEMPLATES. Each one is a valid
# WORKFLOW_CREATE payload apart from the bookkeeping keys.
DEFAULT_WORKFLOW_TEMPLATES: list[dict[str, Any]] = [
    {
        "id": "welcome-email",
        "name": "Welcome email",
        "description": "Email the candidate as soon as they are marked as contacted",
        "category": "onboarding",
        "trigger": {"type": "status_changed", "toStatus": "contacted"},
        "actions": [
            {
                "type": "send_email",
                "emailTo": "candidate",
                "emailSubject": "Welcome to {{companyName}}",
                "emailBody": "Hello {{firstName}},\n\nThank you for your application. We will be in touch shortly.",
            }
        ],
        "requiredFields": [],
    },
    {
        "id": "interview-confirmation",
        "name": "Interview confirmation",
        "description": "Confirm the interview to the candidate when it is scheduled",
        "category": "interview",
        "trigger": {"type": "interview_scheduled"},
        "actions": [
            {
                "type": "send_email",
                "emailTo": "candidate",
                "emailSubject": "Your interview with {{companyName}}",
                "emailBody": "Hello {{firstName}},\n\nYour interview has been scheduled. See you soon.",
            }
        ],
        "requiredFields": [],
    },
    {
        "id": "stale-candidate-alert",
        "name": "Inactive candidate alert",
        "description": "Notify the recruiter when a candidate has had no activity for 7 days",
        "category": "follow_up",
        "trigger": {"type": "no_activity", "daysElapsed": 7},
        "actions": [
            {"type": "send_notification", "notificationMessage": "{{fullName}} has had no activity for 7 days"},
            {"type": "add_tag", "tagName": "Follow-up Required"},
        ],
        "requiredFields": [],
    },
    {
        "id": "high-score-priority",
        "name": "High priority candidate",
        "description": "Flag candidates whose overall score reaches 4.5",
        "category": "engagement",
        "trigger": {"type": "score_threshold", "minScore": 4.5},
        "actions": [
            {"type": "add_tag", "tagName": "High Priority"},
            {"type": "send_notification", "notificationMessage": "Outstanding candidate: {{fullName}} (score {{score}})"},
        ],
        "requiredFields": [],
    },
    {
        "id": "sla-warning",
        "name": "SLA warning",
        "description": "Escalate candidates that stay too long in the same stage",
        "category": "follow_up",
        "trigger": {"type": "days_in_stage", "daysInStage": 7},
        "actions": [
            {
                "type": "send_notification",
                "notificationMessage": "SLA alert: {{fullName}} has been in {{stage}} for {{daysInStage}} days",
            },
            {
                "type": "create_task",
                "taskTitle": "Urgent review of {{fullName}}",
                "taskPriority": "high",
                "taskDueInDays": 1,
            },
        ],
        "requiredFields": [],
    },
]


def list_templates(category: str = "") -> list[dict[str, Any]]:
    items = [t for t in DEFAULT_WORKFLOW_TEMPLATES if not category or t["category"] == category]
    return copy.deepcopy(items)


def get_template(template_id: str) -> dict[str, Any] | None:
    for t in DEFAULT_WORKFLOW_TEMPLATES:
        if t["id"] == template_id:
            return copy.deepcopy(t)
    return None
