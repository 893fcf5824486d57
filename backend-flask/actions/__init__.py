from __future__ import annotations

from actions import candidates, comments, email_templates, gdpr_actions, notifications, pipeline, session_actions, tasks, workflows
from utils import ApiError

HANDLERS = {
    "SESSION_VALIDATE": session_actions.session_validate,
    "GET_ME": session_actions.get_me,
    "CANDIDATE_CREATE": candidates.candidate_create,
    "CANDIDATE_GET": candidates.candidate_get,
    "CANDIDATE_LIST": candidates.candidate_list,
    "CANDIDATE_UPDATE": candidates.candidate_update,
    "CANDIDATE_DELETE": candidates.candidate_delete,
    "CANDIDATE_TAG_ADD": candidates.candidate_tag_add,
    "CANDIDATE_TAG_REMOVE": candidates.candidate_tag_remove,
    "CANDIDATE_NOTE_ADD": candidates.candidate_note_add,
    "CANDIDATE_QUICK_SCORE_ADD": candidates.candidate_quick_score_add,
    "CANDIDATE_INTERVIEW_EVENT": candidates.candidate_interview_event,
    "PROCESS_CREATE": pipeline.process_create,
    "PROCESS_LIST": pipeline.process_list,
    "PROCESS_GET": pipeline.process_get,
    "PROCESS_DELETE": pipeline.process_delete,
    "PROCESS_ADD_CANDIDATES": pipeline.process_add_candidates,
    "CANDIDATE_STAGE_MOVE": pipeline.candidate_stage_move,
    "WORKFLOW_CREATE": workflows.workflow_create,
    "WORKFLOW_LIST": workflows.workflow_list,
    "WORKFLOW_GET": workflows.workflow_get,
    "WORKFLOW_UPDATE": workflows.workflow_update,
    "WORKFLOW_DELETE": workflows.workflow_delete,
    "WORKFLOW_TOGGLE": workflows.workflow_toggle,
    "WORKFLOW_RUN": workflows.workflow_run,
    "WORKFLOW_EXECUTIONS": workflows.workflow_executions,
    "WORKFLOW_STATS": workflows.workflow_stats,
    "WORKFLOW_TEMPLATES": workflows.workflow_templates,
    "WORKFLOW_SCAN": workflows.workflow_scan,
    "WORKFLOW_DISPATCH_DUE": workflows.workflow_dispatch_due,
    "TASK_CREATE": tasks.task_create,
    "TASK_LIST": tasks.task_list,
    "TASK_UPDATE": tasks.task_update,
    "TASK_DELETE": tasks.task_delete,
    "NOTIFICATION_LIST": notifications.notification_list,
    "NOTIFICATION_MARK_READ": notifications.notification_mark_read,
    "NOTIFICATION_MARK_ALL_READ": notifications.notification_mark_all_read,
    "NOTIFICATION_DELETE": notifications.notification_delete,
    "COMMENT_CREATE": comments.comment_create,
    "COMMENT_LIST": comments.comment_list,
    "COMMENT_UPDATE": comments.comment_update,
    "COMMENT_DELETE": comments.comment_delete,
    "EMAIL_TEMPLATE_CREATE": email_templates.email_template_create,
    "EMAIL_TEMPLATE_LIST": email_templates.email_template_list,
    "EMAIL_TEMPLATE_GET": email_templates.email_template_get,
    "EMAIL_TEMPLATE_UPDATE": email_templates.email_template_update,
    "EMAIL_TEMPLATE_DELETE": email_templates.email_template_delete,
    "EMAIL_TEMPLATE_RENDER": email_templates.email_template_render,
    "EMAIL_TEMPLATE_SEND": email_templates.email_template_send,
    "GDPR_EXPORT": gdpr_actions.gdpr_export,
    "GDPR_ERASE": gdpr_actions.gdpr_erase,
    "GDPR_RETENTION": gdpr_actions.gdpr_retention,
    "GDPR_CONSENT_UPDATE": gdpr_actions.gdpr_consent_update,
}


def dispatch(action: str, data, auth, db, cfg):
    handler = HANDLERS.get(str(action or "").upper())
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    return handler(data, auth, db, cfg)
