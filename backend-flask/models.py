from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, UniqueConstraint

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    at = Column(Text, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")


class Candidate(Base):
    __tablename__ = "candidates"

    candidateId = Column(String, primary_key=True)
    firstName = Column(Text, nullable=False, default="")
    lastName = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    phone = Column(String, nullable=False, default="")
    source = Column(String, nullable=False, default="", index=True)
    experienceLevel = Column(String, nullable=False, default="")
    appliedPosition = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="new", index=True)
    # List/dict valued fields kept as JSON text.
    tagsJson = Column(Text, nullable=False, default="[]")
    currentProcessesJson = Column(Text, nullable=False, default="[]")
    processIdsJson = Column(Text, nullable=False, default="[]")
    quickScoresJson = Column(Text, nullable=False, default="[]")
    customFieldsJson = Column(Text, nullable=False, default="{}")
    assignedTo = Column(String, nullable=False, default="", index=True)
    gdprConsent = Column(Boolean, nullable=False, default=False)
    marketingConsent = Column(Boolean, nullable=False, default=False)
    consentUpdatedAt = Column(Text, nullable=False, default="")
    isArchived = Column(Boolean, nullable=False, default=False, index=True)
    isDeleted = Column(Boolean, nullable=False, default=False, index=True)
    deletedAt = Column(Text, nullable=False, default="")
    lastActivityAt = Column(Text, nullable=False, default="", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="", index=True)
    updatedBy = Column(String, nullable=False, default="")


class CandidateActivity(Base):
    __tablename__ = "candidate_activity"

    activityId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    type = Column(String, nullable=False, default="", index=True)
    description = Column(Text, nullable=False, default="")
    payloadJson = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorName = Column(Text, nullable=False, default="")


class CandidateNote(Base):
    __tablename__ = "candidate_notes"

    noteId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    content = Column(Text, nullable=False, default="")
    isPrivate = Column(Boolean, nullable=False, default=False)
    authorId = Column(String, nullable=False, default="")
    authorName = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)


class Interview(Base):
    __tablename__ = "interviews"

    interviewId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    type = Column(String, nullable=False, default="")
    scheduledAt = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="scheduled", index=True)
    feedback = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Process(Base):
    __tablename__ = "processes"

    processId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    stagesJson = Column(Text, nullable=False, default="[]")
    isDeleted = Column(Boolean, nullable=False, default=False, index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Workflow(Base):
    __tablename__ = "workflows"

    workflowId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    triggerType = Column(String, nullable=False, default="", index=True)
    triggerJson = Column(Text, nullable=False, default="{}")
    actionsJson = Column(Text, nullable=False, default="[]")
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    priority = Column(Integer, nullable=False, default=0)
    executionCount = Column(Integer, nullable=False, default=0)
    successCount = Column(Integer, nullable=False, default=0)
    failureCount = Column(Integer, nullable=False, default=0)
    lastExecutedAt = Column(Text, nullable=False, default="")
    maxExecutionsPerDay = Column(Integer, nullable=True)
    maxExecutionsPerCandidate = Column(Integer, nullable=True)
    testMode = Column(Boolean, nullable=False, default=False)
    createdBy = Column(String, nullable=False, default="")
    createdByName = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    executionId = Column(String, primary_key=True)
    workflowId = Column(String, nullable=False, default="", index=True)
    workflowName = Column(Text, nullable=False, default="")
    candidateId = Column(String, nullable=False, default="", index=True)
    candidateName = Column(Text, nullable=False, default="")
    triggerType = Column(String, nullable=False, default="")
    eventJson = Column(Text, nullable=False, default="{}")
    status = Column(String, nullable=False, default="running", index=True)
    resultsJson = Column(Text, nullable=False, default="[]")
    error = Column(Text, nullable=False, default="")
    executedBy = Column(String, nullable=False, default="system")
    startedAt = Column(Text, nullable=False, default="", index=True)
    completedAt = Column(Text, nullable=False, default="")
    durationMs = Column(Float, nullable=False, default=0.0)


class WorkflowCandidateCounter(Base):
    __tablename__ = "workflow_candidate_counters"
    __table_args__ = (UniqueConstraint("workflowId", "candidateId", name="uq_wf_candidate_counter"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflowId = Column(String, nullable=False, index=True)
    candidateId = Column(String, nullable=False, index=True)
    count = Column(Integer, nullable=False, default=0)


class WorkflowDailyCounter(Base):
    __tablename__ = "workflow_daily_counters"
    __table_args__ = (UniqueConstraint("workflowId", "day", name="uq_wf_daily_counter"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflowId = Column(String, nullable=False, index=True)
    day = Column(String, nullable=False)  # YYYY-MM-DD (UTC)
    count = Column(Integer, nullable=False, default=0)


class ScheduledWorkflowAction(Base):
    __tablename__ = "workflow_scheduled_actions"

    scheduledId = Column(String, primary_key=True)
    workflowId = Column(String, nullable=False, default="", index=True)
    executionId = Column(String, nullable=False, default="", index=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    actionIndex = Column(Integer, nullable=False, default=0)
    actionJson = Column(Text, nullable=False, default="{}")
    dueAt = Column(Text, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="PENDING", index=True)  # PENDING|DONE|FAILED|CANCELLED
    lastError = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")


class Task(Base):
    __tablename__ = "tasks"

    taskId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    candidateName = Column(Text, nullable=False, default="")
    workflowId = Column(String, nullable=False, default="", index=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default="custom")
    assignedTo = Column(String, nullable=False, default="", index=True)
    assignedToName = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)
    priority = Column(String, nullable=False, default="medium")
    dueDate = Column(Text, nullable=False, default="", index=True)
    completedAt = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Notification(Base):
    __tablename__ = "notifications"

    notificationId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, default="", index=True)
    type = Column(String, nullable=False, default="", index=True)
    title = Column(Text, nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    candidateId = Column(String, nullable=False, default="", index=True)
    candidateName = Column(Text, nullable=False, default="")
    commentId = Column(String, nullable=False, default="")
    link = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="{}")
    isRead = Column(Boolean, nullable=False, default=False, index=True)
    readAt = Column(Text, nullable=False, default="")
    isArchived = Column(Boolean, nullable=False, default=False)
    createdAt = Column(Text, nullable=False, default="", index=True)


class Comment(Base):
    __tablename__ = "comments"

    commentId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    parentCommentId = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    authorId = Column(String, nullable=False, default="", index=True)
    authorName = Column(Text, nullable=False, default="")
    authorEmail = Column(String, nullable=False, default="")
    mentionsJson = Column(Text, nullable=False, default="[]")
    isEdited = Column(Boolean, nullable=False, default=False)
    editedAt = Column(Text, nullable=False, default="")
    isDeleted = Column(Boolean, nullable=False, default=False, index=True)
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    templateId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    category = Column(String, nullable=False, default="custom", index=True)
    subject = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    variablesJson = Column(Text, nullable=False, default="[]")
    isActive = Column(Boolean, nullable=False, default=True)
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class EmailLog(Base):
    __tablename__ = "email_log"

    logId = Column(String, primary_key=True)
    templateId = Column(String, nullable=False, default="", index=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    workflowId = Column(String, nullable=False, default="", index=True)
    toEmail = Column(String, nullable=False, default="")
    subject = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="QUEUED", index=True)
    error = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
