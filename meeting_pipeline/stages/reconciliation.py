"""
Task reconciliation stage: decide per extracted task whether to create a new
issue or update an existing open one, then hand the plan to the sync halves.
"""
import re
from typing import Dict, List, Optional, Set, Tuple

from meeting_pipeline.assignees import AssigneeResolver
from meeting_pipeline.events import TaskExtractionCompleted, TasksReadyForCreation, TasksReadyForUpdate
from meeting_pipeline.exceptions import (
    ConfigurationError,
    NoTasksToSync,
    PreconditionFailed,
    ProviderError,
    ProviderThrottled,
)
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.prompts import reconciliation_prompt
from meeting_pipeline.retry import JIRA_PROCESSING
from meeting_pipeline.schemas import (
    IssueUpdate,
    MeetingStatus,
    StageStatus,
    SyncHalfStatus,
    Task,
    TrackerIssue,
)
from meeting_pipeline.stages.base import DEFERRED, PROCESSED, Stage
from meeting_pipeline.utils import extract_json_object, utcnow

logger = get_logger(__name__)

CREATE = "CREATE"
UPDATE = "UPDATE"

MIN_KEYWORD_LENGTH = 4
STOPWORDS = {
    "about", "after", "again", "also", "before", "being", "complete", "completed", "done",
    "finish", "finished", "finishing", "from", "have", "into", "make", "need", "needs",
    "part", "progress", "review", "should", "still", "task", "tasks", "that", "their",
    "them", "then", "there", "this", "update", "will", "with", "work", "working",
}

# Task status hint -> tracker status to transition to; "to do" never reopens an issue
TARGET_STATUSES = {"in progress": "In Progress", "done": "Done"}

RESUMABLE_STATUSES = (StageStatus.PROCESSING.value, StageStatus.THROTTLED.value)


def significant_keywords(text: str) -> Set[str]:
    words = re.findall(r"[a-z0-9]+", (text or "").lower())
    return {word for word in words if len(word) >= MIN_KEYWORD_LENGTH and word not in STOPWORDS}


def best_matching_issue(task: Task, issues: List[TrackerIssue]) -> Optional[TrackerIssue]:
    """
    Conservative match: same assignee and at least one shared significant keyword.
    """
    if not task.assignee_id:
        return None
    task_words = significant_keywords(f"{task.title} {task.description}")

    best, best_score = None, 0
    for issue in issues:
        if issue.assignee_id != task.assignee_id:
            continue
        score = len(task_words & significant_keywords(issue.summary))
        if score > best_score:
            best, best_score = issue, score
    return best


def build_update(task: Task, issue: TrackerIssue, meeting_id: str) -> IssueUpdate:
    target = TARGET_STATUSES.get(task.status)
    if target and issue.status and issue.status.casefold() == target.casefold():
        target = None
    assignee_id = task.assignee_id if task.assignee_id and task.assignee_id != issue.assignee_id else None

    comment = f"Update from meeting {meeting_id}: {task.title}"
    if task.description and task.description != task.title:
        comment += f"\n\n{task.description}"

    return IssueUpdate(
        issue_key=issue.key,
        task_title=task.title,
        status=target,
        assignee_id=assignee_id,
        comment=comment,
    )


class ReconciliationStage(Stage):
    """Task Extraction Completed: extracted -> syncing, publishes the create/update plan."""

    NAME = "reconciliation"
    FAILURE_PREFIX = JIRA_PROCESSING

    async def handle(self, event: TaskExtractionCompleted):
        meeting_id = event.meeting_id
        store = self.ctx.store
        coordinator = self.ctx.coordinator
        retry_attempt = event.detail.retry_attempt

        record = await store.get(meeting_id)
        # A syncing meeting still owned by this stage was throttled or interrupted
        resuming = (
            record.status == MeetingStatus.SYNCING.value
            and record.jira_processing_status in RESUMABLE_STATUSES
        )
        if record.status != MeetingStatus.EXTRACTED.value and not resuming:
            return self.skip(meeting_id, f"Meeting is '{record.status}'")
        if resuming and record.jira_plan is not None:
            return await self._publish_plan(record, republish=True)
        if not record.extracted_tasks:
            raise NoTasksToSync(f"No tasks extracted for meeting: {meeting_id}")
        if self.ctx.jira is None:
            raise ConfigurationError("Jira credentials are not configured")

        remaining = coordinator.remaining_cooldown(record, JIRA_PROCESSING)
        if remaining > 0:
            await coordinator.requeue_for_cooldown(event, JIRA_PROCESSING, remaining)
            return self.result(DEFERRED, meeting_id, "Still in throttling cooldown", remainingSeconds=remaining)

        claim = {"jira_processing_status": StageStatus.PROCESSING, "jira_processing_timestamp": utcnow()}
        try:
            if resuming:
                await store.update_fields(meeting_id, claim)
            else:
                await store.advance(meeting_id, MeetingStatus.EXTRACTED, {"status": MeetingStatus.SYNCING, **claim})
        except PreconditionFailed as e:
            return self.skip(meeting_id, f"Reconciliation claimed concurrently: {e}")

        tasks = [Task.model_validate(task) for task in record.extracted_tasks]
        try:
            creates, updates = await self._plan(meeting_id, tasks, retry_attempt)
        except ProviderThrottled as e:
            await coordinator.defer(event, JIRA_PROCESSING, e)
            return self.result(DEFERRED, meeting_id, "Jira throttled, re-queued", retryAttempt=retry_attempt + 1)

        try:
            record = await store.advance(meeting_id, MeetingStatus.SYNCING, {
                "jira_plan": {
                    "creates": [task.to_json_dict() for task in creates],
                    "updates": [update.to_json_dict() for update in updates],
                },
                "jira_creation_status": SyncHalfStatus.PENDING if creates else SyncHalfStatus.NOT_REQUIRED,
                "jira_update_status": SyncHalfStatus.PENDING if updates else SyncHalfStatus.NOT_REQUIRED,
                "retry_after": None,
            })
        except PreconditionFailed as e:
            record = await store.get(meeting_id)
            if record.status != MeetingStatus.SYNCING.value or record.jira_plan is None:
                return self.skip(meeting_id, f"Reconciliation lost its claim: {e}")
            # Another delivery stored its plan first; hand that one on instead
            return await self._publish_plan(record, republish=True)

        logger.info("tasks_reconciled", meeting_id=meeting_id, create=len(creates), update=len(updates))
        return await self._publish_plan(record)

    async def _publish_plan(self, record, republish: bool = False) -> dict:
        """
        Publish the stored plan to every half that has not claimed it yet.

        A half already past 'pending' was delivered; duplicates of a pending
        half lose its claim and are skipped there.
        """
        meeting_id = record.meeting_id
        bus = self.ctx.bus
        creates = record.jira_plan.get("creates") or []
        updates = record.jira_plan.get("updates") or []

        published = []
        if creates and record.jira_creation_status == SyncHalfStatus.PENDING.value:
            await bus.publish(TasksReadyForCreation(detail={"meeting_id": meeting_id, "tasks": creates}))
            published.append(TasksReadyForCreation.DETAIL_TYPE)
        if updates and record.jira_update_status == SyncHalfStatus.PENDING.value:
            await bus.publish(TasksReadyForUpdate(detail={"meeting_id": meeting_id, "updates": updates}))
            published.append(TasksReadyForUpdate.DETAIL_TYPE)
        completed = await self.ctx.store.complete_sync(meeting_id)

        if republish:
            if not published and not completed:
                return self.skip(meeting_id, "Jira task plan already handed to the sync halves")
            logger.warning("jira_plan_republished", meeting_id=meeting_id, events=published, meeting_completed=completed)
        return self.result(
            PROCESSED, meeting_id,
            "Jira task plan re-published" if republish else "Jira task analysis completed",
            analysis={"ticketsToCreate": len(creates), "ticketsToUpdate": len(updates)},
            meetingCompleted=completed,
        )

    async def _plan(self, meeting_id: str, tasks: List[Task], retry_attempt: int) -> Tuple[List[Task], List[IssueUpdate]]:
        jira = self.ctx.jira
        coordinator = self.ctx.coordinator

        members = await coordinator.run(jira.list_assignable_members, retry_attempt, "list_assignable_members")
        issues = await coordinator.run(jira.search_open_issues, retry_attempt, "search_open_issues")

        resolver = AssigneeResolver(members, llm=self.ctx.llm, coordinator=coordinator)
        resolved = [await resolver.resolve_task(task) for task in tasks]

        decisions = await self._classify_with_llm(resolved, issues, retry_attempt)
        issues_by_key = {issue.key: issue for issue in issues}

        creates: List[Task] = []
        updates: List[IssueUpdate] = []
        for index, task in enumerate(resolved):
            action, issue_key = decisions.get(index, (CREATE, None))
            issue = issues_by_key.get(issue_key) if action == UPDATE else None
            if issue is None:
                issue = best_matching_issue(task, issues)
            if issue is not None:
                updates.append(build_update(task, issue, meeting_id))
            else:
                creates.append(task)
        return creates, updates

    async def _classify_with_llm(
        self,
        tasks: List[Task],
        issues: List[TrackerIssue],
        retry_attempt: int,
    ) -> Dict[int, Tuple[str, Optional[str]]]:
        """
        LLM create/update decisions keyed by task index.

        Empty when there are no open issues or the LLM is unavailable; the
        keyword pass then decides alone. Throttling propagates.
        """
        llm = self.ctx.llm
        if llm is None or not issues:
            return {}
        settings = self.ctx.settings
        prompt = reconciliation_prompt(tasks, issues)

        async def call() -> Dict[int, Tuple[str, Optional[str]]]:
            text = await llm.invoke(prompt, settings.llm_max_tokens, settings.llm_temperature)
            data = extract_json_object(text)
            raw_decisions = data.get("decisions") if isinstance(data, dict) else None
            decisions = {}
            for decision in raw_decisions or []:
                if not isinstance(decision, dict):
                    continue
                try:
                    index = int(decision.get("index"))
                except (TypeError, ValueError):
                    continue
                action = str(decision.get("action") or CREATE).upper()
                decisions[index] = (UPDATE if action == UPDATE else CREATE, decision.get("issueKey"))
            return decisions

        try:
            return await self.ctx.coordinator.run(call, retry_attempt, "classify_tasks")
        except ProviderThrottled:
            raise
        except ProviderError as e:
            logger.warning("llm_classification_failed_using_keywords", error=str(e))
            return {}
