"""
Issue-tracker sync: apply the reconciliation plan to Jira.

The plan arrives as two independent events, one per half. Each half writes
only its own columns and finishes by marking itself completed, even when
individual items failed; the meeting completes once both halves are done.
"""
from typing import List, Optional

from meeting_pipeline.assignees import AssigneeResolver
from meeting_pipeline.events import TasksReadyForCreation, TasksReadyForUpdate
from meeting_pipeline.exceptions import ConfigurationError, PreconditionFailed, ProviderError, ProviderThrottled
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.monitoring import tracker_operations_total
from meeting_pipeline.retry import JIRA_PROCESSING
from meeting_pipeline.schemas import (
    IssueUpdate,
    MeetingStatus,
    SyncError,
    SyncHalfStatus,
    Task,
    TicketRef,
    Transition,
    UpdateResult,
)
from meeting_pipeline.stages.base import DEFERRED, PROCESSED, Stage

logger = get_logger(__name__)


def find_transition(transitions: List[Transition], desired_status: str) -> Optional[Transition]:
    """Transition whose name or target status matches, case-insensitively."""
    wanted = desired_status.casefold()
    for transition in transitions:
        if transition.name.casefold() == wanted:
            return transition
    for transition in transitions:
        if transition.to_status and transition.to_status.casefold() == wanted:
            return transition
    return None


class SyncHalfStage(Stage):
    """Claim/resume/finish logic shared by the create and update halves."""

    FAILURE_PREFIX = JIRA_PROCESSING
    HALF_FIELD = ""
    RESULTS_FIELD = ""
    ERRORS_FIELD = ""

    def __init__(self, ctx):
        super().__init__(ctx)
        self.results: List[dict] = []
        self.errors: List[dict] = []

    async def claim(self, event) -> Optional[dict]:
        """
        Load and claim the meeting for this half.

        A half left in 'processing' is resumed by its own throttle re-delivery
        or by a re-delivery after an unacked lease, never by a fresh duplicate.

        Returns:
            A response body when the event must not be processed, else None
        """
        meeting_id = event.meeting_id
        store = self.ctx.store
        coordinator = self.ctx.coordinator

        record = await store.get(meeting_id)
        if record.status != MeetingStatus.SYNCING.value:
            return self.skip(meeting_id, f"Meeting is '{record.status}'")

        half_status = getattr(record, self.HALF_FIELD)
        if half_status == SyncHalfStatus.COMPLETED.value:
            # Finished before a crash could complete the meeting
            completed = await store.complete_sync(meeting_id)
            return self.skip(meeting_id, f"{self.HALF_FIELD} is '{half_status}'", meetingCompleted=completed)

        resuming = half_status == SyncHalfStatus.PROCESSING.value and (
            event.detail.retry_attempt > 0 or event.deliveries > 1
        )
        if half_status != SyncHalfStatus.PENDING.value and not resuming:
            return self.skip(meeting_id, f"{self.HALF_FIELD} is '{half_status}'")
        if self.ctx.jira is None:
            raise ConfigurationError("Jira credentials are not configured")

        remaining = coordinator.remaining_cooldown(record, JIRA_PROCESSING)
        if remaining > 0:
            if resuming and event.detail.retry_attempt == 0:
                # The requeued copy is a fresh message and must still be allowed to resume
                event = event.redelivery(1)
            await coordinator.requeue_for_cooldown(event, JIRA_PROCESSING, remaining)
            return self.result(DEFERRED, meeting_id, "Still in throttling cooldown", remainingSeconds=remaining)

        if not resuming:
            try:
                await store.update_fields(meeting_id, {self.HALF_FIELD: SyncHalfStatus.PROCESSING})
            except PreconditionFailed as e:
                return self.skip(meeting_id, f"Sync claimed concurrently: {e}")

        self.results = list(getattr(record, self.RESULTS_FIELD) or [])
        self.errors = list(getattr(record, self.ERRORS_FIELD) or [])
        return None

    async def save_progress(self, meeting_id: str, **extra) -> None:
        await self.ctx.store.update_fields(meeting_id, {
            self.RESULTS_FIELD: self.results,
            self.ERRORS_FIELD: self.errors,
            **extra,
        })

    async def defer(self, event, error: ProviderThrottled) -> dict:
        await self.save_progress(event.meeting_id)
        await self.ctx.coordinator.defer(event, JIRA_PROCESSING, error)
        return self.result(
            DEFERRED, event.meeting_id, "Jira throttled, re-queued",
            retryAttempt=event.detail.retry_attempt + 1,
        )

    async def finish(self, meeting_id: str) -> bool:
        await self.save_progress(meeting_id, **{self.HALF_FIELD: SyncHalfStatus.COMPLETED})
        return await self.ctx.store.complete_sync(meeting_id)

    def record_error(self, index: int, item: str, action: str, error: Exception) -> None:
        self.errors.append(SyncError(task=item, action=action, error=str(error), item_index=index).to_json_dict())
        tracker_operations_total.labels(operation=action, status="error").inc()
        logger.warning("jira_operation_failed", item=item, action=action, error=str(error))


class JiraCreateStage(SyncHalfStage):
    """Tasks Ready for Creation: create one issue per task."""

    NAME = "jira_create"
    HALF_FIELD = "jira_creation_status"
    RESULTS_FIELD = "jira_tickets"
    ERRORS_FIELD = "jira_creation_errors"

    async def handle(self, event: TasksReadyForCreation):
        response = await self.claim(event)
        if response is not None:
            return response

        meeting_id = event.meeting_id
        jira = self.ctx.jira
        coordinator = self.ctx.coordinator
        retry_attempt = event.detail.retry_attempt
        settings = self.ctx.settings

        # Same-titled tasks are distinct items, so progress is tracked by position
        handled = {ticket.get("itemIndex") for ticket in self.results} | {error.get("itemIndex") for error in self.errors}
        resolver: Optional[AssigneeResolver] = None
        created_this_run = 0

        for index, task in enumerate(event.detail.tasks):
            if index in handled:
                continue
            if created_this_run:
                await coordinator.pause(settings.jira_create_pacing_seconds)

            try:
                if task.is_assigned and not task.assignee_id:
                    if resolver is None:
                        members = await coordinator.run(jira.list_assignable_members, retry_attempt, "list_assignable_members")
                        resolver = AssigneeResolver(members, llm=self.ctx.llm, coordinator=coordinator)
                    task = await resolver.resolve_task(task)
                ticket = await self._create(index, task, meeting_id, retry_attempt)
            except ProviderThrottled as e:
                return await self.defer(event, e)
            except ProviderError as e:
                self.record_error(index, task.title, "create", e)
                continue

            self.results.append(ticket.to_json_dict())
            # Persisted per item so a resumed run never creates the issue twice
            await self.save_progress(meeting_id)
            created_this_run += 1

        completed = await self.finish(meeting_id)
        logger.info(
            "jira_creation_finished",
            meeting_id=meeting_id,
            created=len(self.results),
            errors=len(self.errors),
            meeting_completed=completed,
        )
        return self.result(
            PROCESSED, meeting_id, "Jira tickets created",
            summary={"ticketsCreated": len(self.results), "errors": len(self.errors)},
            meetingCompleted=completed,
        )

    async def _create(self, index: int, task: Task, meeting_id: str, retry_attempt: int) -> TicketRef:
        jira = self.ctx.jira
        fields = jira.build_issue_fields(task, meeting_id)
        issue_key = await self.ctx.coordinator.run(
            lambda: jira.create_issue(fields), retry_attempt, "create_issue"
        )
        tracker_operations_total.labels(operation="create", status="success").inc()
        return TicketRef(
            issue_key=issue_key, issue_url=jira.issue_url(issue_key), task_title=task.title, item_index=index
        )


class JiraUpdateStage(SyncHalfStage):
    """Tasks Ready for Update: reassign, transition and comment on existing issues."""

    NAME = "jira_update"
    HALF_FIELD = "jira_update_status"
    RESULTS_FIELD = "jira_updates"
    ERRORS_FIELD = "jira_update_errors"

    async def handle(self, event: TasksReadyForUpdate):
        response = await self.claim(event)
        if response is not None:
            return response

        meeting_id = event.meeting_id
        handled = {update.get("itemIndex") for update in self.results}

        for index, update in enumerate(event.detail.updates):
            if index in handled:
                continue
            # An update cut short by throttling is re-applied whole; its earlier errors go with it
            self.errors = [error for error in self.errors if error.get("itemIndex") != index]
            try:
                operations = await self._apply(index, update, event.detail.retry_attempt)
            except ProviderThrottled as e:
                return await self.defer(event, e)

            self.results.append(UpdateResult(
                issue_key=update.issue_key,
                issue_url=self.ctx.jira.issue_url(update.issue_key),
                task_title=update.task_title,
                item_index=index,
                operations=operations,
            ).to_json_dict())
            await self.save_progress(meeting_id)

        completed = await self.finish(meeting_id)
        logger.info(
            "jira_update_finished",
            meeting_id=meeting_id,
            updated=len(self.results),
            errors=len(self.errors),
            meeting_completed=completed,
        )
        return self.result(
            PROCESSED, meeting_id, "Jira tickets updated",
            summary={"tasksUpdated": len(self.results), "errors": len(self.errors)},
            meetingCompleted=completed,
        )

    async def _apply(self, index: int, update: IssueUpdate, retry_attempt: int) -> List[str]:
        """
        Apply one update's operations independently of each other.

        Returns:
            Names of the operations that succeeded; empty is a legal no-op
        """
        jira = self.ctx.jira
        run = self.ctx.coordinator.run
        key = update.issue_key
        operations: List[str] = []

        if update.assignee_id:
            try:
                await run(
                    lambda: jira.update_issue(key, {"assignee": {"accountId": update.assignee_id}}),
                    retry_attempt, "assign_issue",
                )
                operations.append("assign")
                tracker_operations_total.labels(operation="assign", status="success").inc()
            except ProviderThrottled:
                raise
            except ProviderError as e:
                self.record_error(index, key, "assign", e)

        if update.status:
            try:
                transitions = await run(lambda: jira.list_transitions(key), retry_attempt, "list_transitions")
                transition = find_transition(transitions, update.status)
                if transition is None:
                    logger.info("jira_transition_unavailable", issue_key=key, desired_status=update.status)
                else:
                    await run(lambda: jira.apply_transition(key, transition.id), retry_attempt, "apply_transition")
                    operations.append(f"transition:{transition.name}")
                    tracker_operations_total.labels(operation="transition", status="success").inc()
            except ProviderThrottled:
                raise
            except ProviderError as e:
                self.record_error(index, key, "transition", e)

        if update.comment:
            try:
                await run(lambda: jira.add_comment(key, update.comment), retry_attempt, "add_comment")
                operations.append("comment")
                tracker_operations_total.labels(operation="comment", status="success").inc()
            except ProviderThrottled:
                raise
            except ProviderError as e:
                self.record_error(index, key, "comment", e)

        return operations
