"""
Tests for task reconciliation.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from meeting_pipeline.events import TaskExtractionCompleted
from meeting_pipeline.exceptions import ConfigurationError, NoTasksToSync, ProviderRejected, ProviderThrottled
from meeting_pipeline.schemas import Task, TrackerIssue, TrackerMember
from meeting_pipeline.stages import DEFERRED, PROCESSED, SKIPPED, ReconciliationStage
from meeting_pipeline.stages.reconciliation import best_matching_issue, build_update, significant_keywords


MONITORING_ISSUE = TrackerIssue(
    key="CRM-7",
    summary="Monitoring lambda",
    status="In Progress",
    assignee_id="u1",
    assignee_name="Sarah Lin",
)


def extraction_completed(meeting_id="meeting-1", retry_attempt=0):
    return TaskExtractionCompleted(detail={"meeting_id": meeting_id, "retry_attempt": retry_attempt})


@pytest.mark.unit
class TestMatching:
    """Test the keyword matching pass."""

    def test_significant_keywords_drop_short_and_stop_words(self):
        assert significant_keywords("Finish the alerting part of monitoring lambda, 60% done") == {
            "alerting", "monitoring", "lambda",
        }

    def test_same_assignee_and_shared_keyword_matches(self):
        task = Task(title="Finish alerting part of monitoring lambda, 60% done", assignee_id="u1")

        assert best_matching_issue(task, [MONITORING_ISSUE]).key == "CRM-7"

    def test_other_assignee_never_matches(self):
        task = Task(title="Finish alerting part of monitoring lambda", assignee_id="u2")

        assert best_matching_issue(task, [MONITORING_ISSUE]) is None

    def test_unassigned_task_never_matches(self):
        task = Task(title="Finish alerting part of monitoring lambda")

        assert best_matching_issue(task, [MONITORING_ISSUE]) is None

    def test_best_score_wins(self):
        issues = [
            TrackerIssue(key="CRM-1", summary="Lambda cleanup", assignee_id="u1"),
            MONITORING_ISSUE,
        ]
        task = Task(title="Monitoring lambda alerts", assignee_id="u1")

        assert best_matching_issue(task, issues).key == "CRM-7"

    def test_build_update_skips_current_status_and_assignee(self):
        task = Task(title="Monitoring lambda alerts", assignee_id="u1", status="in progress")

        update = build_update(task, MONITORING_ISSUE, "meeting-1")

        assert update.issue_key == "CRM-7"
        assert update.status is None
        assert update.assignee_id is None
        assert update.comment.startswith("Update from meeting meeting-1: Monitoring lambda alerts")

    def test_build_update_transitions_and_reassigns(self):
        task = Task(title="Monitoring lambda alerts", assignee_id="u2", status="done")

        update = build_update(task, MONITORING_ISSUE, "meeting-1")

        assert update.status == "Done"
        assert update.assignee_id == "u2"


@pytest.mark.unit
class TestReconciliationStage:
    """Test the reconciliation stage against the record store."""

    @pytest.fixture
    def sarah(self, mock_jira):
        mock_jira.list_assignable_members.return_value = [TrackerMember(id="u1", display_name="Sarah Lin")]
        mock_jira.search_open_issues.return_value = [MONITORING_ISSUE]
        return mock_jira

    @pytest.mark.asyncio
    async def test_progress_report_updates_existing_issue(self, ctx, sarah, mock_llm, seed_meeting, pending_events, store):
        """Test a progress mention on an open issue becomes an UPDATE, not a CREATE."""
        await seed_meeting(status="extracted", extracted_tasks=[
            {"title": "Finish alerting part of monitoring lambda, 60% done", "assignee": "Sarah"},
        ])
        mock_llm.invoke.return_value = '{"decisions": [{"index": 0, "action": "UPDATE", "issueKey": "CRM-7"}]}'

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["outcome"] == PROCESSED
        assert body["analysis"] == {"ticketsToCreate": 0, "ticketsToUpdate": 1}
        assert await pending_events("Tasks Ready for Creation") == []
        [event] = await pending_events("Tasks Ready for Update")
        assert event.detail["updates"][0]["issueKey"] == "CRM-7"

        record = await store.get("meeting-1")
        assert record.status == "syncing"
        assert record.jira_creation_status == "not_required"
        assert record.jira_update_status == "pending"

    @pytest.mark.asyncio
    async def test_keyword_pass_when_llm_rejects(self, ctx, sarah, mock_llm, seed_meeting, pending_events):
        """Test the keyword pass still finds the update when classification fails."""
        await seed_meeting(status="extracted", extracted_tasks=[
            {"title": "Finish alerting part of monitoring lambda, 60% done", "assignee": "Sarah"},
            {"title": "Book the offsite venue", "assignee": "unassigned"},
        ])
        mock_llm.invoke.side_effect = ProviderRejected("bad request", status_code=400, provider="llm")

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["analysis"] == {"ticketsToCreate": 1, "ticketsToUpdate": 1}
        [create] = await pending_events("Tasks Ready for Creation")
        assert create.detail["tasks"][0]["title"] == "Book the offsite venue"

    @pytest.mark.asyncio
    async def test_no_open_issues_creates_everything(self, ctx, mock_llm, seed_meeting, sample_tasks, pending_events, store):
        await seed_meeting(status="extracted", extracted_tasks=sample_tasks)

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["analysis"] == {"ticketsToCreate": 3, "ticketsToUpdate": 0}
        mock_llm.invoke.assert_not_called()
        [create] = await pending_events("Tasks Ready for Creation")
        assert len(create.detail["tasks"]) == 3
        record = await store.get("meeting-1")
        assert record.jira_update_status == "not_required"

    @pytest.mark.asyncio
    async def test_no_tasks_raises(self, ctx, seed_meeting):
        await seed_meeting(status="extracted", extracted_tasks=[])

        with pytest.raises(NoTasksToSync):
            await ReconciliationStage(ctx).handle(extraction_completed())

    @pytest.mark.asyncio
    async def test_missing_jira_configuration(self, ctx, seed_meeting, sample_tasks):
        await seed_meeting(status="extracted", extracted_tasks=sample_tasks)
        ctx.jira = None

        with pytest.raises(ConfigurationError):
            await ReconciliationStage(ctx).handle(extraction_completed())

    @pytest.mark.asyncio
    async def test_duplicate_event_skipped(self, ctx, mock_jira, seed_meeting, sample_tasks, pending_events):
        """Test a second delivery after both halves took the plan makes no Jira calls."""
        await seed_meeting(
            status="syncing",
            extracted_tasks=sample_tasks,
            jira_processing_status="processing",
            jira_plan={"creates": sample_tasks, "updates": []},
            jira_creation_status="processing",
            jira_update_status="not_required",
        )

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["outcome"] == SKIPPED
        mock_jira.list_assignable_members.assert_not_called()
        assert await pending_events() == []

    @pytest.mark.asyncio
    async def test_crash_before_publish_republishes_stored_plan(
        self, ctx, mock_jira, seed_meeting, sample_tasks, pending_events, store, monkeypatch
    ):
        """Test a worker killed between saving the plan and publishing it does not strand the meeting."""
        await seed_meeting(status="extracted", extracted_tasks=sample_tasks)
        monkeypatch.setattr(ctx.bus, "publish", AsyncMock(side_effect=asyncio.CancelledError()))

        with pytest.raises(asyncio.CancelledError):
            await ReconciliationStage(ctx).handle(extraction_completed())

        record = await store.get("meeting-1")
        assert record.status == "syncing"
        assert record.jira_processing_status == "processing"
        assert record.jira_creation_status == "pending"
        assert len(record.jira_plan["creates"]) == 3
        monkeypatch.undo()

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["outcome"] == PROCESSED
        mock_jira.search_open_issues.assert_awaited_once()
        [create] = await pending_events("Tasks Ready for Creation")
        assert [task["title"] for task in create.detail["tasks"]] == [task["title"] for task in sample_tasks]
        assert await pending_events("Tasks Ready for Update") == []

    @pytest.mark.asyncio
    async def test_crash_before_plan_saved_plans_again(self, ctx, mock_jira, seed_meeting, sample_tasks, pending_events, store):
        """Test a claimed meeting with no stored plan is planned by the next delivery."""
        await seed_meeting(status="syncing", extracted_tasks=sample_tasks, jira_processing_status="processing")

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["outcome"] == PROCESSED
        assert body["analysis"] == {"ticketsToCreate": 3, "ticketsToUpdate": 0}
        mock_jira.search_open_issues.assert_awaited_once()
        assert len(await pending_events("Tasks Ready for Creation")) == 1
        record = await store.get("meeting-1")
        assert record.jira_update_status == "not_required"

    @pytest.mark.asyncio
    async def test_finished_halves_complete_meeting_on_redelivery(self, ctx, seed_meeting, sample_tasks, store):
        await seed_meeting(
            status="syncing",
            extracted_tasks=sample_tasks,
            jira_processing_status="processing",
            jira_plan={"creates": sample_tasks, "updates": []},
            jira_creation_status="completed",
            jira_update_status="not_required",
        )

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["meetingCompleted"] is True
        assert (await store.get("meeting-1")).status == "completed"

    @pytest.mark.asyncio
    async def test_throttle_defers_and_resumes(self, ctx, mock_jira, seed_meeting, sample_tasks, pending_events, store, session_factory):
        """Test exhausted throttling defers once, then the re-delivery resumes the stage."""
        await seed_meeting(status="extracted", extracted_tasks=sample_tasks)
        mock_jira.search_open_issues.side_effect = ProviderThrottled("429", provider="jira")

        body = await ReconciliationStage(ctx).handle(extraction_completed())

        assert body["outcome"] == DEFERRED
        record = await store.get("meeting-1")
        assert record.status == "syncing"
        assert record.jira_processing_status == "throttled"
        assert record.retry_after is not None
        [redelivery] = await pending_events("Task Extraction Completed")
        assert redelivery.detail["retryAttempt"] == 1

        # Cooldown over: the re-delivery picks up where it left off
        await store.update_fields("meeting-1", {"retry_after": None})
        mock_jira.search_open_issues.side_effect = None
        mock_jira.search_open_issues.return_value = []

        body = await ReconciliationStage(ctx).handle(extraction_completed(retry_attempt=1))

        assert body["outcome"] == PROCESSED
        assert len(await pending_events("Tasks Ready for Creation")) == 1
