"""
Task extraction stage: transcript -> action items via the LLM, with a
keyword fallback when the LLM fails for any reason other than throttling.
"""
from datetime import date
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from meeting_pipeline.events import TaskExtractionCompleted, TranscriptionCompleted
from meeting_pipeline.exceptions import (
    InvalidProviderResponse,
    MissingTranscript,
    PreconditionFailed,
    ProviderError,
    ProviderThrottled,
)
from meeting_pipeline.fallback import extract_tasks_by_keywords
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.monitoring import tasks_extracted_total
from meeting_pipeline.prompts import MEETING_TYPES, task_extraction_prompt
from meeting_pipeline.retry import TASK_GENERATION
from meeting_pipeline.schemas import (
    ExtractionResult,
    MeetingStatus,
    StageStatus,
    SyncHalfStatus,
    Task,
)
from meeting_pipeline.stages.base import DEFERRED, PROCESSED, Stage
from meeting_pipeline.utils import extract_json_object, utcnow

logger = get_logger(__name__)

CLAIMABLE_STATUSES = (MeetingStatus.TRANSCRIBED.value, MeetingStatus.EXTRACTING.value)


def parse_extraction_response(text: str) -> ExtractionResult:
    """
    Parse the model's answer into an ExtractionResult.

    Individual malformed tasks are dropped; a missing tasks array is an
    invalid response.
    """
    data = extract_json_object(text)
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise InvalidProviderResponse("LLM response has no tasks array", provider="llm")

    tasks: List[Task] = []
    for raw_task in data["tasks"]:
        try:
            tasks.append(Task.model_validate(raw_task))
        except PydanticValidationError as e:
            logger.warning("extracted_task_dropped", task=raw_task, error=str(e))

    meeting_type = str(data.get("meetingType") or "general").lower()
    return ExtractionResult(
        summary=str(data.get("summary") or ""),
        meeting_type=meeting_type if meeting_type in MEETING_TYPES else "general",
        tasks=tasks,
        method="llm",
    )


class TaskExtractionStage(Stage):
    """Transcription Completed: transcribed -> extracting -> extracted."""

    NAME = "task_extraction"
    FAILURE_PREFIX = TASK_GENERATION

    async def handle(self, event: TranscriptionCompleted):
        meeting_id = event.meeting_id
        store = self.ctx.store
        coordinator = self.ctx.coordinator

        record = await store.get(meeting_id)
        if record.extracted_tasks is not None or record.task_generation_status == StageStatus.COMPLETED.value:
            if record.status == MeetingStatus.EXTRACTED.value and record.extracted_tasks:
                # Persisted before a crash; the reconciliation guard drops duplicates
                await self.ctx.bus.publish(TaskExtractionCompleted(detail={"meeting_id": meeting_id}))
            return self.skip(meeting_id, "Tasks already extracted")
        if record.status not in CLAIMABLE_STATUSES:
            return self.skip(meeting_id, f"Meeting is '{record.status}'")
        if not (record.full_transcript or "").strip():
            raise MissingTranscript(f"No transcript found for meeting: {meeting_id}")

        remaining = coordinator.remaining_cooldown(record, TASK_GENERATION)
        if remaining > 0:
            await coordinator.requeue_for_cooldown(event, TASK_GENERATION, remaining)
            return self.result(DEFERRED, meeting_id, "Still in throttling cooldown", remainingSeconds=remaining)

        claim = {"task_generation_status": StageStatus.PROCESSING, "task_generation_timestamp": utcnow()}
        try:
            if record.status == MeetingStatus.TRANSCRIBED.value:
                await store.advance(meeting_id, MeetingStatus.TRANSCRIBED, {"status": MeetingStatus.EXTRACTING, **claim})
            else:
                await store.update_fields(meeting_id, claim)
        except PreconditionFailed as e:
            return self.skip(meeting_id, f"Extraction claimed concurrently: {e}")

        today = utcnow().date()
        member_names = await self._member_names()
        transcript = record.speaker_transcript or record.full_transcript

        try:
            result = await self._extract_with_llm(transcript, today, member_names, event.detail.retry_attempt)
        except ProviderThrottled as e:
            await coordinator.defer(event, TASK_GENERATION, e)
            return self.result(DEFERRED, meeting_id, "LLM throttled, re-queued", retryAttempt=event.detail.retry_attempt + 1)
        except ProviderError as e:
            logger.warning("llm_extraction_failed_using_fallback", meeting_id=meeting_id, error=str(e))
            result = None

        if result is None:
            result = extract_tasks_by_keywords(record.full_transcript, today, member_names)

        return await self._persist(meeting_id, result)

    async def _member_names(self) -> List[str]:
        """Display names of assignable members; empty when the tracker is unavailable."""
        if self.ctx.jira is None:
            return []
        try:
            members = await self.ctx.jira.list_assignable_members()
        except ProviderError as e:
            logger.warning("member_names_unavailable", error=str(e))
            return []
        return [member.display_name for member in members if member.active and member.display_name]

    async def _extract_with_llm(
        self,
        transcript: str,
        today: date,
        member_names: List[str],
        retry_attempt: int,
    ) -> Optional[ExtractionResult]:
        llm = self.ctx.llm
        if llm is None:
            return None
        settings = self.ctx.settings
        prompt = task_extraction_prompt(transcript, today, member_names)

        async def call() -> ExtractionResult:
            text = await llm.invoke(prompt, settings.llm_max_tokens, settings.llm_temperature)
            return parse_extraction_response(text)

        return await self.ctx.coordinator.run(call, retry_attempt=retry_attempt, operation="extract_tasks")

    async def _persist(self, meeting_id: str, result: ExtractionResult):
        now = utcnow()
        updates = {
            "status": MeetingStatus.EXTRACTED,
            "extracted_tasks": [task.to_json_dict() for task in result.tasks],
            "meeting_summary": result.summary,
            "meeting_type": result.meeting_type,
            "extraction_method": result.method,
            "task_generation_status": StageStatus.COMPLETED,
            "task_generation_timestamp": now,
            "task_generation_error": None,
            "retry_after": None,
        }
        try:
            await self.ctx.store.advance(meeting_id, MeetingStatus.EXTRACTING, updates)
        except PreconditionFailed as e:
            return self.skip(meeting_id, f"Tasks already recorded: {e}")

        tasks_extracted_total.labels(method=result.method).inc(len(result.tasks))
        logger.info(
            "tasks_extracted",
            meeting_id=meeting_id,
            count=len(result.tasks),
            method=result.method,
            meeting_type=result.meeting_type,
        )

        if result.tasks:
            await self.ctx.bus.publish(TaskExtractionCompleted(detail={"meeting_id": meeting_id}))
        else:
            # Nothing to reconcile
            await self.ctx.store.advance(meeting_id, MeetingStatus.EXTRACTED, {
                "status": MeetingStatus.COMPLETED,
                "jira_processing_status": StageStatus.COMPLETED,
                "jira_processing_timestamp": now,
                "jira_creation_status": SyncHalfStatus.NOT_REQUIRED,
                "jira_update_status": SyncHalfStatus.NOT_REQUIRED,
            })

        return self.result(
            PROCESSED, meeting_id, "Task extraction completed",
            tasksExtracted=len(result.tasks),
            meetingType=result.meeting_type,
            extractionMethod=result.method,
        )
