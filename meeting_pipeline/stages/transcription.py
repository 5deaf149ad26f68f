"""
Transcription stage: submit audio to the speech-to-text provider and persist
the transcript once the job finishes.

Completion is learned either from a provider notification (Transcription Job
State Change) or from self-scheduled, delayed Transcription Status Check
events; whichever arrives first wins the transcribing -> transcribed
compare-and-set and the other becomes a no-op.
"""
import time
from typing import Any, Dict

from meeting_pipeline.events import (
    MeetingReadyForTranscription,
    TranscriptionCompleted,
    TranscriptionJobStateChange,
    TranscriptionStatusCheck,
)
from meeting_pipeline.exceptions import (
    InvalidProviderResponse,
    PreconditionFailed,
    ProviderThrottled,
    ProviderUnavailable,
)
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.models import MeetingRecord
from meeting_pipeline.schemas import MeetingStatus, TranscriptionJob, TranscriptionJobStatus
from meeting_pipeline.stages.base import PROCESSED, Stage
from meeting_pipeline.transcripts import parse_transcript_artifact

logger = get_logger(__name__)

FINISHED_JOB_STATUSES = (TranscriptionJobStatus.COMPLETED, TranscriptionJobStatus.FAILED)


def job_name_for(meeting_id: str) -> str:
    return f"meeting-transcription-{meeting_id}-{int(time.time() * 1000)}"


def output_location_for(meeting_id: str) -> str:
    return f"transcriptions/{meeting_id}/"


class TranscriptionStageBase(Stage):
    NAME = "transcription"

    def failure_fields(self, error: Exception) -> Dict[str, Any]:
        return {"transcription_job_status": TranscriptionJobStatus.FAILED}

    async def schedule_status_check(self, meeting_id: str, job_id: str, check_count: int) -> None:
        await self.ctx.bus.publish(
            TranscriptionStatusCheck(detail={
                "meeting_id": meeting_id,
                "job_id": job_id,
                "check_count": check_count,
            }),
            delay_seconds=self.ctx.settings.transcription_poll_interval,
        )

    async def finish(self, record: MeetingRecord, job: TranscriptionJob) -> Dict[str, Any]:
        """Apply a finished job (COMPLETED or FAILED) to a transcribing meeting."""
        meeting_id = record.meeting_id

        if job.status == TranscriptionJobStatus.FAILED:
            reason = job.failure_reason or "Transcription job failed"
            await self.ctx.store.mark_failed(
                meeting_id, reason, transcription_job_status=TranscriptionJobStatus.FAILED
            )
            return self.result(PROCESSED, meeting_id, "Transcription failed", jobId=job.job_id, reason=reason)

        if not job.transcript_uri:
            raise InvalidProviderResponse(
                f"Completed job {job.job_id} has no transcript location", provider="transcription"
            )

        payload = await self.ctx.object_store.download_uri(job.transcript_uri)
        full_transcript, speaker_transcript = parse_transcript_artifact(payload)

        try:
            await self.ctx.store.advance(meeting_id, MeetingStatus.TRANSCRIBING, {
                "status": MeetingStatus.TRANSCRIBED,
                "transcription_job_status": TranscriptionJobStatus.COMPLETED,
                "full_transcript": full_transcript,
                "speaker_transcript": speaker_transcript,
            })
        except PreconditionFailed as e:
            return self.skip(meeting_id, f"Transcript already recorded: {e}")

        await self.ctx.bus.publish(TranscriptionCompleted(detail={"meeting_id": meeting_id}))
        logger.info(
            "transcription_completed",
            meeting_id=meeting_id,
            job_id=job.job_id,
            transcript_chars=len(full_transcript),
            speaker_labels=speaker_transcript is not None,
        )
        return self.result(
            PROCESSED, meeting_id, "Transcription completed",
            jobId=job.job_id, transcriptionLength=len(full_transcript),
        )


class TranscriptionStartStage(TranscriptionStageBase):
    """
    Meeting Ready for Transcription: uploaded -> transcribing.

    The meeting is claimed before the job is submitted, so a duplicate
    delivery loses the claim instead of paying for a second provider job.
    """

    async def handle(self, event: MeetingReadyForTranscription):
        detail = event.detail
        meeting_id = detail.meeting_id
        settings = self.ctx.settings
        store = self.ctx.store

        record = await store.get(meeting_id)
        if record.status == MeetingStatus.UPLOADED.value:
            try:
                await store.advance(meeting_id, MeetingStatus.UPLOADED, {
                    "status": MeetingStatus.TRANSCRIBING,
                    "transcription_job_status": TranscriptionJobStatus.PENDING,
                })
            except PreconditionFailed as e:
                return self.skip(meeting_id, f"Transcription claimed concurrently: {e}")
        elif record.status == MeetingStatus.TRANSCRIBING.value and event.deliveries > 1:
            # An earlier lease of this event claimed the meeting and never acked
            if record.transcription_job_id:
                await self.schedule_status_check(meeting_id, record.transcription_job_id, check_count=0)
                logger.warning("transcription_checks_resumed", meeting_id=meeting_id, job_id=record.transcription_job_id)
                return self.result(
                    PROCESSED, meeting_id, "Transcription status checks resumed", jobId=record.transcription_job_id
                )
            logger.warning("transcription_submit_resumed", meeting_id=meeting_id, deliveries=event.deliveries)
        else:
            return self.skip(meeting_id, f"Meeting is already '{record.status}'")

        job_name = job_name_for(meeting_id)
        job_id = await self.ctx.transcription.submit(
            job_name=job_name,
            media_uri=self.ctx.object_store.object_uri(detail.container, detail.key),
            file_name=detail.file_name,
            output_location=output_location_for(meeting_id),
            speaker_labels=True,
            max_speakers=settings.transcription_max_speakers,
        )

        try:
            await store.advance(meeting_id, MeetingStatus.TRANSCRIBING, {
                "transcription_job_id": job_id,
                "transcription_job_status": TranscriptionJobStatus.IN_PROGRESS,
            })
        except PreconditionFailed as e:
            logger.warning("transcription_job_orphaned", meeting_id=meeting_id, job_id=job_id)
            return self.skip(meeting_id, f"Another job was recorded first: {e}", jobId=job_id)
        await self.schedule_status_check(meeting_id, job_id, check_count=0)

        logger.info("transcription_started", meeting_id=meeting_id, job_id=job_id, job_name=job_name)
        return self.result(PROCESSED, meeting_id, "Transcription started", jobId=job_id)


class TranscriptionStatusCheckStage(TranscriptionStageBase):
    """Transcription Status Check: poll the job, re-scheduling itself while it runs."""

    async def handle(self, event: TranscriptionStatusCheck):
        detail = event.detail
        meeting_id = detail.meeting_id
        settings = self.ctx.settings

        record = await self.ctx.store.get(meeting_id)
        if record.status != MeetingStatus.TRANSCRIBING.value or record.transcription_job_id != detail.job_id:
            return self.skip(meeting_id, f"Meeting is '{record.status}', no longer waiting on {detail.job_id}")

        next_check = detail.check_count + 1
        try:
            job = await self.ctx.transcription.get_status(detail.job_id)
        except (ProviderThrottled, ProviderUnavailable) as e:
            logger.warning("transcription_status_unavailable", meeting_id=meeting_id, error=str(e))
            job = None

        if job is not None and job.status in FINISHED_JOB_STATUSES:
            return await self.finish(record, job)

        if next_check >= settings.transcription_max_checks:
            reason = f"Transcription job {detail.job_id} did not finish after {next_check} status checks"
            await self.ctx.store.mark_failed(
                meeting_id, reason, transcription_job_status=TranscriptionJobStatus.FAILED
            )
            return self.result(PROCESSED, meeting_id, "Transcription timed out", jobId=detail.job_id)

        await self.schedule_status_check(meeting_id, detail.job_id, next_check)
        return self.result(PROCESSED, meeting_id, "Transcription still running", checkCount=next_check)


class TranscriptionJobStateChangeStage(TranscriptionStageBase):
    """Transcription Job State Change: provider notification for a finished job."""

    async def handle(self, event: TranscriptionJobStateChange):
        detail = event.detail

        record = await self.ctx.store.find_by_job_id(detail.job_id)
        if record is None:
            return self.skip(None, f"No meeting for transcription job {detail.job_id}")
        meeting_id = self.meeting_id = record.meeting_id

        if detail.status not in FINISHED_JOB_STATUSES:
            return self.skip(meeting_id, f"Job is {detail.status.value}")
        if record.status != MeetingStatus.TRANSCRIBING.value:
            return self.skip(meeting_id, f"Meeting is already '{record.status}'")

        if detail.status == TranscriptionJobStatus.FAILED:
            job = TranscriptionJob(
                job_id=detail.job_id, status=detail.status, failure_reason=detail.failure_reason
            )
        else:
            # Notifications carry no transcript location
            job = await self.ctx.transcription.get_status(detail.job_id)
        return await self.finish(record, job)
