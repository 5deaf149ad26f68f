"""
Meeting state machine over the meeting record store.

Every transition is a single conditional UPDATE keyed on the stored status,
so a duplicate or re-ordered event loses the compare-and-set and surfaces as
PreconditionFailed instead of double-applying its effects.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from meeting_pipeline.db import get_db_session
from meeting_pipeline.exceptions import InvalidTransition, NotFound, PreconditionFailed
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.models import MeetingRecord
from meeting_pipeline.schemas import (
    MeetingStatus,
    StageStatus,
    STATUS_ORDER,
    SUB_STATUS_FIELDS,
    SUB_STATUS_RANK,
    SyncHalfStatus,
)
from meeting_pipeline.utils import utcnow

logger = get_logger(__name__)

WRITE_ONCE_FIELDS = (
    "transcription_job_id", "full_transcript", "speaker_transcript", "extracted_tasks", "jira_plan",
)
UPLOAD_FIELDS = (
    "meeting_id", "file_name", "storage_key", "storage_container",
    "file_size", "content_type", "upload_timestamp",
)
SYNC_DONE = (SyncHalfStatus.COMPLETED.value, SyncHalfStatus.NOT_REQUIRED.value)

StatusSpec = Union[str, MeetingStatus, Iterable[Union[str, MeetingStatus]]]


def _status_value(status: Union[str, MeetingStatus]) -> str:
    return status.value if isinstance(status, MeetingStatus) else status


def _as_status_set(expected: StatusSpec) -> set:
    if isinstance(expected, (str, MeetingStatus)):
        return {_status_value(expected)}
    return {_status_value(s) for s in expected}


def _normalize(updates: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if hasattr(v, "value") else v) for k, v in updates.items()}


class MeetingStore:
    """Record store and state machine for meetings."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, fields: Dict[str, Any]) -> Tuple[MeetingRecord, bool]:
        """
        Insert a new meeting in status 'uploaded'.

        Args:
            fields: Upload facts; keys from UPLOAD_FIELDS

        Returns:
            (record, created). A duplicate upload returns the stored record untouched.
        """
        unknown = set(fields) - set(UPLOAD_FIELDS)
        if unknown:
            raise ValueError(f"Not upload fields: {sorted(unknown)}")

        meeting_id = fields["meeting_id"]
        now = utcnow()
        try:
            async with get_db_session(self._session_factory) as session:
                existing = await session.get(MeetingRecord, meeting_id)
                if existing is not None:
                    logger.info("meeting_already_registered", meeting_id=meeting_id, status=existing.status)
                    return existing, False
                record = MeetingRecord(
                    **fields,
                    status=MeetingStatus.UPLOADED.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
        except IntegrityError:
            # Lost an insert race with a duplicate delivery
            return await self.get(meeting_id), False

        logger.info("meeting_registered", meeting_id=meeting_id, file_name=fields.get("file_name"))
        return record, True

    async def get(self, meeting_id: str) -> MeetingRecord:
        """
        Fetch a meeting.

        Raises:
            NotFound: If no record exists
        """
        async with get_db_session(self._session_factory) as session:
            record = await session.get(MeetingRecord, meeting_id)
            if record is None:
                raise NotFound(meeting_id)
            return record

    async def find_by_job_id(self, job_id: str) -> Optional[MeetingRecord]:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(MeetingRecord).where(MeetingRecord.transcription_job_id == job_id)
            )
            return result.scalar_one_or_none()

    async def list(self, limit: int = 50, status: Optional[str] = None) -> List[MeetingRecord]:
        async with get_db_session(self._session_factory) as session:
            query = select(MeetingRecord).order_by(MeetingRecord.created_at.desc()).limit(limit)
            if status:
                query = query.where(MeetingRecord.status == status)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def advance(
        self,
        meeting_id: str,
        expected_prior_status: StatusSpec,
        field_updates: Dict[str, Any],
    ) -> MeetingRecord:
        """
        Apply a stage transition if the stored status matches.

        Args:
            meeting_id: Meeting to update
            expected_prior_status: Status (or statuses) the record must currently have
            field_updates: Column values to merge; may include a new 'status'

        Returns:
            The updated record

        Raises:
            NotFound: If the meeting does not exist
            PreconditionFailed: If the stored status differs, a concurrent writer won,
                or a write-once field is already populated
            InvalidTransition: If the update would move a status backwards
        """
        expected = _as_status_set(expected_prior_status)
        updates = _normalize(field_updates)
        self._check_status_direction(meeting_id, expected, updates)

        async with get_db_session(self._session_factory) as session:
            current = await session.get(MeetingRecord, meeting_id)
            if current is None:
                raise NotFound(meeting_id)
            if current.status not in expected:
                raise PreconditionFailed(meeting_id, sorted(expected), current.status)
            self._check_sub_statuses(current, updates)

            stmt = update(MeetingRecord).where(
                MeetingRecord.meeting_id == meeting_id,
                MeetingRecord.status == current.status,
            )
            for field in WRITE_ONCE_FIELDS:
                if field in updates:
                    stmt = stmt.where(getattr(MeetingRecord, field).is_(None))

            result = await session.execute(
                stmt.values(**updates, updated_at=utcnow()).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise PreconditionFailed(
                    meeting_id,
                    sorted(expected),
                    current.status,
                    message=f"Meeting {meeting_id} changed concurrently or write-once data already present",
                )
            record = await session.get(MeetingRecord, meeting_id, populate_existing=True)

        logger.debug(
            "meeting_advanced",
            meeting_id=meeting_id,
            from_status=current.status,
            to_status=record.status,
            fields=sorted(updates),
        )
        return record

    async def update_fields(self, meeting_id: str, field_updates: Dict[str, Any]) -> MeetingRecord:
        """
        Write stage sub-fields without touching 'status'.

        Sub-status columns are compare-and-set against the values read, so a
        concurrent regression attempt fails with PreconditionFailed.
        """
        updates = _normalize(field_updates)
        if "status" in updates:
            raise ValueError("update_fields cannot change status; use advance()")

        async with get_db_session(self._session_factory) as session:
            current = await session.get(MeetingRecord, meeting_id)
            if current is None:
                raise NotFound(meeting_id)
            self._check_sub_statuses(current, updates)

            stmt = update(MeetingRecord).where(MeetingRecord.meeting_id == meeting_id)
            for field in SUB_STATUS_FIELDS:
                if field in updates:
                    stmt = stmt.where(getattr(MeetingRecord, field) == getattr(current, field))

            result = await session.execute(
                stmt.values(**updates, updated_at=utcnow()).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise PreconditionFailed(
                    meeting_id,
                    message=f"Meeting {meeting_id} sub-status changed concurrently",
                )
            return await session.get(MeetingRecord, meeting_id, populate_existing=True)

    async def mark_failed(self, meeting_id: str, reason: str, **field_updates: Any) -> Optional[MeetingRecord]:
        """
        Move a meeting to 'failed' from any non-terminal state.

        Idempotent: repeated calls overwrite errorMessage. A completed meeting is
        left untouched and None is returned.
        """
        updates = _normalize(field_updates)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                update(MeetingRecord)
                .where(
                    MeetingRecord.meeting_id == meeting_id,
                    MeetingRecord.status != MeetingStatus.COMPLETED.value,
                )
                .values(
                    **updates,
                    status=MeetingStatus.FAILED.value,
                    error_message=reason,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if await session.get(MeetingRecord, meeting_id) is None:
                    raise NotFound(meeting_id)
                logger.warning("mark_failed_ignored_for_completed_meeting", meeting_id=meeting_id, reason=reason)
                return None
            record = await session.get(MeetingRecord, meeting_id, populate_existing=True)

        logger.error("meeting_failed", meeting_id=meeting_id, reason=reason)
        return record

    async def complete_sync(self, meeting_id: str) -> bool:
        """
        Finish the meeting once both halves of the tracker sync are done.

        Returns:
            True if this call moved the meeting to 'completed'
        """
        now = utcnow()
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                update(MeetingRecord)
                .where(
                    MeetingRecord.meeting_id == meeting_id,
                    MeetingRecord.status == MeetingStatus.SYNCING.value,
                    MeetingRecord.jira_creation_status.in_(SYNC_DONE),
                    MeetingRecord.jira_update_status.in_(SYNC_DONE),
                )
                .values(
                    status=MeetingStatus.COMPLETED.value,
                    jira_processing_status=StageStatus.COMPLETED.value,
                    jira_processing_timestamp=now,
                    jira_processing_error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            completed = result.rowcount > 0

        if completed:
            logger.info("meeting_completed", meeting_id=meeting_id)
        return completed

    async def reset_extraction(self, meeting_id: str) -> MeetingRecord:
        """
        Explicitly clear extracted tasks so extraction can run again.

        Administrative operation; no stage calls it. Returns the meeting to
        'transcribed' and resets the task generation and tracker fields.
        """
        resettable = (
            MeetingStatus.EXTRACTING.value,
            MeetingStatus.EXTRACTED.value,
            MeetingStatus.FAILED.value,
        )
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                update(MeetingRecord)
                .where(
                    MeetingRecord.meeting_id == meeting_id,
                    MeetingRecord.status.in_(resettable),
                    MeetingRecord.full_transcript.is_not(None),
                )
                .values(
                    status=MeetingStatus.TRANSCRIBED.value,
                    extracted_tasks=None,
                    meeting_summary=None,
                    meeting_type=None,
                    extraction_method=None,
                    task_generation_status=StageStatus.PENDING.value,
                    task_generation_timestamp=None,
                    task_generation_error=None,
                    jira_processing_status=StageStatus.PENDING.value,
                    jira_creation_status=SyncHalfStatus.PENDING.value,
                    jira_update_status=SyncHalfStatus.PENDING.value,
                    jira_plan=None,
                    retry_after=None,
                    error_message=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await session.get(MeetingRecord, meeting_id)
                if current is None:
                    raise NotFound(meeting_id)
                raise PreconditionFailed(meeting_id, sorted(resettable), current.status)
            record = await session.get(MeetingRecord, meeting_id, populate_existing=True)

        logger.warning("meeting_extraction_reset", meeting_id=meeting_id)
        return record

    @staticmethod
    def _check_status_direction(meeting_id: str, expected: set, updates: Dict[str, Any]) -> None:
        new_status = updates.get("status")
        if new_status is None or new_status == MeetingStatus.FAILED.value:
            return
        if new_status not in STATUS_ORDER:
            raise ValueError(f"Unknown meeting status: {new_status}")
        for prior in expected:
            if prior == MeetingStatus.FAILED.value or STATUS_ORDER.index(new_status) < STATUS_ORDER.index(prior):
                raise InvalidTransition(
                    meeting_id, prior, prior,
                    message=f"Meeting {meeting_id} cannot move from '{prior}' to '{new_status}'",
                )

    @staticmethod
    def _check_sub_statuses(current: MeetingRecord, updates: Dict[str, Any]) -> None:
        for field in SUB_STATUS_FIELDS:
            if field not in updates:
                continue
            old, new = getattr(current, field), updates[field]
            if SUB_STATUS_RANK[new] < SUB_STATUS_RANK[old]:
                raise InvalidTransition(
                    current.meeting_id, old, old,
                    message=f"Meeting {current.meeting_id}: {field} cannot move from '{old}' to '{new}'",
                )
