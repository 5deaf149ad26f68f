"""
Upload intake: registers a meeting for every newly stored recording.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from meeting_pipeline.events import MeetingReadyForTranscription, ObjectCreated
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.schemas import MeetingStatus
from meeting_pipeline.stages.base import PROCESSED, Stage
from meeting_pipeline.utils import utcnow

logger = get_logger(__name__)

TRANSCRIPTION_PREFIX = "transcriptions/"


def meeting_id_from_key(container: str, key: str) -> str:
    """
    Derive a meeting id from a storage key.

    meetings/<id>/<file> yields <id>; any other key yields a UUID derived from
    the object location, so duplicate notifications map to the same meeting.
    """
    parts = key.split("/")
    if parts[0] == "meetings" and len(parts) > 2 and parts[1]:
        return parts[1]
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"store://{container}/{key}"))


def _parse_timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        except ValueError:
            logger.warning("upload_timestamp_unparseable", value=value)
    return utcnow()


class UploadStage(Stage):
    """Object Created -> MeetingRecord(uploaded) -> Meeting Ready for Transcription."""

    NAME = "upload"

    async def handle(self, event: ObjectCreated):
        detail = event.detail
        if detail.key.startswith(TRANSCRIPTION_PREFIX):
            return self.skip(None, "Transcription artifact, not a recording", key=detail.key)

        metadata = await self.ctx.object_store.get_metadata(detail.container, detail.key)
        tags = metadata.custom_tags

        meeting_id = tags.get("meeting-id") or meeting_id_from_key(detail.container, detail.key)
        file_name = tags.get("original-name") or detail.key.split("/")[-1]

        record, created = await self.ctx.store.create({
            "meeting_id": meeting_id,
            "file_name": file_name,
            "storage_key": detail.key,
            "storage_container": detail.container,
            "file_size": metadata.size if metadata.size is not None else detail.size,
            "content_type": metadata.content_type,
            "upload_timestamp": _parse_timestamp(tags.get("upload-timestamp")),
        })
        # A duplicate still in 'uploaded' may have crashed before publishing
        if not created and record.status != MeetingStatus.UPLOADED.value:
            return self.skip(meeting_id, "Meeting already registered", status=record.status)

        await self.ctx.bus.publish(MeetingReadyForTranscription(detail={
            "meeting_id": meeting_id,
            "container": record.storage_container,
            "key": record.storage_key,
            "file_name": record.file_name,
        }))
        logger.info("meeting_upload_registered", meeting_id=meeting_id, file_name=record.file_name, created=created)
        return self.result(PROCESSED, meeting_id, "Meeting registered", fileName=record.file_name, created=created)
