"""
Client for the speech-to-text provider's job API.
"""
from typing import Dict, Optional

from meeting_pipeline.exceptions import InvalidProviderResponse
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.schemas import TranscriptionJob, TranscriptionJobStatus
from meeting_pipeline.services.base import ProviderClient
from meeting_pipeline.utils import async_retry, safe_dict_get

logger = get_logger(__name__)

MEDIA_FORMATS = {
    "mp3": "mp3",
    "mp4": "mp4",
    "m4a": "mp4",
    "wav": "wav",
    "flac": "flac",
    "ogg": "ogg",
    "webm": "webm",
}

# Provider job states onto the record's transcriptionJobStatus vocabulary
JOB_STATUS_MAP = {
    "queued": TranscriptionJobStatus.PENDING,
    "pending": TranscriptionJobStatus.PENDING,
    "processing": TranscriptionJobStatus.IN_PROGRESS,
    "in_progress": TranscriptionJobStatus.IN_PROGRESS,
    "completed": TranscriptionJobStatus.COMPLETED,
    "error": TranscriptionJobStatus.FAILED,
    "failed": TranscriptionJobStatus.FAILED,
}


def media_format(file_name: str) -> str:
    """Media format from the file extension, mp3 when unknown."""
    extension = (file_name or "").lower().rsplit(".", 1)[-1]
    return MEDIA_FORMATS.get(extension, "mp3")


class TranscriptionService(ProviderClient):
    """Submit and poll speech-to-text jobs."""

    PROVIDER = "transcription"

    def __init__(self, base_url: str, api_key: Optional[str] = None, language: str = "en-US", **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.language = language

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Content-Type"] = "application/json"
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def submit(
        self,
        job_name: str,
        media_uri: str,
        file_name: str,
        output_location: str,
        speaker_labels: bool = True,
        max_speakers: int = 10,
    ) -> str:
        """
        Start a transcription job.

        Args:
            job_name: Unique job name
            media_uri: Object URI of the audio
            file_name: Original file name, used to pick the media format
            output_location: Object key prefix for the transcript artifact
            speaker_labels: Request speaker diarization
            max_speakers: Upper bound on distinct speakers

        Returns:
            Provider job id
        """
        payload = {
            "jobName": job_name,
            "mediaUri": media_uri,
            "mediaFormat": media_format(file_name),
            "languageCode": self.language,
            "outputLocation": output_location,
            "settings": {
                "showSpeakerLabels": speaker_labels,
                "maxSpeakerLabels": max_speakers,
            },
        }
        response = await self._request("POST", f"{self.base_url}/jobs", "submit", json=payload)
        data = self._json(response, "submit")

        job_id = (data.get("jobId") or data.get("id")) if isinstance(data, dict) else None
        if not job_id:
            raise InvalidProviderResponse("Transcription submit returned no job id", provider=self.PROVIDER)

        logger.info("transcription_job_submitted", job_id=job_id, job_name=job_name, media_uri=media_uri)
        return job_id

    @async_retry()
    async def get_status(self, job_id: str) -> TranscriptionJob:
        response = await self._request("GET", f"{self.base_url}/jobs/{job_id}", "get_status")
        data = self._json(response, "get_status")

        raw_status = str(safe_dict_get(data, "status", default="")).lower()
        status = JOB_STATUS_MAP.get(raw_status)
        if status is None:
            raise InvalidProviderResponse(
                f"Unknown transcription job status: {raw_status!r}", provider=self.PROVIDER
            )

        return TranscriptionJob(
            job_id=job_id,
            status=status,
            transcript_uri=safe_dict_get(data, "transcriptUri"),
            failure_reason=safe_dict_get(data, "failureReason") or safe_dict_get(data, "error"),
        )
