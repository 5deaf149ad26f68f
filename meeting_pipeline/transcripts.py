"""
Parsing of speech-to-text transcript artifacts.

The provider writes JSON shaped like
{"results": {"transcripts": [{"transcript": ...}], "items": [...],
 "speaker_labels": {"segments": [...]}}}. Plain-text artifacts are accepted
as-is.
"""
import json
from typing import List, Optional, Tuple

from meeting_pipeline.exceptions import InvalidProviderResponse
from meeting_pipeline.utils import safe_dict_get


def _item_text(item: dict) -> str:
    return safe_dict_get(item, "alternatives", 0, "content", default="") or ""


def extract_full_transcript(data: dict) -> str:
    """
    Join recognized words into the transcript text.

    Punctuation items are attached to the preceding word so sentence
    boundaries survive. Falls back to results.transcripts[0].transcript.
    """
    items = safe_dict_get(data, "results", "items", default=None)
    if not items:
        return (safe_dict_get(data, "results", "transcripts", 0, "transcript", default="") or "").strip()

    words: List[str] = []
    for item in items:
        content = _item_text(item)
        if not content:
            continue
        if item.get("type") == "punctuation":
            if words:
                words[-1] += content
            continue
        if item.get("type") == "pronunciation":
            words.append(content)
    return " ".join(words)


def _speaker_by_start_time(data: dict) -> dict:
    speakers = {}
    for segment in safe_dict_get(data, "results", "speaker_labels", "segments", default=[]) or []:
        for item in segment.get("items", []):
            if item.get("start_time") is not None:
                speakers[item["start_time"]] = item.get("speaker_label") or segment.get("speaker_label")
    return speakers


def extract_speaker_transcript(data: dict) -> Optional[str]:
    """
    Render a 'speaker: text' line per speaker turn, or None without diarization.
    """
    items = safe_dict_get(data, "results", "items", default=None)
    if not items:
        return None

    by_start_time = _speaker_by_start_time(data)
    turns: List[Tuple[str, List[str]]] = []
    for item in items:
        content = _item_text(item)
        if not content:
            continue
        if item.get("type") == "punctuation":
            if turns and turns[-1][1]:
                turns[-1][1][-1] += content
            continue
        speaker = item.get("speaker_label") or by_start_time.get(item.get("start_time"))
        if speaker is None:
            continue
        if not turns or turns[-1][0] != speaker:
            turns.append((speaker, []))
        turns[-1][1].append(content)

    if not turns:
        return None
    return "\n".join(f"{speaker}: {' '.join(words)}" for speaker, words in turns)


def parse_transcript_artifact(payload: bytes) -> Tuple[str, Optional[str]]:
    """
    Parse a downloaded transcript artifact.

    Returns:
        (full transcript, speaker transcript or None)

    Raises:
        InvalidProviderResponse: Artifact is empty or not decodable
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidProviderResponse("Transcript artifact is not UTF-8 text", provider="transcription")

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if isinstance(data, dict):
        full_transcript = extract_full_transcript(data)
        speaker_transcript = extract_speaker_transcript(data)
    else:
        full_transcript, speaker_transcript = text.strip(), None

    if not full_transcript:
        raise InvalidProviderResponse("Transcript artifact contains no text", provider="transcription")
    return full_transcript, speaker_transcript
