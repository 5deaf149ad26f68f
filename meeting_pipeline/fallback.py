"""
Deterministic keyword extraction used when the LLM cannot be reached.
"""
import re
from datetime import date, timedelta
from typing import Iterable, List, Optional

from meeting_pipeline.schemas import ExtractionResult, Task, UNASSIGNED

ACTION_KEYWORDS = (
    "will follow up", "need to check", "action item", "todo", "to do",
    "will send", "will update", "will review", "will schedule",
    "responsible for", "will handle", "will contact", "will prepare",
    "can you do", "you do", "by friday", "unit tests",
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

PLACEHOLDER_TITLE = "Review meeting notes and identify next steps"
MAX_TASKS = 10
MAX_TITLE_LENGTH = 100
MIN_TITLE_LENGTH = 15

SENTENCE_SPLIT = re.compile(r"[.!?]+")
LEADING_FILLER = re.compile(r"^(?:um|uh|so|and|but|well)\b[\s,]+", re.IGNORECASE)
NAME_BEFORE_VERB = re.compile(r"\b([A-Z][a-z]+),?\s+(?:will|can|could|should|is going to)\b")
NOT_NAMES = {"I", "We", "You", "They", "He", "She", "It", "That", "This", "Someone", "Everyone", "Who"}


def _strip_fillers(sentence: str) -> str:
    previous = None
    while previous != sentence:
        previous = sentence
        sentence = LEADING_FILLER.sub("", sentence).strip()
    return sentence


def extract_assignee(sentence: str, member_names: Iterable[str] = ()) -> str:
    """
    Pick an assignee for a sentence.

    Known member names (full or first name) win; otherwise "<Name> will/can ..."
    phrasing; otherwise unassigned.
    """
    lowered = sentence.lower()
    for name in member_names:
        full = name.lower()
        first = full.split()[0] if full.split() else full
        if full and full in lowered:
            return name
        if first and re.search(rf"\b{re.escape(first)}\b", lowered):
            return name

    match = NAME_BEFORE_VERB.search(sentence)
    if match and match.group(1) not in NOT_NAMES:
        return match.group(1)
    return UNASSIGNED


def extract_due_date(sentence: str, today: date) -> Optional[str]:
    """Resolve weekday / 'tomorrow' / 'next week' mentions to an ISO date."""
    lowered = sentence.lower()
    if "tomorrow" in lowered:
        return (today + timedelta(days=1)).isoformat()
    for index, weekday in enumerate(WEEKDAYS):
        if weekday in lowered:
            days_ahead = (index - today.weekday()) % 7 or 7
            return (today + timedelta(days=days_ahead)).isoformat()
    if "next week" in lowered:
        return (today + timedelta(days=7)).isoformat()
    return None


def extract_tasks_by_keywords(
    transcript: str,
    today: date,
    member_names: Iterable[str] = (),
) -> ExtractionResult:
    """
    Extract tasks from sentences containing action phrasing.

    Always yields at least one task: the review placeholder when nothing
    matches. Titles are de-duplicated and capped at MAX_TASKS.
    """
    member_names = list(member_names)
    tasks: List[Task] = []
    seen = set()

    for sentence in SENTENCE_SPLIT.split(transcript or ""):
        lowered = sentence.lower()
        if not any(keyword in lowered for keyword in ACTION_KEYWORDS):
            continue

        title = _strip_fillers(sentence.strip())[:MAX_TITLE_LENGTH]
        if len(title) <= MIN_TITLE_LENGTH:
            continue
        title = title[0].upper() + title[1:]
        if title.lower() in seen:
            continue
        seen.add(title.lower())

        tasks.append(Task(
            title=title,
            description=sentence.strip(),
            assignee=extract_assignee(sentence, member_names),
            due_date=extract_due_date(sentence, today),
            priority="medium",
        ))

    if not tasks:
        tasks.append(Task(
            title=PLACEHOLDER_TITLE,
            description="No explicit action items were detected in the transcript.",
            priority="low",
        ))

    return ExtractionResult(
        summary="Tasks extracted by keyword matching.",
        meeting_type="general",
        tasks=tasks[:MAX_TASKS],
        method="keyword-fallback",
    )
