"""
Prompt templates for the LLM-backed stages.
"""
import json
from datetime import date
from typing import Iterable, List, Optional

from meeting_pipeline.schemas import Task, TrackerIssue, TrackerMember

MEETING_TYPES = ("standup", "planning", "review", "general")


def task_extraction_prompt(transcript: str, today: date, member_names: Optional[Iterable[str]] = None) -> str:
    """
    Build the task extraction prompt.

    Args:
        transcript: Meeting transcript (speaker-labelled when available)
        today: Date used to resolve relative due dates
        member_names: Display names of people tasks may be assigned to
    """
    names = sorted(set(member_names or []))
    assignee_rule = ""
    if names:
        assignee_rule = (
            "- Use one of these team member names for assignee when the person is clearly meant: "
            + ", ".join(names) + "\n"
        )

    return f"""Extract actionable tasks from this meeting transcript. Return JSON only.
Today the date is: {today.isoformat()}.

TRANSCRIPT:
{transcript}

Return this exact JSON structure:
{{
  "summary": "Brief meeting summary",
  "meetingType": "{'|'.join(MEETING_TYPES)}",
  "tasks": [
    {{
      "title": "Task title",
      "status": "to do|in progress|done",
      "description": "What needs to be done",
      "assignee": "Person assigned or 'unassigned'",
      "priority": "low|medium|high",
      "dueDate": "YYYY-MM-DD format or null if not specified"
    }}
  ]
}}
Rules:
- Meeting future check-ins are not tasks
- Extract ALL tasks mentioned, including work that's completed
- Status determination:
  * "done" = completed work ("it's done", "finished", "completed", "working like a charm")
  * "in progress" = currently working ("60% done", "getting there", "working on", "finishing [soon]")
  * "to do" = newly assigned or upcoming work
- Include status updates on existing work - if someone reports work is finished, extract it as "done"
- Convert relative due dates ("by Friday", "tomorrow") to YYYY-MM-DD using today's date
{assignee_rule}- Return empty tasks array if no actionable items exist
- Return valid JSON only, no additional text"""


def reconciliation_prompt(tasks: List[Task], issues: List[TrackerIssue]) -> str:
    """
    Build the prompt classifying each task as CREATE or UPDATE against open issues.
    """
    task_lines = [
        {
            "index": index,
            "title": task.title,
            "description": task.description,
            "assignee": task.assignee,
            "status": task.status,
        }
        for index, task in enumerate(tasks)
    ]
    issue_lines = [
        {
            "key": issue.key,
            "summary": issue.summary,
            "status": issue.status,
            "assignee": issue.assignee_name,
        }
        for issue in issues
    ]

    return f"""You reconcile action items from a meeting with the existing open Jira issues of the team.

EXISTING OPEN ISSUES:
{json.dumps(issue_lines, indent=2)}

TASKS FROM THE MEETING:
{json.dumps(task_lines, indent=2)}

For every task decide:
- "UPDATE" when it is progress on, or a part of, an existing issue. Prefer UPDATE whenever the
  task and an issue mention the same technology, component or system, or share the assignee
  and subject. A progress report ("60% done", "finished the ...") is almost always an UPDATE.
- "CREATE" only when no existing issue covers the work.

Return valid JSON only, no additional text:
{{
  "decisions": [
    {{"index": 0, "action": "CREATE|UPDATE", "issueKey": "KEY-1 or null", "reason": "short reason"}}
  ]
}}"""


def assignee_prompt(name: str, members: List[TrackerMember]) -> str:
    """Build the prompt matching a spoken name to a tracker member."""
    roster = [{"id": member.id, "displayName": member.display_name} for member in members]
    return f"""A meeting transcript assigned a task to "{name}".
Which of these team members is meant? Spoken names may be nicknames, misspellings or
transcription errors.

TEAM MEMBERS:
{json.dumps(roster, indent=2)}

Return valid JSON only, no additional text:
{{"id": "the member id, or null if nobody matches"}}"""
