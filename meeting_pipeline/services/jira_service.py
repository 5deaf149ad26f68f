"""
Client for the Jira Cloud REST API (v3).
"""
from typing import Any, Dict, List, Optional

from meeting_pipeline.exceptions import InvalidProviderResponse
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.schemas import Task, TrackerIssue, TrackerMember, Transition
from meeting_pipeline.services.base import ProviderClient
from meeting_pipeline.utils import safe_dict_get

logger = get_logger(__name__)

ISSUE_FIELDS = ["summary", "status", "assignee"]


def adf_text(text: str) -> Dict[str, Any]:
    """Wrap plain text in a single-paragraph Atlassian Document Format body."""
    return {
        "type": "doc",
        "version": 1,
        "content": [{
            "type": "paragraph",
            "content": [{"type": "text", "text": text}],
        }],
    }


class JiraService(ProviderClient):
    """Issue tracker operations used by reconciliation and sync."""

    PROVIDER = "jira"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        project_key: str = "CRM",
        issue_type: str = "Task",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.auth = (email, api_token)
        self.project_key = project_key
        self.issue_type = issue_type

    async def _call(self, method: str, path: str, operation: str, **kwargs):
        return await self._request(method, f"{self.base_url}/rest/api/3{path}", operation, auth=self.auth, **kwargs)

    def issue_url(self, issue_key: str) -> str:
        return f"{self.base_url}/browse/{issue_key}"

    async def list_assignable_members(self, project_key: Optional[str] = None) -> List[TrackerMember]:
        """Users assignable in the project, inactive ones included."""
        response = await self._call(
            "GET",
            "/user/assignable/search",
            "list_assignable_members",
            params={"project": project_key or self.project_key, "maxResults": 1000},
        )
        data = self._json(response, "list_assignable_members")
        if not isinstance(data, list):
            raise InvalidProviderResponse("Assignable user search did not return a list", provider=self.PROVIDER)

        members = [
            TrackerMember(
                id=user["accountId"],
                display_name=user.get("displayName") or "",
                active=user.get("active", True),
            )
            for user in data
            if user.get("accountId")
        ]
        logger.info("jira_members_fetched", project=project_key or self.project_key, count=len(members))
        return members

    async def search(self, jql: str, max_results: int = 100) -> List[TrackerIssue]:
        response = await self._call(
            "POST",
            "/search/jql",
            "search",
            json={"jql": jql, "fields": ISSUE_FIELDS, "maxResults": max_results},
        )
        data = self._json(response, "search")

        issues = []
        for issue in safe_dict_get(data, "issues", default=[]) or []:
            fields = issue.get("fields") or {}
            issues.append(TrackerIssue(
                key=issue["key"],
                summary=fields.get("summary") or "",
                status=safe_dict_get(fields, "status", "name"),
                assignee_id=safe_dict_get(fields, "assignee", "accountId"),
                assignee_name=safe_dict_get(fields, "assignee", "displayName"),
            ))
        logger.info("jira_issues_searched", jql=jql, count=len(issues))
        return issues

    async def search_open_issues(self, project_key: Optional[str] = None) -> List[TrackerIssue]:
        jql = (
            f"project = {project_key or self.project_key} "
            f"AND statusCategory != Done ORDER BY updated DESC"
        )
        return await self.search(jql)

    def build_issue_fields(self, task: Task, meeting_id: str) -> Dict[str, Any]:
        """Create-issue fields for an extracted task."""
        description = (
            f"{task.description}\n\n"
            f"📋 Assignee: {task.assignee}\n"
            f"📅 Due: {task.due_date or 'Not specified'}\n"
            f"⚡ Priority: {task.priority}\n\n"
            f"🤖 Auto-generated from meeting: {meeting_id}"
        )
        fields = {
            "project": {"key": self.project_key},
            "summary": task.title,
            "description": adf_text(description),
            "issuetype": {"name": self.issue_type},
        }
        if task.assignee_id:
            fields["assignee"] = {"accountId": task.assignee_id}
        if task.due_date:
            fields["duedate"] = task.due_date
        return fields

    async def create_issue(self, fields: Dict[str, Any]) -> str:
        """
        Create an issue.

        Returns:
            The new issue key
        """
        response = await self._call("POST", "/issue", "create_issue", json={"fields": fields})
        data = self._json(response, "create_issue")
        issue_key = safe_dict_get(data, "key")
        if not issue_key:
            raise InvalidProviderResponse("Create issue returned no key", provider=self.PROVIDER)
        logger.info("jira_issue_created", issue_key=issue_key)
        return issue_key

    async def update_issue(self, issue_key: str, fields: Dict[str, Any]) -> None:
        await self._call("PUT", f"/issue/{issue_key}", "update_issue", json={"fields": fields})
        logger.info("jira_issue_updated", issue_key=issue_key, fields=sorted(fields))

    async def list_transitions(self, issue_key: str) -> List[Transition]:
        response = await self._call("GET", f"/issue/{issue_key}/transitions", "list_transitions")
        data = self._json(response, "list_transitions")
        return [
            Transition(
                id=str(transition["id"]),
                name=transition.get("name") or "",
                to_status=safe_dict_get(transition, "to", "name"),
            )
            for transition in safe_dict_get(data, "transitions", default=[]) or []
        ]

    async def apply_transition(self, issue_key: str, transition_id: str) -> None:
        await self._call(
            "POST",
            f"/issue/{issue_key}/transitions",
            "apply_transition",
            json={"transition": {"id": transition_id}},
        )
        logger.info("jira_issue_transitioned", issue_key=issue_key, transition_id=transition_id)

    async def add_comment(self, issue_key: str, text: str) -> None:
        await self._call("POST", f"/issue/{issue_key}/comment", "add_comment", json={"body": adf_text(text)})
