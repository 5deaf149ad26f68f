"""
Tiered resolution of spoken assignee names to tracker member ids.

Tiers, first match wins: exact display name (case-insensitive), first name,
substring, then the LLM restricted to known member ids. Anything else stays
unassigned. One resolver lives for one stage invocation, so its cache never
outlives the member list it was built from.
"""
from typing import Dict, List, Optional

from meeting_pipeline.exceptions import ProviderError
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.prompts import assignee_prompt
from meeting_pipeline.schemas import Task, TrackerMember, UNASSIGNED
from meeting_pipeline.utils import extract_json_object

logger = get_logger(__name__)


def _first_name(name: str) -> str:
    parts = name.split()
    return parts[0] if parts else ""


class AssigneeResolver:
    """Resolve names against a member list fetched for the current invocation."""

    def __init__(self, members: List[TrackerMember], llm=None, coordinator=None):
        self.members = [member for member in members if member.active]
        self.llm = llm
        self.coordinator = coordinator
        self._by_id = {member.id: member for member in self.members}
        self._cache: Dict[str, Optional[TrackerMember]] = {}
        self.llm_calls = 0

    def match_locally(self, name: str) -> Optional[TrackerMember]:
        wanted = name.strip().casefold()
        if not wanted:
            return None

        for member in self.members:
            if member.display_name.casefold() == wanted:
                return member

        wanted_first = _first_name(wanted)
        for member in self.members:
            if _first_name(member.display_name.casefold()) == wanted_first:
                return member

        for member in self.members:
            display = member.display_name.casefold()
            if display and (wanted in display or display in wanted):
                return member
        return None

    async def resolve(self, name: Optional[str]) -> Optional[TrackerMember]:
        """
        Resolve a spoken name to a member, or None for unassigned.
        """
        if not name or name.strip().casefold() == UNASSIGNED:
            return None
        key = name.strip().casefold()
        if key in self._cache:
            return self._cache[key]

        member = self.match_locally(name)
        if member is None:
            member = await self._match_with_llm(name)

        self._cache[key] = member
        logger.debug("assignee_resolved", name=name, member_id=member.id if member else None)
        return member

    async def resolve_task(self, task: Task) -> Task:
        """Copy of the task with assignee_id (and canonical assignee name) filled in."""
        if task.assignee_id and task.assignee_id in self._by_id:
            return task
        member = await self.resolve(task.assignee)
        if member is None:
            return task.model_copy(update={"assignee_id": None})
        return task.model_copy(update={"assignee_id": member.id, "assignee": member.display_name})

    async def _match_with_llm(self, name: str) -> Optional[TrackerMember]:
        if self.llm is None or not self.members:
            return None

        prompt = assignee_prompt(name, self.members)

        async def call() -> Optional[str]:
            text = await self.llm.invoke(prompt, 200, 0.0)
            data = extract_json_object(text)
            return data.get("id") if isinstance(data, dict) else None

        self.llm_calls += 1
        try:
            if self.coordinator is not None:
                # A single bounded attempt; a missed match only leaves the task unassigned
                member_id = await self.coordinator.run(
                    call,
                    retry_attempt=self.coordinator.settings.max_immediate_attempts,
                    operation="resolve_assignee",
                )
            else:
                member_id = await call()
        except ProviderError as e:
            logger.warning("assignee_llm_unavailable", name=name, error=str(e))
            return None

        member = self._by_id.get(member_id) if member_id else None
        if member_id and member is None:
            logger.warning("assignee_llm_unknown_id", name=name, member_id=member_id)
        return member
