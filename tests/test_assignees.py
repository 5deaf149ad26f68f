"""
Tests for assignee resolution.
"""
import pytest

from meeting_pipeline.assignees import AssigneeResolver
from meeting_pipeline.exceptions import ProviderUnavailable
from meeting_pipeline.schemas import Task, TrackerMember


@pytest.fixture
def members():
    return [
        TrackerMember(id="u1", display_name="Sarah Lin"),
        TrackerMember(id="u2", display_name="Tom Becker"),
        TrackerMember(id="u3", display_name="Priya Raman", active=False),
    ]


@pytest.mark.unit
class TestLocalTiers:
    """Test resolution without the LLM."""

    @pytest.mark.asyncio
    async def test_first_name_resolves_without_llm(self, mock_llm):
        """Test 'Sarah' resolves to u1 with no LLM call."""
        resolver = AssigneeResolver([TrackerMember(id="u1", display_name="Sarah Lin")], llm=mock_llm)

        member = await resolver.resolve("Sarah")

        assert member.id == "u1"
        assert resolver.llm_calls == 0
        mock_llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_exact_match_is_case_insensitive(self, members):
        resolver = AssigneeResolver(members)

        assert (await resolver.resolve("tom becker")).id == "u2"

    @pytest.mark.asyncio
    async def test_substring_match(self, members):
        resolver = AssigneeResolver(members)

        assert (await resolver.resolve("Becker")).id == "u2"

    @pytest.mark.asyncio
    async def test_inactive_members_ignored(self, members):
        """Test deactivated accounts are never assigned."""
        resolver = AssigneeResolver(members)

        assert await resolver.resolve("Priya") is None

    @pytest.mark.asyncio
    async def test_unassigned_is_none(self, members, mock_llm):
        resolver = AssigneeResolver(members, llm=mock_llm)

        assert await resolver.resolve("unassigned") is None
        assert await resolver.resolve(None) is None
        mock_llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_resolve_task_fills_id_and_canonical_name(self, members):
        resolver = AssigneeResolver(members)

        task = await resolver.resolve_task(Task(title="Prepare the demo", assignee="sarah"))

        assert task.assignee_id == "u1"
        assert task.assignee == "Sarah Lin"


@pytest.mark.unit
class TestLlmTier:
    """Test the LLM fallback tier."""

    @pytest.mark.asyncio
    async def test_llm_match_restricted_to_known_ids(self, members, mock_llm, coordinator):
        """Test a nickname is resolved by the LLM to a known member."""
        mock_llm.invoke.return_value = '{"id": "u2"}'
        resolver = AssigneeResolver(members, llm=mock_llm, coordinator=coordinator)

        member = await resolver.resolve("Tommy B")

        assert member.id == "u2"
        assert resolver.llm_calls == 1

    @pytest.mark.asyncio
    async def test_llm_unknown_id_rejected(self, members, mock_llm, coordinator):
        """Test an invented id leaves the task unassigned."""
        mock_llm.invoke.return_value = '{"id": "u999"}'
        resolver = AssigneeResolver(members, llm=mock_llm, coordinator=coordinator)

        assert await resolver.resolve("Alex") is None

    @pytest.mark.asyncio
    async def test_llm_failure_leaves_unassigned(self, members, mock_llm, coordinator, fake_sleep):
        """Test a single attempt is made and errors are absorbed."""
        mock_llm.invoke.side_effect = ProviderUnavailable("503")
        resolver = AssigneeResolver(members, llm=mock_llm, coordinator=coordinator)

        assert await resolver.resolve("Alex") is None
        assert mock_llm.invoke.await_count == 1
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_results_cached_per_resolver(self, members, mock_llm, coordinator):
        """Test repeated names hit the LLM once."""
        mock_llm.invoke.return_value = '{"id": "u2"}'
        resolver = AssigneeResolver(members, llm=mock_llm, coordinator=coordinator)

        await resolver.resolve("Tommy B")
        await resolver.resolve("tommy b")

        assert resolver.llm_calls == 1
