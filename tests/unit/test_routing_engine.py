"""
Unit tests for the routing engine.

Covers every conversation mode, mention parsing and the empty-roster case.
"""

import pytest

from huddle.errors import ErrorCode
from huddle.models.routing_state import ConversationMode, RoutingResult, RoutingState
from huddle.services.routing_engine import (
    RoleBasedStrategy,
    RoutingEngine,
    parse_mentions,
    parse_natural_address,
    roster_help,
    skill_overlap_score,
)

from conftest import make_participant


@pytest.fixture
def engine():
    return RoutingEngine()


@pytest.fixture
def skilled_roster():
    return [
        make_participant("architect", name="Architect", skills=["design", "architecture"], aliases=["arch"]),
        make_participant("builder", name="Builder", skills=["code", "testing"], aliases=["dev"]),
        make_participant("reviewer", name="Code Reviewer", skills=["code review", "review"], aliases=["code-reviewer"])
    ]


class TestFreeChat:
    """Free chat broadcasts to everybody."""

    def test_targets_every_participant_in_order(self, engine, roster):
        state = RoutingState(mode=ConversationMode.FREE_CHAT, last_speaker_index=2)

        result = engine.route("anything", roster, state)

        assert result.target_ids == ["a", "b", "c"]
        assert result.fallback_used is False

    def test_empty_roster_returns_empty_result(self, engine):
        for mode in ConversationMode:
            result = engine.route("hello", [], RoutingState(mode=mode))

            assert result.target_ids == []
            assert result.is_empty
            assert result.error_code == ErrorCode.ROUTING_UNAVAILABLE
            assert "No agents available" in result.reason


class TestSequential:
    """Sequential rotation resumes after the last speaker."""

    def test_rotation_after_last_speaker(self, engine, roster):
        state = RoutingState(mode=ConversationMode.SEQUENTIAL, last_speaker_index=1)

        result = engine.route("next", roster, state)

        assert result.target_ids == ["c", "a", "b"]

    def test_rotation_starts_at_first_agent(self, engine, roster):
        state = RoutingState(mode=ConversationMode.SEQUENTIAL)

        result = engine.route("first", roster, state)

        assert result.target_ids == ["a", "b", "c"]

    def test_rotation_wraps_around(self, engine, roster):
        state = RoutingState(mode=ConversationMode.SEQUENTIAL, last_speaker_index=2)

        assert engine.route("x", roster, state).target_ids == ["a", "b", "c"]

    @pytest.mark.parametrize("count,last", [
        (count, last) for count in range(1, 6) for last in [None, *range(count)]
    ])
    def test_rotation_is_a_full_permutation(self, engine, count, last):
        agents = [make_participant(f"agent{index}") for index in range(count)]
        state = RoutingState(mode=ConversationMode.SEQUENTIAL, last_speaker_index=last)

        targets = engine.route("go", agents, state).target_ids

        start = 0 if last is None else (last + 1) % count
        assert sorted(targets) == sorted(agent.id for agent in agents)
        assert len(set(targets)) == count
        assert targets == [agents[(start + step) % count].id for step in range(count)]

    def test_next_state_points_at_last_target(self, engine, roster):
        state = RoutingState(mode=ConversationMode.SEQUENTIAL, last_speaker_index=1, round_counter=3)
        result = engine.route("next", roster, state)

        new_state = RoutingEngine.next_state(state, result, roster, spoken_ids=["c"])

        assert new_state.last_speaker_index == 1
        assert new_state.round_counter == 4

    def test_routing_does_not_mutate_state(self, engine, roster):
        state = RoutingState(mode=ConversationMode.SEQUENTIAL, last_speaker_index=0)

        engine.route("one", roster, state)
        engine.route("two", roster, state)

        assert state.last_speaker_index == 0
        assert state.round_counter == 0


class TestTagOnly:
    """Tag-only routing follows @mentions and falls back to broadcast."""

    def test_mentions_in_order_of_appearance(self, engine, roster):
        state = RoutingState(mode=ConversationMode.TAG_ONLY)

        result = engine.route("@c please check, then @a", roster, state)

        assert result.target_ids == ["c", "a"]
        assert result.fallback_used is False

    def test_no_mention_broadcasts_with_help(self, engine, roster):
        state = RoutingState(mode=ConversationMode.TAG_ONLY)

        result = engine.route("anyone there?", roster, state)

        assert result.target_ids == ["a", "b", "c"]
        assert result.fallback_used is True
        assert "@a" in result.help_content

    def test_natural_address(self, engine, skilled_roster):
        state = RoutingState(mode=ConversationMode.TAG_ONLY)

        result = engine.route("Hey builder, can you run the tests?", skilled_roster, state)

        assert result.target_ids == ["builder"]


class TestMentionParsing:
    """@mention and natural address parsing."""

    def test_aliases_and_names_case_insensitive(self, skilled_roster):
        found = parse_mentions("@ARCH and @Builder", skilled_roster)

        assert found == ["architect", "builder"]

    def test_longest_alias_wins(self, skilled_roster):
        found = parse_mentions("ask @code-reviewer about it", skilled_roster)

        assert found == ["reviewer"]

    def test_partial_name_is_not_a_mention(self, skilled_roster):
        assert parse_mentions("@builders are busy", skilled_roster) == []

    def test_duplicates_are_dropped(self, skilled_roster):
        assert parse_mentions("@dev @builder @dev", skilled_roster) == ["builder"]

    def test_email_like_text_without_known_name(self, skilled_roster):
        assert parse_mentions("mail me at someone@example.com", skilled_roster) == []

    def test_vocative_address(self, skilled_roster):
        assert parse_natural_address("Architect: sketch the layout", skilled_roster) == ["architect"]

    def test_name_mid_sentence_is_not_an_address(self, skilled_roster):
        assert parse_natural_address("I think the builder is right", skilled_roster) == []


class TestRoleBased:
    """Role-based routing picks the best skill match."""

    def test_best_skill_match(self, skilled_roster):
        engine = RoutingEngine()
        state = RoutingState(mode=ConversationMode.ROLE_BASED)

        result = engine.route("Please do a code review of this module", skilled_roster, state)

        assert result.target_ids == ["reviewer"]
        assert result.fallback_used is False

    def test_tie_goes_to_first_declared(self, roster):
        tied = [
            make_participant("first", skills=["python"]),
            make_participant("second", skills=["python"])
        ]
        engine = RoutingEngine()

        result = engine.route("python question", tied, RoutingState(mode=ConversationMode.ROLE_BASED))

        assert result.target_ids == ["first"]

    def test_no_match_uses_default_agent(self, skilled_roster):
        engine = RoutingEngine({
            ConversationMode.ROLE_BASED: RoleBasedStrategy(default_agent_id="builder")
        })

        result = engine.route("what's for lunch", skilled_roster, RoutingState(mode=ConversationMode.ROLE_BASED))

        assert result.target_ids == ["builder"]
        assert result.fallback_used is True

    def test_no_match_without_default_uses_first(self, skilled_roster):
        engine = RoutingEngine()

        result = engine.route("what's for lunch", skilled_roster, RoutingState(mode=ConversationMode.ROLE_BASED))

        assert result.target_ids == ["architect"]

    def test_prefix_match_scores_half(self):
        participant = make_participant("tester", skills=["test"])

        assert skill_overlap_score("testing the parser", participant) == 0.5
        assert skill_overlap_score("test the parser", participant) == 1.0


class TestNextState:
    """Routing state advances once per round."""

    def test_free_chat_remembers_last_completed_speaker(self, roster):
        state = RoutingState(mode=ConversationMode.FREE_CHAT)
        result = RoutingResult(target_ids=["a", "b", "c"], reason="broadcast")

        new_state = RoutingEngine.next_state(state, result, roster, spoken_ids=["b", "a"])

        assert new_state.last_speaker_index == 0
        assert new_state.round_counter == 1

    def test_nobody_spoke_keeps_previous_index(self, roster):
        state = RoutingState(mode=ConversationMode.TAG_ONLY, last_speaker_index=2)
        result = RoutingResult(target_ids=["a"], reason="tag")

        new_state = RoutingEngine.next_state(state, result, roster, spoken_ids=[])

        assert new_state.last_speaker_index == 2
        assert new_state.round_counter == 1


def test_roster_help_lists_aliases(skilled_roster):
    text = roster_help(skilled_roster)

    assert "@architect" in text
    assert "@arch" in text
    assert "@code-reviewer" in text
