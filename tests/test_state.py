import json

from polymath.state import (
    AgentIntent,
    IntentType,
    RECENT_SIGNAL_LIMIT,
    clamp01,
    concept_id,
    merge_patch,
    push_signals,
    round_half_up,
    supersede_intents,
    user_signals,
)

from helpers import signal


def test_new_state_is_json_serialisable(fresh_state):
    restored = json.loads(json.dumps(fresh_state))
    assert restored["goal"]["id"] == "goal-1"
    assert restored["phase"] is None
    assert all(0.0 <= v <= 1.0 for v in restored["value_vector"].values())


def test_clamp01_bounds_and_nan():
    assert clamp01(-0.3) == 0.0
    assert clamp01(1.7) == 1.0
    assert clamp01(0.42) == 0.42
    assert clamp01(float("nan")) == 0.0


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(4.0) == 4
    assert round_half_up(2.4) == 2


def test_concept_id_slugs_label():
    assert concept_id("Heat Engines") == "concept-heat-engines"


class TestMergePatch:
    def test_patch_keys_replace_whole_values(self, fresh_state):
        merged = merge_patch(fresh_state, {"answers": {"q3": "x"}}, now=5.0)
        assert merged["answers"] == {"q3": "x"}
        assert merged["last_updated_at"] == 5.0
        assert fresh_state["answers"] == {}

    def test_without_now_keeps_timestamp(self, fresh_state):
        merged = merge_patch(fresh_state, {"phase": "intake"})
        assert merged["last_updated_at"] == fresh_state["last_updated_at"]


class TestPushSignals:
    def test_newest_first(self, fresh_state):
        state = push_signals(fresh_state, [signal("quiz", "a"), signal("quiz", "b")], now=10.0)
        assert [s["id"] for s in state["recent_signals"]] == ["b", "a"]
        assert state["last_updated_at"] == 10.0

    def test_ring_buffer_cap(self, fresh_state):
        batch = [signal("revisit", f"s{i}") for i in range(RECENT_SIGNAL_LIMIT + 30)]
        state = push_signals(fresh_state, batch, now=1.0)
        assert len(state["recent_signals"]) == RECENT_SIGNAL_LIMIT
        assert state["recent_signals"][0]["id"] == f"s{RECENT_SIGNAL_LIMIT + 29}"

    def test_empty_batch_is_a_no_op(self, fresh_state):
        assert push_signals(fresh_state, [], now=99.0) is fresh_state


class TestSupersedeIntents:
    def test_latest_wins_per_type(self):
        pending = [{"type": "present-sense", "sense": "visual"}, {"type": "ask-questions"}]
        result = supersede_intents(pending, [AgentIntent(IntentType.PRESENT_SENSE, {"sense": "paper"})])
        assert result == [{"type": "ask-questions"}, {"type": "present-sense", "sense": "paper"}]

    def test_consumed_types_are_dropped(self):
        pending = [{"type": "draft-curriculum"}, {"type": "build-step", "unit_id": "unit-1-1"}]
        result = supersede_intents(pending, [], consumed=[IntentType.DRAFT_CURRICULUM])
        assert result == [{"type": "build-step", "unit_id": "unit-1-1"}]


def test_intent_dict_round_trip():
    intent = AgentIntent(IntentType.BEGIN_TEACHING, {"unit_id": "unit-2-1"})
    assert intent.to_dict() == {"type": "begin-teaching", "unit_id": "unit-2-1"}
    assert AgentIntent.from_dict(intent.to_dict()) == intent


def test_user_signals_excludes_sense_output():
    signals = [signal("sense-output", "a"), signal("quiz", "b")]
    assert [s["id"] for s in user_signals(signals)] == ["b"]
