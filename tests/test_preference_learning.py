"""
Preference Learning Tests

Test Categories:
1. Per-Type Mapping Tests
2. Confidence Floor Tests
3. Suggest-Only Tests
"""

from datetime import datetime, timezone

import pytest

from orb_adaptation.learning_model import (
    Pattern,
    PatternType,
    LearningActionType,
    LearningActionStatus,
    make_pattern_id,
)
from orb_adaptation.preference_learning import PreferenceLearning, CONFIDENCE_FLOORS


FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _pattern(pattern_type, data, confidence=0.95):
    event_ids = ("e1", "e2", "e3")
    return Pattern(
        id=make_pattern_id(pattern_type.value, "k", event_ids),
        type=pattern_type.value,
        detected_at=FIXED_NOW.isoformat(),
        confidence=confidence,
        data=data,
        event_ids=event_ids,
        event_count=len(event_ids),
    )


@pytest.fixture
def learning():
    return PreferenceLearning(clock=lambda: FIXED_NOW)


# =============================================================================
# Section 1: Per-Type Mapping Tests
# =============================================================================

class TestActionMapping:

    def test_frequent_action_creates_shortcut(self, learning):
        actions = learning.suggest_actions(_pattern(
            PatternType.FREQUENT_ACTION, {"actions": ["git-commit"], "frequency": 47},
        ))

        assert len(actions) == 1
        action = actions[0]
        assert action.type == LearningActionType.CREATE_SHORTCUT.value
        assert action.suggested_value == {"action": "git-commit", "trigger": "shortcut"}
        assert "47" in action.reason

    def test_time_routine_suggests_automation(self, learning):
        window = {"start": "09:00", "end": "09:05"}
        action = learning.suggest_actions(_pattern(
            PatternType.TIME_BASED_ROUTINE, {"actions": ["standup"], "timeWindow": window},
        ))[0]

        assert action.type == LearningActionType.SUGGEST_AUTOMATION.value
        assert action.target == "scheduled_action"
        assert action.suggested_value["schedule"] == window
        assert "09:00" in action.reason

    def test_mode_preference_updates_default_mode(self, learning):
        action = learning.suggest_actions(_pattern(
            PatternType.MODE_PREFERENCE, {"modes": ["sol"], "usageRate": 0.9},
        ))[0]

        assert action.type == LearningActionType.UPDATE_PREFERENCE.value
        assert action.target == "default_mode"
        assert action.current_value == "default"
        assert action.suggested_value == "sol"
        assert action.reason == "Mode used 90% of time"

    def test_error_pattern_adjusts_constraint(self, learning):
        action = learning.suggest_actions(_pattern(
            PatternType.ERROR_PATTERN,
            {"actions": ["deploy"], "errorRate": 0.25, "failures": 5, "total": 20},
        ))[0]

        assert action.type == LearningActionType.ADJUST_CONSTRAINT.value
        assert action.target == "error_prevention"
        assert action.suggested_value["requireConfirmation"] == "deploy"
        assert action.reason == "Action failed 5 of 20 attempts"

    def test_efficiency_gain_recommends_mode(self, learning):
        action = learning.suggest_actions(_pattern(
            PatternType.EFFICIENCY_GAIN,
            {"actions": ["build"], "improvement": 0.4, "avgDuration": 600, "previousDuration": 1000},
        ))[0]

        assert action.type == LearningActionType.RECOMMEND_MODE.value
        assert action.current_value == 1000
        assert action.reason == "New workflow is 40% faster"

    @pytest.mark.parametrize("rate,level", [(0.95, "high"), (0.8, "high"), (0.6, "medium"), (0.2, "low")])
    def test_risk_threshold_level(self, learning, rate, level):
        action = learning.suggest_actions(_pattern(
            PatternType.RISK_THRESHOLD, {"modes": ["sol"], "approvalRate": rate, "presented": 12},
        ))[0]

        assert action.type == LearningActionType.ADJUST_RISK_THRESHOLD.value
        assert action.target == "risk_tolerance:sol"
        assert action.suggested_value == level


# =============================================================================
# Section 2: Confidence Floor Tests
# =============================================================================

class TestConfidenceFloors:

    @pytest.mark.parametrize("pattern_type", list(PatternType))
    def test_below_floor_yields_nothing(self, learning, pattern_type):
        floor = CONFIDENCE_FLOORS[pattern_type.value]
        assert learning.suggest_actions(_pattern(pattern_type, {}, confidence=floor - 0.01)) == []

    @pytest.mark.parametrize("pattern_type", list(PatternType))
    def test_at_floor_yields_one(self, learning, pattern_type):
        floor = CONFIDENCE_FLOORS[pattern_type.value]
        assert len(learning.suggest_actions(_pattern(pattern_type, {}, confidence=floor))) == 1

    def test_floor_override(self):
        learning = PreferenceLearning(floors={PatternType.MODE_PREFERENCE.value: 0.5})
        pattern = _pattern(PatternType.MODE_PREFERENCE, {"modes": ["sol"]}, confidence=0.6)
        assert len(learning.suggest_actions(pattern)) == 1

    def test_unknown_pattern_type(self, learning):
        pattern = Pattern(
            id="pattern-x", type="custom_family", detected_at=FIXED_NOW.isoformat(),
            confidence=1.0, data={}, event_ids=(), event_count=0,
        )
        assert learning.suggest_actions(pattern) == []


# =============================================================================
# Section 3: Suggest-Only Tests
# =============================================================================

class TestSuggestOnly:

    def test_actions_start_pending(self, learning):
        for pattern_type in PatternType:
            for action in learning.suggest_actions(_pattern(pattern_type, {}, confidence=1.0)):
                assert action.status == LearningActionStatus.PENDING.value
                assert action.applied_at is None

    def test_ids_derive_from_pattern(self, learning):
        pattern = _pattern(PatternType.ERROR_PATTERN, {"actions": ["deploy"]})
        action = learning.suggest_actions(pattern)[0]

        assert action.id == f"action-{pattern.id}"
        assert action.insight_id == f"insight-{pattern.id}"
        assert action.confidence == pattern.confidence
        assert action.created_at == FIXED_NOW.isoformat()
        assert action.metadata["patternId"] == pattern.id
