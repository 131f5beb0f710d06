"""
Orb Adaptation: Preference Learning

Converts detected patterns into pending LearningActions.

CONSTRAINTS:
- SUGGEST ONLY: Every action is created pending; nothing is applied here
- CONFIDENCE FLOORS: Each pattern type has its own minimum confidence
- ONE ACTION PER PATTERN: action id is derived from the pattern id
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from .event_model import utc_now
from .learning_model import (
    PatternType,
    LearningActionType,
    LearningActionStatus,
    Pattern,
    Insight,
    LearningAction,
    action_id_for,
    insight_id_for,
)

logger = logging.getLogger("preference_learning")


# Minimum pattern confidence before an action is suggested
CONFIDENCE_FLOORS: Dict[str, float] = {
    PatternType.FREQUENT_ACTION.value: 0.75,
    PatternType.TIME_BASED_ROUTINE.value: 0.8,
    PatternType.MODE_PREFERENCE.value: 0.85,
    PatternType.ERROR_PATTERN.value: 0.7,
    PatternType.EFFICIENCY_GAIN.value: 0.75,
    PatternType.RISK_THRESHOLD.value: 0.9,
}


def _first(values: Any) -> Optional[str]:
    if isinstance(values, (list, tuple)) and values:
        return str(values[0])
    return None


def _risk_level_for(approval_rate: float) -> str:
    if approval_rate >= 0.8:
        return "high"
    if approval_rate >= 0.5:
        return "medium"
    return "low"


class PreferenceLearning:
    """
    Maps each pattern type to a concrete adaptation proposal.

    Usage:
        learning = PreferenceLearning()
        actions = learning.suggest_actions(pattern, insight)
    """

    def __init__(
        self,
        floors: Optional[Dict[str, float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._floors = dict(CONFIDENCE_FLOORS)
        if floors:
            self._floors.update(floors)
        self._clock = clock or utc_now
        self._builders = {
            PatternType.FREQUENT_ACTION.value: self._from_frequent_action,
            PatternType.TIME_BASED_ROUTINE.value: self._from_time_routine,
            PatternType.MODE_PREFERENCE.value: self._from_mode_preference,
            PatternType.ERROR_PATTERN.value: self._from_error_pattern,
            PatternType.EFFICIENCY_GAIN.value: self._from_efficiency_gain,
            PatternType.RISK_THRESHOLD.value: self._from_risk_threshold,
        }

    def suggest_actions(
        self,
        pattern: Pattern,
        insight: Optional[Insight] = None,
    ) -> List[LearningAction]:
        """Pending actions for a pattern, empty when below its confidence floor."""
        builder = self._builders.get(pattern.type)
        if builder is None:
            return []
        floor = self._floors.get(pattern.type, 1.0)
        if pattern.confidence < floor:
            logger.debug(
                f"Pattern {pattern.id} below action floor ({pattern.confidence:.2f} < {floor})"
            )
            return []

        data = pattern.data if isinstance(pattern.data, dict) else {}
        action_type, target, current, suggested, reason = builder(pattern, data)
        return [LearningAction(
            id=action_id_for(pattern.id),
            type=action_type.value,
            insight_id=insight.id if insight else insight_id_for(pattern.id),
            confidence=pattern.confidence,
            target=target,
            current_value=current,
            suggested_value=suggested,
            reason=reason,
            status=LearningActionStatus.PENDING.value,
            created_at=self._clock().isoformat(),
            metadata={"patternId": pattern.id, "patternType": pattern.type},
        )]

    # -------------------------------------------------------------------------
    # Per-Type Builders
    # -------------------------------------------------------------------------

    def _from_frequent_action(self, pattern: Pattern, data: Dict[str, Any]):
        action = _first(data.get("actions"))
        return (
            LearningActionType.CREATE_SHORTCUT,
            "shortcut",
            None,
            {"action": action, "trigger": "shortcut"},
            f"Action performed {data.get('frequency', pattern.event_count)} times",
        )

    def _from_time_routine(self, pattern: Pattern, data: Dict[str, Any]):
        window = data.get("timeWindow") or {}
        return (
            LearningActionType.SUGGEST_AUTOMATION,
            "scheduled_action",
            None,
            {"action": _first(data.get("actions")), "schedule": window},
            f"Action performed regularly between {window.get('start')} and {window.get('end')}",
        )

    def _from_mode_preference(self, pattern: Pattern, data: Dict[str, Any]):
        usage_rate = float(data.get("usageRate") or 0.0)
        return (
            LearningActionType.UPDATE_PREFERENCE,
            "default_mode",
            "default",
            _first(data.get("modes")),
            f"Mode used {usage_rate * 100:.0f}% of time",
        )

    def _from_error_pattern(self, pattern: Pattern, data: Dict[str, Any]):
        error_rate = float(data.get("errorRate") or 0.0)
        return (
            LearningActionType.ADJUST_CONSTRAINT,
            "error_prevention",
            None,
            {
                "requireConfirmation": _first(data.get("actions")),
                "reason": f"Action fails frequently ({error_rate * 100:.0f}% error rate)",
            },
            f"Action failed {data.get('failures', 0)} of {data.get('total', pattern.event_count)} attempts",
        )

    def _from_efficiency_gain(self, pattern: Pattern, data: Dict[str, Any]):
        improvement = float(data.get("improvement") or 0.0)
        return (
            LearningActionType.RECOMMEND_MODE,
            "workflow_optimization",
            data.get("previousDuration"),
            {"action": _first(data.get("actions")), "avgDuration": data.get("avgDuration")},
            f"New workflow is {improvement * 100:.0f}% faster",
        )

    def _from_risk_threshold(self, pattern: Pattern, data: Dict[str, Any]):
        approval_rate = float(data.get("approvalRate") or 0.0)
        mode = _first(data.get("modes")) or "unknown"
        return (
            LearningActionType.ADJUST_RISK_THRESHOLD,
            f"risk_tolerance:{mode}",
            "medium",
            _risk_level_for(approval_rate),
            f"Approved {approval_rate * 100:.0f}% of {data.get('presented', pattern.event_count)} "
            f"high-risk actions in {mode}",
        )
