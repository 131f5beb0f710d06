"""
Orb Adaptation: Adaptation Engine

Orchestration entry point for the learning loop.

CONSTRAINTS:
- READS EVENTS THROUGH THE BUS: Same filter semantics as query/get_stats
- ADVISORY ONLY: Adjustments and recommendations are computed, never applied
- DETERMINISTIC: Same events and thresholds = same aggregates
- DECISIONS SURVIVE RE-RUNS: A learning cycle never resets a pattern status,
  a decided action, or insight feedback already in the store

This engine provides:
1. Aggregate usage insights (modes, devices, roles, failures, peak hours)
2. Textual recommendations and per-mode suggestions
3. Advisory adjustments (default mode, feature flags, preference hints)
4. The learning cycle: query -> detect -> generate -> suggest -> save
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List

from .config import AdaptationThresholds
from .event_bus import EventBus, FilterLike, coerce_filter
from .event_model import (
    OrbEvent,
    OrbEventType,
    OrbRole,
    FAILURE_EVENT_TYPES,
    FINISH_EVENT_TYPES,
    START_EVENT_TYPES,
    feature_key,
    task_id,
    summarize_events,
    utc_now_iso,
)
from .insight_generator import InsightGenerator, InsightContext
from .learning_model import (
    Pattern,
    Insight,
    LearningAction,
    DetectionOptions,
)
from .learning_store import LearningStore, InMemoryLearningStore
from .pattern_detector import PatternDetector
from .preference_learning import PreferenceLearning

logger = logging.getLogger("adaptation_engine")


# -----------------------------------------------------------------------------
# Result Types
# -----------------------------------------------------------------------------
@dataclass
class AdaptationInsights:
    """Aggregate usage picture for one event filter."""
    most_used_modes: List[Dict[str, Any]] = field(default_factory=list)
    device_usage: List[Dict[str, Any]] = field(default_factory=list)
    role_activity: List[Dict[str, Any]] = field(default_factory=list)
    failing_features: List[Dict[str, Any]] = field(default_factory=list)
    peak_usage_times: List[Dict[str, Any]] = field(default_factory=list)
    average_task_duration: Optional[float] = None  # milliseconds
    error_rate: float = 0.0
    success_rate: float = 1.0
    total_events: int = 0
    patterns: List[Pattern] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mostUsedModes": self.most_used_modes,
            "deviceUsage": self.device_usage,
            "roleActivity": self.role_activity,
            "failingFeatures": self.failing_features,
            "peakUsageTimes": self.peak_usage_times,
            "averageTaskDuration": self.average_task_duration,
            "errorRate": self.error_rate,
            "successRate": self.success_rate,
            "totalEvents": self.total_events,
            "patterns": [p.to_dict() for p in self.patterns],
        }


@dataclass
class AdaptationAdjustments:
    """Advisory changes to defaults. Never applied by the engine."""
    default_mode: Optional[str] = None
    mode_promotions: List[Dict[str, Any]] = field(default_factory=list)
    feature_flags: Dict[str, bool] = field(default_factory=dict)
    preference_hints: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    computed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "defaultMode": self.default_mode,
            "modePromotions": self.mode_promotions,
            "featureFlags": self.feature_flags,
            "preferenceHints": self.preference_hints,
            "recommendations": self.recommendations,
            "computedAt": self.computed_at,
        }


@dataclass
class LearningCycleResult:
    events_scanned: int
    patterns: List[Pattern]
    insights: List[Insight]
    actions: List[LearningAction]
    started_at: str
    completed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events_scanned": self.events_scanned,
            "patterns": [p.to_dict() for p in self.patterns],
            "insights": [i.to_dict() for i in self.insights],
            "actions": [a.to_dict() for a in self.actions],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def _share(count: int, total: int) -> float:
    return count / total if total > 0 else 0.0


# -----------------------------------------------------------------------------
# Adaptation Engine
# -----------------------------------------------------------------------------
class AdaptationEngine:
    """
    Usage:
        engine = AdaptationEngine(bus, learning_store=store)
        insights = engine.compute_insights({"userId": "u1"})
        result = engine.run_learning_cycle()
    """

    def __init__(
        self,
        event_bus: EventBus,
        learning_store: Optional[LearningStore] = None,
        detector: Optional[PatternDetector] = None,
        generator: Optional[InsightGenerator] = None,
        preference_learning: Optional[PreferenceLearning] = None,
        thresholds: Optional[AdaptationThresholds] = None,
        detection_options: Optional[DetectionOptions] = None,
        emit_learning_events: bool = False,
    ):
        self._bus = event_bus
        self._store = learning_store if learning_store is not None else InMemoryLearningStore()
        self._detector = detector or PatternDetector()
        self._generator = generator or InsightGenerator()
        self._preference_learning = preference_learning or PreferenceLearning()
        self._thresholds = thresholds or AdaptationThresholds()
        self._detection_options = detection_options or DetectionOptions()
        self._emit_learning_events = emit_learning_events
        self._adjustments: Optional[AdaptationAdjustments] = None

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def learning_store(self) -> LearningStore:
        return self._store

    @property
    def detection_options(self) -> DetectionOptions:
        return self._detection_options

    # -------------------------------------------------------------------------
    # Aggregate Insights
    # -------------------------------------------------------------------------

    def compute_insights(self, event_filter: FilterLike = None) -> AdaptationInsights:
        """Aggregate statistics and detected patterns for matching events."""
        resolved = coerce_filter(event_filter)
        events = self._bus.query_all(resolved)
        stats = summarize_events(events)
        total = stats.total_events

        most_used_modes = [
            {"mode": m["mode"], "count": m["count"], "percentage": _share(m["count"], total)}
            for m in stats.most_used_modes
        ]

        device_counts: Dict[str, int] = {}
        for event in events:
            if event.device_id:
                device_counts[event.device_id] = device_counts.get(event.device_id, 0) + 1
        device_usage = [
            {"device": device, "count": count, "percentage": _share(count, total)}
            for device, count in sorted(device_counts.items(), key=lambda item: (-item[1], item[0]))
        ]

        role_activity = [
            {"role": role, "count": count, "percentage": _share(count, total)}
            for role, count in sorted(stats.by_role.items(), key=lambda item: (-item[1], item[0]))
        ]

        return AdaptationInsights(
            most_used_modes=most_used_modes,
            device_usage=device_usage,
            role_activity=role_activity,
            failing_features=self._failing_features(events),
            peak_usage_times=self._peak_usage_times(events),
            average_task_duration=self._average_task_duration(events),
            error_rate=stats.error_rate,
            success_rate=1.0 - stats.error_rate,
            total_events=total,
            patterns=self._detector.detect_patterns(events, self._detection_options),
        )

    def get_recommendations(self, event_filter: FilterLike = None) -> List[str]:
        insights = self.compute_insights(event_filter)
        return self._recommendations_from(insights)

    def get_mode_suggestions(self, mode: str, event_filter: FilterLike = None) -> List[str]:
        """Suggestions scoped to a single mode."""
        scoped = coerce_filter(event_filter).model_copy(update={"mode": mode})
        insights = self.compute_insights(scoped)
        thresholds = self._thresholds

        suggestions = []
        if insights.error_rate > thresholds.mode_error_rate:
            suggestions.append(
                f'Mode "{mode}" has error rate of {insights.error_rate * 100:.1f}%'
            )
        if insights.average_task_duration:
            seconds = insights.average_task_duration / 1000
            suggestions.append(f'Average task duration in "{mode}": {seconds:.1f}s')
        return suggestions

    # -------------------------------------------------------------------------
    # Adjustments (Advisory)
    # -------------------------------------------------------------------------

    def compute_adjustments(self, event_filter: FilterLike = None) -> AdaptationAdjustments:
        insights = self.compute_insights(event_filter)
        thresholds = self._thresholds
        adjustments = AdaptationAdjustments(computed_at=utc_now_iso())

        if insights.most_used_modes:
            top = insights.most_used_modes[0]
            if top["percentage"] > thresholds.mode_promotion_rate:
                adjustments.default_mode = top["mode"]
                adjustments.recommendations.append(
                    f'Set "{top["mode"]}" as default mode (used {top["percentage"] * 100:.1f}% of the time)'
                )
            adjustments.mode_promotions = [
                {"mode": item["mode"], "priority": item["percentage"]}
                for item in insights.most_used_modes[:thresholds.max_mode_promotions]
            ]

        for feature in insights.failing_features:
            if feature["errorRate"] > thresholds.feature_disable_rate:
                adjustments.feature_flags[feature["feature"]] = False
                adjustments.recommendations.append(
                    f'Disable feature "{feature["feature"]}" (error rate: {feature["errorRate"] * 100:.1f}%)'
                )

        if insights.error_rate > thresholds.overall_error_rate:
            adjustments.preference_hints = {"riskTolerance": "low", "requireConfirmation": True}
            adjustments.recommendations.append(
                f"Increase policy caution (error rate: {insights.error_rate * 100:.1f}%)"
            )
        elif insights.total_events and insights.success_rate > thresholds.autonomy_success_rate:
            adjustments.preference_hints = {"riskTolerance": "medium", "requireConfirmation": False}
            adjustments.recommendations.append(
                f"Allow more policy autonomy (success rate: {insights.success_rate * 100:.1f}%)"
            )

        self._adjustments = adjustments
        logger.info(f"Computed adjustments with {len(adjustments.recommendations)} recommendations")
        return adjustments

    def get_adjustments(self) -> Optional[AdaptationAdjustments]:
        """Last computed adjustments, or None."""
        return self._adjustments

    # -------------------------------------------------------------------------
    # Learning Cycle
    # -------------------------------------------------------------------------

    def run_learning_cycle(
        self,
        event_filter: FilterLike = None,
        options: Optional[DetectionOptions] = None,
        context: Optional[InsightContext] = None,
    ) -> LearningCycleResult:
        """
        Query events, detect patterns, generate insights, suggest actions
        and persist everything to the learning store.
        """
        started_at = utc_now_iso()
        events = self._bus.query_all(coerce_filter(event_filter))
        patterns = self._detector.detect_patterns(events, options or self._detection_options)
        by_id = {p.id: p for p in patterns}
        insights = self._generator.generate_batch(patterns, context)

        saved_patterns: List[Pattern] = []
        saved_insights: List[Insight] = []
        saved_actions: List[LearningAction] = []
        new_pattern_ids = set()

        for pattern in patterns:
            pattern, created = self._store.refresh_pattern(pattern)
            if created:
                new_pattern_ids.add(pattern.id)
            saved_patterns.append(pattern)
            by_id[pattern.id] = pattern

        for insight in insights:
            pattern = by_id[insight.pattern_id]
            actions = []
            for action in self._preference_learning.suggest_actions(pattern, insight):
                actions.append(self._store.refresh_learning_action(action))

            insight = replace(insight, suggested_actions=tuple(a.id for a in actions))
            insight = self._store.refresh_insight(insight)
            saved_insights.append(insight)
            saved_actions.extend(actions)

            if self._emit_learning_events and pattern.id in new_pattern_ids:
                self._announce(pattern, insight)

        result = LearningCycleResult(
            events_scanned=len(events),
            patterns=saved_patterns,
            insights=saved_insights,
            actions=saved_actions,
            started_at=started_at,
            completed_at=utc_now_iso(),
        )
        logger.info(
            f"Learning cycle: {len(events)} events, {len(saved_patterns)} patterns, "
            f"{len(saved_insights)} insights, {len(saved_actions)} actions"
        )
        return result

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _recommendations_from(self, insights: AdaptationInsights) -> List[str]:
        thresholds = self._thresholds
        recommendations = []

        if insights.most_used_modes:
            top = insights.most_used_modes[0]
            if top["percentage"] > thresholds.mode_promotion_rate:
                recommendations.append(
                    f'Consider promoting "{top["mode"]}" mode as default '
                    f'(used {top["percentage"] * 100:.1f}% of the time)'
                )

        for feature in insights.failing_features[:thresholds.max_flagged_features]:
            if feature["errorRate"] > thresholds.feature_error_rate:
                recommendations.append(
                    f'Feature "{feature["feature"]}" has high error rate '
                    f'({feature["errorRate"] * 100:.1f}%) - consider investigation'
                )

        if insights.error_rate > thresholds.overall_error_rate:
            recommendations.append(
                f"Overall error rate is {insights.error_rate * 100:.1f}% - consider reviewing system health"
            )

        if insights.peak_usage_times:
            peak = insights.peak_usage_times[0]
            recommendations.append(
                f"Peak usage time is {peak['hour']}:00 ({peak['count']} events) - consider optimizing for this time"
            )

        return recommendations

    @staticmethod
    def _failing_features(events: List[OrbEvent]) -> List[Dict[str, Any]]:
        totals: Dict[str, List[int]] = {}
        for event in events:
            if event.type not in FINISH_EVENT_TYPES:
                continue
            counts = totals.setdefault(feature_key(event), [0, 0])
            counts[0] += 1
            if event.type in FAILURE_EVENT_TYPES:
                counts[1] += 1

        failing = [
            {"feature": feature, "errorRate": failures / attempts, "errorCount": failures}
            for feature, (attempts, failures) in totals.items()
            if failures > 0
        ]
        failing.sort(key=lambda f: (-f["errorRate"], f["feature"]))
        return failing

    def _peak_usage_times(self, events: List[OrbEvent]) -> List[Dict[str, Any]]:
        hours: Dict[int, int] = {}
        for event in events:
            hour = event.occurred_at.hour
            hours[hour] = hours.get(hour, 0) + 1
        ranked = sorted(hours.items(), key=lambda item: (-item[1], item[0]))
        return [{"hour": hour, "count": count} for hour, count in ranked[:self._thresholds.peak_hours]]

    @staticmethod
    def _average_task_duration(events: List[OrbEvent]) -> Optional[float]:
        """Mean start->finish time in ms, pairing by payload taskId."""
        starts = {}
        durations = []
        for event in sorted(events, key=lambda e: (e.occurred_at, e.id)):
            key = task_id(event)
            if key is None:
                continue
            if event.type in START_EVENT_TYPES:
                starts[key] = event.occurred_at
            elif event.type in FINISH_EVENT_TYPES and key in starts:
                started = starts.pop(key)
                durations.append((event.occurred_at - started).total_seconds() * 1000)
        if not durations:
            return None
        return sum(durations) / len(durations)

    def _announce(self, pattern: Pattern, insight: Insight) -> None:
        self._bus.record(
            OrbEventType.PATTERN_DETECTED,
            {
                "patternId": pattern.id,
                "patternType": pattern.type,
                "confidence": pattern.confidence,
            },
            role=OrbRole.TE,
        )
        self._bus.record(
            OrbEventType.INSIGHT_GENERATED,
            {
                "insightId": insight.id,
                "patternId": pattern.id,
                "title": insight.title,
            },
            role=OrbRole.SOL,
        )
