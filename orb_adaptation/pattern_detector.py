"""
Orb Adaptation: Pattern Detector

Mines a window of OrbEvents for six families of recurring behavior.

CONSTRAINTS:
- DETERMINISTIC: Same window + same options = same patterns, ids included
- ISOLATED: A family that raises is logged and skipped; others still run
- BOUNDED: Confidence is always clamped to [0, 1]
- PROVENANCE: Pattern event_ids are always drawn from the scanned window

Families:
1. frequent_action - actions completed unusually often
2. time_based_routine - actions clustered at the same time of day
3. mode_preference - one mode dominating a device context
4. error_pattern - actions that fail often
5. efficiency_gain - actions getting faster over time
6. risk_threshold - how often high-risk decisions get approved per mode
"""

import logging
import math
import statistics
from collections import OrderedDict
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Tuple

from .event_model import (
    OrbEvent,
    OrbEventType,
    COMPLETION_EVENT_TYPES,
    parse_timestamp,
    action_key,
    duration_ms,
    utc_now,
)
from .learning_model import (
    PatternType,
    PatternStatus,
    Pattern,
    DetectionOptions,
    make_pattern_id,
    clamp_confidence,
)

logger = logging.getLogger("pattern_detector")


MINUTES_PER_DAY = 24 * 60

ATTEMPT_EVENT_TYPES = frozenset({
    OrbEventType.ACTION_COMPLETED,
    OrbEventType.ACTION_FAILED,
    OrbEventType.TASK_COMPLETE,
    OrbEventType.TASK_FAIL,
})

ATTEMPT_FAILURE_TYPES = frozenset({
    OrbEventType.ACTION_FAILED,
    OrbEventType.TASK_FAIL,
})

APPROVED_DECISIONS = frozenset({"allow", "allowed", "approve", "approved", "accept", "accepted"})


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _chronological(events: List[OrbEvent]) -> List[OrbEvent]:
    return sorted(events, key=lambda e: (e.occurred_at, e.id))


def _span_days(events: List[OrbEvent]) -> int:
    """Calendar days (UTC) from the first to the last event, inclusive, minimum 1."""
    if not events:
        return 1
    dates = [e.occurred_at.date() for e in events]
    return max(1, (max(dates) - min(dates)).days + 1)


def _minute_of_day(at: datetime) -> int:
    return at.hour * 60 + at.minute


def _format_minute(minute: int) -> str:
    minute %= MINUTES_PER_DAY
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _smallest_circular_window(minutes: List[int], needed: int) -> Tuple[int, int]:
    """
    Smallest clock window (wrapping at midnight) holding `needed` of the
    given minutes-of-day.

    Returns (start_minute, width_minutes). Ties go to the earliest start.
    """
    ordered = sorted(minutes)
    n = len(ordered)
    best_start, best_width = ordered[0], MINUTES_PER_DAY
    for i in range(n):
        j = i + needed - 1
        end = ordered[j] if j < n else ordered[j - n] + MINUTES_PER_DAY
        width = end - ordered[i]
        if width < best_width or (width == best_width and ordered[i] < best_start):
            best_start, best_width = ordered[i], width
    return best_start, best_width


def _in_window(minute: int, start: int, width: int) -> bool:
    return (minute - start) % MINUTES_PER_DAY <= width


def _is_approved(event: OrbEvent) -> bool:
    approved = event.payload.get("approved")
    if isinstance(approved, bool):
        return approved
    decision = event.payload.get("decision")
    return isinstance(decision, str) and decision.lower() in APPROVED_DECISIONS


# -----------------------------------------------------------------------------
# Pattern Detector
# -----------------------------------------------------------------------------
class PatternDetector:
    """
    Runs the requested pattern families over an event window.

    Usage:
        detector = PatternDetector()
        patterns = detector.detect_patterns(events, DetectionOptions(min_confidence=0.6))
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._families: Dict[str, Callable[[List[OrbEvent], DetectionOptions], List[Pattern]]] = OrderedDict([
            (PatternType.FREQUENT_ACTION.value, self.detect_frequent_actions),
            (PatternType.TIME_BASED_ROUTINE.value, self.detect_time_routines),
            (PatternType.MODE_PREFERENCE.value, self.detect_mode_preferences),
            (PatternType.ERROR_PATTERN.value, self.detect_error_patterns),
            (PatternType.EFFICIENCY_GAIN.value, self.detect_efficiency_gains),
            (PatternType.RISK_THRESHOLD.value, self.detect_risk_thresholds),
        ])

    def detect_patterns(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """
        Detect patterns across all requested families.

        Results below options.min_confidence are dropped, except
        risk_threshold which is emitted whenever its sample is large enough.
        Sorted by confidence descending, then type, then id.
        """
        options = options or DetectionOptions()
        window = self._apply_context(events, options)

        patterns: List[Pattern] = []
        for pattern_type in options.enabled_types():
            family = self._families.get(pattern_type)
            if family is None:
                logger.warning(f"Unknown pattern type requested: {pattern_type}")
                continue
            try:
                found = family(window, options)
            except Exception:
                logger.exception(f"Pattern family {pattern_type} failed; continuing with the rest")
                continue
            patterns.extend(found)

        kept = [
            p for p in patterns
            if p.type == PatternType.RISK_THRESHOLD.value or p.confidence >= options.min_confidence
        ]
        kept.sort(key=lambda p: (-p.confidence, p.type, p.id))

        logger.info(f"Detected {len(kept)} patterns from {len(window)} events")
        return kept

    # -------------------------------------------------------------------------
    # Families
    # -------------------------------------------------------------------------

    def detect_frequent_actions(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """Completed actions whose count reaches min_occurrences."""
        options = options or DetectionOptions()
        groups = self._group_by_action(e for e in events if e.type in COMPLETION_EVENT_TYPES)
        if not groups:
            return []

        median = statistics.median(len(group) for group in groups.values())
        baseline = max(median, options.min_occurrences) + options.min_occurrences
        span = _span_days(events)

        patterns = []
        for action, group in groups.items():
            frequency = len(group)
            if frequency < options.min_occurrences:
                continue
            patterns.append(self._build(
                PatternType.FREQUENT_ACTION,
                key=action,
                events=group,
                confidence=frequency / baseline,
                data={
                    "actions": [action],
                    "frequency": frequency,
                    "avgPerDay": frequency / span,
                    "spanDays": span,
                    "medianFrequency": median,
                },
            ))
        return patterns

    def detect_time_routines(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """Actions whose completions cluster in a narrow time-of-day window."""
        options = options or DetectionOptions()
        groups = self._group_by_action(e for e in events if e.type in COMPLETION_EVENT_TYPES)

        patterns = []
        for action, group in groups.items():
            n = len(group)
            if n < options.routine_min_occurrences:
                continue
            days = {e.occurred_at.date() for e in group}
            if len(days) < options.routine_min_days:
                continue

            minutes = [_minute_of_day(e.occurred_at) for e in group]
            needed = min(n, max(1, math.ceil(options.routine_majority * n - 1e-9)))
            start, width = _smallest_circular_window(minutes, needed)
            if width > options.routine_max_window_minutes:
                continue

            covered = [e for e, m in zip(group, minutes) if _in_window(m, start, width)]
            consistency = len(covered) / n
            confidence = min(1.0, 1.2 * consistency) * (1 - width / MINUTES_PER_DAY)

            patterns.append(self._build(
                PatternType.TIME_BASED_ROUTINE,
                key=action,
                events=covered,
                confidence=confidence,
                data={
                    "actions": [action],
                    "timeWindow": {
                        "start": _format_minute(start),
                        "end": _format_minute(start + width),
                    },
                    "frequency": len(covered),
                    "consistency": consistency,
                    "days": len(days),
                },
            ))
        return patterns

    def detect_mode_preferences(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """A mode used in at least mode_preference_rate of a device's events."""
        options = options or DetectionOptions()
        contexts: Dict[str, Dict[str, List[OrbEvent]]] = {}
        for event in _chronological(events):
            if not event.mode or not event.device_id:
                continue
            contexts.setdefault(event.device_id, {}).setdefault(event.mode, []).append(event)

        patterns = []
        for context in sorted(contexts):
            modes = contexts[context]
            total = sum(len(group) for group in modes.values())
            if total < options.min_occurrences:
                continue
            for mode in sorted(modes):
                group = modes[mode]
                usage_rate = len(group) / total
                if usage_rate < options.mode_preference_rate:
                    continue
                patterns.append(self._build(
                    PatternType.MODE_PREFERENCE,
                    key=f"{context}:{mode}",
                    events=group,
                    confidence=1.1 * usage_rate,
                    data={
                        "modes": [mode],
                        "context": context,
                        "usageRate": usage_rate,
                        "count": len(group),
                        "total": total,
                    },
                ))
        return patterns

    def detect_error_patterns(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """Actions failing at or above error_rate_threshold over enough attempts."""
        options = options or DetectionOptions()
        groups = self._group_by_action(e for e in events if e.type in ATTEMPT_EVENT_TYPES)

        patterns = []
        for action, group in groups.items():
            attempts = len(group)
            if attempts < options.error_min_attempts:
                continue
            failures = sum(1 for e in group if e.type in ATTEMPT_FAILURE_TYPES)
            error_rate = failures / attempts
            if failures == 0 or error_rate < options.error_rate_threshold:
                continue

            sample_factor = min(1.0, attempts / (2 * options.error_min_attempts))
            confidence = 0.5 * (error_rate / options.error_rate_threshold) * sample_factor

            patterns.append(self._build(
                PatternType.ERROR_PATTERN,
                key=action,
                events=group,
                confidence=confidence,
                data={
                    "actions": [action],
                    "errorRate": error_rate,
                    "failures": failures,
                    "total": attempts,
                },
            ))
        return patterns

    def detect_efficiency_gains(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """Compare the earliest N durations of an action against the latest N."""
        options = options or DetectionOptions()
        timed = [
            e for e in events
            if e.type in COMPLETION_EVENT_TYPES and duration_ms(e) is not None
        ]
        groups = self._group_by_action(timed)
        size = options.efficiency_sample_size

        patterns = []
        for action, group in groups.items():
            if len(group) < 2 * size:
                continue
            earliest = group[:size]
            latest = group[-size:]
            previous = statistics.mean(duration_ms(e) for e in earliest)
            recent = statistics.mean(duration_ms(e) for e in latest)
            if previous <= 0:
                continue
            improvement = (previous - recent) / previous
            if improvement < options.efficiency_improvement:
                continue

            patterns.append(self._build(
                PatternType.EFFICIENCY_GAIN,
                key=action,
                events=earliest + latest,
                confidence=0.5 * improvement / options.efficiency_improvement,
                data={
                    "actions": [action],
                    "improvement": improvement,
                    "avgDuration": recent,
                    "previousDuration": previous,
                    "sampleSize": size,
                },
            ))
        return patterns

    def detect_risk_thresholds(
        self,
        events: List[OrbEvent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Pattern]:
        """Approval rate of high-risk decisions per mode."""
        options = options or DetectionOptions()
        by_mode: Dict[str, List[OrbEvent]] = {}
        for event in _chronological(events):
            if event.type != OrbEventType.DECISION_MADE:
                continue
            if str(event.payload.get("riskLevel", "")).lower() != "high":
                continue
            by_mode.setdefault(event.mode or "unknown", []).append(event)

        minimum = options.risk_min_samples
        patterns = []
        for mode in sorted(by_mode):
            group = by_mode[mode]
            presented = len(group)
            if presented < minimum:
                continue
            approved = sum(1 for e in group if _is_approved(e))
            patterns.append(self._build(
                PatternType.RISK_THRESHOLD,
                key=mode,
                events=group,
                confidence=0.5 + 0.5 * (presented - minimum) / minimum,
                data={
                    "modes": [mode],
                    "context": mode,
                    "riskLevel": "high",
                    "approvalRate": approved / presented,
                    "approved": approved,
                    "presented": presented,
                },
            ))
        return patterns

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply_context(events: List[OrbEvent], options: DetectionOptions) -> List[OrbEvent]:
        window = []
        start = end = None
        if options.time_window:
            start = parse_timestamp(options.time_window[0])
            end = parse_timestamp(options.time_window[1])
        for event in events:
            if options.user_id is not None and event.user_id != options.user_id:
                continue
            if options.device_id is not None and event.device_id != options.device_id:
                continue
            if options.mode is not None and event.mode != options.mode:
                continue
            if options.role is not None and (event.role.value if event.role else None) != options.role:
                continue
            if start is not None and not (start <= event.occurred_at <= end):
                continue
            window.append(event)
        return window

    @staticmethod
    def _group_by_action(events) -> Dict[str, List[OrbEvent]]:
        """Group by action identifier; groups and members in chronological order."""
        groups: Dict[str, List[OrbEvent]] = {}
        for event in _chronological(list(events)):
            groups.setdefault(action_key(event), []).append(event)
        return OrderedDict(sorted(groups.items()))

    def _build(
        self,
        pattern_type: PatternType,
        key: str,
        events: List[OrbEvent],
        confidence: float,
        data: Dict[str, Any],
    ) -> Pattern:
        event_ids = tuple(e.id for e in events)
        return Pattern(
            id=make_pattern_id(pattern_type.value, key, event_ids),
            type=pattern_type.value,
            detected_at=self._clock().isoformat(),
            confidence=clamp_confidence(confidence),
            data=data,
            event_ids=event_ids,
            event_count=len(event_ids),
            status=PatternStatus.DETECTED.value,
        )


def detect_patterns(
    events: List[OrbEvent],
    options: Optional[DetectionOptions] = None,
) -> List[Pattern]:
    """Convenience wrapper around a fresh PatternDetector."""
    return PatternDetector().detect_patterns(events, options)
