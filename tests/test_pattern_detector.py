"""
Pattern Detector Tests

Test Categories:
1. Frequent Action Tests
2. Time-Based Routine Tests
3. Mode Preference Tests
4. Error Pattern Tests
5. Efficiency Gain Tests
6. Risk Threshold Tests
7. Determinism / Bounds / Isolation Tests
"""

from datetime import datetime, timedelta, timezone

import pytest

from orb_adaptation.learning_model import DetectionOptions, PatternType
from orb_adaptation.pattern_detector import PatternDetector, detect_patterns

from .conftest import BASE_TIME, build_event


def _only(patterns, pattern_type):
    return [p for p in patterns if p.type == pattern_type.value]


def _options(*types, **kwargs):
    return DetectionOptions(pattern_types=[t.value for t in types], **kwargs)


@pytest.fixture
def detector():
    return PatternDetector()


@pytest.fixture
def error_events():
    """20 deploy attempts, 5 of them failed."""
    events = []
    for i in range(20):
        event_type = "action_failed" if i % 4 == 0 else "action_completed"
        events.append(build_event(
            f"deploy-{i:02d}", event_type, BASE_TIME + timedelta(hours=i),
            payload={"actionType": "deploy"},
        ))
    return events


@pytest.fixture
def mode_events():
    """40 events on one device, 34 of them in sol mode."""
    return [
        build_event(
            f"mode-{i:02d}", "user_action", BASE_TIME + timedelta(minutes=i),
            mode="sol" if i < 34 else "mars", deviceId="laptop-1",
        )
        for i in range(40)
    ]


@pytest.fixture
def routine_events():
    """A standup action around 09:00 on ten consecutive days."""
    return [
        build_event(
            f"standup-{i:02d}", "action_completed",
            BASE_TIME + timedelta(days=i, minutes=5 * (i % 3)),
            payload={"actionType": "standup"},
        )
        for i in range(10)
    ]


def _risk_events(presented, approved, mode="sol"):
    return [
        build_event(
            f"risk-{mode}-{i:02d}", "decision_made", BASE_TIME + timedelta(minutes=i),
            mode=mode, role="luna",
            payload={"riskLevel": "high", "approved": i < approved},
        )
        for i in range(presented)
    ]


# =============================================================================
# Section 1: Frequent Action Tests
# =============================================================================

class TestFrequentAction:

    def test_git_commit_frequency(self, detector, spread_events):
        """47 commits over 7 days: frequency 47 and about 6.7 per day."""
        events = spread_events("git-commit", 47, days=7)

        patterns = _only(
            detector.detect_patterns(events, _options(PatternType.FREQUENT_ACTION)),
            PatternType.FREQUENT_ACTION,
        )

        assert len(patterns) == 1
        data = patterns[0].data
        assert data["actions"] == ["git-commit"]
        assert data["frequency"] == 47
        assert data["avgPerDay"] == pytest.approx(47 / 7)
        assert f"{data['avgPerDay']:.1f}" == "6.7"
        assert patterns[0].event_count == 47

    def test_below_min_occurrences_not_reported(self, detector, spread_events):
        events = spread_events("rare", 9, days=3)
        assert detector.detect_patterns(events, _options(PatternType.FREQUENT_ACTION)) == []

    def test_failed_actions_do_not_count(self, detector, spread_events):
        events = spread_events("flaky", 12, days=3, event_type="action_failed")
        assert detector.detect_frequent_actions(events, DetectionOptions()) == []

    def test_task_runner_vocabulary(self, detector):
        events = [
            build_event(f"t{i}", "task_complete", BASE_TIME + timedelta(hours=i),
                        payload={"taskLabel": "nightly-report"})
            for i in range(12)
        ]
        patterns = detector.detect_frequent_actions(events, DetectionOptions())
        assert patterns[0].data["actions"] == ["nightly-report"]


# =============================================================================
# Section 2: Time-Based Routine Tests
# =============================================================================

class TestTimeRoutine:

    def test_morning_routine_window(self, detector, routine_events):
        patterns = detector.detect_time_routines(routine_events, DetectionOptions())

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.data["timeWindow"] == {"start": "09:00", "end": "09:05"}
        assert pattern.data["consistency"] == pytest.approx(0.7)
        assert pattern.event_count == 7
        assert 0.5 <= pattern.confidence <= 1.0

    def test_window_wraps_midnight(self, detector):
        events = []
        for night in range(3):
            day = BASE_TIME.replace(hour=0, minute=0) + timedelta(days=night)
            events.append(build_event(f"late-{night}a", "action_completed",
                                      day + timedelta(hours=23, minutes=55),
                                      payload={"actionType": "backup"}))
            events.append(build_event(f"late-{night}b", "action_completed",
                                      day + timedelta(days=1, minutes=5),
                                      payload={"actionType": "backup"}))

        patterns = detector.detect_time_routines(events, DetectionOptions())

        assert len(patterns) == 1
        assert patterns[0].data["timeWindow"] == {"start": "23:55", "end": "00:05"}
        assert patterns[0].event_count == 6

    def test_too_few_days(self, detector):
        events = [
            build_event(f"s{i}", "action_completed",
                        BASE_TIME + timedelta(days=i % 2, minutes=i),
                        payload={"actionType": "standup"})
            for i in range(8)
        ]
        assert detector.detect_time_routines(events, DetectionOptions()) == []

    def test_scattered_times_not_a_routine(self, detector):
        events = [
            build_event(f"s{i}", "action_completed",
                        BASE_TIME + timedelta(days=i, hours=(i * 5) % 24),
                        payload={"actionType": "random"})
            for i in range(10)
        ]
        assert detector.detect_time_routines(events, DetectionOptions()) == []


# =============================================================================
# Section 3: Mode Preference Tests
# =============================================================================

class TestModePreference:

    def test_sol_preferred(self, detector, mode_events):
        patterns = detector.detect_mode_preferences(mode_events, DetectionOptions())

        assert len(patterns) == 1
        data = patterns[0].data
        assert data["modes"] == ["sol"]
        assert data["context"] == "laptop-1"
        assert data["usageRate"] == pytest.approx(0.85)
        assert patterns[0].event_count == 34

    def test_evenly_split_modes_not_reported(self, detector):
        events = [
            build_event(f"m{i}", "user_action", BASE_TIME + timedelta(minutes=i),
                        mode="sol" if i % 2 else "mars", deviceId="d1")
            for i in range(20)
        ]
        assert detector.detect_mode_preferences(events, DetectionOptions()) == []

    def test_events_without_device_ignored(self, detector):
        events = [
            build_event(f"m{i}", "user_action", BASE_TIME + timedelta(minutes=i), mode="sol")
            for i in range(20)
        ]
        assert detector.detect_mode_preferences(events, DetectionOptions()) == []


# =============================================================================
# Section 4: Error Pattern Tests
# =============================================================================

class TestErrorPattern:

    def test_deploy_failing(self, detector, error_events):
        patterns = detector.detect_error_patterns(error_events, DetectionOptions())

        assert len(patterns) == 1
        data = patterns[0].data
        assert data["actions"] == ["deploy"]
        assert data["errorRate"] == pytest.approx(0.25)
        assert data["failures"] == 5
        assert data["total"] == 20
        assert patterns[0].confidence == pytest.approx(0.5 * 0.25 / 0.15)

    def test_low_error_rate_ignored(self, detector):
        events = [
            build_event(f"e{i}", "action_failed" if i < 2 else "action_completed",
                        BASE_TIME + timedelta(minutes=i), payload={"actionType": "lint"})
            for i in range(20)
        ]
        assert detector.detect_error_patterns(events, DetectionOptions()) == []

    def test_too_few_attempts_ignored(self, detector):
        events = [
            build_event(f"e{i}", "action_failed", BASE_TIME + timedelta(minutes=i),
                        payload={"actionType": "lint"})
            for i in range(9)
        ]
        assert detector.detect_error_patterns(events, DetectionOptions()) == []


# =============================================================================
# Section 5: Efficiency Gain Tests
# =============================================================================

class TestEfficiencyGain:

    def _timed(self, durations):
        return [
            build_event(f"b{i:02d}", "action_completed", BASE_TIME + timedelta(hours=i),
                        payload={"actionType": "build"}, metadata={"duration": duration})
            for i, duration in enumerate(durations)
        ]

    def test_faster_recent_runs(self, detector):
        events = self._timed([1000] * 5 + [600] * 5)

        patterns = detector.detect_efficiency_gains(events, DetectionOptions())

        assert len(patterns) == 1
        assert patterns[0].data["improvement"] == pytest.approx(0.4)
        assert patterns[0].data["avgDuration"] == pytest.approx(600)
        assert patterns[0].confidence == 1.0

    def test_no_gain(self, detector):
        events = self._timed([1000] * 10)
        assert detector.detect_efficiency_gains(events, DetectionOptions()) == []

    def test_events_without_duration_ignored(self, detector, spread_events):
        events = spread_events("build", 12, days=2)
        assert detector.detect_efficiency_gains(events, DetectionOptions()) == []


# =============================================================================
# Section 6: Risk Threshold Tests
# =============================================================================

class TestRiskThreshold:

    def test_approval_rate(self, detector):
        patterns = detector.detect_risk_thresholds(_risk_events(12, 10), DetectionOptions())

        assert len(patterns) == 1
        data = patterns[0].data
        assert data["modes"] == ["sol"]
        assert data["approvalRate"] == pytest.approx(10 / 12)
        assert data["presented"] == 12
        assert patterns[0].confidence == pytest.approx(0.6)

    def test_decision_strings_count_as_approval(self, detector):
        events = [
            build_event(f"r{i}", "decision_made", BASE_TIME + timedelta(minutes=i), mode="sol",
                        payload={"riskLevel": "HIGH", "decision": "Approve" if i < 5 else "deny"})
            for i in range(10)
        ]
        patterns = detector.detect_risk_thresholds(events, DetectionOptions())
        assert patterns[0].data["approvalRate"] == pytest.approx(0.5)

    def test_exempt_from_min_confidence(self, detector):
        patterns = detector.detect_patterns(
            _risk_events(10, 9),
            _options(PatternType.RISK_THRESHOLD, min_confidence=0.95),
        )
        assert len(patterns) == 1
        assert patterns[0].confidence == pytest.approx(0.5)

    def test_low_risk_decisions_ignored(self, detector):
        events = [
            build_event(f"r{i}", "decision_made", BASE_TIME + timedelta(minutes=i),
                        mode="sol", payload={"riskLevel": "low", "approved": True})
            for i in range(15)
        ]
        assert detector.detect_risk_thresholds(events, DetectionOptions()) == []


# =============================================================================
# Section 7: Determinism / Bounds / Isolation Tests
# =============================================================================

class TestDetectorGuarantees:

    @pytest.fixture
    def mixed_window(self, spread_events, error_events, mode_events, routine_events):
        return (
            spread_events("git-commit", 47, days=7)
            + error_events
            + mode_events
            + routine_events
            + _risk_events(12, 10)
        )

    def test_empty_window(self, detector):
        assert detector.detect_patterns([], DetectionOptions()) == []

    def test_deterministic_ids(self, mixed_window):
        first = PatternDetector(clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc))
        second = PatternDetector(clock=lambda: datetime(2026, 1, 1, tzinfo=timezone.utc))

        ids_first = [(p.id, p.confidence) for p in first.detect_patterns(mixed_window)]
        ids_second = [(p.id, p.confidence) for p in second.detect_patterns(list(reversed(mixed_window)))]

        assert ids_first == ids_second
        assert ids_first

    def test_confidence_bounded(self, detector, mixed_window):
        for pattern in detector.detect_patterns(mixed_window, DetectionOptions(min_confidence=0.0)):
            assert 0.0 <= pattern.confidence <= 1.0

    def test_provenance_within_window(self, detector, mixed_window):
        window_ids = {e.id for e in mixed_window}
        for pattern in detector.detect_patterns(mixed_window):
            assert set(pattern.event_ids) <= window_ids
            assert pattern.event_count == len(pattern.event_ids)

    def test_sorted_by_confidence(self, detector, mixed_window):
        confidences = [p.confidence for p in detector.detect_patterns(mixed_window)]
        assert confidences == sorted(confidences, reverse=True)

    def test_min_confidence_respected(self, detector, mixed_window):
        for pattern in detector.detect_patterns(mixed_window, DetectionOptions(min_confidence=0.8)):
            if pattern.type != PatternType.RISK_THRESHOLD.value:
                assert pattern.confidence >= 0.8

    def test_pattern_types_restrict_families(self, detector, mixed_window):
        patterns = detector.detect_patterns(mixed_window, _options(PatternType.ERROR_PATTERN))
        assert {p.type for p in patterns} == {PatternType.ERROR_PATTERN.value}

    def test_unknown_pattern_type_skipped(self, detector, mixed_window):
        options = DetectionOptions(pattern_types=["telepathy", PatternType.ERROR_PATTERN.value])
        patterns = detector.detect_patterns(mixed_window, options)
        assert {p.type for p in patterns} == {PatternType.ERROR_PATTERN.value}

    def test_failing_family_isolated(self, detector, mixed_window):
        def boom(events, options):
            raise RuntimeError("family exploded")

        detector._families[PatternType.FREQUENT_ACTION.value] = boom
        patterns = detector.detect_patterns(mixed_window)

        types = {p.type for p in patterns}
        assert PatternType.FREQUENT_ACTION.value not in types
        assert PatternType.ERROR_PATTERN.value in types

    def test_context_filter_by_device(self, detector, mixed_window):
        patterns = detector.detect_patterns(mixed_window, DetectionOptions(device_id="laptop-1"))
        assert {p.type for p in patterns} == {PatternType.MODE_PREFERENCE.value}

    def test_module_level_helper(self, error_events):
        patterns = detect_patterns(error_events, _options(PatternType.ERROR_PATTERN))
        assert len(patterns) == 1
