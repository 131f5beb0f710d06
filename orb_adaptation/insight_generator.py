"""
Orb Adaptation: Insight Generator

Turns Patterns into human-readable Insights using deterministic,
per-type templates.

CONSTRAINTS:
- TEMPLATE-BASED: Wording comes from a registry keyed by pattern type
- NEVER RAISES ON MISSING DATA: Absent fields fall back to neutral wording
- ONE PATTERN, ONE INSIGHT: insight id is derived from the pattern id
- STABLE ORDER: prioritize() is confidence desc, then generated_at desc
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from .event_model import OrbEvent, parse_timestamp, utc_now
from .learning_model import (
    PatternType,
    Pattern,
    Insight,
    confidence_tier,
    insight_id_for,
)

logger = logging.getLogger("insight_generator")


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------
@dataclass
class InsightContext:
    """Optional caller context available to templates."""
    user_id: Optional[str] = None
    current_mode: Optional[str] = None
    current_persona: Optional[str] = None
    recent_events: List[OrbEvent] = field(default_factory=list)
    existing_insights: List[Insight] = field(default_factory=list)


TextBuilder = Callable[[Dict[str, Any], Pattern, InsightContext], str]


@dataclass(frozen=True)
class InsightTemplate:
    """Wording for one pattern type."""
    pattern_type: str  # PatternType value
    title: TextBuilder
    description: TextBuilder
    recommendation: TextBuilder


# -----------------------------------------------------------------------------
# Template Helpers
# -----------------------------------------------------------------------------
def _first(values: Any, default: str) -> str:
    if isinstance(values, (list, tuple)) and values:
        return str(values[0])
    return default


def _number(data: Dict[str, Any], key: str, default: float = 0.0) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _action(data: Dict[str, Any]) -> str:
    return _first(data.get("actions"), "action")


def _mode(data: Dict[str, Any], context: InsightContext) -> str:
    return _first(data.get("modes"), context.current_mode or "this")


def _window_start(data: Dict[str, Any]) -> str:
    window = data.get("timeWindow")
    if isinstance(window, dict) and window.get("start"):
        return str(window["start"])
    return "the same time"


def _frequency(data: Dict[str, Any]) -> str:
    value = data.get("frequency")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "many"
    return f"{value:g}"


# -----------------------------------------------------------------------------
# Templates (Deterministic)
# -----------------------------------------------------------------------------
DEFAULT_TEMPLATES: Dict[str, InsightTemplate] = {
    PatternType.FREQUENT_ACTION.value: InsightTemplate(
        pattern_type=PatternType.FREQUENT_ACTION.value,
        title=lambda d, p, c: f"Frequent {_action(d)} Detected",
        description=lambda d, p, c: (
            f"You execute '{_action(d)}' {_frequency(d)} times "
            f"({_number(d, 'avgPerDay'):.1f}/day). "
            "This action could be automated or assigned a keyboard shortcut."
        ),
        recommendation=lambda d, p, c: "Create ⌘+Shift+N shortcut or schedule automatic execution",
    ),
    PatternType.TIME_BASED_ROUTINE.value: InsightTemplate(
        pattern_type=PatternType.TIME_BASED_ROUTINE.value,
        title=lambda d, p, c: f"Daily Routine at {_window_start(d)}",
        description=lambda d, p, c: (
            f"You regularly perform '{_action(d)}' around {_window_start(d)}. "
            "This could be scheduled automatically."
        ),
        recommendation=lambda d, p, c: "Set up automatic task scheduling for this time",
    ),
    PatternType.MODE_PREFERENCE.value: InsightTemplate(
        pattern_type=PatternType.MODE_PREFERENCE.value,
        title=lambda d, p, c: f"{_mode(d, c)} Mode Preferred",
        description=lambda d, p, c: (
            f"You use {_mode(d, c)} mode {_number(d, 'usageRate') * 100:.0f}% of the time "
            f"on {d.get('context') or 'this device'}. Set it as default for this context?"
        ),
        recommendation=lambda d, p, c: "Set as default mode for this context",
    ),
    PatternType.ERROR_PATTERN.value: InsightTemplate(
        pattern_type=PatternType.ERROR_PATTERN.value,
        title=lambda d, p, c: f"{_action(d)} Failing Often",
        description=lambda d, p, c: (
            f"'{_action(d)}' fails {_number(d, 'errorRate') * 100:.1f}% of the time. "
            "This workflow may need review or debugging."
        ),
        recommendation=lambda d, p, c: "Review workflow steps and error logs",
    ),
    PatternType.EFFICIENCY_GAIN.value: InsightTemplate(
        pattern_type=PatternType.EFFICIENCY_GAIN.value,
        title=lambda d, p, c: "Workflow Improvement Found",
        description=lambda d, p, c: (
            f"Your new workflow is {_number(d, 'improvement') * 100:.0f}% faster. "
            "Great optimization!"
        ),
        recommendation=lambda d, p, c: "Continue using this improved workflow",
    ),
    PatternType.RISK_THRESHOLD.value: InsightTemplate(
        pattern_type=PatternType.RISK_THRESHOLD.value,
        title=lambda d, p, c: "Risk Tolerance Learned",
        description=lambda d, p, c: (
            f"You approve {_number(d, 'approvalRate') * 100:.0f}% of high-risk actions "
            f"in {_mode(d, c)}. Adjust risk threshold?"
        ),
        recommendation=lambda d, p, c: "Increase risk tolerance for this mode",
    ),
}

FALLBACK_TEMPLATE = InsightTemplate(
    pattern_type="unknown",
    title=lambda d, p, c: "Pattern Detected",
    description=lambda d, p, c: f"Pattern detected with {p.confidence * 100:.0f}% confidence.",
    recommendation=lambda d, p, c: "Review and take appropriate action",
)


# -----------------------------------------------------------------------------
# Insight Generator
# -----------------------------------------------------------------------------
class InsightGenerator:
    """
    Template registry plus batch generation and prioritisation.

    Usage:
        generator = InsightGenerator()
        insights = generator.generate_batch(patterns)
    """

    def __init__(
        self,
        templates: Optional[Dict[str, InsightTemplate]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._templates: Dict[str, InsightTemplate] = dict(DEFAULT_TEMPLATES)
        if templates:
            self._templates.update(templates)
        self._clock = clock or utc_now

    def register(self, template: InsightTemplate) -> None:
        self._templates[template.pattern_type] = template

    def template_for(self, pattern_type: str) -> InsightTemplate:
        return self._templates.get(pattern_type, FALLBACK_TEMPLATE)

    def generate(self, pattern: Pattern, context: Optional[InsightContext] = None) -> Insight:
        """Build the Insight for one pattern."""
        context = context or InsightContext()
        template = self.template_for(pattern.type)
        data = pattern.data if isinstance(pattern.data, dict) else {}

        return Insight(
            id=insight_id_for(pattern.id),
            pattern_id=pattern.id,
            pattern_type=pattern.type,
            generated_at=self._clock().isoformat(),
            confidence=pattern.confidence,
            title=template.title(data, pattern, context),
            description=template.description(data, pattern, context),
            recommendation=template.recommendation(data, pattern, context),
            metadata={
                "confidenceTier": confidence_tier(pattern.confidence).value,
                "eventCount": pattern.event_count,
            },
        )

    def generate_batch(
        self,
        patterns: List[Pattern],
        context: Optional[InsightContext] = None,
    ) -> List[Insight]:
        """Generate insights for every pattern that can be rendered, prioritized."""
        insights = []
        for pattern in patterns:
            try:
                insights.append(self.generate(pattern, context))
            except Exception:
                logger.exception(f"Failed to generate insight for pattern {pattern.id}")
        return prioritize(insights)


# -----------------------------------------------------------------------------
# Module-Level Functions
# -----------------------------------------------------------------------------
def prioritize(insights: List[Insight]) -> List[Insight]:
    """Confidence descending, then most recent generated_at first. Stable."""
    return sorted(
        insights,
        key=lambda i: (-i.confidence, -parse_timestamp(i.generated_at).timestamp()),
    )


def generate_insights(
    patterns: List[Pattern],
    context: Optional[InsightContext] = None,
) -> List[Insight]:
    return InsightGenerator().generate_batch(patterns, context)
