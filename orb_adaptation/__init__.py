"""
Orb Adaptation Core

Learning and adaptation layer for the Orb assistant. Roles (orchestrator,
inference, reflection, actions, policy) emit OrbEvents onto a shared bus;
this package turns that history into usage aggregates, detected patterns,
human-readable insights and pending learning actions.

Components:
- event_model / event_bus / event_store: validated, append-only event log
  * Backends: in-memory, JSONL journal (fsync per append), sqlite3
  * Filters: type, user, session, device, mode, role, date range, search
  * Statistics: counts by type, mode and role, plus error rate
- pattern_detector: six deterministic pattern families
  * frequent_action, time_based_routine, mode_preference
  * error_pattern, efficiency_gain, risk_threshold
- insight_generator: per-type templates, prioritised by confidence
- preference_learning: one pending LearningAction per qualifying pattern
- learning_store: patterns, insights and actions (memory, JSONL, sqlite3)
- learning_actions: approve/reject workflow with an audit trail
- adaptation_engine: aggregates, recommendations, advisory adjustments and
  the learning cycle (query -> detect -> generate -> suggest -> save)
- config: YAML settings and component wiring
- router: FastAPI routes under /adaptation

CRITICAL: ADVISORY ONLY - nothing learned here is applied without an
explicit approve() on the corresponding learning action.
"""

__version__ = "0.1.0"
