"""
Orb Adaptation: Configuration

YAML-backed settings for storage backends, detection options and
adaptation thresholds, plus wiring of the component graph.

Resolution order (later wins):
1. Dataclass defaults
2. YAML file (argument, or ORB_ADAPTATION_CONFIG)
3. Environment: ORB_DATA_DIR, ORB_EVENT_BACKEND, ORB_LEARNING_BACKEND
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

from .errors import ValidationError
from .learning_model import DetectionOptions

logger = logging.getLogger("config")


CONFIG_ENV_VAR = "ORB_ADAPTATION_CONFIG"
DATA_DIR_ENV_VAR = "ORB_DATA_DIR"
EVENT_BACKEND_ENV_VAR = "ORB_EVENT_BACKEND"
LEARNING_BACKEND_ENV_VAR = "ORB_LEARNING_BACKEND"

EVENT_BACKENDS = ("memory", "file", "sqlite")
LEARNING_BACKENDS = ("memory", "file", "sql")
DEFAULT_DATA_DIR = Path("data/orb")


def default_data_dir() -> Path:
    """Data directory for stores built without an explicit path, read at call time."""
    return Path(os.getenv(DATA_DIR_ENV_VAR) or DEFAULT_DATA_DIR)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass
class AdaptationThresholds:
    """Cut-offs used by the adaptation engine's recommendations and adjustments."""
    mode_promotion_rate: float = 0.3
    max_mode_promotions: int = 5
    feature_error_rate: float = 0.2
    max_flagged_features: int = 3
    feature_disable_rate: float = 0.5
    overall_error_rate: float = 0.15
    autonomy_success_rate: float = 0.9
    mode_error_rate: float = 0.1
    peak_hours: int = 5


@dataclass
class StorageConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    event_backend: str = "memory"
    learning_backend: str = "memory"
    event_path: Optional[Path] = None
    learning_path: Optional[Path] = None
    audit_file: Optional[Path] = None

    def resolved_event_path(self) -> Optional[Path]:
        if self.event_path:
            return Path(self.event_path)
        if self.event_backend == "file":
            return Path(self.data_dir) / "events.jsonl"
        if self.event_backend == "sqlite":
            return Path(self.data_dir) / "events.db"
        return None

    def resolved_learning_path(self) -> Optional[Path]:
        if self.learning_path:
            return Path(self.learning_path)
        if self.learning_backend == "file":
            return Path(self.data_dir) / "learning"
        if self.learning_backend == "sql":
            return Path(self.data_dir) / "learning.db"
        return None

    def resolved_audit_file(self) -> Optional[Path]:
        if self.audit_file:
            return Path(self.audit_file)
        if self.learning_backend == "memory":
            return None
        return Path(self.data_dir) / "learning_audit.jsonl"


@dataclass
class AdaptationConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    thresholds: AdaptationThresholds = field(default_factory=AdaptationThresholds)
    detection: DetectionOptions = field(default_factory=DetectionOptions)
    query_limit: int = 100
    emit_learning_events: bool = False

    def to_dict(self) -> Dict[str, Any]:
        storage = {
            key: str(value) if isinstance(value, Path) else value
            for key, value in asdict(self.storage).items()
        }
        detection = asdict(self.detection)
        detection.pop("time_window", None)
        return {
            "storage": storage,
            "thresholds": asdict(self.thresholds),
            "detection": detection,
            "query_limit": self.query_limit,
            "emit_learning_events": self.emit_learning_events,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdaptationConfig":
        storage = _build_section(StorageConfig, data.get("storage"), "storage")
        for attr in ("data_dir", "event_path", "learning_path", "audit_file"):
            value = getattr(storage, attr)
            if value is not None:
                setattr(storage, attr, Path(value))

        config = cls(
            storage=storage,
            thresholds=_build_section(AdaptationThresholds, data.get("thresholds"), "thresholds"),
            detection=_build_section(DetectionOptions, data.get("detection"), "detection"),
            query_limit=int(data.get("query_limit", 100)),
            emit_learning_events=bool(data.get("emit_learning_events", False)),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.storage.event_backend not in EVENT_BACKENDS:
            raise ValidationError(
                f"Unknown event backend: {self.storage.event_backend}", field="storage.event_backend"
            )
        if self.storage.learning_backend not in LEARNING_BACKENDS:
            raise ValidationError(
                f"Unknown learning backend: {self.storage.learning_backend}", field="storage.learning_backend"
            )
        if self.query_limit < 1:
            raise ValidationError("query_limit must be at least 1", field="query_limit")


def _build_section(section_cls, data: Optional[Dict[str, Any]], name: str):
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValidationError(f"Config section '{name}' must be a mapping", field=name)
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown {name} settings: {', '.join(unknown)}")
    return section_cls(**{key: value for key, value in data.items() if key in known})


# -----------------------------------------------------------------------------
# YAML Helpers
# -----------------------------------------------------------------------------
def read_yaml_file(file_path: Path) -> dict:
    """Read and parse a YAML file."""
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, 'r') as f:
        return yaml.safe_load(f) or {}


def write_yaml_file(file_path: Path, data: dict) -> None:
    """Write data to a YAML file."""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    logger.info(f"Written YAML file: {file_path}")


def load_config(path: Optional[Path] = None) -> AdaptationConfig:
    """
    Load configuration.

    Args:
        path: YAML file; falls back to ORB_ADAPTATION_CONFIG, then defaults
    """
    if path is None and os.getenv(CONFIG_ENV_VAR):
        path = Path(os.environ[CONFIG_ENV_VAR])

    if path is not None:
        data = read_yaml_file(Path(path))
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {path} must contain a mapping")
        config = AdaptationConfig.from_dict(data)
        logger.info(f"Loaded adaptation config from {path}")
    else:
        config = AdaptationConfig()

    if os.getenv(DATA_DIR_ENV_VAR):
        config.storage.data_dir = Path(os.environ[DATA_DIR_ENV_VAR])
    if os.getenv(EVENT_BACKEND_ENV_VAR):
        config.storage.event_backend = os.environ[EVENT_BACKEND_ENV_VAR]
    if os.getenv(LEARNING_BACKEND_ENV_VAR):
        config.storage.learning_backend = os.environ[LEARNING_BACKEND_ENV_VAR]

    config.validate()
    return config


def save_config(config: AdaptationConfig, path: Path) -> None:
    write_yaml_file(Path(path), config.to_dict())


# -----------------------------------------------------------------------------
# Component Wiring
# -----------------------------------------------------------------------------
@dataclass
class Components:
    event_store: Any
    event_bus: Any
    learning_store: Any
    engine: Any
    workflow: Any

    def close(self) -> None:
        self.event_store.close()
        self.learning_store.close()


def build_components(config: Optional[AdaptationConfig] = None) -> Components:
    """Construct stores, bus, engine and workflow from configuration."""
    from .adaptation_engine import AdaptationEngine
    from .event_bus import EventBus
    from .event_store import create_event_store
    from .learning_actions import LearningActionWorkflow
    from .learning_store import create_learning_store

    config = config or load_config()
    storage = config.storage

    event_store = create_event_store(storage.event_backend, storage.resolved_event_path())
    learning_store = create_learning_store(storage.learning_backend, storage.resolved_learning_path())
    event_bus = EventBus(event_store, default_limit=config.query_limit)
    engine = AdaptationEngine(
        event_bus,
        learning_store=learning_store,
        thresholds=config.thresholds,
        detection_options=config.detection,
        emit_learning_events=config.emit_learning_events,
    )
    workflow = LearningActionWorkflow(learning_store, audit_file=storage.resolved_audit_file())

    logger.info(
        f"Built adaptation components (events={storage.event_backend}, "
        f"learning={storage.learning_backend})"
    )
    return Components(
        event_store=event_store,
        event_bus=event_bus,
        learning_store=learning_store,
        engine=engine,
        workflow=workflow,
    )
