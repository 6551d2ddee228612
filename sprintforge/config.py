"""
Configuration Management
========================

Handles loading orchestration settings from defaults, a project config file,
and environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "sprintforge_config.json"
ENV_PREFIX = "SPRINTFORGE_"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass
class OrchestrationConfig:
    """SprintForge Configuration."""

    # Durable store
    database_url: Optional[str] = None       # overrides the per-project SQLite file
    store_retry_attempts: int = 5
    store_retry_base_delay: float = 0.05     # seconds, doubled per attempt

    # Scheduler
    max_task_retries: int = 3

    # Learning engine
    learning_rate_success: float = 0.25      # alpha
    learning_rate_failure: float = 0.15      # beta
    initial_confidence: float = 0.5
    approval_threshold: float = 0.85
    rejection_threshold: float = 0.7
    format_threshold: float = 0.5
    cleanup_threshold: float = 0.3
    min_usage_for_auto_approve: int = 3
    min_shared_keywords: int = 2

    # Memory store
    max_recent_decisions: int = 20
    max_created_items: int = 50
    max_recent_stories: int = 10
    memory_ttl_days: Optional[float] = None

    # Sprint planner
    default_capacity: int = 20
    default_duration_days: int = 14

    # Execution backend
    executor_model: str = DEFAULT_MODEL
    executor_max_turns: int = 100

    def __post_init__(self) -> None:
        if self.learning_rate_success <= self.learning_rate_failure:
            raise ValueError("learning_rate_success must be greater than learning_rate_failure")
        for name in ("learning_rate_success", "learning_rate_failure", "initial_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def load(cls, project_dir: Optional[Path] = None) -> "OrchestrationConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (SPRINTFORGE_<FIELD>, .env honoured)
        2. Project config file (sprintforge_config.json)
        3. Default values
        """
        load_dotenv()
        values: dict[str, Any] = {}

        config_path = Path(project_dir or Path.cwd()) / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    values.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)

        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None:
                values[f.name] = raw

        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for name, value in values.items():
            if name not in known:
                logger.warning("Ignoring unknown config key: %s", name)
                continue
            kwargs[name] = _coerce(value, cls.__dataclass_fields__[name].default)
        return cls(**kwargs)


def _coerce(value: Any, default: Any) -> Any:
    """Coerce env/file values to the type of the field's default."""
    if not isinstance(value, str):
        return value
    if value.strip().lower() in ("", "none", "null"):
        return None
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if default is None and _is_number(value):
        return float(value)
    return value


def _is_number(value: str) -> bool:
    try:
        float(value)
        return True
    except ValueError:
        return False
