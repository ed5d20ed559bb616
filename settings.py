"""Tunable settings of the builder inference engine."""

import logging
from pathlib import Path
from typing import FrozenSet, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Operations every type supports; calling them never constrains a receiver
DEFAULT_UNIVERSAL_OPERATIONS = frozenset({"equals", "hashCode", "toString"})


class InferenceSettings(BaseModel):
    """Engine settings.

    Attributes:
        max_fixpoint_iterations: Bound on resolver rounds for interdependent variables
        universal_operations: Operation names that never constrain a variable receiver
        warn_on_unconstrained_usage: Warn on each use of a variable that ends up without evidence
        share_lattice_cache: Let concurrent sessions share one join/meet memo table
        max_workers: Thread pool size for ``infer_many`` (None lets the executor decide)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_fixpoint_iterations: int = Field(default=16, ge=1)
    universal_operations: FrozenSet[str] = DEFAULT_UNIVERSAL_OPERATIONS
    warn_on_unconstrained_usage: bool = True
    share_lattice_cache: bool = True
    max_workers: Optional[int] = Field(default=None, ge=1)

    @field_validator("universal_operations", mode="before")
    @classmethod
    def _coerce_operations(cls, value):
        if isinstance(value, str):
            return frozenset(name.strip() for name in value.split(",") if name.strip())
        return value


def load_settings(path: Union[str, Path]) -> InferenceSettings:
    """Load settings from a YAML mapping; an empty document yields the defaults."""
    settings_path = Path(path)
    if not settings_path.exists():
        raise FileNotFoundError(f"settings file not found: {settings_path}")
    try:
        data = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"failed to parse settings: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("settings root must be a mapping")
    settings = InferenceSettings.model_validate(data)
    logger.debug(f"Loaded inference settings from {settings_path}: {settings}")
    return settings
