# ABOUTME: Makes the shared common package importable across engines.
# ABOUTME: Re-exports schema types, configuration, and the error taxonomy for convenience.

from .config import EngineConfig, load_engine_config
from .errors import (
    ConfigurationError,
    InvalidTransitionError,
    InvariantViolationError,
    MalformedEventError,
    StudyTimeError,
)
from .schemas import BehaviorEvent, EffectiveStudyRecord, LearnAnomaly, SessionWindow

__all__ = [
    "EngineConfig",
    "load_engine_config",
    "ConfigurationError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "MalformedEventError",
    "StudyTimeError",
    "BehaviorEvent",
    "EffectiveStudyRecord",
    "LearnAnomaly",
    "SessionWindow",
]
