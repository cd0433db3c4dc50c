"""Engine module for publish orchestration."""

from streetsurvey.engine.publisher import (
    PublishCoordinator,
    PublishJob,
    PublishPhase,
    PublishProgress,
    PublishResult,
    format_duration,
)
from streetsurvey.engine.runtime import SurveyRuntime

__all__ = [
    "PublishCoordinator",
    "PublishJob",
    "PublishPhase",
    "PublishProgress",
    "PublishResult",
    "SurveyRuntime",
    "format_duration",
]
