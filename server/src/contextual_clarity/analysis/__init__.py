"""Conversation analysis for recall sessions."""

from contextual_clarity.analysis.tangent_detector import (
    TangentDetector,
    TangentDetectorConfig,
)

__all__ = ["TangentDetector", "TangentDetectorConfig"]
