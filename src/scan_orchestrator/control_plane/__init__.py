"""
Control-plane public API.

The pipeline controller and restart coordinator live in
``scan_orchestrator.control_plane.controller`` and ``.restart``; they depend on
the substrate package, which itself imports the policies below, so they are
not re-exported here.
"""

from scan_orchestrator.control_plane.admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionSettings,
    SpaceEstimate,
)
from scan_orchestrator.control_plane.classifier import (
    Classification,
    ClassificationRule,
    FailureClassifier,
    classify,
    classify_message,
)
from scan_orchestrator.control_plane.lanes import LaneRouter, LaneSettings
from scan_orchestrator.control_plane.policies import PipelineSettings, RetryPolicy, StepOptions

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionSettings",
    "Classification",
    "ClassificationRule",
    "FailureClassifier",
    "LaneRouter",
    "LaneSettings",
    "PipelineSettings",
    "RetryPolicy",
    "SpaceEstimate",
    "StepOptions",
    "classify",
    "classify_message",
]
