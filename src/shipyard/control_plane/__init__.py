"""
shipyard — control plane

Purpose
- Scheduling, stage execution and run orchestration.
"""

from shipyard.control_plane.actions import ActionRegistry
from shipyard.control_plane.orchestrator import PipelineOrchestrator
from shipyard.control_plane.scheduler import ScheduleDecision, Scheduler, SchedulerLimits
from shipyard.control_plane.stage_runner import StageContext, StageRunner

__all__ = [
    "ActionRegistry",
    "PipelineOrchestrator",
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
    "StageContext",
    "StageRunner",
]
