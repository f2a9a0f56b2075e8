"""
Services for the video service.

Includes:
- Process execution and output parsing (ProcessRunner, progress parsers)
- Persistence (JobStore)
- Job orchestration and event delivery (JobOrchestrator, EventRelay)
"""

from app.services.event_relay import EventRelay
from app.services.job_orchestrator import JobOrchestrator
from app.services.job_store import JobStore
from app.services.process_runner import ProcessRunner
from app.services.tool_commands import ToolCommands

__all__ = [
    "ProcessRunner",
    "ToolCommands",
    "JobStore",
    "EventRelay",
    "JobOrchestrator",
]
