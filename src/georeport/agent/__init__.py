"""Orchestration core: report profiles, session state, tool registry and the engine.

``ReportAgentService`` is the single entry point; everything that differs
between report types lives in ``profiles``.
"""

from .agent import ReportAgentService
from .profiles import PROFILES, ReportProfile
from .state import Phase, SessionState, Transcript
from .tools import ToolRegistry, ToolSpec, build_tool_registry

__all__ = [
    "PROFILES",
    "Phase",
    "ReportAgentService",
    "ReportProfile",
    "SessionState",
    "ToolRegistry",
    "ToolSpec",
    "Transcript",
    "build_tool_registry",
]
