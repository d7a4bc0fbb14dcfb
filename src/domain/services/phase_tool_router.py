"""Phase Tool Router - phase-based tool filtering.

Each phase gets a different capability set so agents cannot use tools at the
wrong time: plan phases never write, and validation tools exist only in
build.validate. The router emits tool *names*; implementations live in a
ToolRegistry owned by the caller.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TypeVar

from src.domain.entities.workflow_state import Phase

logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True)
class PhaseCapabilities:
    """Capability flags for one phase."""

    read: bool = False
    write: bool = False
    research: bool = False
    emergency_research: bool = False
    planning: bool = False
    validation: bool = False


PHASE_CAPABILITIES: Mapping[Phase, PhaseCapabilities] = MappingProxyType(
    {
        # Plan phases: read, research, planning - no write
        Phase.ANALYZE_CODE: PhaseCapabilities(read=True, planning=True),
        Phase.RESEARCH: PhaseCapabilities(read=True, research=True, planning=True),
        Phase.DESIGN: PhaseCapabilities(read=True, research=True, planning=True),
        # Build phases
        Phase.IMPLEMENT: PhaseCapabilities(read=True, write=True, planning=True),
        Phase.VALIDATE: PhaseCapabilities(read=True, emergency_research=True, validation=True),
    }
)

READ_TOOLS = ("readFile", "grep", "glob", "listFiles", "astParse")
WRITE_TOOLS = ("writeFile", "editFile")
RESEARCH_TOOLS = ("webSearch", "webFetch")
PLANNING_TOOLS = ("sequentialThinking",)
VALIDATION_TOOLS = ("runTests", "lint", "typecheck")


class PhaseToolRouter:
    """Map a phase to the names of the tools allowed in it."""

    def capabilities(self, phase: Phase) -> PhaseCapabilities:
        """Capability flags for phase. Terminal and idle phases allow nothing."""
        return PHASE_CAPABILITIES.get(phase, PhaseCapabilities())

    def tools_for(self, phase: Phase) -> list[str]:
        """Ordered, de-duplicated tool names for phase."""
        caps = self.capabilities(phase)
        names: list[str] = []
        if caps.read:
            names.extend(READ_TOOLS)
        if caps.write:
            names.extend(WRITE_TOOLS)
        if caps.research or caps.emergency_research:
            names.extend(RESEARCH_TOOLS)
        if caps.planning:
            names.extend(PLANNING_TOOLS)
        if caps.validation:
            names.extend(VALIDATION_TOOLS)
        return list(dict.fromkeys(names))

    def explore_tools(self) -> list[str]:
        """Read-only tool set for exploration sub-agents."""
        return list(READ_TOOLS)

    def resolve(self, phase: Phase, registry: Mapping[str, T]) -> dict[str, T]:
        """Look up phase tools in a registry. Names missing from the registry are skipped."""
        resolved: dict[str, T] = {}
        for name in self.tools_for(phase):
            if name in registry:
                resolved[name] = registry[name]
            else:
                logger.debug("Tool %s not registered, skipping for %s", name, phase.value)
        return resolved
