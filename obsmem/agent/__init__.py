"""Engine, host interfaces and commands for observational memory."""

from obsmem.agent.command_handler import OMCommandHandler
from obsmem.agent.engine import ObservationalMemoryEngine

__all__ = ["OMCommandHandler", "ObservationalMemoryEngine"]
