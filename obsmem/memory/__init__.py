"""Memory lifecycle: buffering, observation, reflection, retrieval and persistence."""

from obsmem.memory.document import MemoryDocument, merge_observation_items
from obsmem.memory.observer import ObserverPipeline
from obsmem.memory.pending import PendingBuffer, PendingSegment
from obsmem.memory.pipeline import RunResult
from obsmem.memory.reflector import ReflectorPipeline
from obsmem.memory.tokens import estimate_tokens

__all__ = [
    "MemoryDocument",
    "ObserverPipeline",
    "PendingBuffer",
    "PendingSegment",
    "ReflectorPipeline",
    "RunResult",
    "estimate_tokens",
    "merge_observation_items",
]
