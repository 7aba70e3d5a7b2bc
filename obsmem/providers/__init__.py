"""Summarization backends: hosted-API provider and the ordered channel chain."""

from obsmem.providers.base import LLMProvider, LLMResponse
from obsmem.providers.channels import ChannelChain, ChannelResult, GeminiCliChannel, LiteLLMChannel, SummarizationChannel

__all__ = [
    "ChannelChain",
    "ChannelResult",
    "GeminiCliChannel",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMChannel",
    "SummarizationChannel",
]
