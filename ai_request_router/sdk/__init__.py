"""
SDK for AI Request Router.

Gateway interfaces and OpenAI-backed adapters.
"""

from .gateways import (
    GatewayError,
    GenerationGateway,
    GenerationRequest,
    InterpretationGateway,
    InterpretationRequest,
)
from .openai_client import (
    OpenAIChatGateway,
    OpenAIImageGateway,
    OpenAIInterpretationGateway,
)

__all__ = [
    "GatewayError",
    "GenerationGateway",
    "GenerationRequest",
    "InterpretationGateway",
    "InterpretationRequest",
    "OpenAIChatGateway",
    "OpenAIImageGateway",
    "OpenAIInterpretationGateway",
]
