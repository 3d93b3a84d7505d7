"""
External gateway interfaces.

The router never talks to a model provider directly. Interpretation and
generation go through these interfaces; adapters for specific
providers live next to this module.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from ..storage.models import TaskResult, TaskType


class GatewayError(Exception):
    """Raised by adapters when the upstream provider call fails."""


@dataclass(frozen=True)
class InterpretationRequest:
    """Everything the classifier sends upstream for one message."""
    system_prompt: str
    context_summary: str
    recent_turns: Tuple[str, ...]
    new_message: str


@dataclass(frozen=True)
class GenerationRequest:
    """A single generation call against a concrete model."""
    task_type: TaskType
    model: str
    prompt: str
    params: Dict[str, Any] = field(default_factory=dict)


class InterpretationGateway(ABC):
    """Turns a message plus context into free text embedding one JSON object."""

    @abstractmethod
    def interpret(self, request: InterpretationRequest) -> str:
        """Return the raw upstream response text.

        Raises:
            GatewayError: If the upstream call fails
        """


class GenerationGateway(ABC):
    """Executes one kind of generation (chat, image, video, ...)."""

    @abstractmethod
    def generate(self, request: GenerationRequest) -> TaskResult:
        """Run the generation and return its result handle.

        Raises:
            GatewayError: If the upstream call fails
        """
