"""
OpenAI-backed gateway adapters.

Any OpenAI-compatible endpoint works (pass ``base_url`` for routers
that expose provider-prefixed model ids). Provider errors are wrapped in
GatewayError so callers handle one exception type.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from ..storage.models import TaskResult, TaskType
from .gateways import (
    GatewayError,
    GenerationGateway,
    GenerationRequest,
    InterpretationGateway,
    InterpretationRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERPRETATION_MODEL = "gpt-4o-mini"


def _make_client(client: Optional[Any], base_url: Optional[str]) -> Any:
    if client is not None:
        return client
    if base_url:
        return OpenAI(base_url=base_url)
    return OpenAI()


class OpenAIInterpretationGateway(InterpretationGateway):
    """Runs the classifier prompt through chat completions."""

    def __init__(
        self,
        model: str = DEFAULT_INTERPRETATION_MODEL,
        client: Optional[Any] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.2
    ):
        """Initialize the interpretation gateway.

        Args:
            model: Chat model used for interpretation (required)
            client: Pre-built OpenAI client, mostly for tests
            base_url: Alternative OpenAI-compatible endpoint
            temperature: Sampling temperature

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.temperature = temperature
        self.client = _make_client(client, base_url)

    def interpret(self, request: InterpretationRequest) -> str:
        user_content = "\n\n".join([
            request.context_summary,
            "## Recent Conversation:\n" + ("\n".join(request.recent_turns) or "None"),
            "## New User Message:\n" + request.new_message,
            "Analyze this request and reply with routing instructions as one JSON object.",
        ])
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": user_content},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
        except OpenAIError as e:
            raise GatewayError(f"Interpretation call failed: {e}") from e

        if not response.choices:
            raise GatewayError("Interpretation response has no choices")
        return response.choices[0].message.content or ""


class OpenAIChatGateway(GenerationGateway):
    """Text generation for chat and presentation outlines."""

    def __init__(self, client: Optional[Any] = None, base_url: Optional[str] = None):
        self.client = _make_client(client, base_url)

    def generate(self, request: GenerationRequest) -> TaskResult:
        if request.task_type not in (TaskType.CHAT, TaskType.PPT):
            raise ValueError(f"OpenAIChatGateway cannot run {request.task_type.value} tasks")

        messages: List[Dict[str, str]] = []
        system_prompt = request.params.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in request.params.get("history", []):
            messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": request.prompt})

        try:
            response = self.client.chat.completions.create(
                model=request.model,
                messages=messages,
                max_tokens=request.params.get("max_tokens"),
            )
        except OpenAIError as e:
            raise GatewayError(f"Chat generation failed: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise GatewayError("Chat response is empty")
        return TaskResult(content=response.choices[0].message.content)


class OpenAIImageGateway(GenerationGateway):
    """Image generation through the images endpoint."""

    def __init__(self, client: Optional[Any] = None, base_url: Optional[str] = None):
        self.client = _make_client(client, base_url)

    def generate(self, request: GenerationRequest) -> TaskResult:
        if request.task_type != TaskType.IMAGE:
            raise ValueError(f"OpenAIImageGateway cannot run {request.task_type.value} tasks")

        try:
            response = self.client.images.generate(
                model=request.model,
                prompt=request.prompt,
                size=request.params.get("size", "1024x1024"),
                n=1,
            )
        except OpenAIError as e:
            raise GatewayError(f"Image generation failed: {e}") from e

        if not response.data:
            raise GatewayError("Image response has no data")
        image = response.data[0]
        if getattr(image, "url", None):
            return TaskResult(url=image.url)
        if getattr(image, "b64_json", None):
            return TaskResult(content=image.b64_json)
        raise GatewayError("Image response has neither url nor b64_json")
