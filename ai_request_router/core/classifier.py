"""
Intent classification.

Maps a user message (plus conversation history and stored context) to
an Interpretation: what kind of task it is, how complex, and how sure
we are. Trivial messages take a local fast path; everything else is
sent to an interpretation gateway and its loosely structured reply is
parsed leniently. Classification never raises.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ai_request_router.sdk.gateways import InterpretationGateway, InterpretationRequest
from ai_request_router.storage.models import ConversationContext, TaskType
from .json_extract import decode_first_object
from .pricing import PRICING_TABLE, Complexity, PricingTable
from .tiers import Tier, normalize_tier

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_TURNS = 10
MAX_TURN_CHARS = 500
MAX_MEDIA_REFERENCES = 5
FALLBACK_CONFIDENCE = 0.5
CURRENT_TASK_CHARS = 100

SYSTEM_PROMPT = """You route requests for a multi-modal AI assistant.
Read the context and the new message, then reply with ONE JSON object:
{
  "intent": "chat|image|image_edit|video|ppt|tts|music",
  "complexity": "simple|medium|complex",
  "confidence": 0.0-1.0,
  "enhanced_prompt": "the request rewritten for the generation model",
  "suggested_model": "optional model id",
  "assumptions": [{"key": "...", "value": "...", "editable": true}],
  "warnings": ["..."],
  "needs_clarification": false,
  "clarifying_questions": [{"question": "...", "required": true}],
  "media_params": {"aspect_ratio": "16:9", "duration": 5, "quality": "hd", "style": "..."},
  "source_media_url": "URL of earlier media the user refers to, or null",
  "source_media_description": null,
  "context_updates": {"long_term": {}, "short_term": {}},
  "status_message": "short progress text"
}
If the user refers to earlier media ("edit the video", "one more"), copy its
URL from the history into source_media_url."""

_SIMPLE_PATTERNS = [
    re.compile(r"^(hi|hello|hey|howdy|sup|yo|hola|namaste|hy|hii+)[\s!?.]*$", re.I),
    re.compile(r"^(what('?s| is) my name|who am i|do you know me|remember me)\??$", re.I),
    re.compile(r"^(my name is|i('?m| am)|call me)\s+\w+\.?$", re.I),
    re.compile(r"^(thanks|thank you|thx|ty|ok|okay|cool|great|nice|awesome)[\s!.]*$", re.I),
    re.compile(r"^(how are you|what('?s| is) up|wassup|what can you do|help)\??$", re.I),
]

# Words that make even a very short message a generation request
_GENERATION_KEYWORDS = re.compile(
    r"\b(image|picture|photo|draw|paint|logo|poster|video|clip|animate|music|song|"
    r"beat|speech|voice|read aloud|tts|slides?|ppt|presentation|deck|edit|generate|"
    r"create|make|design|render)\b",
    re.I,
)

_COMPLEX_PATTERNS = [
    re.compile(r"business plan|marketing strategy|legal|analysis|code review", re.I),
    re.compile(r"write.*article|essay|report|documentation", re.I),
    re.compile(r"explain.*detail|in-depth|comprehensive", re.I),
    re.compile(r"compare|analy[sz]e|evaluate|research", re.I),
]

_MEDIA_COMPLEX_PATTERNS = {
    TaskType.IMAGE: re.compile(
        r"flyer|poster|banner|branding|logo|professional|marketing|infographic|"
        r"business card|high quality|detailed|realistic|4k|hd",
        re.I,
    ),
    TaskType.VIDEO: re.compile(
        r"commercial|advertisement|promo|professional|cinematic|high quality|4k|hd|"
        r"longer|extended",
        re.I,
    ),
}


@dataclass(frozen=True)
class Assumption:
    """A default the classifier picked that the user may want to change."""
    key: str
    value: str
    editable: bool = True


@dataclass(frozen=True)
class ClarifyingQuestion:
    id: str
    question: str
    required: bool = True
    placeholder: Optional[str] = None


@dataclass(frozen=True)
class ContextUpdates:
    """Facts the classifier wants merged into the conversation context."""
    long_term: Dict[str, Any] = field(default_factory=dict)
    short_term: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.long_term and not self.short_term


@dataclass(frozen=True)
class Interpretation:
    """Typed classifier output.

    ``fast_path`` marks canned results for trivial messages; ``fallback``
    marks the conservative result used when interpretation failed.
    """
    intent: TaskType
    complexity: Complexity
    confidence: float
    enhanced_prompt: str
    suggested_model: Optional[str] = None
    assumptions: Tuple[Assumption, ...] = ()
    warnings: Tuple[str, ...] = ()
    source_media_url: Optional[str] = None
    source_media_description: Optional[str] = None
    context_updates: ContextUpdates = field(default_factory=ContextUpdates)
    needs_clarification: bool = False
    clarifying_questions: Tuple[ClarifyingQuestion, ...] = ()
    media_params: Dict[str, Any] = field(default_factory=dict)
    status_message: str = "Processing..."
    fast_path: bool = False
    fallback: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")


@dataclass(frozen=True)
class ConversationTurn:
    """One prior message, optionally pointing at generated media."""
    role: str
    content: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None


@dataclass(frozen=True)
class TierContext:
    """What the caller's tier may use, described for the classifier."""
    tier: Tier = Tier.FREE
    capabilities: str = ""


def is_simple_message(message: str) -> bool:
    """True for greetings, acknowledgements and other trivially short chat."""
    text = message.strip()
    if not text:
        return True
    if any(pattern.match(text) for pattern in _SIMPLE_PATTERNS):
        return True
    return len(text.split()) <= 3 and not _GENERATION_KEYWORDS.search(text)


def estimate_complexity(message: str, task_type: TaskType) -> Complexity:
    """Local complexity heuristic used when the gateway gives no answer."""
    media_pattern = _MEDIA_COMPLEX_PATTERNS.get(task_type)
    if media_pattern is not None:
        return Complexity.COMPLEX if media_pattern.search(message) else Complexity.SIMPLE
    words = len(message.split())
    if words <= 5:
        return Complexity.SIMPLE
    if words > 50 or any(p.search(message) for p in _COMPLEX_PATTERNS):
        return Complexity.COMPLEX
    return Complexity.MEDIUM


def parse_interpretation(
    raw: str,
    message: str,
    force_task_type: Optional[TaskType] = None
) -> Optional[Interpretation]:
    """Build an Interpretation from upstream text.

    Missing or malformed fields get defaults, confidence is clamped into
    [0, 1] and unknown intents become chat.

    Returns:
        Interpretation, or None when no JSON object can be decoded
    """
    data = decode_first_object(raw)
    if data is None:
        return None

    intent = TaskType.parse(data.get("intent"), TaskType.CHAT)
    if force_task_type is not None:
        intent = force_task_type

    updates = data.get("context_updates")
    updates = updates if isinstance(updates, dict) else {}

    return Interpretation(
        intent=intent,
        complexity=Complexity.parse(data.get("complexity"), Complexity.MEDIUM),
        confidence=_clamp_confidence(data.get("confidence")),
        enhanced_prompt=_text(data.get("enhanced_prompt")) or message,
        suggested_model=_text(data.get("suggested_model")),
        assumptions=tuple(_parse_assumptions(data.get("assumptions"))),
        warnings=tuple(
            str(w) for w in _as_list(data.get("warnings")) if isinstance(w, (str, int, float))
        ),
        source_media_url=_text(data.get("source_media_url")),
        source_media_description=_text(data.get("source_media_description")),
        context_updates=ContextUpdates(
            long_term=_as_dict(updates.get("long_term")),
            short_term=_as_dict(updates.get("short_term")),
        ),
        needs_clarification=data.get("needs_clarification") is True,
        clarifying_questions=tuple(_parse_questions(data.get("clarifying_questions"))),
        media_params=_as_dict(data.get("media_params")),
        status_message=_text(data.get("status_message")) or "Processing...",
    )


class IntentClassifier:
    """Classifies messages, calling the interpretation gateway when needed.

    Args:
        gateway: Upstream interpreter; None means every non-trivial
            message gets the fallback interpretation
        pricing: Used to suggest a model on the fast path
        history_turns: Number of recent turns sent upstream
    """

    def __init__(
        self,
        gateway: Optional[InterpretationGateway] = None,
        pricing: PricingTable = PRICING_TABLE,
        history_turns: int = DEFAULT_HISTORY_TURNS
    ):
        if history_turns <= 0:
            raise ValueError("history_turns must be > 0")
        self.gateway = gateway
        self.pricing = pricing
        self.history_turns = history_turns

    def classify(
        self,
        message: str,
        history: Sequence[ConversationTurn] = (),
        tier_context: Optional[TierContext] = None,
        context: Optional[ConversationContext] = None,
        force_task_type: Optional[TaskType] = None
    ) -> Interpretation:
        tier_context = tier_context or TierContext()
        tier = normalize_tier(tier_context.tier)

        if force_task_type is None and is_simple_message(message):
            logger.debug("Fast path for %r", message[:50])
            return Interpretation(
                intent=TaskType.CHAT,
                complexity=Complexity.SIMPLE,
                confidence=1.0,
                enhanced_prompt=message,
                suggested_model=self.pricing.preferred_model(
                    TaskType.CHAT, Complexity.SIMPLE, tier
                ),
                status_message="Thinking...",
                fast_path=True,
            )

        if self.gateway is not None:
            request = InterpretationRequest(
                system_prompt=SYSTEM_PROMPT,
                context_summary=self.build_context_summary(history, tier_context, context),
                recent_turns=tuple(self._recent_turns(history)),
                new_message=_with_forced_type(message, force_task_type),
            )
            try:
                raw = self.gateway.interpret(request)
            except Exception as e:
                logger.warning("Interpretation call failed: %s", e)
            else:
                interpretation = parse_interpretation(raw, message, force_task_type)
                if interpretation is not None:
                    logger.info(
                        "Interpreted as %s/%s (confidence %.2f)",
                        interpretation.intent.value,
                        interpretation.complexity.value,
                        interpretation.confidence,
                    )
                    return interpretation
                logger.warning("No decodable JSON object in interpretation response")

        return self._fallback(message, force_task_type)

    def build_context_summary(
        self,
        history: Sequence[ConversationTurn],
        tier_context: TierContext,
        context: Optional[ConversationContext] = None
    ) -> str:
        """Render stored facts, recent media and tier capabilities as text."""
        long_term = context.long_term if context else {}
        short_term = context.short_term if context else {}

        lines = ["## Current Context:"]
        if long_term:
            for key in sorted(long_term):
                lines.append(f"- {key}: {_truncate(str(long_term[key]), MAX_TURN_CHARS)}")
        else:
            lines.append("- No stored facts")
        lines.append(f"- Current Task: {short_term.get('currentTask') or 'None'}")
        topics = short_term.get("recentTopics") or []
        lines.append(f"- Recent Topics: {', '.join(map(str, topics)) or 'None'}")

        lines.append("")
        lines.append("## Recent Media Generated:")
        media = [turn for turn in history if turn.media_url or turn.media_type]
        media = media[-MAX_MEDIA_REFERENCES:]
        if media:
            for turn in media:
                kind = (turn.media_type or "unknown").upper()
                lines.append(
                    f"- [{kind}] {_truncate(turn.content, CURRENT_TASK_CHARS)} "
                    f"(URL: {turn.media_url})"
                )
        else:
            lines.append("None")

        lines.append("")
        lines.append(f"## Plan: {normalize_tier(tier_context.tier).value}")
        if tier_context.capabilities:
            lines.append(tier_context.capabilities)
        return "\n".join(lines)

    def _recent_turns(self, history: Sequence[ConversationTurn]) -> List[str]:
        turns = []
        for turn in list(history)[-self.history_turns:]:
            text = f"{turn.role}: {_truncate(turn.content, MAX_TURN_CHARS)}"
            if turn.media_url:
                text += f" [HAS_MEDIA: {turn.media_type}, URL: {turn.media_url}]"
            turns.append(text)
        return turns

    def _fallback(self, message: str, force_task_type: Optional[TaskType]) -> Interpretation:
        intent = force_task_type or TaskType.CHAT
        return Interpretation(
            intent=intent,
            complexity=estimate_complexity(message, intent),
            confidence=FALLBACK_CONFIDENCE,
            enhanced_prompt=message,
            context_updates=ContextUpdates(
                short_term={"currentTask": message[:CURRENT_TASK_CHARS]}
            ),
            status_message="Generating response...",
            fallback=True,
        )


def _with_forced_type(message: str, force_task_type: Optional[TaskType]) -> str:
    if force_task_type is None:
        return message
    return f"{message}\n\nNote: User explicitly selected task type: {force_task_type.value}"


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.8
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.8
    if confidence != confidence:  # NaN
        return 0.8
    return min(1.0, max(0.0, confidence))


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def _parse_assumptions(value: Any) -> List[Assumption]:
    assumptions = []
    for item in _as_list(value):
        if not isinstance(item, dict) or "key" not in item:
            continue
        assumptions.append(Assumption(
            key=str(item["key"]),
            value=str(item.get("value", "")),
            editable=item.get("editable") is not False,
        ))
    return assumptions


def _parse_questions(value: Any) -> List[ClarifyingQuestion]:
    questions = []
    for index, item in enumerate(_as_list(value)):
        if isinstance(item, str):
            questions.append(ClarifyingQuestion(id=f"q_{index}", question=item))
        elif isinstance(item, dict) and _text(item.get("question")):
            questions.append(ClarifyingQuestion(
                id=f"q_{index}",
                question=_text(item.get("question")),
                required=item.get("required") is not False,
                placeholder=_text(item.get("placeholder")),
            ))
    return questions
