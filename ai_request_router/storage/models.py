"""
Data models for storage layer.

Defines persisted entities: generation tasks, usage counters,
spend ledger entries and conversation context.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskType(Enum):
    """Kinds of generation work a task can carry."""
    CHAT = "chat"
    IMAGE = "image"
    IMAGE_EDIT = "image_edit"
    VIDEO = "video"
    PPT = "ppt"
    TTS = "tts"
    MUSIC = "music"

    @classmethod
    def parse(cls, value: Any, default: Optional["TaskType"] = None) -> Optional["TaskType"]:
        """Map a loose string (``"Image"``, ``"image-edit"``) to a TaskType."""
        if isinstance(value, TaskType):
            return value
        if not isinstance(value, str):
            return default
        normalized = value.strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalized:
                return member
        return default


class TaskStatus(Enum):
    """Lifecycle states. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class WindowKind(Enum):
    """Calendar windows over which usage caps are enforced."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class GenerationTask:
    """Persistent unit of generation work.

    Result fields are only populated once the task is COMPLETED and
    ``error_message`` only once it is FAILED. Terminal records are never
    modified again.
    """
    id: str
    owner: str
    task_type: TaskType
    status: TaskStatus
    input_prompt: str
    created_at: datetime
    project_id: Optional[str] = None
    input_params: Dict[str, Any] = field(default_factory=dict)
    result_url: Optional[str] = None
    result_content: Optional[str] = None
    error_message: Optional[str] = None
    cost_deducted: Decimal = Decimal("0")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class TaskResult:
    """Outcome handed back by a generation gateway."""
    url: Optional[str] = None
    content: Optional[str] = None
    cost: Decimal = Decimal("0")

    def __post_init__(self):
        if self.url is None and self.content is None:
            raise ValueError("TaskResult needs a url or inline content")


@dataclass(frozen=True)
class UsageCounter:
    """Count of committed generations for one owner/feature/window."""
    owner: str
    feature: str
    window_kind: WindowKind
    window_start: datetime
    count: int


@dataclass(frozen=True)
class SpendEntry:
    """Append-only record of an actually charged model cost."""
    idempotency_key: str
    owner: str
    model: str
    amount: Decimal
    charged_at: datetime


@dataclass(frozen=True)
class ContextSnapshot:
    """A prior (long_term, short_term, version) state kept in history."""
    version: int
    long_term: Dict[str, Any]
    short_term: Dict[str, Any]
    saved_at: datetime
    change_reason: Optional[str] = None


@dataclass(frozen=True)
class ConversationContext:
    """Per-project conversational memory.

    ``version`` 0 means nothing has been persisted yet.
    """
    project_id: str
    owner: str
    long_term: Dict[str, Any] = field(default_factory=dict)
    short_term: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    history: List[ContextSnapshot] = field(default_factory=list)
    updated_at: Optional[datetime] = None
