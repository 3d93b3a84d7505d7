"""
Request orchestration.

Wires one request through the pipeline:

1. Intent Classifier - what is being asked, using stored context
2. Quota Enforcer - may this tier start one more of these
3. Budget Allocator - which model fits the remaining monthly budget
4. Task Manager - persist and dispatch the generation in the background

When a task completes, usage and spend are recorded (idempotently,
keyed by task id) and the conversation context is updated.
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ai_request_router.config.loader import RoutingConfig, default_config
from ai_request_router.sdk.gateways import (
    GatewayError,
    GenerationGateway,
    GenerationRequest,
    InterpretationGateway,
)
from ai_request_router.storage.db import DEFAULT_DB_PATH
from ai_request_router.storage.models import (
    GenerationTask,
    TaskResult,
    TaskStatus,
    TaskType,
)
from ai_request_router.storage.repository import (
    ContextRepository,
    TaskRepository,
    UsageRepository,
    utc_now,
)
from .budget import BudgetAllocator, BudgetState, ModelSelection
from .cache import TTLCache
from .classifier import (
    ClarifyingQuestion,
    ConversationTurn,
    IntentClassifier,
    Interpretation,
    TierContext,
)
from .context import ContextConflictError, ContextManager
from .events import TaskListener
from .quota import AccessDecision, QuotaEnforcer
from .tasks import TaskManager
from .tiers import Tier, normalize_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteOutcome:
    """What happened to one incoming request.

    ``task`` is set only when the request was accepted; its generation
    continues in the background. ``access`` is None when the request was
    held back for ``clarifying_questions`` before admission was checked.
    """
    accepted: bool
    interpretation: Interpretation
    access: Optional[AccessDecision] = None
    selection: Optional[ModelSelection] = None
    task: Optional[GenerationTask] = None
    warnings: Tuple[str, ...] = ()
    clarifying_questions: Tuple[ClarifyingQuestion, ...] = ()


class RequestOrchestrator:
    """Entry point tying classification, admission, selection and tasks together.

    Args:
        db_path: SQLite database shared by every component
        gateways: Generation gateway per task type
        interpretation_gateway: Upstream classifier; None disables the full path
        config: Tables and runtime settings
        cache: Status cache shared by quota and budget reads
        executor: Worker pool for task dispatch
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        gateways: Optional[Dict[TaskType, GenerationGateway]] = None,
        interpretation_gateway: Optional[InterpretationGateway] = None,
        config: Optional[RoutingConfig] = None,
        cache: Optional[TTLCache] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config or default_config()
        runtime = self.config.runtime
        self.gateways = dict(gateways or {})
        self.cache = cache if cache is not None else TTLCache(
            ttl_seconds=runtime.cache_ttl_seconds
        )

        usage_repository = UsageRepository(db_path)
        self.quota = QuotaEnforcer(
            usage_repository,
            quotas=self.config.quotas,
            warning_fraction=runtime.warning_fraction,
            daily_reset_hour=runtime.daily_reset_hour_utc,
            week_start_day=runtime.week_start_day,
            cache=self.cache,
            clock=clock,
        )
        self.budget = BudgetAllocator(
            usage_repository,
            pricing=self.config.pricing,
            cache=self.cache,
            clock=clock,
        )
        self.classifier = IntentClassifier(
            interpretation_gateway,
            pricing=self.config.pricing,
            history_turns=runtime.interpretation_history_turns,
        )
        self.contexts = ContextManager(
            ContextRepository(db_path),
            history_limit=runtime.context_history_limit,
            clock=clock,
        )
        self.tasks = TaskManager(
            TaskRepository(db_path),
            processor=self._process,
            executor=executor,
            max_workers=runtime.max_workers,
            processing_timeout_seconds=runtime.processing_timeout_seconds,
            clock=clock,
        )
        self.tasks.add_completion_hook(self._on_task_finished)

    def handle(
        self,
        owner: str,
        tier,
        message: str,
        project_id: Optional[str] = None,
        history: Sequence[ConversationTurn] = (),
        force_task_type: Optional[TaskType] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> RouteOutcome:
        """Route one message. Returns as soon as the task is dispatched."""
        tier = normalize_tier(tier)
        context = self.contexts.get_context(project_id, owner) if project_id else None

        interpretation = self.classifier.classify(
            message,
            history,
            TierContext(tier=tier, capabilities=self.describe_capabilities(tier)),
            context,
            force_task_type,
        )

        if interpretation.needs_clarification and interpretation.clarifying_questions:
            logger.info(
                "Holding %s request for %s: %d clarifying question(s)",
                interpretation.intent.value,
                owner,
                len(interpretation.clarifying_questions),
            )
            return RouteOutcome(
                accepted=False,
                interpretation=interpretation,
                warnings=interpretation.warnings,
                clarifying_questions=interpretation.clarifying_questions,
            )

        access = self.quota.check_access(owner, tier, interpretation.intent)
        if not access.allowed:
            return RouteOutcome(
                accepted=False,
                interpretation=interpretation,
                access=access,
                warnings=tuple(w for w in (access.reason,) if w),
            )

        preferred = self.config.pricing.preferred_model(
            interpretation.intent, interpretation.complexity, tier
        )
        selection = self.budget.select_for(owner, preferred, interpretation.intent, tier)

        task_params = dict(params or {})
        task_params.update({
            "model": selection.model,
            "model_cost": str(selection.cost),
            "preferred_model": selection.preferred_model,
            "tier": tier.value,
            "media_params": interpretation.media_params,
            "source_media_url": interpretation.source_media_url,
            "context_updates": {
                "long_term": interpretation.context_updates.long_term,
                "short_term": interpretation.context_updates.short_term,
            },
        })
        task = self.tasks.create(
            owner=owner,
            task_type=interpretation.intent,
            prompt=interpretation.enhanced_prompt,
            project_id=project_id,
            params=task_params,
        )

        warnings = [w for w in (access.warning, selection.reason) if w]
        warnings.extend(interpretation.warnings)
        return RouteOutcome(
            accepted=True,
            interpretation=interpretation,
            access=access,
            selection=selection,
            task=task,
            warnings=tuple(warnings),
        )

    def subscribe(self, owner: str, listener: TaskListener) -> Callable[[], None]:
        return self.tasks.broadcaster.subscribe(owner, listener)

    def budget_state(self, owner: str, tier) -> BudgetState:
        return self.budget.get_budget_state(owner, tier)

    def usage_summary(self, owner: str, tier) -> List[AccessDecision]:
        return self.quota.usage_summary(owner, tier)

    def resume_pending_tasks(self, owner: str) -> List[str]:
        return self.tasks.resume_pending_tasks(owner)

    def reconcile_stale_tasks(self, timeout_seconds: Optional[float] = None) -> List[str]:
        return self.tasks.reconcile_stale_tasks(timeout_seconds)

    def replay_accounting(self, owner: str) -> int:
        """Re-apply usage and spend for every completed task of ``owner``.

        Safe to run any number of times: entries already recorded are
        skipped by their idempotency key.

        Returns:
            Number of tasks for which something new was recorded
        """
        completed = self.tasks.repository.list_by_owner(
            owner, [TaskStatus.COMPLETED], limit=100000
        )
        return sum(1 for task in completed if self._account(task))

    def describe_capabilities(self, tier: Tier) -> str:
        lines = []
        for feature in TaskType:
            caps = self.quota.get_caps(tier, feature)
            if caps.zero_window is not None:
                lines.append(f"- {feature.value}: not available on this plan")
            else:
                lines.append(
                    f"- {feature.value}: {caps.daily}/day, {caps.weekly}/week, "
                    f"{caps.monthly}/month"
                )
        return "## Plan Capabilities:\n" + "\n".join(lines)

    def shutdown(self, wait: bool = True) -> None:
        self.tasks.shutdown(wait=wait)

    def _process(self, task: GenerationTask) -> TaskResult:
        gateway = self.gateways.get(task.task_type)
        if gateway is None:
            raise GatewayError(f"No generation gateway for {task.task_type.value}")

        result = gateway.generate(GenerationRequest(
            task_type=task.task_type,
            model=task.input_params["model"],
            prompt=task.input_prompt,
            params=task.input_params,
        ))
        return TaskResult(
            url=result.url,
            content=result.content,
            cost=Decimal(task.input_params.get("model_cost", "0")),
        )

    def _on_task_finished(self, task: GenerationTask) -> None:
        if task.status != TaskStatus.COMPLETED:
            return
        self._account(task)
        if task.project_id:
            self._remember(task)

    def _account(self, task: GenerationTask) -> bool:
        """Record usage and spend for a completed task; failures are non-fatal."""
        recorded = False
        try:
            recorded |= self.quota.record_usage(task.owner, task.task_type, task.id)
        except sqlite3.Error:
            logger.exception("Failed to record usage for task %s", task.id)
        try:
            recorded |= self.budget.record_spend(
                task.owner,
                task.input_params.get("model", "unknown"),
                task.cost_deducted,
                task.id,
            )
        except sqlite3.Error:
            logger.exception("Failed to record spend for task %s", task.id)
        return recorded

    def _remember(self, task: GenerationTask) -> None:
        updates = task.input_params.get("context_updates") or {}
        short_term = dict(updates.get("short_term") or {})
        short_term.setdefault("currentTask", task.input_prompt[:100])
        short_term["recentTopics"] = list(short_term.get("recentTopics") or []) + [
            task.task_type.value
        ]
        try:
            self.contexts.update_context(
                task.project_id,
                task.owner,
                long_term=updates.get("long_term") or {},
                short_term=short_term,
                change_reason=f"task {task.id}",
            )
        except ContextConflictError:
            logger.exception("Failed to update context after task %s", task.id)
