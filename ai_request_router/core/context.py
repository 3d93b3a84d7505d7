"""
Conversation context management.

Each (project, owner) pair carries long-term facts (business name,
audience, brand tone), short-term facts (current task, recent topics),
a version number and a bounded history of earlier versions.

Merge Rules:
1. Scalars - the update overrides
2. Lists - append, then drop duplicates keeping first occurrence
3. Dicts - shallow merge, update keys win
4. Capped lists (recentTopics) - a repeat moves to the end and only the
   newest entries are kept

Writes are optimistic: the store accepts an update only if the version
it was based on is still current; otherwise the update is re-merged on
a fresh read and retried.
"""

import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai_request_router.storage.models import ContextSnapshot, ConversationContext
from ai_request_router.storage.repository import ContextRepository, utc_now

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LIST_LIMITS = {"recentTopics": 10}

Facts = Dict[str, Any]


class ContextConflictError(Exception):
    """Raised when concurrent writers keep winning every retry."""
    def __init__(self, project_id: str, attempts: int):
        super().__init__(
            f"Context for project {project_id} changed concurrently "
            f"{attempts} times; giving up"
        )
        self.project_id = project_id
        self.attempts = attempts


def merge_facts(
    existing: Facts,
    updates: Facts,
    list_limits: Optional[Dict[str, int]] = None
) -> Facts:
    """Merge ``updates`` into a copy of ``existing`` following the merge rules."""
    limits = list_limits or {}
    merged = dict(existing)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(value, list):
            base = current if isinstance(current, list) else []
            if key in limits:
                merged[key] = _dedupe_recent(base + value)[-limits[key]:] if limits[key] else []
            else:
                merged[key] = _dedupe(base + value)
        elif isinstance(value, dict) and isinstance(current, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def _dedupe(items: List[Any]) -> List[Any]:
    result: List[Any] = []
    for item in items:
        if item not in result:
            result.append(item)
    return result


def _dedupe_recent(items: List[Any]) -> List[Any]:
    """Drop duplicates keeping the last occurrence, so a repeat moves to the end."""
    result: List[Any] = []
    for item in reversed(items):
        if item not in result:
            result.append(item)
    result.reverse()
    return result


class ContextManager:
    """Reads and versions ConversationContext records.

    Store failures on reads are advisory: they are logged and an empty
    context is returned so a conversation can always continue.
    """

    def __init__(
        self,
        repository: ContextRepository,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], Any] = utc_now,
        list_limits: Optional[Dict[str, int]] = None
    ):
        if history_limit < 0:
            raise ValueError("history_limit must be >= 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.repository = repository
        self.history_limit = history_limit
        self.max_attempts = max_attempts
        self.list_limits = dict(DEFAULT_LIST_LIMITS if list_limits is None else list_limits)
        self._clock = clock

    def get_context(self, project_id: str, owner: str) -> ConversationContext:
        try:
            context = self.repository.get(project_id, owner)
        except sqlite3.Error as e:
            logger.warning("Context store unavailable for %s, using defaults: %s", project_id, e)
            context = None
        return context or ConversationContext(project_id=project_id, owner=owner)

    def update_context(
        self,
        project_id: str,
        owner: str,
        long_term: Optional[Facts] = None,
        short_term: Optional[Facts] = None,
        current: Optional[ConversationContext] = None,
        change_reason: Optional[str] = None
    ) -> ConversationContext:
        """Merge updates into the stored context as a new version.

        Args:
            project_id: Project the context belongs to
            owner: Context owner
            long_term: Long-term fact updates
            short_term: Short-term fact updates
            current: Context the caller already read; saves one read
            change_reason: Label stored with the replaced snapshot

        Returns:
            The new context (version incremented by exactly 1)

        Raises:
            ContextConflictError: If every attempt lost a version race
        """
        long_updates = long_term or {}
        short_updates = short_term or {}

        def transform(base: ConversationContext) -> Tuple[Facts, Facts]:
            return (
                merge_facts(base.long_term, long_updates, self.list_limits),
                merge_facts(base.short_term, short_updates, self.list_limits),
            )

        return self._commit(project_id, owner, transform, current, change_reason)

    def get_versions(self, project_id: str, owner: str) -> List[ContextSnapshot]:
        """Stored history, oldest first."""
        return list(self.get_context(project_id, owner).history)

    def reset_to_version(
        self,
        project_id: str,
        owner: str,
        version: int
    ) -> Optional[ConversationContext]:
        """Restore a historical snapshot as a new version.

        Returns:
            The new context, or None if no snapshot has that version
        """
        target = next(
            (s for s in self.get_versions(project_id, owner) if s.version == version),
            None,
        )
        if target is None:
            logger.warning("Context version %d not found for %s", version, project_id)
            return None

        def transform(base: ConversationContext) -> Tuple[Facts, Facts]:
            return dict(target.long_term), dict(target.short_term)

        return self._commit(
            project_id, owner, transform, None, f"reset to version {version}"
        )

    def _commit(
        self,
        project_id: str,
        owner: str,
        transform: Callable[[ConversationContext], Tuple[Facts, Facts]],
        current: Optional[ConversationContext],
        change_reason: Optional[str]
    ) -> ConversationContext:
        base = current
        for attempt in range(1, self.max_attempts + 1):
            if base is None:
                base = self.get_context(project_id, owner)

            now = self._clock()
            long_term, short_term = transform(base)
            snapshot = ContextSnapshot(
                version=base.version,
                long_term=base.long_term,
                short_term=base.short_term,
                saved_at=now,
                change_reason=change_reason,
            )
            history = (list(base.history) + [snapshot])[-self.history_limit:] \
                if self.history_limit else []
            updated = ConversationContext(
                project_id=project_id,
                owner=owner,
                long_term=long_term,
                short_term=short_term,
                version=base.version + 1,
                history=history,
                updated_at=now,
            )

            try:
                stored = self.repository.compare_and_set(
                    updated, base.version, self.history_limit
                )
            except sqlite3.Error as e:
                logger.warning("Failed to persist context for %s: %s", project_id, e)
                return updated

            if stored:
                logger.debug("Context for %s now at version %d", project_id, updated.version)
                return updated

            logger.debug(
                "Context version conflict for %s (attempt %d/%d)",
                project_id, attempt, self.max_attempts
            )
            base = None

        raise ContextConflictError(project_id, self.max_attempts)
