"""Application state for one PromptForge session.

Holds the current subject, task configuration, accumulated prompts, repetition
memory, and the bounded subject history. Persistence goes through an injected
KeyValueStore with explicit load/persist boundaries; the pure core modules
never touch it.

Usage:
    session = Session(store=FileStore(Path('~/.promptforge/state.yaml')))
    session.load()
    session.identity.body_description = 'athletic build, ...'
    session.persist()

Author:
    PromptForge Contributors
"""

import json
import logging
import math
from typing import Any, Optional

from .errors import PromptForgeError
from .models import (
    SAFETY_MODES,
    SAFETY_SFW,
    TASK_LORA,
    TASK_PRODUCT,
    TASK_TYPES,
    TASK_UGC,
    IdentityProfile,
    InfluencerHistoryEntry,
    PromptItem,
    UGCSettings,
)
from .repetition import TASK_SWITCH_CARRY, TASK_SWITCH_POLICIES, TASK_SWITCH_RESET, RepetitionTracker
from .storage import KeyValueStore, MemoryStore

__author__ = 'PromptForge Contributors'
__all__ = [
    'STORAGE_KEY_DRAFT',
    'STORAGE_KEY_HISTORY',
    'ITEMS_PER_PAGE',
    'DEFAULT_TARGET_TOTAL',
    'HISTORY_LIMIT',
    'SessionNotReady',
    'Session',
]

logger = logging.getLogger('promptforge.session')

STORAGE_KEY_DRAFT = 'draft'
STORAGE_KEY_HISTORY = 'history'
ITEMS_PER_PAGE = 10
DEFAULT_TARGET_TOTAL = 50
HISTORY_LIMIT = 10


class SessionNotReady(PromptForgeError):
    """The session lacks the inputs required for the current task type."""


class Session:
    """Mutable application state owned by the UI layer and the orchestrator."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        history_limit: int = HISTORY_LIMIT,
        task_switch_policy: str = TASK_SWITCH_CARRY,
    ):
        if task_switch_policy not in TASK_SWITCH_POLICIES:
            raise ValueError(f'Unknown task switch policy: {task_switch_policy}')

        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.history_limit = history_limit
        self.task_switch_policy = task_switch_policy

        self.task_type = TASK_LORA
        self.safety_mode = SAFETY_SFW
        self.target_total = DEFAULT_TARGET_TOTAL
        self.ugc_settings = UGCSettings()
        self.identity = IdentityProfile()

        self.headshot: Optional[str] = None
        self.bodyshot: Optional[str] = None
        self.product_images: list[str] = []

        self.prompts: list[PromptItem] = []
        self.generated_count = 0
        self.repetition = RepetitionTracker()
        self.history: list[InfluencerHistoryEntry] = []

    # ========================================================================
    # Persistence
    # ========================================================================

    def load(self) -> None:
        """Restore draft and history from the store; bad entries are skipped."""
        draft = self.store.get(STORAGE_KEY_DRAFT) or {}
        if isinstance(draft, dict):
            if draft.get('taskType') in TASK_TYPES:
                self.task_type = draft['taskType']
            if draft.get('safetyMode') in SAFETY_MODES:
                self.safety_mode = draft['safetyMode']
            if isinstance(draft.get('targetTotal'), int) and draft['targetTotal'] > 0:
                self.target_total = draft['targetTotal']
            if isinstance(draft.get('identity'), dict):
                self.identity = IdentityProfile.from_dict(draft['identity'])
            if draft.get('description'):
                self.identity.body_description = str(draft['description'])

        self.history = []
        for entry in self.store.get(STORAGE_KEY_HISTORY) or []:
            try:
                self.history.append(InfluencerHistoryEntry.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f'Skipping unreadable history entry: {e}')
        self.history = self.history[:self.history_limit]
        logger.debug(f'Session loaded: task={self.task_type}, history={len(self.history)}')

    def persist(self) -> None:
        """Save the draft (task configuration and subject)."""
        self.store.set(STORAGE_KEY_DRAFT, {
            'taskType': self.task_type,
            'safetyMode': self.safety_mode,
            'targetTotal': self.target_total,
            'description': self.identity.body_description,
            'identity': self.identity.to_dict(),
        })

    # ========================================================================
    # Subject & History
    # ========================================================================

    def save_to_history(self, identity: Optional[IdentityProfile] = None) -> InfluencerHistoryEntry:
        """Snapshot a subject into history (newest first, capped)."""
        entry = InfluencerHistoryEntry.create(identity or self.identity)
        self.history = [entry, *self.history][:self.history_limit]
        self.store.set(STORAGE_KEY_HISTORY, [e.to_dict() for e in self.history])
        return entry

    def apply_analysis(self, payload: dict[str, Any]) -> IdentityProfile:
        """Adopt a subject-analysis record as the current subject and log it to history."""
        self.identity = IdentityProfile.from_analysis(payload)
        self.save_to_history(self.identity)
        return self.identity

    def select_history_entry(self, entry_id: str) -> IdentityProfile:
        """Make a saved subject current. Reference images are cleared."""
        for entry in self.history:
            if entry.id == entry_id:
                self.identity = IdentityProfile.from_dict(entry.identity.to_dict())
                self.identity.body_description = entry.body_description
                self.headshot = None
                self.bodyshot = None
                return self.identity
        raise KeyError(f'No history entry with id {entry_id}')

    @property
    def subject_images(self) -> list[str]:
        return [img for img in (self.headshot, self.bodyshot) if img]

    # ========================================================================
    # Task & Reset
    # ========================================================================

    def switch_task(self, task_type: str) -> None:
        """Change task type, applying the repetition-memory policy."""
        if task_type not in TASK_TYPES:
            raise ValueError(f'Unknown task type: {task_type}')
        if task_type != self.task_type and self.task_switch_policy == TASK_SWITCH_RESET:
            logger.info(f'Task switch {self.task_type} -> {task_type}: clearing repetition memory')
            self.repetition.reset()
        self.task_type = task_type

    def has_data(self) -> bool:
        return bool(self.prompts or self.identity.body_description or self.subject_images)

    def reset(self, keep_subject: bool = False) -> None:
        """Clear generated output and repetition memory.

        Args:
            keep_subject: If False, also clear the subject, images and target.
        """
        self.prompts = []
        self.generated_count = 0
        self.repetition.reset()

        if not keep_subject:
            self.headshot = None
            self.bodyshot = None
            self.product_images = []
            self.identity = IdentityProfile()
            self.target_total = DEFAULT_TARGET_TOTAL
        logger.info(f'Session reset (keep_subject={keep_subject})')

    def validate_ready(self) -> None:
        """Check the inputs the current task type needs before generating.

        Raises:
            SessionNotReady: With a user-facing message.
        """
        if not self.identity.body_description and self.task_type != TASK_UGC:
            raise SessionNotReady('Subject Analysis required for every task except UGC.')
        if self.task_type == TASK_PRODUCT and not [img for img in self.product_images if img]:
            raise SessionNotReady('At least one Product Image required for Product task.')

    # ========================================================================
    # Prompts
    # ========================================================================

    def add_prompts(self, items: list[PromptItem]) -> None:
        self.prompts.extend(items)
        self.generated_count += len(items)

    def _find(self, item_id: str) -> PromptItem:
        for item in self.prompts:
            if item.id == item_id:
                return item
        raise KeyError(f'No prompt with id {item_id}')

    def toggle_copied(self, item_id: str) -> None:
        self._find(item_id).is_copied = True

    def update_prompt(self, item_id: str, new_text: str) -> None:
        self._find(item_id).update_text(new_text)

    @property
    def total_pages(self) -> int:
        return math.ceil(len(self.prompts) / ITEMS_PER_PAGE) or 1

    def page(self, number: int) -> list[PromptItem]:
        """Prompts on a 1-based page."""
        if number < 1:
            raise ValueError(f'Page numbers start at 1, got {number}')
        start = (number - 1) * ITEMS_PER_PAGE
        return self.prompts[start:start + ITEMS_PER_PAGE]

    def export_json(self) -> str:
        """All prompts as an indented JSON array."""
        return json.dumps([p.to_dict() for p in self.prompts], indent=2, ensure_ascii=False)
