"""Anti-repetition memory for scene/setting descriptors.

The tracker is advisory context for the directive assembler: it grows for the
whole session and is presented to the generator as a trailing, truncated window.

Author:
    PromptForge Contributors
"""

import logging
from typing import Iterable

__author__ = 'PromptForge Contributors'
__all__ = [
    'TASK_SWITCH_CARRY',
    'TASK_SWITCH_RESET',
    'TASK_SWITCH_POLICIES',
    'RepetitionTracker',
]

logger = logging.getLogger('promptforge.repetition')

# What happens to memory when the session switches task type
TASK_SWITCH_CARRY = 'carry'
TASK_SWITCH_RESET = 'reset'
TASK_SWITCH_POLICIES = (TASK_SWITCH_CARRY, TASK_SWITCH_RESET)


class RepetitionTracker:
    """Append-only log of used setting strings."""

    def __init__(self, settings: Iterable[str] = ()):
        self._settings: list[str] = []
        self.record(settings)

    def __len__(self) -> int:
        return len(self._settings)

    def record(self, settings: Iterable[str]) -> None:
        """Append settings in order. Repeats are kept; blank entries are skipped."""
        added = 0
        for setting in settings:
            if not isinstance(setting, str):
                continue
            setting = setting.strip()
            if setting:
                self._settings.append(setting)
                added += 1
        if added:
            logger.debug(f'Recorded {added} setting(s), memory size {len(self._settings)}')

    def window(self, max_items: int, max_chars_per_item: int) -> list[str]:
        """Most recent settings, truncated for embedding into a directive.

        Args:
            max_items: Maximum number of entries returned (trailing slice).
            max_chars_per_item: Maximum length of each returned entry.

        Returns:
            Up to max_items strings, oldest first, each at most max_chars_per_item long.
        """
        if max_items <= 0 or max_chars_per_item <= 0:
            return []
        return [s[:max_chars_per_item] for s in self._settings[-max_items:]]

    def snapshot(self) -> list[str]:
        """Copy of the full memory."""
        return list(self._settings)

    def reset(self) -> None:
        self._settings.clear()
