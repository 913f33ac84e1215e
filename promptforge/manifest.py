"""Manifest generation - the batch slot plan.

Given a task type, the dataset size, and the window of the dataset requested by
one call, produces the ordered list of ManifestSlot records the directive
assembler and reconciler work against.

Structured (identity) datasets are split into four shot categories by fixed
proportions of the full target. Every slot derives its category from its own
absolute index, so any chunking of the dataset yields identical per-index
slots.

Usage:
    slots = generate_manifest('lora', total_target=50, start_count=0, count=10)
    print(format_manifest(slots))

Author:
    PromptForge Contributors
"""

from .models import TASK_GENERIC, TASK_LORA, TASK_PRODUCT, TASK_TYPES, TASK_UGC, ManifestSlot, is_structured

__author__ = 'PromptForge Contributors'
__all__ = [
    'CATEGORY_HEADSHOT',
    'CATEGORY_HALF_BODY',
    'CATEGORY_THREE_QUARTER',
    'CATEGORY_FULL_BODY',
    'STRUCTURED_CATEGORIES',
    'CATEGORY_PERCENTAGES',
    'MANDATORY_HEADSHOT_SEQUENCE',
    'VARIED_HEADSHOT_LABEL',
    'FLAT_CATEGORIES',
    'category_sizes',
    'category_boundaries',
    'remaining_slots',
    'next_batch_size',
    'generate_manifest',
    'format_manifest',
]

CATEGORY_HEADSHOT = 'HEADSHOT'
CATEGORY_HALF_BODY = 'HALF BODY'
CATEGORY_THREE_QUARTER = '3/4 BODY'
CATEGORY_FULL_BODY = 'FULL BODY'

# (category, label) in dataset order
STRUCTURED_CATEGORIES = (
    (CATEGORY_HEADSHOT, None),
    (CATEGORY_HALF_BODY, 'Waist Up / Lifestyle'),
    (CATEGORY_THREE_QUARTER, 'Knees Up / Environmental'),
    (CATEGORY_FULL_BODY, 'Head to Toe'),
)

# Full body takes the remainder
CATEGORY_PERCENTAGES = (35, 30, 20)

MANDATORY_HEADSHOT_SEQUENCE = (
    'Left 1/4 View',
    'Front View',
    'Right 1/4 View',
    'Left Profile',
    'Right Profile',
    'Look Up',
    'Look Down',
)
VARIED_HEADSHOT_LABEL = 'Varied Headshot'

FLAT_CATEGORIES = {
    TASK_PRODUCT: ('PRODUCT AD', 'Optimized Ad Composition'),
    TASK_GENERIC: ('UGC LIFESTYLE', 'Authentic Realism'),
    TASK_UGC: ('SOCIAL POST', 'Platform Native Content'),
}


def _proportion(total_target: int, percent: int) -> int:
    """Round-half-up share of total_target, in integer arithmetic."""
    # Half-up rather than floor so a 50-item set gets 18 headshots (floor gives 17).
    return (total_target * percent + 50) // 100


def category_sizes(total_target: int) -> tuple[int, int, int, int]:
    """Slot counts for HEADSHOT, HALF BODY, 3/4 BODY, FULL BODY.

    Each proportional category gets at least one slot and full body takes the
    remainder. When the minimums would starve full body, the largest preceding
    category gives up slots until full body has one. Targets below four fill
    categories in order, one slot each.

    Args:
        total_target: Full dataset size (>= 1).

    Returns:
        Four sizes summing to total_target.
    """
    if total_target < 1:
        raise ValueError(f'total_target must be >= 1, got {total_target}')

    if total_target < len(STRUCTURED_CATEGORIES):
        return tuple(1 if i < total_target else 0 for i in range(len(STRUCTURED_CATEGORIES)))

    sizes = [max(1, _proportion(total_target, pct)) for pct in CATEGORY_PERCENTAGES]
    full_body = total_target - sum(sizes)
    while full_body < 1:
        largest = sizes.index(max(sizes))
        sizes[largest] -= 1
        full_body += 1

    return sizes[0], sizes[1], sizes[2], full_body


def category_boundaries(total_target: int) -> tuple[int, int, int, int]:
    """Cumulative exclusive upper bounds of each structured category."""
    bounds = []
    running = 0
    for size in category_sizes(total_target):
        running += size
        bounds.append(running)
    return tuple(bounds)


def remaining_slots(total_target: int, generated: int) -> int:
    """Number of slots still to be produced (never negative)."""
    return max(0, total_target - generated)


def next_batch_size(total_target: int, generated: int, chunk_size: int) -> int:
    """Size of the next batch request; 0 means the target is reached."""
    if chunk_size < 1:
        raise ValueError(f'chunk_size must be >= 1, got {chunk_size}')
    return min(chunk_size, remaining_slots(total_target, generated))


def _structured_slot(total_target: int, sequence_index: int, absolute_index: int) -> ManifestSlot:
    sizes = category_sizes(total_target)
    lower = 0
    for (category, label), size in zip(STRUCTURED_CATEGORIES, sizes):
        upper = lower + size
        if absolute_index < upper:
            rank = absolute_index - lower
            if category == CATEGORY_HEADSHOT:
                if absolute_index < len(MANDATORY_HEADSHOT_SEQUENCE):
                    label = MANDATORY_HEADSHOT_SEQUENCE[absolute_index]
                else:
                    label = VARIED_HEADSHOT_LABEL
            return ManifestSlot(
                sequence_index=sequence_index,
                absolute_index=absolute_index,
                category=category,
                category_index=rank + 1,
                category_total=size,
                label=label,
            )
        lower = upper

    # Unreachable while absolute_index < total_target
    raise ValueError(f'absolute_index {absolute_index} outside dataset of {total_target}')


def generate_manifest(task_type: str, total_target: int, start_count: int, count: int) -> list[ManifestSlot]:
    """Plan the slots for one batch request.

    Args:
        task_type: One of lora, product, generic, ugc.
        total_target: Size of the full dataset.
        start_count: Number of items already produced (absolute index of the first slot).
        count: Number of slots in this batch.

    Returns:
        ``count`` slots with contiguous absolute indices starting at start_count.

    Raises:
        ValueError: On an unknown task type or a window outside the dataset.
    """
    if task_type not in TASK_TYPES:
        raise ValueError(f'Unknown task type: {task_type}')
    if total_target < 1:
        raise ValueError(f'total_target must be >= 1, got {total_target}')
    if start_count < 0 or count < 0:
        raise ValueError(f'start_count and count must be >= 0 (got {start_count}, {count})')
    if start_count + count > total_target:
        raise ValueError(
            f'Batch [{start_count}, {start_count + count}) exceeds total_target {total_target}'
        )

    slots = []
    for i in range(count):
        absolute_index = start_count + i
        if is_structured(task_type):
            slots.append(_structured_slot(total_target, i, absolute_index))
        else:
            category, label = FLAT_CATEGORIES[task_type]
            slots.append(ManifestSlot(
                sequence_index=i,
                absolute_index=absolute_index,
                category=category,
                category_index=absolute_index + 1,
                category_total=total_target,
                label=label,
            ))
    return slots


def format_manifest(slots: list[ManifestSlot]) -> str:
    """Render slots as the numbered manifest block embedded in a directive."""
    return '\n'.join(
        f'Item {slot.sequence_index + 1}: {slot.category} ({slot.label}). '
        f'Metadata: {slot.category_index}/{slot.category_total}'
        for slot in slots
    )
