"""Response reconciliation.

Re-attaches the generator's response array to the manifest that requested it,
strictly by position, and normalizes each response item into a PromptItem.
Response shapes are resolved once here into a small tagged variant
(CompiledPrompt, RichPrompt, OpaquePrompt); nothing downstream inspects the raw
JSON again.

Author:
    PromptForge Contributors
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .models import ManifestSlot, PromptItem, generate_id

__author__ = 'PromptForge Contributors'
__all__ = [
    'CompiledPrompt',
    'RichPrompt',
    'OpaquePrompt',
    'ParsedPrompt',
    'ReconcileResult',
    'strip_code_fences',
    'extract_first_json_value',
    'parse_payload',
    'classify_payload',
    'parse_item',
    'extract_settings',
    'reconcile',
]

logger = logging.getLogger('promptforge.reconcile')

CODE_FENCE_RE = re.compile(r'^\s*```(?:json)?\s*|\s*```\s*$', re.IGNORECASE | re.MULTILINE)


# ============================================================================
# Tagged Variants
# ============================================================================

@dataclass
class CompiledPrompt:
    """Flat compiled string plus the wrapping object it came in."""
    final_prompt: str
    wrapper: dict[str, Any]
    tags: list[str] = field(default_factory=list)

    def stored_text(self) -> str:
        return json.dumps(self.wrapper, ensure_ascii=False)


@dataclass
class RichPrompt:
    """Nested structured object (VisionStruct)."""
    data: dict[str, Any]
    tags: list[str] = field(default_factory=list)

    def stored_text(self) -> str:
        return json.dumps(self.data, ensure_ascii=False)


@dataclass
class OpaquePrompt:
    """Text that could not be parsed as structured data."""
    raw: str
    tags: list[str] = field(default_factory=list)

    def stored_text(self) -> str:
        return self.raw


ParsedPrompt = Union[CompiledPrompt, RichPrompt, OpaquePrompt]


@dataclass
class ReconcileResult:
    """Output of reconcile.

    Attributes:
        items: One PromptItem per response item, in response order.
        unparsed_count: Items degraded to opaque text.
        settings: Setting descriptors found, for the repetition tracker.
        shortfall: Manifest size minus response size (negative on over-production).
    """
    items: list[PromptItem]
    unparsed_count: int = 0
    settings: list[str] = field(default_factory=list)
    shortfall: int = 0


# ============================================================================
# Parsing
# ============================================================================

def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences from text."""
    return CODE_FENCE_RE.sub('', text).strip()


def extract_first_json_value(text: str) -> Optional[str]:
    """Extract the first balanced JSON object/array from raw text."""
    text = text.strip()
    start_obj = text.find('{')
    start_arr = text.find('[')
    if start_obj == -1 and start_arr == -1:
        return None

    if start_obj == -1 or (start_arr != -1 and start_arr < start_obj):
        start, open_c, close_c = start_arr, '[', ']'
    else:
        start, open_c, close_c = start_obj, '{', '}'

    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == '\\':
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == open_c:
            depth += 1
        elif ch == close_c:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_payload(raw: str) -> Optional[Any]:
    """Parse JSON directly, then after fence stripping, then by extraction."""
    candidates = [raw, strip_code_fences(raw)]
    extracted = extract_first_json_value(candidates[-1])
    if extracted:
        candidates.append(extracted)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def _tags_of(data: dict[str, Any]) -> list[str]:
    tags = data.get('tags')
    if not isinstance(tags, list):
        return []
    return [str(tag) for tag in tags if tag is not None]


def classify_payload(data: Any, raw: str) -> ParsedPrompt:
    """Resolve a parsed payload into its tagged variant."""
    if isinstance(data, dict):
        generation_data = data.get('generation_data')
        if isinstance(generation_data, dict) and isinstance(generation_data.get('final_prompt_string'), str):
            return CompiledPrompt(generation_data['final_prompt_string'], data, _tags_of(data))
        return RichPrompt(data, _tags_of(data))
    if isinstance(data, str) and data.strip():
        # bare JSON string: flat prompt, no wrapper
        return OpaquePrompt(data)
    return OpaquePrompt(raw)


def parse_item(raw: Any) -> tuple[ParsedPrompt, bool]:
    """Parse one response item.

    Args:
        raw: A dict already decoded by the SDK, or a text blob.

    Returns:
        Tuple of (variant, parsed_ok). parsed_ok is False when the item was
        degraded to opaque text.
    """
    if isinstance(raw, dict):
        return classify_payload(raw, json.dumps(raw)), True
    if not isinstance(raw, str):
        raw = '' if raw is None else str(raw)

    data = parse_payload(raw)
    if not isinstance(data, (dict, str)):
        return OpaquePrompt(strip_code_fences(raw) or raw), False
    return classify_payload(data, raw), True


def extract_settings(parsed: ParsedPrompt) -> list[str]:
    """Setting/location descriptors of a parsed item (possibly none)."""
    if isinstance(parsed, CompiledPrompt):
        setting = parsed.wrapper.get('generation_data', {}).get('setting')
        return [setting.strip()] if isinstance(setting, str) and setting.strip() else []

    if isinstance(parsed, RichPrompt):
        found = []
        background = parsed.data.get('background')
        if isinstance(background, dict) and isinstance(background.get('setting'), str):
            found.append(background['setting'].strip())
        else:
            environment = parsed.data.get('environment_and_depth')
            if isinstance(environment, dict) and isinstance(environment.get('background_elements'), str):
                found.append(environment['background_elements'].strip())
        return [s for s in found if s]

    return []


# ============================================================================
# Reconciliation
# ============================================================================

def reconcile(response_items: list[Any], manifest: list[ManifestSlot]) -> ReconcileResult:
    """Zip response items onto manifest slots by array position.

    Never raises on a malformed item: it is stored as opaque text and counted
    in ``unparsed_count``. Items past the end of the manifest get no
    generation_meta.

    Args:
        response_items: Raw items returned by the generation collaborator.
        manifest: Slots sent with the request, in request order.

    Returns:
        ReconcileResult with one PromptItem per response item.
    """
    items = []
    settings = []
    unparsed = 0

    for i, raw in enumerate(response_items):
        parsed, ok = parse_item(raw)
        if not ok:
            unparsed += 1
            logger.warning(f'Response item {i + 1} could not be parsed, keeping raw text')

        items.append(PromptItem(
            id=generate_id(),
            text=parsed.stored_text(),
            tags=list(parsed.tags),
            generation_meta=manifest[i].meta if i < len(manifest) else None,
        ))
        settings.extend(extract_settings(parsed))

    shortfall = len(manifest) - len(items)
    if shortfall > 0:
        logger.warning(f'Generator returned {len(items)} of {len(manifest)} requested item(s)')
    elif shortfall < 0:
        logger.warning(f'Generator returned {-shortfall} extra item(s) with no manifest slot')

    return ReconcileResult(items=items, unparsed_count=unparsed, settings=settings, shortfall=shortfall)
