"""Data records shared across PromptForge.

Identity/profile data, manifest slots, and the prompt items produced by the
reconciler. All records are plain dataclasses with dict round-tripping for the
persistence layer.

Author:
    PromptForge Contributors
"""

import json
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

__author__ = 'PromptForge Contributors'
__all__ = [
    'TASK_LORA',
    'TASK_PRODUCT',
    'TASK_GENERIC',
    'TASK_UGC',
    'TASK_TYPES',
    'SAFETY_SFW',
    'SAFETY_NSFW',
    'SAFETY_MODES',
    'AESTHETIC_CANDID',
    'AESTHETIC_POLISHED',
    'PLATFORMS',
    'is_structured',
    'generate_id',
    'IdentityProfile',
    'InfluencerHistoryEntry',
    'GenerationMeta',
    'ManifestSlot',
    'PromptItem',
    'UGCSettings',
]

# Task types
TASK_LORA = 'lora'
TASK_PRODUCT = 'product'
TASK_GENERIC = 'generic'
TASK_UGC = 'ugc'
TASK_TYPES = (TASK_LORA, TASK_PRODUCT, TASK_GENERIC, TASK_UGC)

# Wardrobe policy switch
SAFETY_SFW = 'sfw'
SAFETY_NSFW = 'nsfw'
SAFETY_MODES = (SAFETY_SFW, SAFETY_NSFW)

# Social/UGC aesthetics
AESTHETIC_CANDID = 'candid'
AESTHETIC_POLISHED = 'polished'

PLATFORMS = ('instagram', 'tiktok', 'youtube', 'linkedin', 'general')

_ID_ALPHABET = string.ascii_lowercase + string.digits


def is_structured(task_type: str) -> bool:
    """Return True for identity training sets (category-partitioned manifests)."""
    return task_type == TASK_LORA


def generate_id(length: int = 9) -> str:
    """Random lowercase alphanumeric token."""
    return ''.join(secrets.choice(_ID_ALPHABET) for _ in range(length))


@dataclass
class IdentityProfile:
    """Textual identity traits of the current subject.

    Attributes:
        name: Display name / uid of the subject.
        age_estimate: Free-form age estimate.
        archetype: Broad archetype or profession ("young woman, commercial model").
        realism_text: Realism stack / backstory tags injected into prompts.
        body_description: Dense body morphology description (the body stack).
    """
    name: str = ''
    age_estimate: str = ''
    archetype: str = ''
    realism_text: str = ''
    body_description: str = ''

    @classmethod
    def from_analysis(cls, payload: dict[str, Any]) -> 'IdentityProfile':
        """Build a profile from a subject-analysis record.

        Accepts either the full ``{'identity_profile': {...}}`` envelope or the
        inner mapping.
        """
        profile = payload.get('identity_profile', payload) or {}
        return cls(
            name=profile.get('uid') or 'Subject',
            age_estimate=profile.get('age_estimate') or '',
            archetype=profile.get('archetype_anchor') or '',
            realism_text=profile.get('realism_stack') or '',
            body_description=profile.get('body_stack') or '',
        )

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> 'IdentityProfile':
        data = data or {}
        return cls(**{k: str(data.get(k) or '') for k in cls.__dataclass_fields__})

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())


@dataclass(frozen=True)
class InfluencerHistoryEntry:
    """Immutable snapshot of an analyzed subject."""
    id: str
    timestamp: int
    identity: IdentityProfile
    body_description: str

    @classmethod
    def create(cls, identity: IdentityProfile) -> 'InfluencerHistoryEntry':
        snapshot = IdentityProfile.from_dict(identity.to_dict())
        return cls(
            id=generate_id(),
            timestamp=int(time.time() * 1000),
            identity=snapshot,
            body_description=snapshot.body_description,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'InfluencerHistoryEntry':
        return cls(
            id=str(data['id']),
            timestamp=int(data.get('timestamp', 0)),
            identity=IdentityProfile.from_dict(data.get('identity')),
            body_description=str(data.get('body_description') or ''),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'identity': self.identity.to_dict(),
            'body_description': self.body_description,
        }


@dataclass(frozen=True)
class GenerationMeta:
    """Category/position metadata copied from the originating manifest slot."""
    category: str
    index: int
    total: int
    label: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ManifestSlot:
    """One planned unit of output within a batch.

    Attributes:
        sequence_index: Position within the current batch (0-based).
        absolute_index: Position within the whole dataset (0-based).
        category: Shot category (HEADSHOT, HALF BODY, PRODUCT AD, ...).
        category_index: 1-based rank within the category.
        category_total: Size of the category.
        label: Human-readable sub-type (pose name etc.).
    """
    sequence_index: int
    absolute_index: int
    category: str
    category_index: int
    category_total: int
    label: str

    @property
    def meta(self) -> GenerationMeta:
        return GenerationMeta(self.category, self.category_index, self.category_total, self.label)


@dataclass
class PromptItem:
    """A reconciled prompt, editable by the user."""
    id: str
    text: str
    tags: list[str] = field(default_factory=list)
    is_copied: bool = False
    generation_meta: Optional[GenerationMeta] = None

    def _wrapper(self) -> Optional[dict[str, Any]]:
        try:
            data = json.loads(self.text)
        except ValueError:
            return None
        if isinstance(data, dict) and isinstance(data.get('generation_data'), dict):
            return data
        return None

    @property
    def final_prompt(self) -> str:
        """Flat prompt string, recovered from a compiled wrapper if present."""
        wrapper = self._wrapper()
        if wrapper:
            final = wrapper['generation_data'].get('final_prompt_string')
            if isinstance(final, str) and final:
                return final
        return self.text

    def update_text(self, new_text: str) -> None:
        """Replace the prompt text, keeping a compiled wrapper intact."""
        wrapper = self._wrapper()
        if wrapper:
            wrapper['generation_data']['final_prompt_string'] = new_text
            self.text = json.dumps(wrapper)
        else:
            self.text = new_text

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'text': self.text,
            'tags': list(self.tags),
            'isCopied': self.is_copied,
            'generationMeta': self.generation_meta.to_dict() if self.generation_meta else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'PromptItem':
        meta = data.get('generationMeta')
        return cls(
            id=str(data.get('id') or generate_id()),
            text=str(data.get('text') or ''),
            tags=list(data.get('tags') or []),
            is_copied=bool(data.get('isCopied', False)),
            generation_meta=GenerationMeta(**meta) if meta else None,
        )


@dataclass
class UGCSettings:
    """Social/UGC generation settings."""
    platform: str = 'general'
    custom_instruction: str = ''
    aesthetic: str = AESTHETIC_CANDID

    def __post_init__(self) -> None:
        if self.platform not in PLATFORMS:
            raise ValueError(f'Unknown platform: {self.platform}')
        if self.aesthetic not in (AESTHETIC_CANDID, AESTHETIC_POLISHED):
            raise ValueError(f'Unknown aesthetic: {self.aesthetic}')
