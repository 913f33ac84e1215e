"""Reference images and media-synthesis records.

Reference imagery travels through the library as data URLs (what the UI layer
reads from uploads) and is split into MIME type and base64 payload only where a
collaborator needs it. Media results carry either inline base64 data or a
fetchable URL.

Author:
    PromptForge Contributors
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

__author__ = 'PromptForge Contributors'
__all__ = [
    'ASPECT_RATIOS',
    'RESOLUTIONS',
    'ReferenceImage',
    'MediaRequest',
    'MediaResult',
    'parse_data_url',
    'to_data_url',
    'strip_base64_prefix',
]

# Pixel sizes per aspect ratio
ASPECT_RATIOS: dict[str, tuple[int, int]] = {
    '1:1': (1024, 1024),
    '16:9': (1344, 768),
    '9:16': (768, 1344),
    '4:3': (1152, 864),
    '3:4': (864, 1152),
}

RESOLUTIONS = ('2k', '4k')

_DATA_URL_RE = re.compile(r'^data:(.+?);base64,(.+)$', re.DOTALL)


@dataclass(frozen=True)
class ReferenceImage:
    """Inline image attached to a collaborator request."""
    mime_type: str
    data: str

    @property
    def data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


def parse_data_url(data_url: str) -> ReferenceImage:
    """Split a ``data:<mime>;base64,<payload>`` URL.

    Raises:
        ValueError: If the string is not a base64 data URL.
    """
    match = _DATA_URL_RE.match(data_url or '')
    if not match:
        raise ValueError('Invalid image data format')
    return ReferenceImage(mime_type=match.group(1), data=match.group(2))


def to_data_url(data: str, mime_type: str = 'image/png') -> str:
    """Wrap raw base64 in a data URL (no-op for values that already are one)."""
    if data.startswith('data:'):
        return data
    return f'data:{mime_type};base64,{data}'


def strip_base64_prefix(data: str) -> str:
    """Return the raw base64 payload of a data URL or plain base64 string."""
    return data.split('base64,', 1)[1] if 'base64,' in data else data


@dataclass
class MediaRequest:
    """Per-item media synthesis request.

    Attributes:
        prompt: Prompt text (flat string).
        aspect_ratio: One of ASPECT_RATIOS.
        resolution: '2k' or '4k'.
        reference_images: Data URLs or raw base64 strings.
        item_id: PromptItem id this request was built from.
    """
    prompt: str
    aspect_ratio: str = '1:1'
    resolution: str = '2k'
    reference_images: list[str] = field(default_factory=list)
    item_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f'Unknown aspect ratio: {self.aspect_ratio}')
        if self.resolution not in RESOLUTIONS:
            raise ValueError(f'Unknown resolution: {self.resolution}')

    @property
    def size(self) -> tuple[int, int]:
        return ASPECT_RATIOS[self.aspect_ratio]


@dataclass
class MediaResult:
    """Outcome of one media synthesis call."""
    ok: bool
    b64_data: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    item_id: Optional[str] = None

    @classmethod
    def failure(cls, error: str, item_id: Optional[str] = None) -> 'MediaResult':
        return cls(ok=False, error=error, item_id=item_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            'ok': self.ok,
            'b64_data': self.b64_data,
            'url': self.url,
            'error': self.error,
            'item_id': self.item_id,
        }
