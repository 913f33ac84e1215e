"""Gemini backend: subject analysis, prompt generation and sanitization.

Text calls go through the google-genai SDK's async client with JSON-schema
constrained output. Media synthesis is delegated to an image client
(Google REST or Wavespeed).
"""

import base64
import logging
from typing import Any, Optional

from google import genai
from google.genai import types

from ..directives import ANALYSIS_DIRECTIVE, ANALYSIS_SCHEMA, SANITIZE_DIRECTIVE, Directive
from ..errors import AuthenticationError, MalformedResponseError
from ..media import MediaRequest, MediaResult, ReferenceImage, parse_data_url
from ..reconcile import parse_payload, strip_code_fences

__all__ = ['GeminiBackend', 'response_text', 'to_part']

logger = logging.getLogger('promptforge.backends.gemini')


def to_part(image: ReferenceImage) -> types.Part:
    """SDK part for an inline reference image."""
    return types.Part.from_bytes(data=base64.b64decode(image.data), mime_type=image.mime_type)


def response_text(response: Any) -> str:
    """Text of a generate_content response, joined across parts if needed."""
    text = getattr(response, 'text', None)
    if text:
        return text
    out = []
    for candidate in getattr(response, 'candidates', None) or []:
        content = getattr(candidate, 'content', None)
        for part in getattr(content, 'parts', None) or []:
            if getattr(part, 'text', None):
                out.append(part.text)
    return '\n'.join(out).strip()


class GeminiBackend:
    """GenerationBackend backed by Gemini text models."""

    def __init__(
        self,
        api_key: Optional[str],
        text_model: str = 'gemini-2.5-flash',
        image_client: Any = None,
        temperature: float = 1.0,
        analysis_temperature: float = 0.2,
        client: Optional[genai.Client] = None,
    ):
        if client is None:
            if not api_key:
                raise AuthenticationError('API_KEY_MISSING')
            client = genai.Client(api_key=api_key)
        self.client = client
        self.text_model = text_model
        self.image_client = image_client
        self.temperature = temperature
        self.analysis_temperature = analysis_temperature

    async def _generate_json(self, parts: list[types.Part], schema: dict[str, Any], temperature: float) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.text_model,
            contents=parts,
            config=types.GenerateContentConfig(
                response_mime_type='application/json',
                response_schema=schema,
                temperature=temperature,
            ),
        )
        return response_text(response)

    async def analyze_subject(self, headshot: Optional[str], bodyshot: Optional[str]) -> dict[str, Any]:
        """Analyze up to two subject photos into an identity-profile record.

        Args:
            headshot: Headshot data URL or None.
            bodyshot: Body shot data URL or None.

        Returns:
            ``{'identity_profile': {...}}`` mapping.

        Raises:
            ValueError: If neither image is given.
            MalformedResponseError: If the model output is not a JSON object.
        """
        images = [parse_data_url(img) for img in (headshot, bodyshot) if img]
        if not images:
            raise ValueError('No images provided')

        parts = [to_part(img) for img in images]
        parts.append(types.Part.from_text(text=ANALYSIS_DIRECTIVE))

        text = await self._generate_json(parts, ANALYSIS_SCHEMA, self.analysis_temperature)
        data = parse_payload(text or '{}')
        if not isinstance(data, dict):
            raise MalformedResponseError(f'Analysis returned non-object JSON: {text[:200]}')
        logger.info('Subject analysis complete')
        return data

    async def generate_prompts(self, directive: Directive) -> list[Any]:
        """Send a directive and return the raw response array.

        Raises:
            MalformedResponseError: If the output is not a JSON array.
        """
        parts = [to_part(img) for img in directive.images]
        parts.append(types.Part.from_text(text=directive.text))

        logger.debug(f'Requesting {directive.expected_count} prompt(s) ({directive.style})')
        text = await self._generate_json(parts, directive.schema, self.temperature)
        data = parse_payload(text or '[]')
        if isinstance(data, dict):
            # Some responses wrap the array in a single-key object
            arrays = [v for v in data.values() if isinstance(v, list)]
            data = arrays[0] if len(arrays) == 1 else None
        if not isinstance(data, list):
            raise MalformedResponseError(f'Prompt generation returned no JSON array: {text[:200]}')
        return data

    async def sanitize(self, prompt_text: str) -> str:
        """Rewrite prompt_text into a policy-safe equivalent (falls back to the input)."""
        response = await self.client.aio.models.generate_content(
            model=self.text_model,
            contents=SANITIZE_DIRECTIVE + prompt_text,
            config=types.GenerateContentConfig(temperature=0.4),
        )
        rewritten = strip_code_fences(response_text(response))
        if not rewritten:
            logger.warning('Sanitizer returned empty text, keeping original prompt')
            return prompt_text
        return rewritten

    async def synthesize_media(self, request: MediaRequest) -> MediaResult:
        if self.image_client is None:
            return MediaResult.failure('No media provider configured', request.item_id)
        return await self.image_client.synthesize(request)
