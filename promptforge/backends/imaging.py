"""Media synthesis clients (Google image model and Wavespeed).

Both providers are called over HTTPS with httpx. Vendor failures are returned
as ``MediaResult(ok=False)`` so one bad item never aborts a batch; the
orchestrator enforces the per-call timeout on top.
"""

import contextlib
import logging
from typing import Any, Optional

import httpx

from ..media import MediaRequest, MediaResult, strip_base64_prefix, to_data_url

__all__ = [
    'GOOGLE_IMAGE_URL',
    'WAVESPEED_BASE_URL',
    'parse_gemini_image_payload',
    'parse_wavespeed_payload',
    'GoogleImageClient',
    'WavespeedImageClient',
]

logger = logging.getLogger('promptforge.backends.imaging')

GOOGLE_IMAGE_URL = 'https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent'
WAVESPEED_BASE_URL = 'https://api.wavespeed.ai/api/v3/google/gemini-3-pro-image'

# Payload snippet length included in "unknown format" errors
SNIPPET_CHARS = 300


def parse_gemini_image_payload(data: dict[str, Any]) -> MediaResult:
    """Extract the first inline image from a Gemini generateContent response.

    Handles both ``inlineData`` and ``inline_data`` naming, and the older
    ``predictions[].bytesBase64Encoded`` shape.
    """
    for candidate in data.get('candidates') or []:
        content = candidate.get('content') or {}
        for part in content.get('parts') or []:
            blob = part.get('inlineData') or part.get('inline_data')
            if blob and blob.get('data'):
                return MediaResult(ok=True, b64_data=blob['data'])

    predictions = data.get('predictions') or []
    if predictions and predictions[0].get('bytesBase64Encoded'):
        return MediaResult(ok=True, b64_data=predictions[0]['bytesBase64Encoded'])

    return MediaResult.failure('Invalid Google response structure')


def _from_string(value: str) -> Optional[MediaResult]:
    if value.startswith('http'):
        return MediaResult(ok=True, url=value)
    if 'base64,' in value:
        return MediaResult(ok=True, b64_data=strip_base64_prefix(value))
    if len(value) > 100 and ' ' not in value:
        return MediaResult(ok=True, b64_data=value)
    return None


def _from_mapping(value: dict[str, Any]) -> Optional[MediaResult]:
    if value.get('image_url'):
        return MediaResult(ok=True, url=value['image_url'])
    if value.get('url'):
        return MediaResult(ok=True, url=value['url'])
    if value.get('base64'):
        return MediaResult(ok=True, b64_data=value['base64'])
    if value.get('b64_json'):
        return MediaResult(ok=True, b64_data=value['b64_json'])
    return None


def parse_wavespeed_payload(data: Any) -> MediaResult:
    """Normalize the many Wavespeed response shapes into a MediaResult.

    Accepted shapes (optionally under a top-level ``data`` key): a bare URL or
    base64 string, a mapping with image_url/url/base64, a nested ``output``
    mapping, a generic array of ``{b64_json|url}``, and the v3 ``outputs``
    array of strings.
    """
    result_data = data.get('data', data) if isinstance(data, dict) else data

    if isinstance(result_data, str):
        if parsed := _from_string(result_data):
            return parsed

    if isinstance(result_data, list) and result_data and isinstance(result_data[0], dict):
        if parsed := _from_mapping(result_data[0]):
            return parsed

    if isinstance(result_data, dict):
        if parsed := _from_mapping(result_data):
            return parsed
        output = result_data.get('output')
        if isinstance(output, dict) and (parsed := _from_mapping(output)):
            return parsed
        outputs = result_data.get('outputs')
        if isinstance(outputs, list) and outputs:
            first = outputs[0]
            if isinstance(first, str) and (parsed := _from_string(first)):
                return parsed
            if isinstance(first, dict) and (parsed := _from_mapping(first)):
                return parsed

    snippet = str(result_data)[:SNIPPET_CHARS]
    return MediaResult.failure(f'Unknown response format. Content: {snippet}')


class GoogleImageClient:
    """Gemini image model via the REST generateContent endpoint."""

    def __init__(self, api_key: str, model: str = 'gemini-3-pro-image-preview', http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.model = model
        self._http = http_client

    def build_payload(self, request: MediaRequest) -> dict[str, Any]:
        prompt = request.prompt
        if request.resolution == '4k':
            prompt = f'4K Ultra HD, Highly Detailed, {prompt}'

        parts: list[dict[str, Any]] = [{'text': prompt}]
        for image in request.reference_images:
            if image:
                parts.append({'inlineData': {'mimeType': 'image/png', 'data': strip_base64_prefix(image)}})

        return {
            'contents': [{'parts': parts}],
            'generationConfig': {
                'candidateCount': 1,
                'imageConfig': {
                    'imageSize': request.resolution.upper(),
                    'aspectRatio': request.aspect_ratio,
                },
            },
        }

    async def synthesize(self, request: MediaRequest) -> MediaResult:
        url = GOOGLE_IMAGE_URL.format(model=self.model)
        try:
            async with _http_client(self._http) as http:
                response = await http.post(url, params={'key': self.api_key}, json=self.build_payload(request))
        except httpx.HTTPError as e:
            logger.error(f'Google image request failed: {e}')
            return MediaResult.failure(str(e) or e.__class__.__name__, request.item_id)

        if response.status_code == 404:
            return MediaResult.failure(
                'Google Model Not Found (404). Check API Key access or Model ID.', request.item_id)
        if response.is_error:
            logger.error(f'Google API error ({response.status_code}): {response.text[:SNIPPET_CHARS]}')
            return MediaResult.failure(f'Google ({response.status_code}): {response.text}', request.item_id)

        result = parse_gemini_image_payload(response.json())
        result.item_id = request.item_id
        return result


class WavespeedImageClient:
    """Wavespeed text-to-image / edit endpoints."""

    def __init__(self, api_key: str, base_url: str = WAVESPEED_BASE_URL, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url
        self._http = http_client

    def build_payload(self, request: MediaRequest) -> tuple[str, dict[str, Any]]:
        """Endpoint URL and JSON body. Reference images switch to the edit endpoint."""
        has_refs = any(request.reference_images)
        url = f'{self.base_url}/edit' if has_refs else f'{self.base_url}/text-to-image'

        prompt = request.prompt
        if request.resolution == '4k':
            prompt += ', extremely detailed 4k resolution'

        payload: dict[str, Any] = {
            'prompt': prompt,
            'aspect_ratio': request.aspect_ratio,
            'enable_sync_mode': True,
            'enable_base64_output': True,
            'output_format': 'png',
        }
        if has_refs:
            payload['images'] = [to_data_url(img) for img in request.reference_images if img]
        return url, payload

    async def synthesize(self, request: MediaRequest) -> MediaResult:
        url, payload = self.build_payload(request)
        logger.debug(f'Wavespeed request: {url}')
        try:
            async with _http_client(self._http) as http:
                response = await http.post(
                    url,
                    json=payload,
                    headers={'Authorization': f'Bearer {self.api_key}'},
                )
        except httpx.HTTPError as e:
            logger.error(f'Wavespeed request failed: {e}')
            return MediaResult.failure(str(e) or e.__class__.__name__, request.item_id)

        if response.is_error:
            logger.error(f'Wavespeed API error ({response.status_code}): {response.text[:SNIPPET_CHARS]}')
            return MediaResult.failure(f'Wavespeed ({response.status_code}): {response.text}', request.item_id)

        result = parse_wavespeed_payload(response.json())
        result.item_id = request.item_id
        return result



@contextlib.asynccontextmanager
async def _http_client(http: Optional[httpx.AsyncClient]):
    """Use an injected AsyncClient as-is, or open a short-lived one."""
    if http is not None:
        yield http
        return
    # per-call timeouts are enforced by the orchestrator
    async with httpx.AsyncClient(timeout=None) as owned:
        yield owned
