"""Generation backend factory."""

from .base import GenerationBackend
from .gemini import GeminiBackend
from .imaging import GoogleImageClient, WavespeedImageClient

__all__ = ['GenerationBackend', 'GeminiBackend', 'create_image_client', 'create_backend']


def create_image_client(config: dict, gemini_key: str = None, wavespeed_key: str = None):
    """Create the media synthesis client named by ``media.provider``."""
    provider = (config.get('media') or {}).get('provider', 'google')
    if provider == 'google':
        return GoogleImageClient(gemini_key, model=config['models']['image'])
    elif provider == 'wavespeed':
        return WavespeedImageClient(wavespeed_key)
    else:
        raise ValueError(f'Unknown media provider: {provider}')


def create_backend(config: dict, gemini_key: str = None, wavespeed_key: str = None) -> GeminiBackend:
    """Create the generation backend from config."""
    generation = config.get('generation') or {}
    return GeminiBackend(
        api_key=gemini_key,
        text_model=config['models']['text'],
        image_client=create_image_client(config, gemini_key, wavespeed_key),
        temperature=generation.get('temperature', 1.0),
        analysis_temperature=generation.get('analysis_temperature', 0.2),
    )
