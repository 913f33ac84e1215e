"""Error taxonomy for PromptForge.

Pure modules (manifest, directives, repetition) only raise ``ValueError`` for
invalid arguments. Everything that can fail at runtime lives at the
collaborator boundary and is expressed with the classes below.

Usage:
    try:
        items = await backend.generate_prompts(directive)
    except Exception as e:
        raise classify_error(e) from e

Author:
    PromptForge Contributors
"""

import asyncio
from typing import Optional

__author__ = 'PromptForge Contributors'
__all__ = [
    'PromptForgeError',
    'AuthenticationError',
    'MalformedResponseError',
    'EmptyBatchError',
    'CollaboratorError',
    'CollaboratorTimeout',
    'InvalidTransition',
    'AUTH_ERROR_MARKERS',
    'is_auth_error',
    'classify_error',
    'describe_error',
]

# Substrings that identify auth/quota failures in collaborator error text
AUTH_ERROR_MARKERS = (
    'API_KEY_MISSING',
    'API_KEY_INVALID',
    'PERMISSION_DENIED',
    'RESOURCE_EXHAUSTED',
    '401',
    '403',
    '429',
)

AUTH_ERROR_MESSAGE = 'Authentication Failed: Invalid Key or Quota Exceeded.'


class PromptForgeError(Exception):
    """Base class for all PromptForge errors."""


class AuthenticationError(PromptForgeError):
    """Invalid or missing API key, or quota exhausted."""


class MalformedResponseError(PromptForgeError):
    """The generation collaborator returned something that is not a JSON array."""


class EmptyBatchError(PromptForgeError):
    """A batch produced zero usable prompt items."""


class CollaboratorError(PromptForgeError):
    """Transport or vendor failure in an external collaborator."""


class CollaboratorTimeout(CollaboratorError):
    """A collaborator call exceeded its time budget."""


class InvalidTransition(PromptForgeError):
    """The orchestrator attempted a state change its transition table forbids."""


def is_auth_error(message: str) -> bool:
    """Check whether an error message carries a known auth/quota marker."""
    return any(marker in message for marker in AUTH_ERROR_MARKERS)


def classify_error(error: BaseException, context: Optional[str] = None) -> PromptForgeError:
    """Map an arbitrary exception onto the PromptForge taxonomy.

    Args:
        error: Exception raised by a collaborator or the SDK underneath it.
        context: Optional label prefixed to the message (e.g. 'prompt generation').

    Returns:
        A PromptForgeError subclass instance. Errors that are already part of
        the taxonomy are returned unchanged.
    """
    if isinstance(error, PromptForgeError):
        return error

    message = str(error) or error.__class__.__name__
    if context:
        message = f'{context}: {message}'

    if isinstance(error, asyncio.TimeoutError):
        return CollaboratorTimeout(message)
    if is_auth_error(message):
        return AuthenticationError(message)
    return CollaboratorError(message)


def describe_error(error: BaseException) -> str:
    """Return the user-facing message for an error."""
    if isinstance(error, AuthenticationError) or is_auth_error(str(error)):
        return AUTH_ERROR_MESSAGE
    return str(error) or 'An unexpected error occurred.'
