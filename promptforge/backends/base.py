"""Collaborator interface consumed by the orchestrator."""

from typing import Any, Optional, Protocol

from ..directives import Directive
from ..media import MediaRequest, MediaResult


class GenerationBackend(Protocol):
    """External generative collaborators behind one narrow interface."""

    async def analyze_subject(self, headshot: Optional[str], bodyshot: Optional[str]) -> dict[str, Any]:
        """Return an identity-profile record for up to two reference images (data URLs)."""
        ...

    async def generate_prompts(self, directive: Directive) -> list[Any]:
        """Return the raw response array for a directive."""
        ...

    async def synthesize_media(self, request: MediaRequest) -> MediaResult:
        """Render one prompt; failures are reported in the result, not raised."""
        ...

    async def sanitize(self, prompt_text: str) -> str:
        """Rewrite a prompt into a policy-safe equivalent."""
        ...
