"""
Content generator protocol.

Generation itself (prompting a model, rendering a widget) lives outside this
service. The app is handed an implementation at start-up through
``app.state.content_generator``.
"""
from typing import Any, Dict, Protocol

from tutorgate.models.tools import ToolRequest


class ContentGenerator(Protocol):
    def generate(self, request: ToolRequest, *, identity: str, tier: str) -> Dict[str, Any]:
        """
        Produce the answer for a tool call that the gate allowed.

        Returns:
            JSON-serializable content handed back to the caller

        Raises:
            GenerationError: If no answer could be produced (usage is not recorded)
        """
        ...


class GenerationError(Exception):
    """Raised by a generator when it could not produce an answer."""
    pass
