"""
Provider Protocol - defines the contract for generation backends.

This is the WHAT (interface), not the HOW (implementation).
See local.py and remote.py for concrete implementations.
"""

from typing import Any, AsyncGenerator, Optional, Protocol, Tuple, TYPE_CHECKING

from llm_relay.adapters.schema import InferenceTask, StreamEvent
from llm_relay.state import CancellationToken

if TYPE_CHECKING:
    from llm_relay.dispatcher import ProviderIdentity


class Provider(Protocol):
    """
    Contract for generation backends.

    Implementations must provide:
    - Lazy, idempotent resource setup (load)
    - Streaming generation as StreamEvents (stream_generation)
    - Teardown on provider switch (aclose)
    """

    @property
    def identity(self) -> "ProviderIdentity":
        """Stable identity used to decide whether a provider can be reused."""
        ...

    @property
    def supports_cancellation(self) -> bool:
        """Whether the token is polled inside stream_generation."""
        ...

    @property
    def thinking_markers(self) -> Optional[Tuple[str, str]]:
        """(start, end) markers of the thinking phase, or None."""
        ...

    async def load(self) -> Any:
        """
        Prepare the backend. Safe to call repeatedly.

        Returns:
            A backend-specific handle (loaded engine, endpoint URL, ...)
        """
        ...

    def stream_generation(
        self,
        task: InferenceTask,
        cancel_token: CancellationToken,
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Stream generation progress for a task.

        Stops at the next chunk boundary once cancel_token is cancelled.

        Raises:
            LLMRelayError subclasses on failure (the session renders them)
        """
        ...

    async def aclose(self) -> None:
        """Release backend resources."""
        ...
