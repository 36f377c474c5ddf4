"""
LocalProvider - on-device inference through a ModelCatalog.

Models load once per provider and stay cached until the provider is
closed. Token generation is blocking, so it runs in a worker thread and
reports progress back to the event loop with call_soon_threadsafe.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Optional, Tuple

from llm_relay.adapters.catalog import CatalogEntry, ModelCatalog
from llm_relay.adapters.schema import InferenceTask, LocalGenerationResult, StreamEvent
from llm_relay.config import GenerationParameters, LLMRelayError, LOCAL_CACHE_LIMIT_BYTES
from llm_relay.dispatcher import ProviderIdentity
from llm_relay.state import CancellationToken

logger = logging.getLogger(__name__)


class ModelNotFoundError(LLMRelayError):
    """The model name is unknown to the local catalog."""

    def __init__(self, model_name: str):
        super().__init__(f"Model not found: {model_name}")
        self.model_name = model_name


class LocalInferenceError(LLMRelayError):
    """The inference engine failed during generation."""
    pass


@dataclass(frozen=True)
class LoadState:
    """Idle (handle is None) or Loaded(handle)."""
    handle: Any = None

    @property
    def is_loaded(self) -> bool:
        return self.handle is not None


IDLE = LoadState()


# ─────────────────────────────────────────────────────────────────────
# PROCESS-WIDE CACHE LIMIT
# ─────────────────────────────────────────────────────────────────────

_cache_limit_lock = threading.Lock()
_cache_limit_configured = False


def configure_cache_limit(catalog: ModelCatalog, limit_bytes: int = LOCAL_CACHE_LIMIT_BYTES) -> bool:
    """
    Cap the engine cache budget before the first load in this process.

    Returns True if the limit was applied by this call.
    """
    global _cache_limit_configured
    with _cache_limit_lock:
        if _cache_limit_configured:
            return False
        catalog.set_cache_limit(limit_bytes)
        _cache_limit_configured = True
        logger.debug(f"Local cache limit set to {limit_bytes // (1024 * 1024)}M")
        return True


# ─────────────────────────────────────────────────────────────────────
# PROVIDER
# ─────────────────────────────────────────────────────────────────────

class LocalProvider:
    """
    Local implementation of the Provider protocol.

    Uses asyncio.Lock so concurrent load() calls trigger exactly one
    engine load; later calls return the cached handle.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        model_name: str,
        on_model_info: Optional[Callable[[str], None]] = None,
    ):
        self._catalog = catalog
        self._model_name = model_name
        self._identity = ProviderIdentity.local(model_name)
        self._on_model_info = on_model_info
        self._lock = asyncio.Lock()
        self._entry: Optional[CatalogEntry] = None
        self.load_state: LoadState = IDLE
        self.model_info = ""
        self.progress = 0.0

    @property
    def identity(self) -> ProviderIdentity:
        return self._identity

    @property
    def supports_cancellation(self) -> bool:
        return True

    @property
    def thinking_markers(self) -> Optional[Tuple[str, str]]:
        entry = self._entry or self._catalog.lookup(self._model_name)
        if entry is None or not entry.is_reasoning:
            return None
        return entry.think_start, entry.think_end

    def _set_model_info(self, info: str) -> None:
        self.model_info = info
        if self._on_model_info is not None:
            self._on_model_info(info)

    def _report_progress(self, name: str, fraction: float) -> None:
        self.progress = fraction
        self._set_model_info(f"Downloading {name}: {int(fraction * 100)}%")

    async def load(self) -> Any:
        """
        Load the model and return its engine handle.

        Raises:
            ModelNotFoundError: The catalog does not know the model
        """
        entry = self._catalog.lookup(self._model_name)
        if entry is None:
            raise ModelNotFoundError(self._model_name)

        async with self._lock:
            if self.load_state.is_loaded:
                return self.load_state.handle

            configure_cache_limit(self._catalog)
            loop = asyncio.get_running_loop()

            def on_progress(fraction: float) -> None:
                loop.call_soon_threadsafe(self._report_progress, entry.name, fraction)

            logger.info(f"Loading local model {entry.name}")
            handle = await asyncio.to_thread(self._catalog.load_engine, entry, on_progress)
            self._entry = entry
            self.load_state = LoadState(handle)
            self._set_model_info(f"Loaded {entry.name}")
            return handle

    async def generate(
        self,
        handle: Any,
        messages: list[dict],
        params: GenerationParameters,
        on_token: Optional[Callable[[str], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LocalGenerationResult:
        """
        Generate a completion on a loaded engine.

        on_token receives the full text decoded so far, every
        params.display_every_n_tokens tokens, on the calling event loop.
        Each call is seeded from the current time, so identical prompts
        give different completions.

        Never raises for engine failures: the result carries the error.
        """
        cancel_token = cancel_token or CancellationToken()
        loop = asyncio.get_running_loop()

        def emit(text: str) -> None:
            if on_token is not None:
                loop.call_soon_threadsafe(on_token, text)

        seed = int(time.time() * 1000) % (2 ** 32)
        return await asyncio.to_thread(
            self._run_generation, handle, messages, params, emit, cancel_token, seed
        )

    def _run_generation(
        self,
        handle: Any,
        messages: list[dict],
        params: GenerationParameters,
        emit: Callable[[str], None],
        cancel_token: CancellationToken,
        seed: int,
    ) -> LocalGenerationResult:
        start_time = time.perf_counter()
        pieces: list[str] = []
        token_count = 0

        try:
            for piece in handle.stream_tokens(
                messages,
                temperature=params.temperature,
                max_tokens=params.max_tokens,
                seed=seed,
            ):
                pieces.append(piece)
                token_count += 1
                if token_count % params.display_every_n_tokens == 0:
                    emit("".join(pieces))
                if token_count >= params.max_tokens or cancel_token.cancelled:
                    break
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Local generation failed for {self._model_name}: {message}")
            return LocalGenerationResult(text=message, token_count=token_count, error=message)

        duration = max(time.perf_counter() - start_time, 0.001)
        tokens_per_second = token_count / duration
        logger.info(
            f"Local generation done: {token_count} tokens, {tokens_per_second:.2f} tokens/s"
            + (" (cancelled)" if cancel_token.cancelled else "")
        )
        return LocalGenerationResult(
            text="".join(pieces),
            tokens_per_second=tokens_per_second,
            token_count=token_count,
        )

    async def stream_generation(
        self,
        task: InferenceTask,
        cancel_token: CancellationToken,
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Provider-protocol view of generate().

        Yields snapshot events as throttled text arrives, a final snapshot
        with the complete text, then a stats event.

        Raises:
            LocalInferenceError: The engine failed
        """
        handle = await self.load()
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        runner = asyncio.create_task(self.generate(
            handle, task.messages, task.params,
            on_token=queue.put_nowait, cancel_token=cancel_token,
        ))
        runner.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                text = await queue.get()
                if text is None:
                    break
                yield StreamEvent(kind="snapshot", text=text)
        finally:
            if not runner.done():
                # Consumer left early: stop the worker at its next token
                cancel_token.cancel()
                await asyncio.wait([runner])

        result = runner.result()
        if result.error is not None:
            raise LocalInferenceError(result.error)
        yield StreamEvent(kind="snapshot", text=result.text)
        yield StreamEvent(kind="stats", tokens_per_second=result.tokens_per_second)

    async def aclose(self) -> None:
        """Drop the loaded engine; the next load() reloads it."""
        async with self._lock:
            self.load_state = IDLE
            self._entry = None
