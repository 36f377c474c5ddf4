"""
GenerationSession - the state machine that drives one generation at a time.

State management:
- Single writer: fields are only mutated on the session's event loop
- Observable: subscribers get SessionEvents, snapshot() gives SessionState
- Never raises from generate(): failures become visible output text
"""

import logging
import time
from contextlib import aclosing
from datetime import datetime
from typing import Callable, Optional, Tuple

from llm_relay.adapters.base import Provider
from llm_relay.adapters.catalog import GGUFModelCatalog, ModelCatalog
from llm_relay.adapters.local import LocalInferenceError, ModelNotFoundError
from llm_relay.adapters.remote import RemoteHTTPError, RemoteProvider
from llm_relay.adapters.schema import InferenceTask, ReasoningStep, StreamEvent
from llm_relay.config import (
    APIProfile, AppConfig, LLMRelayError, ServerProfile, Thread,
    NO_MODEL_SELECTED_MESSAGE,
)
from llm_relay.dispatcher import (
    ProviderIdentity, ProviderKind,
    build_identity, create_provider, resolve_model_name, select_provider,
)
from llm_relay.history import build_history
from llm_relay.parsers import format_reasoning_step, split_thinking
from llm_relay.state import (
    CancellationToken, GenerationPhase, SessionEvent, SessionEventKind, SessionState,
)

logger = logging.getLogger(__name__)


SessionListener = Callable[[SessionEvent], None]
ProviderFactory = Callable[[ProviderIdentity, Optional[ModelCatalog]], Provider]

FAILED_PREFIX = "Failed: "
API_ERROR_PREFIX = "API Error: "
ERROR_PREFIX = "Error: "


def format_failure(error: BaseException) -> str:
    """Render an exception as the assistant-visible failure text."""
    if isinstance(error, (ModelNotFoundError, LocalInferenceError)):
        prefix = FAILED_PREFIX
    elif isinstance(error, RemoteHTTPError):
        prefix = API_ERROR_PREFIX
    elif isinstance(error, LLMRelayError):
        prefix = ERROR_PREFIX
    else:
        prefix = FAILED_PREFIX
    return f"{prefix}{error}"


class GenerationSession:
    """
    Runs generations against the provider chosen by the settings.

    Created once per application run. Providers are built lazily and
    replaced only when the selected provider identity changes.

    Usage:
        session = GenerationSession(config, catalog=catalog)
        unsubscribe = session.subscribe(render)
        text = await session.generate(None, thread)
        thread.add_message(Role.ASSISTANT, text, session.generating_time)
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        catalog: Optional[ModelCatalog] = None,
        provider_factory: ProviderFactory = create_provider,
    ):
        self.config = config or AppConfig()
        self.catalog = catalog if catalog is not None else GGUFModelCatalog.from_env()
        self._provider_factory = provider_factory
        self._provider: Optional[Provider] = None
        self._listeners: list[SessionListener] = []
        self._cancel_token = CancellationToken()

        self.phase = GenerationPhase.IDLE
        self.last_outcome: Optional[GenerationPhase] = None
        self.last_error: Optional[BaseException] = None
        self.running = False
        self.cancelled = False
        self.output = ""
        self.stat = ""
        self.model_info = ""
        self.start_time: Optional[datetime] = None
        self.is_thinking = False
        self.thinking_time: Optional[float] = None
        self.generating_time: Optional[float] = None
        self.reasoning_steps: list[str] = []
        self.selected_server_model: Optional[str] = None

        self._content = ""
        self._steps: dict[int, ReasoningStep] = {}
        self._started_at: Optional[float] = None
        self._markers: Optional[Tuple[str, str]] = None

    # ─────────────────────────────────────────────────────────────────
    # OBSERVATION
    # ─────────────────────────────────────────────────────────────────

    @property
    def provider(self) -> Optional[Provider]:
        return self._provider

    @property
    def thinking_text(self) -> Optional[str]:
        """Text of the thinking block so far, for reasoning models only."""
        if self._markers is None:
            return None
        return split_thinking(self._content, *self._markers)[0]

    @property
    def elapsed_time(self) -> Optional[float]:
        """Seconds since the running generation started, else None."""
        if self._started_at is None:
            return None
        return time.monotonic() - self._started_at

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SessionState:
        return SessionState(
            phase=self.phase,
            running=self.running,
            cancelled=self.cancelled,
            output=self.output,
            stat=self.stat,
            model_info=self.model_info,
            start_time=self.start_time,
            is_thinking=self.is_thinking,
            thinking_time=self.thinking_time,
            thinking_text=self.thinking_text,
            generating_time=self.generating_time,
            reasoning_steps=list(self.reasoning_steps),
        )

    def _publish(self, kind: SessionEventKind, chunk: str = "") -> None:
        event = SessionEvent(kind=kind, phase=self.phase, chunk=chunk, output=self.output)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")

    def _set_phase(self, phase: GenerationPhase) -> None:
        self.phase = phase
        self._publish(SessionEventKind.PHASE)

    # ─────────────────────────────────────────────────────────────────
    # GENERATION
    # ─────────────────────────────────────────────────────────────────

    async def generate(
        self,
        model_name: Optional[str],
        thread: Thread,
        system_prompt: Optional[str] = None,
        config: Optional[AppConfig] = None,
    ) -> str:
        """
        Generate the assistant reply for a thread.

        Returns "" immediately if a generation is already running. The
        returned text is the content to persist: reasoning annotations are
        shown in ``output`` while streaming but never included here.

        Args:
            model_name: Model to use; resolved from settings when None
            thread: Snapshot of the conversation
            system_prompt: Overrides config.system_prompt when given
            config: Overrides the session's settings for this call
        """
        if self.running:
            logger.debug("Generation already running, ignoring request")
            return ""

        config = config or self.config
        model_name = model_name or resolve_model_name(config, self.selected_server_model)
        if not model_name:
            self._content = ""
            self._markers = None
            self._steps.clear()
            self.reasoning_steps = []
            self.output = NO_MODEL_SELECTED_MESSAGE
            self._publish(SessionEventKind.OUTPUT, NO_MODEL_SELECTED_MESSAGE)
            return NO_MODEL_SELECTED_MESSAGE
        if system_prompt is None:
            system_prompt = config.system_prompt

        token = self._begin()
        outcome = GenerationPhase.COMPLETED
        try:
            kind = select_provider(config)
            provider = await self._provider_for(kind, config, model_name)
            task = InferenceTask(
                model_id=model_name,
                messages=build_history(thread, system_prompt),
                params=config.generation,
            )
            logger.info(f"Generating with {kind.value}:{model_name} ({len(task.messages)} messages)")

            await provider.load()
            self.model_info = getattr(provider, "model_info", "") or self.model_info
            markers = provider.thinking_markers
            self._markers = markers
            if markers is not None and not token.cancelled:
                self.is_thinking = True

            if not token.cancelled:
                async with aclosing(provider.stream_generation(task, token)) as events:
                    async for event in events:
                        if token.cancelled:
                            break
                        self._apply(event, markers)

            if token.cancelled:
                outcome = GenerationPhase.CANCELLED
            elif kind is not ProviderKind.LOCAL:
                self.stat = "API response completed"
            result = self._content

        except Exception as e:
            outcome = GenerationPhase.FAILED
            self.last_error = e
            logger.error(f"Generation with {model_name} failed: {e}")
            result = format_failure(e)
            self._content = result
            self._steps.clear()
            self.reasoning_steps = []
            self._render()
            self._publish(SessionEventKind.OUTPUT, result)

        finally:
            self._finish(outcome)

        return result

    def stop(self) -> None:
        """
        Request cancellation of the running generation.

        Cooperative: the provider stops at its next chunk or token batch,
        so latency is bounded by one chunk.
        """
        provider = self._provider
        if self.running and provider is not None and not provider.supports_cancellation:
            logger.warning(
                f"{provider.identity.name} does not poll cancellation; "
                "output stops at its next event"
            )
        self.is_thinking = False
        self.cancelled = True
        self._cancel_token.cancel()

    def _begin(self) -> CancellationToken:
        self.running = True
        self.cancelled = False
        self._cancel_token = CancellationToken()
        self.last_error = None
        self._content = ""
        self._steps.clear()
        self.reasoning_steps = []
        self.output = ""
        self.stat = ""
        self._markers = None
        self.is_thinking = False
        self.thinking_time = None
        self.generating_time = None
        self.start_time = datetime.now()
        self._started_at = time.monotonic()
        self._set_phase(GenerationPhase.RUNNING)
        return self._cancel_token

    def _finish(self, outcome: GenerationPhase) -> None:
        elapsed = self.elapsed_time
        if self.is_thinking and self.thinking_time is None:
            self.thinking_time = elapsed
        self.is_thinking = False
        self.generating_time = elapsed
        self.running = False
        self.start_time = None
        self._started_at = None
        self.last_outcome = outcome
        logger.info(f"Generation {outcome.value} after {elapsed or 0:.2f}s")
        self._set_phase(outcome)
        self._set_phase(GenerationPhase.IDLE)

    def _apply(self, event: StreamEvent, markers: Optional[Tuple[str, str]]) -> None:
        if event.kind == "delta":
            self._content += event.text
            self._render()
            self._publish(SessionEventKind.OUTPUT, event.text)
            self._update_thinking(markers)
        elif event.kind == "snapshot":
            if event.text == self._content:
                return
            chunk = event.text[len(self._content):] if event.text.startswith(self._content) else event.text
            self._content = event.text
            self._render()
            self._publish(SessionEventKind.OUTPUT, chunk)
            self._update_thinking(markers)
        elif event.kind == "reasoning" and event.step is not None:
            self._steps[event.step.index] = event.step
            self.reasoning_steps = [
                format_reasoning_step(step.name, step.arguments)
                for _, step in sorted(self._steps.items())
            ]
            self._render()
            self._publish(SessionEventKind.REASONING)
        elif event.kind == "stats" and event.tokens_per_second is not None:
            self.stat = f" Tokens/second: {event.tokens_per_second:.3f}"

    def _render(self) -> None:
        """Visible buffer: reasoning annotations, then the content."""
        if self.reasoning_steps:
            self.output = "\n".join(self.reasoning_steps) + "\n\n" + self._content
        else:
            self.output = self._content

    def _update_thinking(self, markers: Optional[Tuple[str, str]]) -> None:
        if self.is_thinking and markers is not None and markers[1] in self._content:
            self.is_thinking = False
            self.thinking_time = self.elapsed_time

    # ─────────────────────────────────────────────────────────────────
    # PROVIDERS
    # ─────────────────────────────────────────────────────────────────

    async def _provider_for(self, kind: ProviderKind, config: AppConfig, model_name: str) -> Provider:
        identity = build_identity(kind, config, model_name)
        if self._provider is not None and self._provider.identity == identity:
            return self._provider
        await self.reset_provider()
        logger.info(f"Switching provider to {identity.kind.value}:{identity.name}")
        self._provider = self._provider_factory(identity, self.catalog)
        return self._provider

    async def reset_provider(self) -> None:
        """Close the current provider; the next generation builds a new one."""
        if self._provider is not None:
            provider, self._provider = self._provider, None
            await provider.aclose()

    async def switch_model(self, model_name: str) -> None:
        """Select a local model and load it ahead of the next generation."""
        self.config.set_using_server(False)
        self.config.current_model_name = model_name
        await self.reset_provider()
        try:
            provider = await self._provider_for(ProviderKind.LOCAL, self.config, model_name)
            await provider.load()
            self.model_info = getattr(provider, "model_info", "")
        except LLMRelayError as e:
            logger.warning(f"Could not load {model_name}: {e}")
            self.model_info = str(e)

    async def switch_to_api(self, profile: APIProfile) -> None:
        """Route the next generations to an API profile."""
        self.config.is_using_server = False
        self.config.set_current_api_profile(profile)
        await self.reset_provider()

    async def refresh_server_models(self, server: Optional[ServerProfile] = None) -> list[str]:
        """
        List the models of a server and cache them in the settings.

        Falls back to the cached list when the server returns nothing.
        """
        server = server or self.config.current_server
        if server is None:
            return []
        provider = RemoteProvider(server)
        try:
            models = await provider.list_models()
        finally:
            await provider.aclose()

        if not models:
            return self.config.get_cached_models(server.id)
        self.config.update_cached_models(server.id, models)
        if self.selected_server_model not in models:
            self.selected_server_model = models[0]
        return models

    async def aclose(self) -> None:
        await self.reset_provider()
