"""
RemoteProvider - OpenAI-compatible chat-completion endpoints.

Serves both hosted API profiles and user-configured servers. OpenAI-shaped
endpoints also report tool-call deltas as reasoning steps; other servers
run in a compatible mode that only reads delta.content.
"""

import json
import logging
import re
from typing import AsyncGenerator, Optional

import httpx

from llm_relay.adapters.schema import InferenceTask, ReasoningStep, StreamEvent
from llm_relay.config import (
    APIProfile, GenerationParameters, LLMRelayError, ServerProfile,
    DEFAULT_IMAGE_QUALITY, DEFAULT_IMAGE_SIZE,
    get_generation_timeout, get_list_models_timeout, sanitize_url,
)
from llm_relay.dispatcher import ProviderIdentity
from llm_relay.history import last_user_message
from llm_relay.parsers import parse_stream_line
from llm_relay.state import CancellationToken

logger = logging.getLogger(__name__)


CHAT_COMPLETIONS_PATH = "chat/completions"
MODELS_PATH = "models"
IMAGES_PATH = "images/generations"

# o1, o3-mini, o4-mini, ...
REASONING_MODEL_PATTERN = re.compile(r"^o\d(?:$|[-_.:])", re.IGNORECASE)
IMAGE_MODEL_PREFIXES: tuple[str, ...] = ("dall-e", "gpt-image")


class InvalidURLError(LLMRelayError):
    """The base URL cannot form a valid request URL."""
    pass


class RemoteHTTPError(LLMRelayError):
    """Human-readable error from a remote endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeoutError(RemoteHTTPError):
    """The request did not finish within its timeout."""
    pass


class ImageGenerationError(LLMRelayError):
    """The image endpoint reported an error."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoImageURLError(ImageGenerationError):
    """The image response had no URL where one was expected."""

    def __init__(self, message: str = "No image URL in response"):
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────
# REQUEST SHAPING
# ─────────────────────────────────────────────────────────────────────

def is_reasoning_model(model_id: str) -> bool:
    return bool(REASONING_MODEL_PATTERN.match(model_id.strip()))


def is_image_model(model_id: str) -> bool:
    return model_id.strip().lower().startswith(IMAGE_MODEL_PREFIXES)


def build_endpoint_url(base_url: str, path: str) -> str:
    """
    Append an endpoint path to a normalized base URL.

    Raises:
        InvalidURLError: The result has no host or cannot be parsed
    """
    candidate = f"{sanitize_url(base_url).rstrip('/')}/{path}"
    try:
        url = httpx.URL(candidate)
    except httpx.InvalidURL as e:
        raise InvalidURLError(f"Invalid server URL: {base_url!r}") from e
    if not url.host:
        raise InvalidURLError(f"Invalid server URL: {base_url!r}")
    return candidate


def build_chat_payload(model_id: str, messages: list[dict], params: GenerationParameters) -> dict:
    """
    Build the chat-completion request body.

    Reasoning-class models reject a leading system message and use
    max_completion_tokens instead of max_tokens.
    """
    messages = [dict(m) for m in messages]
    payload = {
        "model": model_id,
        "messages": messages,
        "stream": True,
        "temperature": params.temperature,
    }
    if is_reasoning_model(model_id):
        if messages:
            messages[0]["role"] = "user"
        payload["max_completion_tokens"] = params.max_tokens
    else:
        payload["max_tokens"] = params.max_tokens
    return payload


def format_image_markdown(url: str) -> str:
    return f"![Generated Image]({url})"


def parse_error_message(response: httpx.Response) -> str:
    """Extract a user-friendly error message from an error response."""
    try:
        data = response.json()
        # OpenAI-compatible servers return {"error": {"message": "..."}}
        if isinstance(data, dict):
            error = data.get("error", {})
            if isinstance(error, dict):
                message = error.get("message", "")
                if message:
                    return f"HTTP {response.status_code}: {message}"
            elif isinstance(error, str) and error:
                return f"HTTP {response.status_code}: {error}"
        return f"HTTP {response.status_code}: {response.text[:200]}"
    except (json.JSONDecodeError, UnicodeDecodeError):
        return f"HTTP {response.status_code}: {response.text[:200]}"


# ─────────────────────────────────────────────────────────────────────
# PROVIDER
# ─────────────────────────────────────────────────────────────────────

class RemoteProvider:
    """
    Remote implementation of the Provider protocol.

    The HTTP client is created on first use and closed by aclose(), so
    connections survive across generations until the provider is switched.
    """

    def __init__(
        self,
        profile: ServerProfile,
        identity: Optional[ProviderIdentity] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._profile = profile
        if identity is None:
            identity = (
                ProviderIdentity.remote_api(profile)
                if isinstance(profile, APIProfile)
                else ProviderIdentity.remote_server(profile)
            )
        self._identity = identity
        self._client = client

    @property
    def identity(self) -> ProviderIdentity:
        return self._identity

    @property
    def profile(self) -> ServerProfile:
        return self._profile

    @property
    def supports_cancellation(self) -> bool:
        return True

    @property
    def thinking_markers(self) -> None:
        return None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._profile.api_key:
            headers["Authorization"] = f"Bearer {self._profile.api_key}"
        return headers

    async def load(self) -> str:
        """Validate the endpoint URL and open the client. Returns the chat URL."""
        url = build_endpoint_url(self._profile.base_url, CHAT_COMPLETIONS_PATH)
        self._get_client()
        return url

    async def stream_completion(
        self,
        task: InferenceTask,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Stream a chat completion.

        Yields delta events for content and reasoning events for tool
        calls (OpenAI-shaped endpoints only). Stops at the next line once
        cancel_token is cancelled.

        Raises:
            InvalidURLError: Bad base URL
            RemoteHTTPError: Non-200 status or transport failure
            RemoteTimeoutError: Request exceeded the generation timeout
        """
        url = build_endpoint_url(self._profile.base_url, CHAT_COMPLETIONS_PATH)
        payload = build_chat_payload(task.model_id, task.messages, task.params)
        include_tool_calls = self._profile.is_openai_shaped
        timeout = get_generation_timeout()
        steps: dict[int, ReasoningStep] = {}

        logger.debug(f"POST {url} model={task.model_id} messages={len(task.messages)}")
        try:
            async with self._get_client().stream(
                "POST", url, json=payload, headers=self._headers(), timeout=timeout
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise RemoteHTTPError(parse_error_message(response), response.status_code)

                async for line in response.aiter_lines():
                    if cancel_token is not None and cancel_token.cancelled:
                        break
                    chunk = parse_stream_line(line, include_tool_calls=include_tool_calls)
                    if chunk is None:
                        continue
                    if chunk.done:
                        break

                    for fragment in chunk.tool_calls:
                        step = steps.get(fragment.index)
                        if step is None:
                            step = steps[fragment.index] = ReasoningStep(index=fragment.index)
                        if fragment.name:
                            step.name = fragment.name
                        step.arguments += fragment.arguments
                        yield StreamEvent(kind="reasoning", step=step.model_copy())

                    if chunk.content:
                        yield StreamEvent(kind="delta", text=chunk.content)

        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"Request timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise RemoteHTTPError(f"HTTP error: {e}") from e

    async def list_models(self) -> list[str]:
        """
        Return model IDs served by this endpoint.

        Listing is advisory: any failure is logged and yields [].
        """
        try:
            url = build_endpoint_url(self._profile.base_url, MODELS_PATH)
            response = await self._get_client().get(
                url, headers=self._headers(), timeout=get_list_models_timeout()
            )
            response.raise_for_status()
            data = response.json()
            # {"data": [{"id": "model-name", ...}, ...]}
            return [m["id"] for m in data.get("data", [])]
        except Exception as e:
            logger.warning(f"Listing models from {self._profile.name} failed: {e}")
            return []

    async def generate_image(
        self,
        prompt: str,
        model: Optional[str] = None,
        size: str = DEFAULT_IMAGE_SIZE,
        quality: str = DEFAULT_IMAGE_QUALITY,
    ) -> str:
        """
        Generate one image and return it as a markdown image reference.

        Raises:
            ImageGenerationError: The response carries an error object
            NoImageURLError: The response has no data[0].url
            RemoteHTTPError: Transport failure or non-200 without error body
        """
        model = model or getattr(self._profile, "model_name", "")
        url = build_endpoint_url(self._profile.base_url, IMAGES_PATH)
        payload = {
            "prompt": prompt,
            "n": 1,
            "size": size,
            "quality": quality,
            "response_format": "url",
            "model": model,
        }
        timeout = get_generation_timeout()

        logger.info(f"Requesting image from {model}")
        try:
            response = await self._get_client().post(
                url, json=payload, headers=self._headers(), timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"Request timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise RemoteHTTPError(f"HTTP error: {e}") from e

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ImageGenerationError(message or "Unknown image generation error")
        if response.status_code != 200:
            raise RemoteHTTPError(parse_error_message(response), response.status_code)

        try:
            image_url = data["data"][0]["url"]
        except (KeyError, IndexError, TypeError):
            raise NoImageURLError()
        if not image_url:
            raise NoImageURLError()
        return format_image_markdown(image_url)

    async def stream_generation(
        self,
        task: InferenceTask,
        cancel_token: CancellationToken,
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Provider-protocol entry point.

        Image models skip chat streaming: the last user message becomes the
        prompt and the markdown image arrives as a single snapshot.
        """
        if is_image_model(task.model_id):
            prompt = last_user_message(task.messages)
            if not prompt:
                raise ImageGenerationError("No prompt for image generation")
            yield StreamEvent(kind="snapshot", text=await self.generate_image(prompt, model=task.model_id))
            return

        async for event in self.stream_completion(task, cancel_token):
            yield event

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
