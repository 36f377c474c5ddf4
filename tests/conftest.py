"""Shared test fixtures for llm-relay tests."""

import json
import threading
import time
from typing import Iterator, Optional

import pytest


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_API_URL = "https://api.example.com/v1"
MOCK_SERVER_URL = "http://localhost:1234/v1"

MOCK_MODEL_1 = "llama-3.2-3b-instruct"
MOCK_MODEL_2 = "qwen2.5-7b-instruct"
MOCK_REASONING_MODEL = "deepseek-r1-distill-qwen-1.5b"

MOCK_MODELS_RESPONSE = {
    "object": "list",
    "data": [
        {"id": MOCK_MODEL_1, "object": "model"},
        {"id": MOCK_MODEL_2, "object": "model"},
    ],
}

MOCK_STREAMING_CHUNKS = [
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"role":"assistant","content":""},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":"The"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" capital"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" of"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" France"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" is"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":" Paris."},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}',
    'data: [DONE]',
]

MOCK_STREAMED_TEXT = "The capital of France is Paris."

MOCK_TOOL_CALL_CHUNKS = [
    'data: {"choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"name":"search","arguments":""}}]}}]}',
    'data: {"choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"arguments":"{\\"q\\":"}}]}}]}',
    'data: {"choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"arguments":"\\"x\\"}"}}]}}]}',
    'data: {"choices":[{"index":0,"delta":{"content":"Done."}}]}',
    'data: [DONE]',
]


def sse_body(lines: list[str]) -> bytes:
    """Join data lines into an SSE response body."""
    return ("\n\n".join(lines) + "\n\n").encode()


# ─────────────────────────────────────────────────────────────────────
# LOCAL ENGINE DOUBLES
# ─────────────────────────────────────────────────────────────────────

class FakeEngine:
    """LocalEngine that yields a fixed token list."""

    def __init__(
        self,
        tokens: list[str],
        token_delay: float = 0.0,
        fail_after: Optional[int] = None,
    ):
        self.tokens = tokens
        self.token_delay = token_delay
        self.fail_after = fail_after
        self.calls: list[dict] = []
        self.pulled = 0

    def stream_tokens(self, messages, *, temperature, max_tokens, seed) -> Iterator[str]:
        self.calls.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "seed": seed,
        })
        for i, token in enumerate(self.tokens):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("engine exploded")
            if self.token_delay:
                time.sleep(self.token_delay)
            self.pulled += 1
            yield token


class FakeCatalog:
    """ModelCatalog serving FakeEngines from memory."""

    def __init__(self, engines: dict, load_delay: float = 0.0, reasoning: tuple = ()):
        from llm_relay.adapters.catalog import CatalogEntry, LocalModelType

        self.engines = engines
        self.load_delay = load_delay
        self.entries = {
            name: CatalogEntry(
                name=name,
                path=f"/models/{name}.gguf",
                model_type=LocalModelType.REASONING if name in reasoning else LocalModelType.REGULAR,
            )
            for name in engines
        }
        self.load_calls = 0
        self.cache_limits: list[int] = []
        self.progress: list[float] = []
        self._lock = threading.Lock()

    def lookup(self, name):
        return self.entries.get(name)

    def load_engine(self, entry, on_progress):
        with self._lock:
            self.load_calls += 1
        on_progress(0.0)
        if self.load_delay:
            time.sleep(self.load_delay)
        on_progress(1.0)
        return self.engines[entry.name]

    def set_cache_limit(self, limit_bytes):
        self.cache_limits.append(limit_bytes)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Environment
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_cache_limit(monkeypatch):
    """Each test starts as a fresh process for the local cache limit."""
    from llm_relay.adapters import catalog, local
    monkeypatch.setattr(local, "_cache_limit_configured", False)
    monkeypatch.setattr(catalog, "_cache_limit_bytes", None)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "LLM_RELAY_GENERATION_TIMEOUT",
        "LLM_RELAY_LIST_MODELS_TIMEOUT",
        "LLM_RELAY_CONFIG_PATH",
        "LLM_RELAY_MODELS_DIR",
    ):
        monkeypatch.delenv(var, raising=False)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Data Models
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def streaming_body():
    """SSE body streaming MOCK_STREAMED_TEXT."""
    return sse_body(MOCK_STREAMING_CHUNKS)


@pytest.fixture
def tool_call_body():
    """SSE body with one tool call followed by content."""
    return sse_body(MOCK_TOOL_CALL_CHUNKS)


@pytest.fixture
def models_response():
    return json.loads(json.dumps(MOCK_MODELS_RESPONSE))


@pytest.fixture
def sample_thread():
    """Thread with a user/assistant/user exchange in timestamp order."""
    from datetime import datetime, timedelta
    from llm_relay.config import Message, Role, Thread

    base = datetime(2024, 1, 1, 12, 0, 0)
    return Thread(messages=[
        Message(role=Role.USER, content="Hello", timestamp=base),
        Message(role=Role.ASSISTANT, content="Hi there", timestamp=base + timedelta(seconds=5)),
        Message(role=Role.USER, content="What is the capital of France?", timestamp=base + timedelta(seconds=10)),
    ])


@pytest.fixture
def api_profile():
    from llm_relay.config import APIProfile, ServerKind

    return APIProfile(
        name="Example",
        base_url=MOCK_API_URL,
        api_key="test-key-123",
        model_name=MOCK_MODEL_1,
        kind=ServerKind.OPENAI,
        is_default=True,
    )


@pytest.fixture
def server_profile():
    from llm_relay.config import ServerKind, ServerProfile

    return ServerProfile(name="LM Studio", base_url=MOCK_SERVER_URL, kind=ServerKind.LM_STUDIO)


@pytest.fixture
def api_config(api_profile):
    """Settings routed to the API profile."""
    from llm_relay.config import AppConfig

    config = AppConfig(api_profiles=[api_profile])
    config.set_current_api_profile(api_profile)
    return config


@pytest.fixture
def server_config(server_profile):
    """Settings routed to a local OpenAI-compatible server."""
    from llm_relay.config import AppConfig

    config = AppConfig()
    config.add_server(server_profile)
    config.set_using_server(True)
    config.current_model_name = MOCK_MODEL_1
    return config


@pytest.fixture
def fake_catalog():
    """Catalog with one regular and one reasoning model."""
    return FakeCatalog(
        {
            MOCK_MODEL_1: FakeEngine(["The", " capital", " of", " France", " is", " Paris."]),
            MOCK_REASONING_MODEL: FakeEngine(["<think>", "hmm", "</think>", "Paris"]),
        },
        reasoning=(MOCK_REASONING_MODEL,),
    )


@pytest.fixture
def local_config():
    """Settings routed to the local model MOCK_MODEL_1."""
    from llm_relay.config import AppConfig

    return AppConfig(current_model_name=MOCK_MODEL_1)


@pytest.fixture
def make_engine():
    """Factory for FakeEngine."""
    return FakeEngine


@pytest.fixture
def make_catalog():
    """Factory for FakeCatalog."""
    return FakeCatalog


@pytest.fixture
def sse():
    """Build an SSE body from data lines."""
    return sse_body
