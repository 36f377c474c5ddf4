"""
Configuration constants and Pydantic models for llm-relay.
"""

import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Load environment variables from .env file
load_dotenv()


class LLMRelayError(Exception):
    """Base class for all llm-relay errors."""
    pass


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS
# ─────────────────────────────────────────────────────────────────────

DEFAULT_TEMPERATURE: float = 0.5
DEFAULT_MAX_TOKENS: int = 4096
# Updating every 4 tokens looks continuous; updating on every token
# costs ~15% tokens/s.
DEFAULT_DISPLAY_EVERY_N_TOKENS: int = 4
DEFAULT_SYSTEM_PROMPT: str = "you are a helpful assistant"

DEFAULT_GENERATION_TIMEOUT_SECONDS: float = 45.0
DEFAULT_LIST_MODELS_TIMEOUT_SECONDS: float = 20.0

DEFAULT_IMAGE_SIZE: str = "1024x1024"
DEFAULT_IMAGE_QUALITY: str = "standard"

NO_MODEL_SELECTED_MESSAGE: str = "No model selected. Choose a model in settings first."


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS
# ─────────────────────────────────────────────────────────────────────

LOCAL_CACHE_LIMIT_BYTES: int = 20 * 1024 * 1024
LOCAL_HOSTS: tuple[str, ...] = ("localhost", "127.0.0.1")
DEFAULT_CONFIG_PATH: str = "~/.llm_relay/config.json"


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def get_generation_timeout() -> float:
    """
    Get the timeout for chat-completion and image requests.

    Set LLM_RELAY_GENERATION_TIMEOUT in .env (default: 45).
    """
    try:
        return float(os.environ.get("LLM_RELAY_GENERATION_TIMEOUT", DEFAULT_GENERATION_TIMEOUT_SECONDS))
    except ValueError:
        return DEFAULT_GENERATION_TIMEOUT_SECONDS


def get_list_models_timeout() -> float:
    """
    Get the timeout for model listing requests.

    Set LLM_RELAY_LIST_MODELS_TIMEOUT in .env (default: 20).
    """
    try:
        return float(os.environ.get("LLM_RELAY_LIST_MODELS_TIMEOUT", DEFAULT_LIST_MODELS_TIMEOUT_SECONDS))
    except ValueError:
        return DEFAULT_LIST_MODELS_TIMEOUT_SECONDS


def get_config_path() -> Path:
    """Get the settings file path from LLM_RELAY_CONFIG_PATH or the default."""
    return Path(os.environ.get("LLM_RELAY_CONFIG_PATH", DEFAULT_CONFIG_PATH)).expanduser()


def get_models_dir() -> Optional[Path]:
    """Get the local GGUF model directory from LLM_RELAY_MODELS_DIR, if set."""
    value = os.environ.get("LLM_RELAY_MODELS_DIR", "").strip()
    if not value:
        return None
    return Path(value).expanduser()


# ─────────────────────────────────────────────────────────────────────
# URL NORMALIZATION
# ─────────────────────────────────────────────────────────────────────

def sanitize_url(url: str) -> str:
    """
    Normalize a server base URL.

    Missing schemes default to https, and http is upgraded to https unless
    the host is exactly localhost or 127.0.0.1. Applying it twice is a no-op.

    Examples:
        >>> sanitize_url(" api.example.com/v1 ")
        'https://api.example.com/v1'
        >>> sanitize_url("http://example.com")
        'https://example.com'
        >>> sanitize_url("http://localhost:11434/v1")
        'http://localhost:11434/v1'
        >>> sanitize_url("http://localhost.example.com/v1")
        'https://localhost.example.com/v1'
    """
    cleaned = url.strip()
    lowered = cleaned.lower()
    if not lowered.startswith(("http://", "https://")):
        cleaned = "https://" + cleaned
        lowered = cleaned.lower()
    if lowered.startswith("http://") and _url_host(cleaned) not in LOCAL_HOSTS:
        cleaned = "https://" + cleaned[len("http://"):]
    return cleaned


def _url_host(url: str) -> str:
    try:
        return httpx.URL(url).host.lower()
    except httpx.InvalidURL:
        return ""


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class GenerationParameters(BaseModel):
    """Sampling and display parameters for one generation."""
    model_config = ConfigDict(frozen=True)

    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    display_every_n_tokens: int = Field(default=DEFAULT_DISPLAY_EVERY_N_TOKENS, gt=0)


class Role(str, Enum):
    """Message author, valued by its wire string."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single message in a conversation thread."""
    id: UUID = Field(default_factory=uuid4)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    generating_time: Optional[float] = None  # Seconds spent generating (assistant only)

    def to_wire(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class Thread(BaseModel):
    """A conversation thread."""
    id: UUID = Field(default_factory=uuid4)
    title: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    messages: list[Message] = Field(default_factory=list)

    def sorted_messages(self) -> list[Message]:
        return sorted(self.messages, key=lambda m: m.timestamp)

    def add_message(
        self,
        role: Role,
        content: str,
        generating_time: Optional[float] = None,
    ) -> Message:
        message = Message(role=role, content=content, generating_time=generating_time)
        self.messages.append(message)
        return message


class ServerKind(str, Enum):
    """Flavour of an OpenAI-compatible endpoint."""
    OPENAI = "OpenAI"
    OLLAMA = "Ollama"
    LM_STUDIO = "LM Studio"
    CUSTOM = "Custom"

    @property
    def default_url(self) -> str:
        return {
            ServerKind.OPENAI: "https://api.openai.com/v1",
            ServerKind.OLLAMA: "http://localhost:11434/v1",
            ServerKind.LM_STUDIO: "http://localhost:1234/v1",
            ServerKind.CUSTOM: "",
        }[self]

    @property
    def is_openai_shaped(self) -> bool:
        """Whether responses may carry tool-call deltas."""
        return self is ServerKind.OPENAI


class ServerProfile(BaseModel):
    """
    A user-configured OpenAI-compatible server.

    The base URL is normalized with sanitize_url whenever the profile is
    created or edited.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    base_url: str
    api_key: str = ""
    kind: ServerKind = ServerKind.CUSTOM

    @field_validator("base_url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        return sanitize_url(value)

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data):
        if isinstance(data, dict) and not data.get("name"):
            kind = ServerKind(data.get("kind", ServerKind.CUSTOM))
            data = {**data, "name": kind.value}
        return data

    @property
    def is_openai_shaped(self) -> bool:
        return self.kind.is_openai_shaped


class APIProfile(ServerProfile):
    """A hosted chat-completion API with its default model."""
    model_name: str = ""
    is_default: bool = False


def default_api_profiles() -> list[APIProfile]:
    """API profiles offered before the user has saved any."""
    return [
        APIProfile(
            name="OpenAI",
            base_url="https://api.openai.com/v1",
            model_name="gpt-4o-mini",
            kind=ServerKind.OPENAI,
            is_default=True,
        ),
        APIProfile(
            name="Anthropic",
            base_url="https://api.anthropic.com/v1",
            model_name="claude-3-haiku-20240307",
            kind=ServerKind.CUSTOM,
        ),
        APIProfile(
            name="Ollama",
            base_url="http://localhost:11434",
            model_name="llama3.2:1b",
            kind=ServerKind.OLLAMA,
        ),
    ]


class ProviderPreference(str, Enum):
    LOCAL = "local"
    API = "api"


class AppConfig(BaseModel):
    """
    Application settings read by the session at dispatch time.

    Mirrors the persisted preferences: provider choice, saved servers and
    API profiles, installed local models and cached server model lists.
    """
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    current_model_name: Optional[str] = None
    preferred_provider: ProviderPreference = ProviderPreference.LOCAL
    is_using_server: bool = False
    servers: list[ServerProfile] = Field(default_factory=list)
    selected_server_id: Optional[UUID] = None
    api_profiles: list[APIProfile] = Field(default_factory=default_api_profiles)
    current_api_profile_id: Optional[UUID] = None
    installed_models: list[str] = Field(default_factory=list)
    cached_server_models: dict[str, list[str]] = Field(default_factory=dict)
    generation: GenerationParameters = Field(default_factory=GenerationParameters)

    # Servers

    def set_using_server(self, enabled: bool) -> None:
        self.is_using_server = enabled
        self.preferred_provider = ProviderPreference.API if enabled else ProviderPreference.LOCAL

    def add_server(self, server: ServerProfile) -> ServerProfile:
        """Add a server, selecting it if none is selected yet."""
        server = server.model_copy(update={"base_url": sanitize_url(server.base_url)})
        self.servers.append(server)
        if self.selected_server_id is None:
            self.select_server(server.id)
        return server

    def update_server(self, server: ServerProfile) -> None:
        for idx, existing in enumerate(self.servers):
            if existing.id == server.id:
                self.servers[idx] = server.model_copy(
                    update={"base_url": sanitize_url(server.base_url)}
                )
                return

    def remove_server(self, server_id: UUID) -> None:
        self.servers = [s for s in self.servers if s.id != server_id]
        self.cached_server_models.pop(str(server_id), None)
        if self.selected_server_id == server_id:
            self.select_server(self.servers[0].id if self.servers else None)

    def select_server(self, server_id: Optional[UUID]) -> None:
        """Select a server; the current model is reset to avoid stale picks."""
        self.selected_server_id = server_id
        self.current_model_name = None

    @property
    def current_server(self) -> Optional[ServerProfile]:
        if self.selected_server_id is None:
            return None
        return next((s for s in self.servers if s.id == self.selected_server_id), None)

    def update_cached_models(self, server_id: UUID, models: list[str]) -> None:
        self.cached_server_models[str(server_id)] = list(models)

    def get_cached_models(self, server_id: UUID) -> list[str]:
        return list(self.cached_server_models.get(str(server_id), []))

    # API profiles

    @property
    def current_api_profile(self) -> Optional[APIProfile]:
        """Selected profile, else the default one, else the first one."""
        if self.current_api_profile_id is not None:
            for profile in self.api_profiles:
                if profile.id == self.current_api_profile_id:
                    return profile
        for profile in self.api_profiles:
            if profile.is_default:
                return profile
        return self.api_profiles[0] if self.api_profiles else None

    def set_current_api_profile(self, profile: APIProfile) -> None:
        self.current_api_profile_id = profile.id
        self.preferred_provider = ProviderPreference.API

    # Local models

    def add_installed_model(self, name: str) -> None:
        if name not in self.installed_models:
            self.installed_models.append(name)


# ─────────────────────────────────────────────────────────────────────
# PERSISTENCE
# ─────────────────────────────────────────────────────────────────────

def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load settings from JSON, or return defaults if the file is missing."""
    path = path or get_config_path()
    if not path.exists():
        return AppConfig()
    return AppConfig.model_validate_json(path.read_text(encoding="utf-8"))


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    path = path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
    return path
