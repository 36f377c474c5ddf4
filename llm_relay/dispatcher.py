"""
Backend selection and provider dispatch.

Decides which provider serves a generation request and builds the
identity used to reuse providers across requests.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

from llm_relay.config import AppConfig, LLMRelayError, ProviderPreference

if TYPE_CHECKING:
    from llm_relay.adapters.base import Provider
    from llm_relay.adapters.catalog import ModelCatalog

logger = logging.getLogger(__name__)


class InvalidServerConfigError(LLMRelayError):
    """The selected server or API profile is missing or unusable."""
    pass


class ProviderKind(str, Enum):
    LOCAL = "local"
    REMOTE_API = "remote_api"
    REMOTE_SERVER = "remote_server"


@dataclass(frozen=True)
class ProviderIdentity:
    """
    Tagged provider value.

    Equality and hash use only the kind and the stable name of the model
    or profile, so provider switches are cheap to compare. ``target`` holds
    the full configuration and is ignored by comparisons.
    """
    kind: ProviderKind
    name: str
    target: Any = field(default=None, compare=False, hash=False, repr=False)

    @classmethod
    def local(cls, model_name: str) -> "ProviderIdentity":
        return cls(ProviderKind.LOCAL, model_name, model_name)

    @classmethod
    def remote_api(cls, profile) -> "ProviderIdentity":
        return cls(ProviderKind.REMOTE_API, profile.name, profile)

    @classmethod
    def remote_server(cls, server) -> "ProviderIdentity":
        return cls(ProviderKind.REMOTE_SERVER, server.name, server)


def select_provider(config: AppConfig) -> ProviderKind:
    """
    Pick the provider kind for the next generation.

    Precedence: remote server, then API preference, else local. Always
    returns a kind; a missing model/profile is reported at dispatch time.
    """
    if config.is_using_server:
        return ProviderKind.REMOTE_SERVER
    if config.preferred_provider == ProviderPreference.API:
        return ProviderKind.REMOTE_API
    return ProviderKind.LOCAL


def resolve_model_name(config: AppConfig, server_model: Optional[str] = None) -> Optional[str]:
    """
    Resolve the model name for the active provider.

    Args:
        config: Current settings
        server_model: Model last picked from the selected server's listing

    Returns:
        Model name, or None if nothing is configured
    """
    kind = select_provider(config)
    if kind is ProviderKind.REMOTE_SERVER:
        return config.current_model_name or server_model
    if kind is ProviderKind.REMOTE_API:
        profile = config.current_api_profile
        if profile is not None and profile.model_name:
            return profile.model_name
        return config.current_model_name
    return config.current_model_name


def build_identity(kind: ProviderKind, config: AppConfig, model_name: str) -> ProviderIdentity:
    """
    Build the identity of the provider that serves ``kind``.

    Raises:
        InvalidServerConfigError: No server/profile configured for a remote kind
    """
    if kind is ProviderKind.REMOTE_SERVER:
        server = config.current_server
        if server is None:
            raise InvalidServerConfigError("No server selected. Add a server in settings first.")
        return ProviderIdentity.remote_server(server)
    if kind is ProviderKind.REMOTE_API:
        profile = config.current_api_profile
        if profile is None:
            raise InvalidServerConfigError("API client not configured")
        return ProviderIdentity.remote_api(profile)
    return ProviderIdentity.local(model_name)


def create_provider(
    identity: ProviderIdentity,
    catalog: Optional["ModelCatalog"] = None,
) -> "Provider":
    """Instantiate the provider for an identity."""
    logger.debug(f"Creating provider {identity.kind.value}:{identity.name}")
    if identity.kind is ProviderKind.LOCAL:
        from llm_relay.adapters.local import LocalProvider
        if catalog is None:
            raise InvalidServerConfigError("No local model catalog configured")
        return LocalProvider(catalog, identity.name)

    from llm_relay.adapters.remote import RemoteProvider
    return RemoteProvider(identity.target, identity=identity)
