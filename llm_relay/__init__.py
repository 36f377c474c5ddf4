"""
llm-relay: one streaming generation contract over local and remote LLM backends.
"""

from llm_relay.session import GenerationSession

__all__ = ["GenerationSession"]
