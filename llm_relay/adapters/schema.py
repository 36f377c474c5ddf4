from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from llm_relay.config import GenerationParameters


class InferenceTask(BaseModel):
    """
    Standardized request object for generation across all providers.
    The session builds one per generate() call; providers never see the
    thread or the application settings.
    """
    model_id: str
    messages: List[Dict[str, Any]]
    params: GenerationParameters = Field(default_factory=GenerationParameters)


class ReasoningStep(BaseModel):
    """A tool/function call surfaced alongside generated text."""
    index: int
    name: str = ""
    arguments: str = ""


class StreamEvent(BaseModel):
    """
    One unit of provider progress.

    - delta: text to append to the visible output
    - snapshot: full text so far, replacing the visible output
    - reasoning: an updated reasoning step (same index = same step)
    - stats: generation statistics, sent once at the end
    """
    kind: Literal["delta", "snapshot", "reasoning", "stats"]
    text: str = ""
    step: Optional[ReasoningStep] = None
    tokens_per_second: Optional[float] = None


class LocalGenerationResult(BaseModel):
    """Outcome of a local generation. Engine failures set error instead of raising."""
    text: str
    tokens_per_second: float = 0.0
    token_count: int = 0
    error: Optional[str] = None
