"""
Generation state shared between the session and its observers.

The session owns the mutable fields; observers receive SessionState
snapshots and SessionEvents instead of reading fields directly.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class GenerationPhase(str, Enum):
    """Lifecycle of a single generation."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SessionState(BaseModel):
    """Point-in-time view of a GenerationSession."""
    phase: GenerationPhase = GenerationPhase.IDLE
    running: bool = False
    cancelled: bool = False
    output: str = ""
    stat: str = ""
    model_info: str = ""
    start_time: Optional[datetime] = None
    is_thinking: bool = False
    thinking_time: Optional[float] = None
    thinking_text: Optional[str] = None
    generating_time: Optional[float] = None
    reasoning_steps: list[str] = Field(default_factory=list)


class SessionEventKind(str, Enum):
    PHASE = "phase"
    OUTPUT = "output"
    REASONING = "reasoning"


class SessionEvent(BaseModel):
    """Notification published by the session to its subscribers."""
    kind: SessionEventKind
    phase: GenerationPhase
    chunk: str = ""  # Appended text for OUTPUT events
    output: str = ""  # Full visible buffer after the event


class CancellationToken:
    """
    Cooperative cancellation flag.

    Backed by a threading.Event so worker threads running local inference
    can poll it. Cancellation is observed at the next chunk boundary.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal that the current operation should stop."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Check if stop was requested."""
        return self._event.is_set()
