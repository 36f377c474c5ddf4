"""
Local model catalog.

The catalog maps model names to loadable engines. The session only
consumes it; populating it (downloads, installs) happens elsewhere.
GGUFModelCatalog is the concrete catalog backed by llama-cpp-python.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Protocol

from llm_relay.config import get_models_dir
from llm_relay.parsers import THINK_END, THINK_START

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[float], None]

# Name fragments of models that emit a thinking block before answering
REASONING_NAME_HINTS: tuple[str, ...] = ("deepseek-r1", "qwq", "reasoning", "thinking")

# Stop sequences shared by common chat templates
DEFAULT_STOP: list[str] = ["</s>", "<|endoftext|>", "<|im_end|>"]

# Shared by every GGUFModelCatalog: the cap is process-wide
_cache_limit_bytes: Optional[int] = None


class LocalModelType(str, Enum):
    REGULAR = "regular"
    REASONING = "reasoning"


@dataclass(frozen=True)
class CatalogEntry:
    """A model the catalog knows how to load."""
    name: str
    path: str
    model_type: LocalModelType = LocalModelType.REGULAR
    think_start: str = THINK_START
    think_end: str = THINK_END
    n_ctx: int = 4096

    @property
    def is_reasoning(self) -> bool:
        return self.model_type is LocalModelType.REASONING


class LocalEngine(Protocol):
    """A loaded model able to stream tokens."""

    def stream_tokens(
        self,
        messages: list[dict],
        *,
        temperature: float,
        max_tokens: int,
        seed: int,
    ) -> Iterator[str]:
        """Yield decoded text pieces, one per generated token."""
        ...


class ModelCatalog(Protocol):
    """Collaborator interface consumed by LocalProvider."""

    def lookup(self, name: str) -> Optional[CatalogEntry]:
        ...

    def load_engine(self, entry: CatalogEntry, on_progress: ProgressCallback) -> LocalEngine:
        """Load an engine. Blocking; called from a worker thread."""
        ...

    def set_cache_limit(self, limit_bytes: int) -> None:
        """Cap the engine working-set/cache budget for future loads."""
        ...


# ─────────────────────────────────────────────────────────────────────
# GGUF (llama-cpp-python)
# ─────────────────────────────────────────────────────────────────────

class GGUFEngine:
    """LocalEngine over a llama_cpp.Llama instance."""

    def __init__(self, llm: Any):
        self.llm = llm

    def stream_tokens(
        self,
        messages: list[dict],
        *,
        temperature: float,
        max_tokens: int,
        seed: int,
    ) -> Iterator[str]:
        stream = self.llm.create_chat_completion(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            seed=seed,
            stop=DEFAULT_STOP,
            stream=True,
        )
        for output in stream:
            choices = output.get("choices") or []
            if not choices:
                continue
            piece = (choices[0].get("delta") or {}).get("content")
            if piece:
                yield piece


def _guess_model_type(name: str) -> LocalModelType:
    lowered = name.lower()
    if any(hint in lowered for hint in REASONING_NAME_HINTS):
        return LocalModelType.REASONING
    return LocalModelType.REGULAR


class GGUFModelCatalog:
    """
    Catalog of GGUF files loaded with llama-cpp-python.

    Usage:
        catalog = GGUFModelCatalog.from_directory("~/models")
        entry = catalog.lookup("qwen2.5-1.5b-instruct-q4_k_m")
    """

    def __init__(self, entries: Optional[list[CatalogEntry]] = None, use_gpu: bool = True):
        self._entries: dict[str, CatalogEntry] = {e.name: e for e in entries or []}
        self._use_gpu = use_gpu

    @classmethod
    def from_directory(cls, directory, recursive: bool = True, **kwargs) -> "GGUFModelCatalog":
        """Register every *.gguf file under a directory, named by file stem."""
        base_path = Path(directory).expanduser()
        files = base_path.rglob("*.gguf") if recursive else base_path.glob("*.gguf")
        entries = [
            CatalogEntry(name=p.stem, path=str(p), model_type=_guess_model_type(p.stem))
            for p in sorted(files)
        ]
        logger.info(f"Found {len(entries)} GGUF models in {base_path}")
        return cls(entries, **kwargs)

    @classmethod
    def from_env(cls, **kwargs) -> Optional["GGUFModelCatalog"]:
        """Catalog of LLM_RELAY_MODELS_DIR, or None if it is not set."""
        models_dir = get_models_dir()
        if models_dir is None:
            return None
        return cls.from_directory(models_dir, **kwargs)

    def lookup(self, name: str) -> Optional[CatalogEntry]:
        return self._entries.get(name)

    def set_cache_limit(self, limit_bytes: int) -> None:
        global _cache_limit_bytes
        _cache_limit_bytes = limit_bytes

    def load_engine(self, entry: CatalogEntry, on_progress: ProgressCallback) -> GGUFEngine:
        from llama_cpp import Llama, LlamaRAMCache

        logger.info(f"Loading GGUF model: {entry.path}")
        on_progress(0.0)
        llm = Llama(
            model_path=entry.path,
            n_ctx=entry.n_ctx,
            n_gpu_layers=-1 if self._use_gpu else 0,
            verbose=False,
            use_mmap=True,
            use_mlock=False,
        )
        if _cache_limit_bytes:
            llm.set_cache(LlamaRAMCache(capacity_bytes=_cache_limit_bytes))
        on_progress(1.0)
        return GGUFEngine(llm)
