"""Model addressing, capability metadata and the model catalog."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class ModelRef:
    """A model addressed as (provider, model)."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"

    def to_dict(self) -> dict[str, str]:
        return {"provider": self.provider, "model": self.model}


def parse_model_ref(s: str) -> ModelRef:
    """Parse "provider:model"; only the first colon separates the provider."""
    provider, sep, model = s.partition(":")
    if not sep or not provider or not model:
        raise ValueError(f'invalid model ref "{s}": want provider:model')
    return ModelRef(provider, model)


@dataclass
class Capabilities:
    tools: bool = False
    tool_schema_strict: bool = False
    parallel_tools: bool = False
    vision: bool = False
    audio: bool = False
    streaming: bool = False
    thinking: bool = False
    json_object_mode: bool = False
    json_schema_mode: bool = False
    prompt_cache: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass
class Pricing:
    """Per-million-token rates; zero means unknown, not free."""

    input_per_m: float = 0.0
    output_per_m: float = 0.0
    cache_read_per_m: float = 0.0
    cache_write_per_m: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class ModelInfo:
    ref: ModelRef
    native_id: str = ""
    context_tokens: int = 0
    max_output: int = 0
    capabilities: Capabilities = field(default_factory=Capabilities)
    pricing: Pricing = field(default_factory=Pricing)

    def native(self) -> str:
        """The id to use on the wire with the provider."""
        return self.native_id or self.ref.model

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ref": self.ref.to_dict()}
        if self.native_id:
            out["native_id"] = self.native_id
        out["context_tokens"] = self.context_tokens
        out["max_output"] = self.max_output
        out["capabilities"] = self.capabilities.to_dict()
        out["pricing"] = self.pricing.to_dict()
        return out


class Catalog:
    """Thread-safe registry of ModelInfo keyed by model ref."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_ref: dict[str, ModelInfo] = {}

    def register(self, info: ModelInfo) -> None:
        """Add or replace ``info``."""
        with self._lock:
            self._by_ref[str(info.ref)] = info

    def lookup(self, ref: ModelRef) -> ModelInfo | None:
        with self._lock:
            return self._by_ref.get(str(ref))

    def list(self) -> list[ModelInfo]:
        with self._lock:
            return list(self._by_ref.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_ref)