"""Streaming events and the provider adapter contract.

The schema here is the harness's own model rather than a superset of any
single provider. Adapters translate to and from it; provider-specific fields
that do not round-trip travel in ``ContentBlock.provider_metadata`` with no
portability guarantee.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from types import TracebackType
from typing import Any

from chatharness.catalog import ModelInfo
from chatharness.errors import ProviderError
from chatharness.messages import ContentBlock, Request, Response, StopReason, Usage


class EventKind(StrEnum):
    MESSAGE_START = "message_start"
    BLOCK_START = "block_start"
    BLOCK_DELTA = "block_delta"
    BLOCK_STOP = "block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"
    PING = "ping"


class StreamState(StrEnum):
    """Lifecycle of a stream: opened, provider_started, partial_output, then an end state."""

    OPENED = "opened"
    PROVIDER_STARTED = "provider_started"
    PARTIAL_OUTPUT = "partial_output"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class StreamEvent:
    """One unit of a normalized streaming response.

    ``index`` identifies the content block and is stable across the start,
    delta and stop events of that block. Accumulated ``raw_input_delta`` text
    for a tool_use block is whatever the model emitted and need not be valid
    JSON.
    """

    kind: EventKind | str
    index: int = 0
    block: ContentBlock | None = None
    text_delta: str = ""
    raw_input_delta: str = ""
    stop_reason: StopReason | str = ""
    usage: Usage | None = None
    err: ProviderError | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": str(self.kind)}
        if self.index:
            out["index"] = self.index
        if self.block is not None:
            out["block"] = self.block.to_dict()
        if self.text_delta:
            out["text_delta"] = self.text_delta
        if self.raw_input_delta:
            out["raw_input_delta"] = self.raw_input_delta
        if self.stop_reason:
            out["stop_reason"] = str(self.stop_reason)
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        if self.err is not None:
            out["error"] = self.err.to_dict()
        return out


class StreamReader(ABC):
    """Delivers stream events one at a time.

    ``next`` raises ``StopAsyncIteration`` once the stream is exhausted and
    raises the error itself for a terminal failure. Readers are async
    iterators and async context managers that close on exit.
    """

    @abstractmethod
    async def next(self) -> StreamEvent:
        """Return the next event, or raise StopAsyncIteration at the end."""

    @abstractmethod
    def state(self) -> StreamState:
        """The current lifecycle state."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying stream."""

    def __aiter__(self) -> StreamReader:
        return self

    async def __anext__(self) -> StreamEvent:
        return await self.next()

    async def __aenter__(self) -> StreamReader:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class Provider(ABC):
    """The contract each backend adapter implements.

    Errors raised from ``send`` and ``stream`` should be ProviderError.
    """

    @abstractmethod
    def name(self) -> str:
        """Stable identifier used in model refs and configuration."""

    @abstractmethod
    def models(self) -> list[ModelInfo]:
        """Seed catalog of the models this provider can serve."""

    @abstractmethod
    async def send(self, req: Request) -> Response:
        """Dispatch a non-streaming request."""

    @abstractmethod
    async def stream(self, req: Request) -> StreamReader:
        """Dispatch a streaming request and return its reader."""