"""The normalized chat schema: messages, tools, requests and responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any, TypeVar

from chatharness.catalog import ModelRef
from chatharness.errors import ProviderError


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class BlockKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"


class ToolChoiceMode(StrEnum):
    AUTO = "auto"
    ANY = "any"
    NONE = "none"
    TOOL = "tool"


class StopReason(StrEnum):
    END = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP = "stop_sequence"
    TOOL_USE = "tool_use"
    ERROR = "error"
    CANCELED = "canceled"


_E = TypeVar("_E", bound=Enum)


def _coerce(enum_cls: type[_E], value: str) -> _E | str:
    """Map ``value`` onto ``enum_cls`` when possible, else keep the raw string."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _obj(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be an object")
    return value


def _str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def _bool(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"field {key!r} must be a boolean")
    return value


def _opt_float(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field {key!r} must be a number")
    return float(value)


def _list(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field {key!r} must be an array")
    return value


def _opt_obj(data: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = data.get(key)
    if value is None:
        return None
    return _obj(value, f"field {key!r}")


@dataclass
class ImageSource:
    """An inline or referenced image; exactly one of url or base64 should be set."""

    media_type: str = ""
    url: str = ""
    base64: str = ""


@dataclass
class ToolUse:
    """An assistant-produced tool invocation."""

    id: str = ""
    name: str = ""
    raw_input: str = ""
    parsed_input: dict[str, Any] | None = None
    parse_error: str = ""


@dataclass
class ToolResult:
    """The output of a tool, returned to the model in a later turn."""

    tool_use_id: str = ""
    content: list[ContentBlock] = field(default_factory=list)
    is_error: bool = False


@dataclass
class ContentBlock:
    """Tagged union of content kinds; the field matching ``kind`` is populated."""

    kind: BlockKind | str
    text: str = ""
    image: ImageSource | None = None
    tool_use: ToolUse | None = None
    tool_result: ToolResult | None = None
    thinking: str = ""
    provider_metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": str(self.kind)}
        if self.text:
            out["text"] = self.text
        if self.image is not None:
            image: dict[str, Any] = {"media_type": self.image.media_type}
            if self.image.url:
                image["url"] = self.image.url
            if self.image.base64:
                image["base64"] = self.image.base64
            out["image"] = image
        if self.tool_use is not None:
            use: dict[str, Any] = {"id": self.tool_use.id, "name": self.tool_use.name}
            if self.tool_use.raw_input:
                use["raw_input"] = self.tool_use.raw_input
            if self.tool_use.parsed_input:
                use["parsed_input"] = self.tool_use.parsed_input
            if self.tool_use.parse_error:
                use["parse_error"] = self.tool_use.parse_error
            out["tool_use"] = use
        if self.tool_result is not None:
            result: dict[str, Any] = {
                "tool_use_id": self.tool_result.tool_use_id,
                "content": [b.to_dict() for b in self.tool_result.content],
            }
            if self.tool_result.is_error:
                result["is_error"] = True
            out["tool_result"] = result
        if self.thinking:
            out["thinking"] = self.thinking
        if self.provider_metadata:
            out["provider_metadata"] = self.provider_metadata
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentBlock:
        data = _obj(data, "content block")
        image = tool_use = tool_result = None
        if (raw := _opt_obj(data, "image")) is not None:
            image = ImageSource(
                media_type=_str(raw, "media_type"), url=_str(raw, "url"), base64=_str(raw, "base64")
            )
        if (raw := _opt_obj(data, "tool_use")) is not None:
            tool_use = ToolUse(
                id=_str(raw, "id"),
                name=_str(raw, "name"),
                raw_input=_str(raw, "raw_input"),
                parsed_input=_opt_obj(raw, "parsed_input"),
                parse_error=_str(raw, "parse_error"),
            )
        if (raw := _opt_obj(data, "tool_result")) is not None:
            tool_result = ToolResult(
                tool_use_id=_str(raw, "tool_use_id"),
                content=[cls.from_dict(b) for b in _list(raw, "content")],
                is_error=_bool(raw, "is_error"),
            )
        return cls(
            kind=_coerce(BlockKind, _str(data, "type")),
            text=_str(data, "text"),
            image=image,
            tool_use=tool_use,
            tool_result=tool_result,
            thinking=_str(data, "thinking"),
            provider_metadata=_opt_obj(data, "provider_metadata"),
        )


@dataclass
class Message:
    """One turn in a conversation."""

    role: Role | str
    content: list[ContentBlock] = field(default_factory=list)
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "role": str(self.role),
            "content": [b.to_dict() for b in self.content],
        }
        if self.name:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        data = _obj(data, "message")
        return cls(
            role=_coerce(Role, _str(data, "role")),
            content=[ContentBlock.from_dict(b) for b in _list(data, "content")],
            name=_str(data, "name"),
        )


def text_block(s: str) -> ContentBlock:
    return ContentBlock(kind=BlockKind.TEXT, text=s)


def user_text(s: str) -> Message:
    return Message(role=Role.USER, content=[text_block(s)])


def assistant_text(s: str) -> Message:
    return Message(role=Role.ASSISTANT, content=[text_block(s)])


@dataclass
class ToolSpec:
    """A tool the model may call; input_schema is a JSON Schema document."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolChoice:
    mode: ToolChoiceMode | str = ToolChoiceMode.AUTO
    tool_name: str = ""


@dataclass
class ThinkingConfig:
    enabled: bool = False
    budget_tokens: int = 0


@dataclass
class GenerationParams:
    """Provider-neutral generation knobs; None means the provider's default."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int = 0
    stop: list[str] = field(default_factory=list)
    seed: int | None = None
    thinking: ThinkingConfig | None = None

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.top_p is not None:
            out["top_p"] = self.top_p
        if self.max_tokens:
            out["max_tokens"] = self.max_tokens
        if self.stop:
            out["stop"] = list(self.stop)
        if self.seed is not None:
            out["seed"] = self.seed
        if self.thinking is not None:
            thinking: dict[str, Any] = {"enabled": self.thinking.enabled}
            if self.thinking.budget_tokens:
                thinking["budget_tokens"] = self.thinking.budget_tokens
            out["thinking"] = thinking
        return out

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> GenerationParams:
        stop = _list(data, "stop")
        if not all(isinstance(s, str) for s in stop):
            raise ValueError("field 'stop' must be an array of strings")
        seed = data.get("seed")
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
            raise ValueError("field 'seed' must be an integer")
        thinking = None
        if (raw := _opt_obj(data, "thinking")) is not None:
            thinking = ThinkingConfig(
                enabled=_bool(raw, "enabled"), budget_tokens=_int(raw, "budget_tokens")
            )
        return cls(
            temperature=_opt_float(data, "temperature"),
            top_p=_opt_float(data, "top_p"),
            max_tokens=_int(data, "max_tokens"),
            stop=stop,
            seed=seed,
            thinking=thinking,
        )


@dataclass
class Request:
    """A normalized chat request; an explicit model disables fallback."""

    model: str = ""
    policy: str = ""
    messages: list[Message] = field(default_factory=list)
    system: str = ""
    tools: list[ToolSpec] = field(default_factory=list)
    tool_choice: ToolChoice | None = None
    params: GenerationParams = field(default_factory=GenerationParams)
    session_id: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.model:
            out["model"] = self.model
        if self.policy:
            out["policy"] = self.policy
        out["messages"] = [m.to_dict() for m in self.messages]
        if self.system:
            out["system"] = self.system
        if self.tools:
            tools = []
            for t in self.tools:
                spec: dict[str, Any] = {"name": t.name}
                if t.description:
                    spec["description"] = t.description
                spec["input_schema"] = t.input_schema
                tools.append(spec)
            out["tools"] = tools
        if self.tool_choice is not None:
            choice: dict[str, Any] = {"mode": str(self.tool_choice.mode)}
            if self.tool_choice.tool_name:
                choice["tool_name"] = self.tool_choice.tool_name
            out["tool_choice"] = choice
        out["params"] = self.params._to_dict()
        if self.session_id:
            out["session_id"] = self.session_id
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Request:
        data = _obj(data, "request")
        tools = []
        for raw in _list(data, "tools"):
            raw = _obj(raw, "tool")
            tools.append(
                ToolSpec(
                    name=_str(raw, "name"),
                    description=_str(raw, "description"),
                    input_schema=_opt_obj(raw, "input_schema") or {},
                )
            )
        tool_choice = None
        if (raw := _opt_obj(data, "tool_choice")) is not None:
            tool_choice = ToolChoice(
                mode=_coerce(ToolChoiceMode, _str(raw, "mode")), tool_name=_str(raw, "tool_name")
            )
        metadata = _opt_obj(data, "metadata") or {}
        if not all(isinstance(v, str) for v in metadata.values()):
            raise ValueError("field 'metadata' must map strings to strings")
        return cls(
            model=_str(data, "model"),
            policy=_str(data, "policy"),
            messages=[Message.from_dict(m) for m in _list(data, "messages")],
            system=_str(data, "system"),
            tools=tools,
            tool_choice=tool_choice,
            params=GenerationParams._from_dict(_opt_obj(data, "params") or {}),
            session_id=_str(data, "session_id"),
            metadata=dict(metadata),
        )


@dataclass
class Usage:
    """Token accounting; unreported values are zero."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        out = {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}
        if self.cache_read_tokens:
            out["cache_read_tokens"] = self.cache_read_tokens
        if self.cache_write_tokens:
            out["cache_write_tokens"] = self.cache_write_tokens
        return out


def _nanoseconds(seconds: float) -> int:
    return round(seconds * 1_000_000_000)


@dataclass
class Attempt:
    """One provider call made while serving a request; latency is in seconds."""

    provider: str
    model: str
    error: ProviderError | None = None
    latency: float = 0.0
    request_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"provider": self.provider, "model": self.model}
        if self.error is not None:
            out["error"] = self.error.to_dict()
        out["latency_ns"] = _nanoseconds(self.latency)
        if self.request_id:
            out["request_id"] = self.request_id
        return out


@dataclass
class Response:
    """The normalized reply from one successful turn; latency is in seconds."""

    id: str = ""
    ref: ModelRef = field(default_factory=lambda: ModelRef("", ""))
    message: Message = field(default_factory=lambda: Message(role=Role.ASSISTANT))
    stop_reason: StopReason | str = ""
    usage: Usage = field(default_factory=Usage)
    latency: float = 0.0
    attempts: list[Attempt] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "ref": self.ref.to_dict(),
            "message": self.message.to_dict(),
            "stop_reason": str(self.stop_reason),
            "usage": self.usage.to_dict(),
            "latency_ns": _nanoseconds(self.latency),
        }
        if self.attempts:
            out["attempts"] = [a.to_dict() for a in self.attempts]
        return out