"""Loading and validation of the TOML service configuration."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from chatharness.catalog import parse_model_ref
from chatharness.errors import ErrorKind


class ConfigError(ValueError):
    """The configuration could not be read, parsed or validated."""


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a table")
    return value


def _get(data: dict[str, Any], key: str, kind: type, default: Any, where: str) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int and isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"{where}.{key} must be of type {kind.__name__}")
    return value


def _str_list(data: dict[str, Any], key: str, where: str) -> list[str]:
    value = _get(data, key, list, [], where)
    if not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}.{key} must be an array of strings")
    return list(value)


@dataclass
class ServerConfig:
    addr: str = ""


@dataclass
class AuthConfig:
    token_env: str = ""


@dataclass
class ProviderBlock:
    """Per-provider options; keys that mean nothing to a provider are ignored."""

    enabled: bool = False
    api_key_env: str = ""
    base_url: str = ""
    region: str = ""
    profile: str = ""
    api_version: str = ""


@dataclass
class PolicyConfig:
    name: str = ""
    candidates: list[str] = field(default_factory=list)


@dataclass
class RouterConfig:
    default_policy: str = ""
    fallback_on_kinds: list[str] = field(default_factory=list)
    per_attempt_timeout_ms: int = 0
    max_attempts: int = 0


_CREDENTIAL_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _credential_env_var(provider: str, override: str) -> str:
    if override:
        return override
    return _CREDENTIAL_ENV_VARS.get(provider, "")


def _valid_error_kind(s: str) -> bool:
    try:
        ErrorKind(s)
    except ValueError:
        return False
    return True


def _provider_block(raw: dict[str, Any], where: str) -> ProviderBlock:
    values = {
        f.name: _get(raw, f.name, type(f.default), f.default, where)
        for f in fields(ProviderBlock)
    }
    return ProviderBlock(**values)


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    providers: dict[str, ProviderBlock] = field(default_factory=dict)
    policy: list[PolicyConfig] = field(default_factory=list)
    router: RouterConfig = field(default_factory=RouterConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a Config from decoded TOML; unknown keys are ignored."""
        server = _table(data, "server")
        auth = _table(data, "auth")
        router = _table(data, "router")

        providers: dict[str, ProviderBlock] = {}
        for name, raw in _table(data, "providers").items():
            if not isinstance(raw, dict):
                raise ConfigError(f"providers.{name} must be a table")
            providers[name] = _provider_block(raw, f"providers.{name}")

        policies: list[PolicyConfig] = []
        for raw in _get(data, "policy", list, [], "config"):
            if not isinstance(raw, dict):
                raise ConfigError("policy entries must be tables")
            policies.append(
                PolicyConfig(
                    name=_get(raw, "name", str, "", "policy"),
                    candidates=_str_list(raw, "candidates", "policy"),
                )
            )

        return cls(
            server=ServerConfig(addr=_get(server, "addr", str, "", "server")),
            auth=AuthConfig(token_env=_get(auth, "token_env", str, "", "auth")),
            providers=providers,
            policy=policies,
            router=RouterConfig(
                default_policy=_get(router, "default_policy", str, "", "router"),
                fallback_on_kinds=_str_list(router, "fallback_on_kinds", "router"),
                per_attempt_timeout_ms=_get(router, "per_attempt_timeout_ms", int, 0, "router"),
                max_attempts=_get(router, "max_attempts", int, 0, "router"),
            ),
        )

    def validate(self) -> None:
        """Check structure and fill defaults; raises ConfigError on problems."""
        if not self.server.addr:
            self.server.addr = ":8080"
        if not self.router.default_policy and self.policy:
            self.router.default_policy = self.policy[0].name

        names: set[str] = set()
        for p in self.policy:
            if not p.name:
                raise ConfigError("policy with empty name")
            if p.name in names:
                raise ConfigError(f'duplicate policy "{p.name}"')
            names.add(p.name)
            if not p.candidates:
                raise ConfigError(f'policy "{p.name}" has no candidates')
            for cand in p.candidates:
                try:
                    parse_model_ref(cand)
                except ValueError as err:
                    raise ConfigError(f'policy "{p.name}": {err}') from err

        if self.router.default_policy and self.router.default_policy not in names:
            raise ConfigError(
                f'router.default_policy "{self.router.default_policy}" not found in [[policy]] entries'
            )
        for kind in self.router.fallback_on_kinds:
            if not _valid_error_kind(kind):
                raise ConfigError(f'router.fallback_on_kinds: unknown error kind "{kind}"')
        if self.router.max_attempts == 0:
            self.router.max_attempts = 3
        if self.router.per_attempt_timeout_ms == 0:
            self.router.per_attempt_timeout_ms = 60_000

    def validate_env(self) -> list[str]:
        """Describe how each provider's credentials resolve; never touches the network."""
        notes: list[str] = []
        for name, pb in self.providers.items():
            if not pb.enabled:
                notes.append(f"provider {name}: disabled")
                continue
            env_var = _credential_env_var(name, pb.api_key_env)
            if name == "ollama":
                url = pb.base_url or "http://localhost:11434"
                notes.append(f"provider ollama: enabled, base_url={url}")
            elif name in ("anthropic", "openai"):
                if not env_var:
                    notes.append(
                        f"provider {name}: enabled, no explicit api_key_env; will use default fallbacks"
                    )
                elif env_var in os.environ:
                    notes.append(f"provider {name}: enabled, credentials via env ${env_var}")
                else:
                    notes.append(
                        f"provider {name}: enabled, ${env_var} unset — will fall back to "
                        f"~/.config/chat-harness/{name}.key"
                    )
            else:
                notes.append(
                    f"provider {name}: enabled (validation deferred; not implemented in Phase 1)"
                )
        return notes


def load(path: str | os.PathLike[str]) -> Config:
    """Read, parse and validate the TOML config at ``path``."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"read config {path}: {err}") from err
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as err:
        raise ConfigError(f"parse config {path}: {err}") from err
    config = Config.from_dict(data)
    config.validate()
    return config