# chatharness

A provider-neutral chat harness. It gives you:

- one normalized chat schema (messages, content blocks, tools, requests,
  responses and streaming events) that provider adapters convert to and from;
- a model catalog keyed by `provider:model` references;
- a `Harness` that picks candidate models through a router, falls back to the
  next candidate on selected error kinds, and can keep conversation history
  through a session binder with optimistic concurrency;
- a TOML configuration loader with structural validation;
- a Starlette application exposing the harness over HTTP, with Server-Sent
  Events for streaming.

The schema is the harness's own model, not a superset of any single
provider. Provider-specific fields that do not round-trip portably travel in
`ContentBlock.provider_metadata` with no portability guarantee.

## Modules

- `chatharness.errors` – `ErrorKind`, `ProviderError`, `NotFoundError`,
  `VersionConflictError`, `as_provider_error`.
- `chatharness.catalog` – `ModelRef`, `parse_model_ref`, `Capabilities`,
  `Pricing`, `ModelInfo`, `Catalog`.
- `chatharness.messages` – `Role`, `BlockKind`, `ContentBlock`, `Message`,
  `ToolSpec`, `ToolChoice`, `GenerationParams`, `Request`, `Response`,
  `Usage`, `Attempt` and the helpers `text_block`, `user_text`,
  `assistant_text`.
- `chatharness.streaming` – `EventKind`, `StreamEvent`, `StreamState`, and the
  abstract `StreamReader` and `Provider` contracts.
- `chatharness.validate` – `validate` and `ValidationError`.
- `chatharness.config` – `load`, `Config` and its sections, `ConfigError`.
- `chatharness.harness` – `Harness`, `FallbackPolicy`, and the abstract
  `Router` and `SessionBinder` contracts.
- `chatharness.httpapi` – `create_app` and the individual endpoints.

## Model references

Models are always addressed as a provider and a model name together:

```python
from chatharness.catalog import Catalog, ModelInfo, ModelRef, parse_model_ref

ref = parse_model_ref("ollama:llama3.1:8b")
assert ref == ModelRef(provider="ollama", model="llama3.1:8b")
assert str(ref) == "ollama:llama3.1:8b"

catalog = Catalog()
catalog.register(ModelInfo(ref=ref, context_tokens=128000))
info = catalog.lookup(ref)  # None when the ref is not registered
```

Only the first colon separates the provider; the model part may contain more
colons. An empty provider or empty model raises `ValueError`.
`ModelInfo.native()` gives `native_id` when set, otherwise the model name.

## Requests and validation

```python
from chatharness.messages import Request, user_text
from chatharness.validate import ValidationError, validate

req = Request(model="openai:gpt-5", messages=[user_text("hello")])
validate(req)  # raises ValidationError listing every issue found
```

Validation catches shape errors before any provider sees the request: no
messages and no system prompt, malformed model references (a bare alias
without a colon is allowed), tool choice of mode `tool` without a tool name,
unknown tool-choice modes, malformed content blocks, and tool results that
refer to a tool use that did not come earlier. `ValidationError.issues`
holds each problem.

`Request.from_dict` / `to_dict` and the matching methods on `Message` and
`ContentBlock` convert to and from the JSON shape used over HTTP.

## Providers, routers and the harness

A provider implements `chatharness.streaming.Provider`: `name()`,
`models()`, and the coroutines `send(req)` and `stream(req)`. A router
implements `chatharness.harness.Router` with a coroutine `pick(req)` that
returns the candidates in order.

```python
import asyncio

from chatharness.catalog import ModelRef
from chatharness.errors import ErrorKind, ProviderError
from chatharness.harness import FallbackPolicy, Harness, Router
from chatharness.messages import Request, Response, StopReason, assistant_text, user_text
from chatharness.streaming import Provider


class EchoProvider(Provider):
    def name(self):
        return "echo"

    def models(self):
        return []

    async def send(self, req):
        return Response(id="r1", message=assistant_text("hello"), stop_reason=StopReason.END)

    async def stream(self, req):
        raise ProviderError(ErrorKind.UNSUPPORTED_CONTENT, provider="echo",
                            message="streaming not offered")


class FixedRouter(Router):
    async def pick(self, req):
        return [ModelRef("echo", "m1")]


harness = Harness(
    providers=[EchoProvider()],
    router=FixedRouter(),
    fallback=FallbackPolicy(fallback_on_kinds={ErrorKind.RATE_LIMIT}, max_attempts=3),
)
resp = asyncio.run(harness.send(Request(messages=[user_text("hi")])))
assert resp.ref == ModelRef("echo", "m1")
assert len(resp.attempts) == 1
```

How candidates are chosen and tried:

- an explicit `Request.model` is the only candidate; otherwise the router is
  asked, and with no router the call fails;
- on a `ProviderError` whose kind is in `fallback_on_kinds`, the next
  candidate is tried; any other error is raised at once;
- no fallback happens once a provider reports `after_output`;
- on `ContextLength`, only candidates with a strictly larger context window
  in the catalog (or with no known size) remain;
- `max_attempts` caps the candidates tried (0 means no cap), and
  `per_attempt_timeout` (seconds, 0 for none) turns a slow call into a
  `Timeout` provider error;
- every call is recorded in `Response.attempts`.

When no catalog is passed, or it is empty, the harness fills it from each
provider's `models()`.

For `stream`, fallback applies only while opening the stream; once a reader
is returned no other candidate is tried. Readers are async iterators and
async context managers.

### Sessions

Pass a `SessionBinder` (coroutines `load(session_id)` returning
`(system, messages, version)` and `append(session_id, expected_version,
*messages)` returning the new version) as `sessions=`. A request with a
`session_id` then has the stored history put before its own messages, and
after a successful `send` the new messages and the reply are appended at
the loaded version. A failed append after a successful turn raises
`RuntimeError`. Without a binder, a request with a `session_id` is refused.
Appending a streamed reply is left to the caller.

## Configuration

```python
from chatharness.config import load

cfg = load("config.toml")
for note in cfg.validate_env():
    print(note)
```

A configuration looks like this:

```toml
[server]
addr = ":8080"

[auth]
token_env = "CHAT_HARNESS_TOKEN"

[providers.anthropic]
enabled = true

[providers.openai]
enabled = true

[[policy]]
name = "fast"
candidates = ["openai:gpt-5-mini", "anthropic:claude-haiku-4-5"]

[router]
default_policy = "fast"
fallback_on_kinds = ["RateLimit", "Timeout", "ServerError"]
per_attempt_timeout_ms = 30000
max_attempts = 3
```

Defaults filled in by validation: `server.addr` is `:8080`, the default
policy is the first policy listed, `max_attempts` is 3 and
`per_attempt_timeout_ms` is 60000. Empty or duplicate policy names, policies
without candidates, unparseable candidates, an unknown default policy and
unknown error kinds raise `ConfigError`, as do unreadable files and invalid
TOML. `validate_env()` describes how each provider's credentials would
resolve, reading only environment variables.

## HTTP API

`chatharness.httpapi.create_app(harness, ping_interval=15.0)` returns a
Starlette application serving:

- `GET /api/models` – the catalog and the registered provider names;
- `POST /api/chat` – a JSON `Request` in, a JSON `Response` out;
- `POST /api/chat/stream` – the same request, answered as Server-Sent Events
  (`event: <kind>` / `data: <json>`), with `: ping` comments sent every
  `ping_interval` seconds to keep the connection alive. A stream failure is
  sent as a final `error` event.

Errors come back as `{"error": ..., "kind": ..., "meta": {...}}`. Provider
errors keep their HTTP status when they have one, otherwise the status comes
from `map_kind_to_status` (for example `RateLimit` → 429, `Timeout` → 504,
`Canceled` → 499); validation errors and malformed bodies are 400,
`NotFoundError` 404 and `VersionConflictError` 409.

The application is a plain ASGI app and can be mounted or served by any ASGI
server.

## What this package does not include

- No provider adapters: you supply `Provider` implementations.
- No concrete router or session store: only the `Router` and `SessionBinder`
  contracts.
- No command-line program and no server runner; there are no routes for
  session management, no bearer-token authentication and no CORS handling.
  The `server` and `auth` configuration sections are parsed and validated but
  nothing in the package acts on them.