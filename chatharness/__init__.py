"""Provider-neutral chat harness: chat schema, model catalog, fallback routing, TOML config and an ASGI HTTP API."""

__version__ = "0.1.0"