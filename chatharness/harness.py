"""The harness: routes requests to providers with fallback and session binding."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass

from chatharness.catalog import Catalog, ModelRef, parse_model_ref
from chatharness.errors import ErrorKind, ProviderError, as_provider_error
from chatharness.messages import Attempt, Message, Request, Response
from chatharness.streaming import Provider, StreamReader
from chatharness.validate import validate


class Router(ABC):
    """Picks the ordered list of candidate models to try for a request."""

    @abstractmethod
    async def pick(self, req: Request) -> list[ModelRef]:
        """Return candidates in the order they should be tried."""


class SessionBinder(ABC):
    """The narrow view of a session store that the harness needs."""

    @abstractmethod
    async def load(self, session_id: str) -> tuple[str, list[Message], int]:
        """Return (system, messages, version) for the session."""

    @abstractmethod
    async def append(self, session_id: str, expected_version: int, *args: Message) -> int:
        """Append the messages in ``args`` if the session is at ``expected_version``.

        Returns the new version.
        """


@dataclass
class FallbackPolicy:
    """Controls fallback; with no kinds listed only the first candidate is tried.

    ``max_attempts`` of 0 means no cap; ``per_attempt_timeout`` is in seconds,
    0 meaning none.
    """

    fallback_on_kinds: frozenset[ErrorKind] = frozenset()
    max_attempts: int = 0
    per_attempt_timeout: float = 0.0

    def __post_init__(self) -> None:
        self.fallback_on_kinds = frozenset(ErrorKind(k) for k in self.fallback_on_kinds)


class Harness:
    """Wires providers, a router, the catalog and a session store into send/stream."""

    def __init__(
        self,
        providers: Iterable[Provider] = (),
        router: Router | None = None,
        catalog: Catalog | None = None,
        sessions: SessionBinder | None = None,
        fallback: FallbackPolicy | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self.add_provider(provider)
        self._router = router
        self._catalog = catalog if catalog is not None else Catalog()
        self._sessions = sessions
        self._fallback = fallback if fallback is not None else FallbackPolicy()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        if len(self._catalog) == 0:
            for provider in self._providers.values():
                for info in provider.models():
                    self._catalog.register(info)

    def add_provider(self, provider: Provider) -> None:
        """Register ``provider`` under its name, replacing any earlier one."""
        self._providers[provider.name()] = provider

    def set_router(self, router: Router | None) -> None:
        self._router = router

    def set_fallback(self, fallback: FallbackPolicy) -> None:
        self._fallback = fallback

    def sessions(self) -> SessionBinder | None:
        return self._sessions

    def catalog(self) -> Catalog:
        return self._catalog

    def providers(self) -> list[str]:
        """Names of the registered providers."""
        return list(self._providers)

    async def send(self, req: Request) -> Response:
        """Perform a non-streaming turn, with fallback and session persistence."""
        validate(req)
        new_messages = list(req.messages)
        req, expected_version = await self._bind_session(req)
        candidates = await self._pick_candidates(req)
        resp, attempts = await self._run_send_fallback(req, candidates)
        resp = dataclasses.replace(resp, attempts=attempts)

        if req.session_id and self._sessions is not None:
            try:
                await self._sessions.append(
                    req.session_id, expected_version, *new_messages, resp.message
                )
            except Exception as err:
                raise RuntimeError(
                    f"session append failed after successful turn: {err}"
                ) from err
        return resp

    async def stream(self, req: Request) -> StreamReader:
        """Open a streaming turn; fallback applies only until a reader is returned.

        Persisting the streamed reply to a session is left to the caller.
        """
        validate(req)
        req, _ = await self._bind_session(req)
        candidates = await self._pick_candidates(req)
        for ref in candidates:
            provider = self._providers.get(ref.provider)
            if provider is None:
                continue
            attempt_req = dataclasses.replace(req, model=str(ref))
            try:
                return await provider.stream(attempt_req)
            except Exception as err:
                if not self._should_fallback(err):
                    raise
                self._logger.info("stream candidate failed, trying next: %s", ref)
        raise RuntimeError("all stream candidates failed")

    async def _bind_session(self, req: Request) -> tuple[Request, int]:
        if not req.session_id:
            return req, 0
        if self._sessions is None:
            raise RuntimeError("session_id provided but no session store configured")
        system, prior, version = await self._sessions.load(req.session_id)
        merged = dataclasses.replace(
            req,
            system=req.system or system,
            messages=[*prior, *req.messages],
        )
        return merged, version

    async def _pick_candidates(self, req: Request) -> list[ModelRef]:
        if req.model:
            return [parse_model_ref(req.model)]
        if self._router is None:
            raise RuntimeError("no router configured and req.Model is empty")
        refs = list(await self._router.pick(req))
        if not refs:
            raise RuntimeError("router returned no candidates")
        return refs

    async def _call(self, provider: Provider, ref: ModelRef, req: Request) -> Response:
        timeout = self._fallback.per_attempt_timeout
        if timeout <= 0:
            return await provider.send(req)
        try:
            async with asyncio.timeout(timeout):
                return await provider.send(req)
        except TimeoutError as err:
            raise ProviderError(
                ErrorKind.TIMEOUT,
                provider=ref.provider,
                model=ref.model,
                message="attempt timed out",
                cause=err,
            ) from err

    async def _run_send_fallback(
        self, req: Request, candidates: list[ModelRef]
    ) -> tuple[Response, list[Attempt]]:
        pending = list(candidates)
        limit = self._fallback.max_attempts
        if limit == 0 or limit > len(pending):
            limit = len(pending)
        attempts: list[Attempt] = []
        last_err: BaseException | None = None
        i = 0
        while i < limit:
            ref = pending[i]
            i += 1
            provider = self._providers.get(ref.provider)
            if provider is None:
                last_err = RuntimeError(f'provider "{ref.provider}" not registered')
                attempts.append(
                    Attempt(
                        provider=ref.provider,
                        model=ref.model,
                        error=ProviderError(
                            ErrorKind.NOT_FOUND,
                            provider=ref.provider,
                            model=ref.model,
                            message="provider not registered",
                        ),
                    )
                )
                continue

            attempt_req = dataclasses.replace(req, model=str(ref))
            start = time.perf_counter()
            try:
                resp = await self._call(provider, ref, attempt_req)
            except Exception as err:
                latency = time.perf_counter() - start
                pe = as_provider_error(err)
                attempt = Attempt(provider=ref.provider, model=ref.model, latency=latency)
                if pe is not None:
                    attempt.error = pe
                    attempt.request_id = pe.request_id
                else:
                    attempt.error = ProviderError(
                        ErrorKind.UNKNOWN, provider=ref.provider, model=ref.model, cause=err
                    )
                attempts.append(attempt)
                last_err = err

                if attempt.error.after_output:
                    raise
                if not self._should_fallback(err):
                    raise
                if pe is not None and pe.kind == ErrorKind.CONTEXT_LENGTH:
                    pending = self._filter_larger_context(pe.model, pending[i:])
                    limit = len(pending)
                    i = 0
                    if not pending:
                        raise
                continue

            latency = time.perf_counter() - start
            attempts.append(Attempt(provider=ref.provider, model=ref.model, latency=latency))
            result = dataclasses.replace(resp, ref=ref, latency=resp.latency or latency)
            return result, attempts

        if last_err is None:
            raise RuntimeError("no candidates attempted")
        raise last_err

    def _should_fallback(self, err: BaseException) -> bool:
        if not self._fallback.fallback_on_kinds:
            return False
        pe = as_provider_error(err)
        return pe is not None and pe.kind in self._fallback.fallback_on_kinds

    def _filter_larger_context(self, failed_model: str, remaining: list[ModelRef]) -> list[ModelRef]:
        """Keep candidates with a strictly larger context window, or unknown size."""
        failed_ctx = next(
            (m.context_tokens for m in self._catalog.list() if m.ref.model == failed_model), 0
        )
        if failed_ctx == 0:
            return list(remaining)
        kept = []
        for ref in remaining:
            info = self._catalog.lookup(ref)
            if info is None or info.context_tokens == 0 or info.context_tokens > failed_ctx:
                kept.append(ref)
        return kept