"""Mock HTTP handlers synthesized from a version's spec and its approved fixtures.

Built handler sets are held in a ``HandlerCache`` owned by the application,
keyed by ``(tenant, service, version)`` and invalidated by fixture and spec
events so newly approved fixtures show up on the next request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from broker.entities.fixture import Fixture
from engine import notify
from engine.errors import NotFound
from engine.fixtures import FixtureStore
from engine.semver_match import resolve_version
from engine.specs import (
    GRAPHQL_PATH,
    SpecOperation,
    graphql_introspection,
    graphql_operation_id,
    list_operations,
    synthesize_response,
)
from engine.versions import ServiceVersionResolver

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]

_JSON_HEADERS = {"content-type": "application/json"}
_BODY_METHODS = {"POST", "PUT", "PATCH"}
_INVALIDATING_EVENTS = {
    notify.FIXTURE_STATUS_CHANGE,
    notify.FIXTURE_UPDATED,
    notify.FIXTURE_DELETED,
    notify.SPEC_UPLOADED,
}


@dataclass
class MockRequest:
    method: str
    path: str
    headers: dict = field(default_factory=dict)
    query: dict = field(default_factory=dict)
    body: Any = None


@dataclass
class MockResponse:
    status: int
    headers: dict
    body: Any


def _normalize_path(path: str) -> str:
    return "/" + path.strip("/")


@dataclass
class CannedResponse:
    """One fixture's recorded response for an operation."""

    fixture_id: str
    priority: int
    created_at: Optional[datetime]
    request: Optional[dict]
    status: int
    headers: dict
    body: Any

    @classmethod
    def from_fixture(cls, fixture: Fixture) -> "CannedResponse":
        response = fixture.data.get("response") or {}
        return cls(
            fixture_id=fixture.id,
            priority=fixture.priority,
            created_at=fixture.created_at,
            request=fixture.data.get("request"),
            status=response.get("status") or 200,
            headers=response.get("headers") or dict(_JSON_HEADERS),
            body=response.get("body"),
        )

    def applies_to(self, request: MockRequest) -> bool:
        if not self.request:
            return True
        method = self.request.get("method")
        if method and method.upper() != request.method.upper():
            return False
        path = self.request.get("path")
        if path and _normalize_path(path.split("?", 1)[0]) != _normalize_path(request.path):
            return False
        if request.method.upper() in _BODY_METHODS and "body" in self.request:
            return self.request["body"] == request.body
        return True

    def to_response(self) -> MockResponse:
        return MockResponse(
            status=self.status,
            headers={**self.headers, "x-fixture-id": self.fixture_id},
            body=self.body,
        )


@dataclass
class MockHandler:
    operation: SpecOperation
    responses: list[CannedResponse]
    synthetic_status: int = 200
    synthetic_body: Any = None

    def respond(self, request: MockRequest) -> MockResponse:
        for canned in self.responses:
            if canned.applies_to(request):
                return canned.to_response()
        if self.responses:
            return self.responses[0].to_response()
        return MockResponse(
            status=self.synthetic_status,
            headers={**_JSON_HEADERS, "x-mock-synthetic": "true"},
            body=self.synthetic_body,
        )


def build_handlers(spec: dict, fixtures: list[Fixture]) -> list[MockHandler]:
    """One handler per spec operation.

    ``fixtures`` must already be in tie-break order; each handler keeps that
    order for its own operation.
    """
    by_operation: dict[str, list[CannedResponse]] = defaultdict(list)
    for fixture in fixtures:
        by_operation[fixture.operation].append(CannedResponse.from_fixture(fixture))

    handlers = []
    for operation in list_operations(spec):
        status, body = synthesize_response(spec, operation)
        handlers.append(
            MockHandler(
                operation=operation,
                responses=by_operation.get(operation.id, []),
                synthetic_status=status,
                synthetic_body=body,
            )
        )
    if any(h.operation.kind == "graphql" for h in handlers):
        introspection = graphql_introspection(spec)
        handlers.append(
            MockHandler(operation=introspection, responses=[], synthetic_body=introspection.example)
        )
    return handlers


def not_found_response() -> MockResponse:
    return MockResponse(
        status=404,
        headers={**_JSON_HEADERS, "x-mock-unmatched": "true"},
        body={"error": "Not Found", "message": "No matching operation found for request"},
    )


def match_operation(request: MockRequest, handlers: list[MockHandler]) -> Optional[MockHandler]:
    """Best handler for the request: literal segments beat templated ones.

    GraphQL requests are routed by the operation their body addresses.
    """
    graphql = [h for h in handlers if h.operation.kind == "graphql"]
    if (
        graphql
        and request.method.upper() == "POST"
        and _normalize_path(request.path).endswith(GRAPHQL_PATH)
    ):
        operation_id = graphql_operation_id(request.body)
        for handler in graphql:
            # "Query.user" also answers to a bare operationName of "user"
            if operation_id in (handler.operation.id, handler.operation.id.split(".", 1)[-1]):
                return handler
        return None
    candidates = [
        h
        for h in handlers
        if h.operation.kind != "graphql" and h.operation.matches(request.method, request.path)
    ]
    return max(candidates, key=lambda h: h.operation.literal_segments, default=None)


def handle(request: MockRequest, handlers: list[MockHandler]) -> MockResponse:
    handler = match_operation(request, handlers)
    if handler is None:
        return not_found_response()
    return handler.respond(request)


class HandlerCache:
    """Built handler sets per ``(tenant, service, version)``.

    Builds are single-flight per key. ``ttl_seconds`` of 0 keeps an entry
    until it is invalidated.
    """

    def __init__(self, ttl_seconds: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, list[MockHandler]]] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._generations: dict[CacheKey, int] = defaultdict(int)

    def __contains__(self, key: CacheKey) -> bool:
        return self._fresh(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, key: CacheKey) -> Optional[list[MockHandler]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        built_at, handlers = entry
        if self.ttl_seconds and self._clock() - built_at > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return handlers

    async def get_or_build(
        self, key: CacheKey, build: Callable[[], Awaitable[list[MockHandler]]]
    ) -> list[MockHandler]:
        handlers = self._fresh(key)
        if handlers is not None:
            logger.debug("Mock handler cache hit for %s", key)
            return handlers

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            handlers = self._fresh(key)
            if handlers is not None:
                return handlers
            generation = self._generations[key]
            handlers = await build()
            # An invalidation during the build means the result may be stale
            if self._generations[key] == generation:
                self._entries[key] = (self._clock(), handlers)
            return handlers

    def invalidate(self, tenant_id: str, service: str, version: Optional[str] = None) -> None:
        """Drop one version's handlers, or every version of ``service``."""
        keys = [
            key
            for key in set(self._entries) | set(self._generations)
            if key[0] == tenant_id and key[1] == service and (version is None or key[2] == version)
        ]
        if version is not None:
            keys.append((tenant_id, service, version))
        for key in set(keys):
            self._entries.pop(key, None)
            self._generations[key] += 1
        logger.debug("Invalidated mock handlers for %s/%s@%s", tenant_id, service, version or "*")

    def clear(self) -> None:
        self._entries.clear()
        for key in self._generations:
            self._generations[key] += 1

    async def on_event(self, tenant_id: str, event_type: str, payload: dict) -> None:
        if event_type not in _INVALIDATING_EVENTS:
            return
        service = payload.get("service")
        if not service:
            return
        versions = list(payload.get("versions") or [])
        if payload.get("version"):
            versions.append(payload["version"])
        if not versions:
            self.invalidate(tenant_id, service)
        for version in versions:
            self.invalidate(tenant_id, service, version)


class MockSynthesizer:
    def __init__(self, db: AsyncSession, tenant_id: str, cache: HandlerCache):
        self.db = db
        self.tenant_id = tenant_id
        self.cache = cache
        self.versions = ServiceVersionResolver(db, tenant_id)
        self.fixtures = FixtureStore(db, tenant_id)

    async def _build(self, service: str, version: str) -> list[MockHandler]:
        row = await self.versions.find_version(service, version)
        if row is None or not row.spec:
            raise NotFound(
                f"No spec found for {service}@{version}. Upload a spec first.",
                service=service,
                version=version,
            )
        fixtures = await self.fixtures.list_for_mock(service, version)
        handlers = build_handlers(row.spec, fixtures)
        logger.info(
            "Built %d mock handlers for %s@%s with %d fixtures",
            len(handlers),
            service,
            version,
            len(fixtures),
        )
        return handlers

    async def get_handlers(self, service: str, version: str) -> list[MockHandler]:
        return await self.cache.get_or_build(
            (self.tenant_id, service, version), lambda: self._build(service, version)
        )

    async def on_event(self, tenant_id: str, event_type: str, payload: dict) -> None:
        await self.cache.on_event(tenant_id, event_type, payload)

    async def resolve_and_handle(
        self, service: str, requested_version: str, request: MockRequest
    ) -> MockResponse:
        """Serve ``request`` from the version ``requested_version`` resolves to.

        Only versions with a spec are candidates.
        """
        await self.versions.require_service(service)
        candidates = [v for v in await self.versions.list_versions(service) if v.spec]
        row = resolve_version(requested_version, candidates)
        handlers = await self.get_handlers(service, row.version)
        return handle(request, handlers)
