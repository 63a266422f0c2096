"""Tests for contract-broker endpoints using SQLite in-memory."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from broker.database import Base, get_db
from broker.entities import Deployment, Fixture, Service, VerificationResult
from broker.main import app
from engine.deployments import DeploymentTracker
from engine.errors import DuplicateSuppressed
from engine.fixtures import FixtureStore


# Use SQLite for tests
test_engine = create_async_engine("sqlite+aiosqlite:///", echo=False)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


async def override_get_db():
    async with TestSession() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db

# Enable debug mode so auth middleware allows requests without API key
from broker.config import settings
settings.debug = True

API = "/api/v1"


def _openapi(me_example=None, title="Users"):
    return {
        "openapi": "3.0.0",
        "info": {"title": title, "version": "1.0.0"},
        "paths": {
            "/users/{id}": {"get": {
                "operationId": "getUser",
                "responses": {"200": {"content": {"application/json": {
                    "schema": {"type": "object", "properties": {"id": {"type": "string"}}},
                }}}},
            }},
            "/users/me": {"get": {
                "operationId": "getMe",
                "responses": {"200": {"content": {"application/json": {
                    "example": me_example or {"id": "me"},
                }}}},
            }},
            "/users": {"post": {
                "operationId": "createUser",
                "responses": {"201": {"description": "Created"}},
            }},
        },
    }


def _fixture_body(version="1.0.0", operation="getUser", body=None, **extra):
    return {
        "service": "user-service",
        "service_version": version,
        "operation": operation,
        "data": {
            "request": {"method": "GET", "path": "/users/42"},
            "response": {"status": 200, "body": body or {"id": "42", "name": "Ann"}},
        },
        **extra,
    }


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    app.state.handler_cache.clear()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="session", autouse=True)
async def dispose_test_engine():
    yield
    await test_engine.dispose()


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def user_spec(client):
    resp = await client.post(f"{API}/specs/user-service", json={"version": "1.0.0", "spec": _openapi()})
    assert resp.status_code == 201
    return resp.json()


async def _propose_and_approve(client, **kwargs):
    created = await client.post(f"{API}/fixtures", json=_fixture_body(**kwargs))
    fixture_id = created.json()["id"]
    resp = await client.post(f"{API}/fixtures/{fixture_id}/approve", headers={"X-Actor": "reviewer"})
    assert resp.status_code == 200
    return fixture_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "contract-broker"


class TestAuthAndTenancy:
    @pytest.mark.asyncio
    async def test_missing_tenant_rejected_outside_debug(self, client, monkeypatch):
        monkeypatch.setattr(settings, "debug", False)
        monkeypatch.setattr(settings, "api_key", "secret")
        resp = await client.get(f"{API}/services", headers={"X-API-Key": "secret"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing X-Tenant-Id header"

    @pytest.mark.asyncio
    async def test_invalid_api_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "secret")
        resp = await client.get(f"{API}/services", headers={"X-API-Key": "wrong"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_exempt_from_api_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "secret")
        resp = await client.get("/health")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, client):
        acme = {"X-Tenant-Id": "acme"}
        globex = {"X-Tenant-Id": "globex"}
        await client.post(f"{API}/specs/user-service", json={"version": "1.0.0", "spec": _openapi()}, headers=acme)
        created = await client.post(f"{API}/fixtures", json=_fixture_body(), headers=acme)
        assert created.status_code == 201

        assert (await client.get(f"{API}/services", headers=globex)).json() == []
        resp = await client.get(f"{API}/fixtures/{created.json()['id']}", headers=globex)
        assert resp.status_code == 404

        # The same content is a separate fixture in another tenant
        await client.post(f"{API}/specs/user-service", json={"version": "1.0.0", "spec": _openapi()}, headers=globex)
        other = await client.post(f"{API}/fixtures", json=_fixture_body(), headers=globex)
        assert other.status_code == 201
        assert other.json()["id"] != created.json()["id"]


class TestServices:
    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, client):
        first = await client.post(f"{API}/services", json={"name": "billing", "spec_type": "openapi"})
        assert first.status_code == 201
        second = await client.post(f"{API}/services", json={"name": "billing", "description": "Billing API"})
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["description"] == "Billing API"

        resp = await client.get(f"{API}/services")
        assert [s["name"] for s in resp.json()] == ["billing"]

    @pytest.mark.asyncio
    async def test_unknown_service(self, client):
        resp = await client.get(f"{API}/services/ghost")
        assert resp.status_code == 404
        assert "Register it first" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_spec_upload(self, client, user_spec):
        assert user_spec["spec_type"] == "openapi"
        assert user_spec["operations"] == 3

        versions = (await client.get(f"{API}/services/user-service/versions")).json()
        assert len(versions) == 1
        assert versions[0]["version"] == "1.0.0"
        assert versions[0]["has_spec"] is True

    @pytest.mark.asyncio
    async def test_spec_upload_requires_detectable_type(self, client):
        resp = await client.post(f"{API}/specs/user-service", json={"version": "1.0.0", "spec": {"info": {}}})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_spec_is_filled_once_unless_replaced(self, client, user_spec):
        await client.post(f"{API}/specs/user-service", json={"version": "1.0.0", "spec": _openapi(title="Second")})
        resolved = await client.get(f"{API}/services/user-service/versions/resolve", params={"version": "1.0.0"})
        assert resolved.json()["spec"]["info"]["title"] == "Users"

        await client.post(
            f"{API}/specs/user-service",
            json={"version": "1.0.0", "spec": _openapi(title="Second"), "replace": True},
        )
        resolved = await client.get(f"{API}/services/user-service/versions/resolve", params={"version": "1.0.0"})
        assert resolved.json()["spec"]["info"]["title"] == "Second"

    @pytest.mark.asyncio
    async def test_ensure_version_is_idempotent(self, client):
        for _ in range(2):
            resp = await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})
            assert resp.status_code == 201
            assert resp.json()["has_spec"] is False
        versions = (await client.get(f"{API}/services/billing/versions")).json()
        assert len(versions) == 1

    @pytest.mark.asyncio
    async def test_resolve_ranges(self, client):
        for version in ("1.0.0", "1.2.0", "2.0.0"):
            await client.post(f"{API}/services/billing/versions", json={"version": version})

        resolve = f"{API}/services/billing/versions/resolve"
        assert (await client.get(resolve)).json()["version"] == "2.0.0"
        assert (await client.get(resolve, params={"version": "^1.0.0"})).json()["version"] == "1.2.0"

        resp = await client.get(resolve, params={"version": "^3.0.0"})
        assert resp.status_code == 404
        assert resp.json()["available_versions"] == ["2.0.0", "1.2.0", "1.0.0"]


class TestFixtures:
    @pytest.mark.asyncio
    async def test_propose_requires_known_service(self, client):
        resp = await client.post(f"{API}/fixtures", json=_fixture_body())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_propose_requires_response(self, client, user_spec):
        body = _fixture_body()
        body["data"] = {"request": {"method": "GET"}}
        resp = await client.post(f"{API}/fixtures", json=body)
        assert resp.status_code == 400
        assert "response" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_propose_requires_version(self, client, user_spec):
        body = _fixture_body()
        del body["service_version"]
        resp = await client.post(f"{API}/fixtures", json=body)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_propose_requires_detected_spec_type(self, client):
        await client.post(f"{API}/services", json={"name": "user-service"})
        resp = await client.post(
            f"{API}/fixtures", json=_fixture_body(spec_type="openapi")
        )
        assert resp.status_code == 400
        assert "no spec type" in resp.json()["detail"]

        async with TestSession() as db:
            assert await db.scalar(select(func.count(Fixture.id))) == 0

    @pytest.mark.asyncio
    async def test_zero_priority_is_kept(self, client, user_spec):
        resp = await client.post(f"{API}/fixtures", json=_fixture_body(priority=0))
        assert resp.status_code == 201
        assert resp.json()["priority"] == 0

        default = await client.post(
            f"{API}/fixtures", json=_fixture_body(operation="getMe", body={"id": "me"})
        )
        assert default.json()["priority"] == 1

    @pytest.mark.asyncio
    async def test_identical_proposals_share_one_fixture(self, client, user_spec):
        first = await client.post(f"{API}/fixtures", json=_fixture_body("1.0.0"))
        assert first.status_code == 201
        assert first.json()["status"] == "draft"
        assert first.json()["service_versions"] == ["1.0.0"]

        second = await client.post(f"{API}/fixtures", json=_fixture_body("1.1.0"))
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["service_versions"] == ["1.0.0", "1.1.0"]
        assert second.json()["service_version"] == "1.1.0"

        again = await client.post(f"{API}/fixtures", json=_fixture_body("1.1.0"))
        assert again.status_code == 200
        assert again.json()["service_versions"] == ["1.0.0", "1.1.0"]

    @pytest.mark.asyncio
    async def test_lost_insert_race_attaches_to_winner(self, client, user_spec, monkeypatch):
        winner = await client.post(f"{API}/fixtures", json=_fixture_body("1.0.0"))

        original = FixtureStore._find_by_hash
        lookups = []

        async def miss_first_lookup(self, content_hash):
            lookups.append(content_hash)
            if len(lookups) == 1:
                return None
            return await original(self, content_hash)

        monkeypatch.setattr(FixtureStore, "_find_by_hash", miss_first_lookup)
        resp = await client.post(f"{API}/fixtures", json=_fixture_body("2.0.0"))
        assert resp.status_code == 200
        assert resp.json()["id"] == winner.json()["id"]
        assert resp.json()["service_versions"] == ["1.0.0", "2.0.0"]

        async with TestSession() as db:
            count = await db.scalar(select(func.count(Fixture.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_curation_state_machine(self, client, user_spec):
        fixture_id = (await client.post(f"{API}/fixtures", json=_fixture_body())).json()["id"]
        url = f"{API}/fixtures/{fixture_id}"

        resp = await client.post(f"{url}/revoke")
        assert resp.status_code == 409

        resp = await client.post(f"{url}/reject", json={"notes": "wrong id"}, headers={"X-Actor": "alice"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["rejected_by"] == "alice"
        assert resp.json()["notes"] == "wrong id"

        assert (await client.post(f"{url}/reject")).status_code == 409
        assert (await client.post(f"{url}/revoke")).status_code == 409

        resp = await client.post(f"{url}/approve", json={"actor": "bob"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert resp.json()["approved_by"] == "bob"

        resp = await client.post(f"{url}/revoke")
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_approve_unknown_fixture(self, client):
        resp = await client.post(f"{API}/fixtures/does-not-exist/approve")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_pending_and_service_listing(self, client, user_spec):
        approved = await _propose_and_approve(client)
        await client.post(f"{API}/fixtures", json=_fixture_body(body={"id": "7"}))

        pending = (await client.get(f"{API}/fixtures/pending")).json()
        assert len(pending) == 1
        assert pending[0]["status"] == "draft"

        listed = (await client.get(f"{API}/fixtures/service/user-service", params={"version": "1.0.0"})).json()
        assert [f["id"] for f in listed] == [approved]

        other_version = await client.get(f"{API}/fixtures/service/user-service", params={"version": "9.9.9"})
        assert other_version.json() == []

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, user_spec):
        fixture_id = (await client.post(f"{API}/fixtures", json=_fixture_body())).json()["id"]

        resp = await client.patch(f"{API}/fixtures/{fixture_id}", json={"priority": 5, "notes": "canonical"})
        assert resp.status_code == 200
        assert resp.json()["priority"] == 5
        assert resp.json()["notes"] == "canonical"

        resp = await client.patch(f"{API}/fixtures/{fixture_id}", json={"priority": -1})
        assert resp.status_code == 422

        assert (await client.delete(f"{API}/fixtures/{fixture_id}")).status_code == 204
        assert (await client.get(f"{API}/fixtures/{fixture_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_batch_proposal(self, client, user_spec):
        invalid = _fixture_body()
        invalid["data"] = {}
        resp = await client.post(f"{API}/fixtures/batch", json={
            "fixtures": [_fixture_body(), _fixture_body(), invalid],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert (data["total"], data["created"], data["duplicates"], data["errors"]) == (3, 1, 1, 1)
        assert [r["status"] for r in data["results"]] == ["created", "duplicate", "error"]


class TestMock:
    @pytest.mark.asyncio
    async def test_unknown_service(self, client):
        resp = await client.get(f"{API}/mock/ghost/1.0.0/users/1")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_synthetic_and_unmatched(self, client, user_spec):
        resp = await client.get(f"{API}/mock/user-service/1.0.0/users/42")
        assert resp.status_code == 200
        assert resp.headers["x-mock-synthetic"] == "true"
        assert resp.json() == {"id": "string"}

        resp = await client.get(f"{API}/mock/user-service/1.0.0/orders")
        assert resp.status_code == 404
        assert resp.headers["x-mock-unmatched"] == "true"
        assert resp.json()["message"] == "No matching operation found for request"

    @pytest.mark.asyncio
    async def test_graphql_service(self, client):
        sdl = "type Query {\n  user(id: ID!): User\n}\n\ntype User {\n  id: ID!\n  name: String\n}"
        uploaded = await client.post(f"{API}/specs/graph-service", json={"version": "1.0.0", "spec": sdl})
        assert uploaded.status_code == 201
        assert uploaded.json()["spec_type"] == "graphql"
        assert uploaded.json()["operations"] == 1

        resp = await client.post(
            f"{API}/mock/graph-service/1.0.0/graphql",
            json={"query": "query GetUser { user(id: 1) { id } }", "operationName": "GetUser"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"data": {"user": {"id": "id", "name": "string"}}}

    @pytest.mark.asyncio
    async def test_version_without_spec_is_not_served(self, client, user_spec):
        await client.post(f"{API}/services/user-service/versions", json={"version": "3.0.0"})
        resp = await client.get(f"{API}/mock/user-service/3.0.0/users/1")
        assert resp.status_code == 404
        assert resp.json()["available_versions"] == ["1.0.0"]

    @pytest.mark.asyncio
    async def test_range_resolves_to_highest_version_with_spec(self, client, user_spec):
        await client.post(f"{API}/specs/user-service", json={"version": "1.1.0", "spec": _openapi({"id": "v1.1"})})
        await client.post(f"{API}/specs/user-service", json={"version": "2.0.0", "spec": _openapi({"id": "v2"})})
        resp = await client.get(f"{API}/mock/user-service/1.x/users/me")
        assert resp.json() == {"id": "v1.1"}
        resp = await client.get(f"{API}/mock/user-service/latest/users/me")
        assert resp.json() == {"id": "v2"}

    @pytest.mark.asyncio
    async def test_approval_invalidates_cached_handlers(self, client, user_spec):
        url = f"{API}/mock/user-service/1.0.0/users/42"
        assert "x-mock-synthetic" in (await client.get(url)).headers

        created = await client.post(f"{API}/fixtures", json=_fixture_body())
        fixture_id = created.json()["id"]
        # Drafts are never served
        assert "x-mock-synthetic" in (await client.get(url)).headers

        await client.post(f"{API}/fixtures/{fixture_id}/approve")
        resp = await client.get(url)
        assert resp.headers["x-fixture-id"] == fixture_id
        assert resp.json() == {"id": "42", "name": "Ann"}

        await client.post(f"{API}/fixtures/{fixture_id}/revoke")
        assert "x-mock-synthetic" in (await client.get(url)).headers

    @pytest.mark.asyncio
    async def test_priority_decides_between_fixtures(self, client, user_spec):
        low = await _propose_and_approve(client, body={"id": "low"})
        high = await _propose_and_approve(client, body={"id": "high"}, priority=5)
        url = f"{API}/mock/user-service/1.0.0/users/42"
        assert (await client.get(url)).headers["x-fixture-id"] == high

        await client.patch(f"{API}/fixtures/{low}", json={"priority": 9})
        assert (await client.get(url)).headers["x-fixture-id"] == low

    @pytest.mark.asyncio
    async def test_newest_fixture_wins_at_equal_priority(self, client, user_spec):
        await _propose_and_approve(client, body={"id": "older"})
        newer = await _propose_and_approve(client, body={"id": "newer"})
        resp = await client.get(f"{API}/mock/user-service/1.0.0/users/42")
        assert resp.headers["x-fixture-id"] == newer

    @pytest.mark.asyncio
    async def test_request_body_selects_fixture(self, client, user_spec):
        for name in ("Bob", "Ann"):
            body = {
                "service": "user-service",
                "service_version": "1.0.0",
                "operation": "createUser",
                "data": {
                    "request": {"method": "POST", "path": "/users", "body": {"name": name}},
                    "response": {"status": 201, "body": {"created": name}},
                },
            }
            fixture_id = (await client.post(f"{API}/fixtures", json=body)).json()["id"]
            await client.post(f"{API}/fixtures/{fixture_id}/approve")

        resp = await client.post(f"{API}/mock/user-service/1.0.0/users", json={"name": "Ann"})
        assert resp.status_code == 201
        assert resp.json() == {"created": "Ann"}


async def _record(
    client, consumer_version="1.0.0", operation="getUser", path="/users/1", provider_version=None
):
    return await client.post(f"{API}/interactions", json={
        "service": "user-service",
        "consumer": "web",
        "consumer_version": consumer_version,
        "provider_version": provider_version,
        "operation": operation,
        "request": {"method": "GET", "path": path},
        "response": {"status": 200, "body": {"id": "1"}},
    })


async def _register(client, provider_version="2.0.0", environment="production"):
    resp = await client.post(f"{API}/dependencies", json={
        "consumer": "web",
        "consumer_version": "1.0.0",
        "provider": "user-service",
        "provider_version": provider_version,
        "environment": environment,
    })
    assert resp.status_code == 201
    return resp.json()


async def _submit(client, task_id, outcomes, provider_version="2.0.0", provider="user-service"):
    return await client.post(f"{API}/verification/{provider}", json={
        "task_id": task_id,
        "provider_version": provider_version,
        "results": [{"success": ok} for ok in outcomes],
    })


class TestInteractions:
    @pytest.mark.asyncio
    async def test_record_deduplicates(self, client):
        first = await _record(client)
        assert first.status_code == 201
        assert first.json()["status"] == "recorded"
        second = await _record(client)
        assert second.status_code == 200
        assert second.json() == {"status": "duplicate", "id": first.json()["id"]}

        listed = (await client.get(f"{API}/interactions/user-service", params={"consumer": "web"})).json()
        assert len(listed) == 1

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        resp = await client.post(f"{API}/interactions", json={"service": "user-service"})
        assert resp.status_code == 400
        assert resp.json()["missing"] == ["consumer", "consumer_version", "operation"]


class TestContracts:
    @pytest.mark.asyncio
    async def test_recording_creates_one_contract_per_pair(self, client):
        await _record(client, provider_version="2.0.0")
        await _record(client, provider_version="2.0.0", path="/users/2")
        await _record(client, provider_version="2.0.0")

        contracts = (await client.get(f"{API}/contracts")).json()
        assert len(contracts) == 1
        contract = contracts[0]
        assert (contract["consumer"], contract["consumer_version"]) == ("web", "1.0.0")
        assert (contract["provider"], contract["provider_version"]) == ("user-service", "2.0.0")
        assert contract["environment"] == "test"
        assert contract["status"] == "active"
        assert contract["interaction_count"] == 2
        assert contract["last_seen"] >= contract["first_seen"]

    @pytest.mark.asyncio
    async def test_provider_version_falls_back_to_newest_registered(self, client, user_spec):
        await _record(client)
        contract = (await client.get(f"{API}/contracts")).json()[0]
        assert contract["provider_version"] == "1.0.0"
        assert contract["spec_type"] == "openapi"

    @pytest.mark.asyncio
    async def test_provider_version_unknown_without_versions(self, client):
        await _record(client)
        contract = (await client.get(f"{API}/contracts")).json()[0]
        assert contract["provider_version"] == "unknown"

    @pytest.mark.asyncio
    async def test_detail_filters_and_interactions(self, client):
        recorded = (await _record(client, provider_version="2.0.0")).json()
        await _record(client, consumer_version="1.1.0", provider_version="2.0.0")

        listed = (await client.get(f"{API}/contracts", params={"consumer": "web"})).json()
        assert len(listed) == 2
        assert (await client.get(f"{API}/contracts", params={"provider": "billing"})).json() == []
        assert (await client.get(f"{API}/contracts", params={"environment": "production"})).json() == []

        older = next(c for c in listed if c["consumer_version"] == "1.0.0")
        detail = await client.get(f"{API}/contracts/{older['id']}")
        assert detail.status_code == 200
        assert detail.json()["interaction_count"] == 1

        interactions = (await client.get(f"{API}/contracts/{older['id']}/interactions")).json()
        assert [i["id"] for i in interactions] == [recorded["id"]]
        assert interactions[0]["contract_id"] == older["id"]

        missing = await client.get(f"{API}/contracts/00000000-0000-0000-0000-000000000000")
        assert missing.status_code == 404
        assert missing.json()["detail"] == "Contract not found"
        missing = await client.get(f"{API}/contracts/00000000-0000-0000-0000-000000000000/interactions")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_status_transitions(self, client):
        await _record(client, provider_version="2.0.0")
        contract_id = (await client.get(f"{API}/contracts")).json()[0]["id"]

        for status in ("archived", "deprecated", "active", "archived"):
            resp = await client.patch(f"{API}/contracts/{contract_id}", json={"status": status})
            assert resp.status_code == 200
            assert resp.json()["status"] == status

        assert (await client.get(f"{API}/contracts", params={"status": "active"})).json() == []
        archived = (await client.get(f"{API}/contracts", params={"status": "archived"})).json()
        assert [c["id"] for c in archived] == [contract_id]

        bad = await client.patch(f"{API}/contracts/{contract_id}", json={"status": "retired"})
        assert bad.status_code == 400
        assert bad.json()["detail"] == "Invalid status. Must be active, archived, or deprecated"
        assert (await client.get(f"{API}/contracts/{contract_id}")).json()["status"] == "archived"

    @pytest.mark.asyncio
    async def test_recalculate_counts(self, client):
        await _record(client, provider_version="2.0.0")
        await _record(client, provider_version="3.0.0", path="/users/2")

        resp = await client.post(f"{API}/contracts/recalculate-counts")
        assert resp.status_code == 200
        assert resp.json()["updated"] == 0
        assert resp.json()["total_contracts"] == 2

    @pytest.mark.asyncio
    async def test_contracts_are_tenant_scoped(self, client):
        await _record(client, provider_version="2.0.0")
        other = await client.get(f"{API}/contracts", headers={"X-Tenant-Id": "other"})
        assert other.json() == []


class TestVerification:
    @pytest.mark.asyncio
    async def test_dependency_creates_task_with_interactions(self, client):
        await _record(client)
        await _record(client, path="/users/2")
        registered = await _register(client)
        assert registered["dependency"]["status"] == "pending_verification"

        pending = (await client.get(f"{API}/verification/pending")).json()
        assert len(pending) == 1
        assert pending[0]["id"] == registered["task_id"]
        assert len(pending[0]["interactions"]) == 2

    @pytest.mark.asyncio
    async def test_partial_failure_fails_dependency(self, client):
        await _record(client)
        task_id = (await _register(client))["task_id"]

        resp = await _submit(client, task_id, [True, True, False])
        assert resp.status_code == 200
        assert resp.json()["summary"] == {"total": 3, "passed": 2, "failed": 1}
        assert resp.json()["dependency_status_updated"] is True

        deps = (await client.get(f"{API}/dependencies")).json()
        assert deps[0]["status"] == "failed"
        assert deps[0]["verified_at"] is None
        assert (await client.get(f"{API}/verification/pending")).json() == []

    @pytest.mark.asyncio
    async def test_newest_result_settles_dependency(self, client):
        await _record(client)
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True, False])
        await _submit(client, task_id, [True, True])

        deps = (await client.get(f"{API}/dependencies", params={"status": "verified"})).json()
        assert len(deps) == 1
        assert deps[0]["verified_at"] is not None

    @pytest.mark.asyncio
    async def test_empty_result_set_verifies(self, client):
        task_id = (await _register(client))["task_id"]
        resp = await _submit(client, task_id, [])
        assert resp.json()["summary"] == {"total": 0, "passed": 0, "failed": 0}
        deps = (await client.get(f"{API}/dependencies")).json()
        assert deps[0]["status"] == "verified"

    @pytest.mark.asyncio
    async def test_invalid_and_unknown_task_ids(self, client):
        await client.post(f"{API}/services", json={"name": "user-service"})
        resp = await _submit(client, "not-a-uuid", [True])
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid task ID format"

        resp = await _submit(client, "00000000-0000-4000-8000-000000000000", [True])
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_task_belongs_to_provider(self, client):
        task_id = (await _register(client))["task_id"]
        await client.post(f"{API}/services", json={"name": "orders"})
        resp = await _submit(client, task_id, [True], provider="orders")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_reregistration_reuses_task(self, client):
        first = await _register(client, provider_version="2.0.0")
        second = await _register(client, provider_version="2.1.0")
        assert first["task_id"] == second["task_id"]

        tasks = (await client.get(f"{API}/verification/user-service")).json()
        assert len(tasks) == 1
        assert tasks[0]["provider_version"] == "2.1.0"

    @pytest.mark.asyncio
    async def test_history_and_stats(self, client):
        await _record(client)
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True, True, False])
        await _submit(client, task_id, [True, True, True])

        history = (await client.get(f"{API}/verification/user-service/history")).json()
        assert len(history) == 2
        assert history[0]["summary"]["passed"] == 3

        stats = (await client.get(f"{API}/verification/user-service/stats")).json()
        assert stats["total_verifications"] == 2
        assert stats["total_interactions_tested"] == 6
        assert stats["average_pass_rate"] == pytest.approx(5 / 6)
        assert stats["unique_consumers"] == 1
        assert [p["pass_rate"] for p in stats["recent_trends"]] == pytest.approx([5 / 6])

    @pytest.mark.asyncio
    async def test_stats_trend_is_grouped_by_day(self, client):
        await _record(client)
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True, False])
        await _submit(client, task_id, [True, True])
        await _submit(client, task_id, [True, True])

        yesterday = datetime.now(timezone.utc) - timedelta(days=1)
        async with TestSession() as session:
            oldest = (await session.execute(
                select(VerificationResult).order_by(VerificationResult.submitted_at).limit(1)
            )).scalar_one()
            oldest.submitted_at = yesterday
            await session.commit()

        stats = (await client.get(f"{API}/verification/user-service/stats")).json()
        assert stats["total_verifications"] == 3
        assert [p["date"] for p in stats["recent_trends"]] == [
            str(yesterday.date()),
            str(datetime.now(timezone.utc).date()),
        ]
        assert [p["pass_rate"] for p in stats["recent_trends"]] == pytest.approx([0.5, 1.0])

    @pytest.mark.asyncio
    async def test_shared_task_settles_every_environment(self, client):
        await _record(client)
        staging = await _register(client, environment="staging")
        production = await _register(client, environment="production")
        assert staging["task_id"] == production["task_id"]

        resp = await _submit(client, staging["task_id"], [True])
        assert resp.json()["dependency_status_updated"] is True

        deps = (await client.get(f"{API}/dependencies")).json()
        assert {d["environment"]: d["status"] for d in deps} == {
            "staging": "verified",
            "production": "verified",
        }

        await _submit(client, staging["task_id"], [False])
        deps = (await client.get(f"{API}/dependencies")).json()
        assert {d["status"] for d in deps} == {"failed"}

    @pytest.mark.asyncio
    async def test_shared_task_settles_every_provider_version(self, client):
        await _record(client)
        first = await _register(client, provider_version="2.0.0")
        await _register(client, provider_version="2.1.0")

        await _submit(client, first["task_id"], [True], provider_version="2.1.0")
        deps = (await client.get(f"{API}/dependencies")).json()
        assert len(deps) == 2
        assert all(d["status"] == "verified" for d in deps)



class TestDeployments:
    @pytest.mark.asyncio
    async def test_unknown_service_and_version(self, client):
        resp = await client.post(f"{API}/deployments", json={
            "service": "ghost", "version": "1.0.0", "environment": "production",
        })
        assert resp.status_code == 404

        await client.post(f"{API}/services", json={"name": "billing"})
        resp = await client.post(f"{API}/deployments", json={
            "service": "billing", "version": "9.9.9", "environment": "production",
        })
        assert resp.status_code == 404
        assert "Register this version first" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_single_active_deployment_per_environment(self, client):
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            await client.post(f"{API}/services/billing/versions", json={"version": version})
            resp = await client.post(
                f"{API}/deployments",
                json={"service": "billing", "version": version, "environment": "production"},
                headers={"X-Actor": "ci"},
            )
            assert resp.status_code == 201
            assert resp.json()["deployed_by"] == "ci"
        await client.post(f"{API}/deployments", json={
            "service": "billing", "version": "1.0.0", "environment": "staging",
        })

        active = (await client.get(f"{API}/deployments/active", params={"environment": "production"})).json()
        assert [d["version"] for d in active] == ["1.2.0"]

        history = (await client.get(f"{API}/deployments/billing/history", params={"environment": "production"})).json()
        assert len(history) == 3
        assert sum(d["active"] for d in history) == 1

        everywhere = (await client.get(f"{API}/deployments/active")).json()
        assert {d["environment"] for d in everywhere} == {"production", "staging"}

        async with TestSession() as db:
            count = await db.scalar(select(func.count(Deployment.id)).where(Deployment.active.is_(True)))
        assert count == 2

    @pytest.mark.asyncio
    async def test_failed_deployment_leaves_active_untouched(self, client):
        await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})
        await client.post(f"{API}/deployments", json={
            "service": "billing", "version": "1.0.0", "environment": "production",
        })
        resp = await client.post(f"{API}/deployments/failed", json={
            "service": "billing", "version": "1.1.0", "environment": "production",
            "failure_reason": "health check timed out",
        })
        assert resp.status_code == 201
        assert resp.json()["status"] == "failed"
        assert resp.json()["active"] is False

        active = (await client.get(f"{API}/deployments/active")).json()
        assert [d["version"] for d in active] == ["1.0.0"]

    @pytest.mark.asyncio
    async def test_lost_activation_race_is_retried(self, client, monkeypatch):
        await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})
        original = DeploymentTracker._activate
        attempts = []

        async def collide_once(self, *args):
            attempts.append(args)
            if len(attempts) == 1:
                raise DuplicateSuppressed("simulated concurrent activation")
            return await original(self, *args)

        monkeypatch.setattr(DeploymentTracker, "_activate", collide_once)
        resp = await client.post(f"{API}/deployments", json={
            "service": "billing", "version": "1.0.0", "environment": "production",
        })
        assert resp.status_code == 201
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_persistent_conflict_surfaces(self, client, monkeypatch):
        await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})
        attempts = []

        async def always_collide(self, *args):
            attempts.append(args)
            raise DuplicateSuppressed("simulated concurrent activation")

        monkeypatch.setattr(DeploymentTracker, "_activate", always_collide)
        resp = await client.post(f"{API}/deployments", json={
            "service": "billing", "version": "1.0.0", "environment": "production",
        })
        assert resp.status_code == 409
        assert len(attempts) == settings.deploy_retry_attempts

    @pytest.mark.asyncio
    async def test_index_allows_one_active_row(self, client):
        await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})

        async with TestSession() as db:
            service_id = await db.scalar(select(Service.id).where(Service.name == "billing"))

            def row(version, active=True, environment="production"):
                return Deployment(
                    tenant_id=settings.default_tenant_id,
                    service_id=service_id,
                    service="billing",
                    version=version,
                    environment=environment,
                    active=active,
                )

            db.add(row("1.0.0"))
            await db.commit()
            db.add_all([row("0.9.0", active=False), row("1.0.0", environment="staging")])
            await db.commit()

            db.add(row("1.1.0"))
            with pytest.raises(IntegrityError):
                await db.commit()

    @pytest.mark.asyncio
    async def test_index_collision_during_deploy_is_retried(self, client, monkeypatch):
        await client.post(f"{API}/services/billing/versions", json={"version": "1.0.0"})

        async with TestSession() as db:
            service_id = await db.scalar(select(Service.id).where(Service.name == "billing"))
            tracker = DeploymentTracker(db, settings.default_tenant_id, retry_attempts=3)
            real_commit = db.commit
            commits = []

            async def commit_with_rival():
                # A rival activation lands after ours deactivated the old rows
                commits.append(len(commits) + 1)
                if len(commits) == 1:
                    db.add(Deployment(
                        tenant_id=settings.default_tenant_id,
                        service_id=service_id,
                        service="billing",
                        version="0.9.0",
                        environment="production",
                        active=True,
                    ))
                await real_commit()

            monkeypatch.setattr(db, "commit", commit_with_rival)
            deployment = await tracker.deploy("billing", "1.0.0", "production")

        assert commits == [1, 2]
        assert deployment.active is True
        active = (await client.get(f"{API}/deployments/active", params={"environment": "production"})).json()
        assert [d["version"] for d in active] == ["1.0.0"]


class TestCanIDeploy:
    async def _deploy(self, client, service, version, environment="production"):
        await client.post(f"{API}/services/{service}/versions", json={"version": version})
        resp = await client.post(f"{API}/deployments", json={
            "service": service, "version": version, "environment": environment,
        })
        assert resp.status_code == 201

    async def _check(self, client, service, version, **params):
        resp = await client.get(f"{API}/can-i-deploy", params={
            "service": service, "version": version, "environment": "production", **params,
        })
        assert resp.status_code == 200
        return resp.json()

    @pytest.mark.asyncio
    async def test_unknown_service(self, client):
        report = await self._check(client, "ghost", "1.0.0")
        assert report["can_deploy"] is False

    @pytest.mark.asyncio
    async def test_invalid_compatibility_level(self, client):
        resp = await client.get(f"{API}/can-i-deploy", params={
            "service": "web", "version": "1.0.0", "environment": "production",
            "semver_compatibility": "major",
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_no_dependencies(self, client):
        await client.post(f"{API}/services", json={"name": "web"})
        report = await self._check(client, "web", "1.0.0")
        assert report["can_deploy"] is True
        assert "no dependencies" in report["message"]

    @pytest.mark.asyncio
    async def test_provider_not_deployed(self, client):
        await _register(client)
        report = await self._check(client, "web", "1.0.0")
        assert report["can_deploy"] is False
        assert report["issues"][0]["type"] == "not_deployed"
        assert report["issues"][0]["service"] == "user-service"

    @pytest.mark.asyncio
    async def test_verified_provider(self, client):
        await _record(client)
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True])
        await self._deploy(client, "user-service", "2.0.0")

        report = await self._check(client, "web", "1.0.0")
        assert report["can_deploy"] is True
        assert report["providers"][0]["verified"] is True
        assert report["providers"][0]["interaction_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_verification_blocks(self, client):
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True, False])
        await self._deploy(client, "user-service", "2.0.0")

        report = await self._check(client, "web", "1.0.0")
        assert report["can_deploy"] is False
        assert report["issues"][0]["reason"] == "No verified versions found"

    @pytest.mark.asyncio
    async def test_semver_compatibility_widens_match(self, client):
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True])
        await self._deploy(client, "user-service", "2.0.1")

        strict = await self._check(client, "web", "1.0.0")
        assert strict["can_deploy"] is False
        assert strict["issues"][0]["suggestion"] == "Use semver_compatibility=patch to allow version 2.0.0"

        relaxed = await self._check(client, "web", "1.0.0", semver_compatibility="patch")
        assert relaxed["can_deploy"] is True
        assert relaxed["providers"][0]["semver_compatible"] == "patch"
        assert relaxed["providers"][0]["nearest_verified_version"] == "2.0.0"

    @pytest.mark.asyncio
    async def test_deployed_consumers_must_have_verified_provider(self, client):
        task_id = (await _register(client))["task_id"]
        await _submit(client, task_id, [True])
        await self._deploy(client, "web", "1.0.0")

        verified = await self._check(client, "user-service", "2.0.0")
        assert verified["can_deploy"] is True
        assert verified["consumers"][0]["service"] == "web"

        await client.post(f"{API}/services/user-service/versions", json={"version": "3.0.0"})
        unverified = await self._check(client, "user-service", "3.0.0")
        assert unverified["can_deploy"] is False
        assert unverified["issues"][0]["service"] == "web"
        assert unverified["issues"][0]["version"] == "1.0.0"
