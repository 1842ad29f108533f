"""
API endpoint tests
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from api.dependencies import get_db, get_engine
from api.main import app
from core.config import settings
from models.base import MemberStatus

USER = {"X-User-Id": "user_1"}


@pytest_asyncio.fixture
async def client(db_session, snowball_engine):
    """Client with the database and engine overridden; lifespan (workers, scheduler) does not run"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: snowball_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def _url(repository, path):
    return f"/repositories/{repository.id}/snowball/{path}"


class TestHealthEndpoint:
    """Test health check endpoint"""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test health check returns status"""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["redis_connected"] is None
        assert data["queued_jobs"] == 0

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert "endpoints" in response.json()

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-API-Latency-ms" in response.headers


class TestCandidateEndpoints:
    """Test intake and review endpoints"""

    @pytest.mark.asyncio
    async def test_bulk_submission(self, client, make_repository):
        repository = await make_repository()

        response = await client.post(
            _url(repository, "candidates"),
            json={"emails": ["Foo@X.com", "foo@x.com", "not-an-email"]},
            headers=USER,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "bulk"
        bulk = data["bulk"]
        assert (bulk["total"], bulk["added"], bulk["duplicates"], bulk["invalid"]) == (3, 1, 1, 1)
        assert [d["outcome"] for d in bulk["decisions"]] == ["approved", "duplicate", "invalid"]

    @pytest.mark.asyncio
    async def test_csv_submission(self, client, make_repository, sample_csv):
        repository = await make_repository()

        response = await client.post(_url(repository, "candidates"), json={"csv_content": sample_csv}, headers=USER)

        assert response.status_code == 200
        assert response.json()["bulk"]["invalid"] == 1

    @pytest.mark.asyncio
    async def test_raw_upload(self, client, make_repository):
        repository = await make_repository()

        response = await client.post(
            _url(repository, "upload"),
            content=b"email\nada@example.com\n",
            headers={**USER, "Content-Type": "text/csv"},
        )

        assert response.status_code == 200
        assert response.json()["bulk"]["total"] == 1

    @pytest.mark.asyncio
    async def test_empty_upload(self, client, make_repository):
        repository = await make_repository()

        response = await client.post(_url(repository, "upload"), content=b"  ", headers=USER)

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_requires_user_header(self, client, make_repository):
        repository = await make_repository()

        response = await client.post(_url(repository, "candidates"), json={"emails": ["a@example.com"]})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_api_key_enforced_when_configured(self, client, make_repository, monkeypatch):
        repository = await make_repository()
        monkeypatch.setattr(settings, "API_KEY", "secret")
        payload = {"emails": ["a@example.com"]}

        denied = await client.post(_url(repository, "candidates"), json=payload, headers=USER)
        allowed = await client.post(
            _url(repository, "candidates"), json=payload, headers={**USER, "X-API-Key": "secret"}
        )

        assert denied.status_code == 401
        assert allowed.status_code == 200

    @pytest.mark.asyncio
    async def test_exactly_one_mode(self, client, make_repository):
        repository = await make_repository()

        both = await client.post(
            _url(repository, "candidates"), json={"emails": ["a@example.com"], "csv_content": "x"}, headers=USER
        )
        neither = await client.post(_url(repository, "candidates"), json={}, headers=USER)

        assert both.status_code == 422
        assert neither.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_repository(self, client):
        response = await client.post(
            "/repositories/missing/snowball/candidates", json={"emails": ["a@example.com"]}, headers=USER
        )

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "RepositoryNotFoundError"
        assert body["context"] == {"repository_id": "missing"}

    @pytest.mark.asyncio
    async def test_disabled_repository(self, client, make_repository):
        repository = await make_repository(snowball_enabled=False)

        response = await client.post(_url(repository, "candidates"), json={"emails": ["a@example.com"]}, headers=USER)

        assert response.status_code == 409
        assert response.json()["error"] == "SnowballDisabledError"

    @pytest.mark.asyncio
    async def test_referral_not_allowed(self, client, make_repository, make_member):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", delivered=False)

        response = await client.post(
            _url(repository, "candidates"),
            json={"referral": {"source_member_id": source.id, "email": "friend@example.com"}},
            headers=USER,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "ReferralNotAllowedError"

    @pytest.mark.asyncio
    async def test_referral(self, client, make_repository, make_member):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", delivered=True)

        response = await client.post(
            _url(repository, "candidates"),
            json={"referral": {"source_member_id": source.id, "email": "friend@example.com"}},
            headers=USER,
        )

        assert response.status_code == 200
        decision = response.json()["decision"]
        assert decision["hop_depth"] == 1
        assert decision["outcome"] in ("approved", "pending")

    @pytest.mark.asyncio
    async def test_review_flow(self, client, make_repository):
        """admin@ scores below the auto-approve threshold and waits for review"""
        repository = await make_repository()
        await client.post(
            _url(repository, "candidates"),
            json={"emails": ["admin@example.com", "info@example.com"]},
            headers=USER,
        )

        pending = await client.get(_url(repository, "pending"), params={"page_size": 1}, headers=USER)
        assert pending.status_code == 200
        data = pending.json()
        assert data["pagination"]["total_items"] == 2
        assert data["pagination"]["has_next"] is True
        first_id = data["items"][0]["id"]
        assert data["items"][0]["status"] == "pending"

        approved = await client.post(
            _url(repository, "approve"), json={"candidate_ids": [first_id, "missing"]}, headers=USER
        )
        assert approved.status_code == 200
        body = approved.json()
        assert (body["approved"], body["skipped"]) == (1, 1)
        assert body["results"][1]["reason"] == "not-found"

        remaining = (await client.get(_url(repository, "pending"), headers=USER)).json()["items"]
        rejected = await client.post(
            _url(repository, "reject"), json={"candidate_ids": [remaining[0]["id"]]}, headers=USER
        )
        assert rejected.json()["rejected"] == 1
        assert rejected.json()["results"][0]["reason"] == "manual-rejection"

    @pytest.mark.asyncio
    async def test_review_requires_ids(self, client, make_repository):
        repository = await make_repository()

        response = await client.post(_url(repository, "approve"), json={"candidate_ids": []}, headers=USER)

        assert response.status_code == 422


class TestMemberEndpoints:
    """Test opt-in and opt-out"""

    @pytest.mark.asyncio
    async def test_opt_in_and_out(self, client, make_repository, make_member):
        repository = await make_repository()
        member = await make_member(repository, "a@example.com", status=MemberStatus.INACTIVE, verified=False)
        payload = {"email": " A@Example.com ", "token": member.verification_token}

        opted_in = await client.post(_url(repository, "opt-in"), json=payload)
        assert opted_in.status_code == 200
        assert opted_in.json()["status"] == "active"
        assert opted_in.json()["verified"] is True

        opted_out = await client.post(_url(repository, "opt-out"), json=payload)
        assert opted_out.status_code == 200
        assert opted_out.json()["opted_out"] is True

    @pytest.mark.asyncio
    async def test_wrong_token(self, client, make_repository, make_member):
        repository = await make_repository()
        await make_member(repository, "a@example.com")

        response = await client.post(_url(repository, "opt-in"), json={"email": "a@example.com", "token": "nope"})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTokenError"


class TestDistributionEndpoints:
    """Test distribution scheduling, job status and cancellation"""

    @pytest.mark.asyncio
    async def test_distribute_and_cancel(self, client, make_repository, make_member):
        repository = await make_repository()
        await make_member(repository, "a@example.com")
        await make_member(repository, "b@example.com")

        response = await client.post(
            _url(repository, "distribute"), json={"subject": "Hello", "body": "<p>News</p>"}, headers=USER
        )
        assert response.status_code == 202
        data = response.json()
        assert data["total_targets"] == 2
        job_id = data["jobs"][0]["id"]
        assert data["jobs"][0]["status"] == "queued"

        job = await client.get(f"/snowball/jobs/{job_id}")
        assert job.status_code == 200
        assert job.json()["initiated_by_user_id"] == "user_1"

        cancelled = await client.post(f"/snowball/jobs/{job_id}/cancel", headers=USER)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "failed"
        assert cancelled.json()["last_error"] == "cancelled"

        again = await client.post(f"/snowball/jobs/{job_id}/cancel", headers=USER)
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        response = await client.get("/snowball/jobs/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "JobNotFoundError"


class TestStatsEndpoint:
    """Test growth statistics"""

    @pytest.mark.asyncio
    async def test_stats(self, client, make_repository, make_member):
        repository = await make_repository()
        seed = await make_member(repository, "seed@example.com", verified=True)
        await make_member(repository, "friend@example.com", hop_depth=1, source_member_id=seed.id, verified=False,
                          status=MemberStatus.INACTIVE)

        response = await client.get(_url(repository, "stats"))

        assert response.status_code == 200
        data = response.json()
        assert data["member_count"] == 2
        assert data["verified_member_count"] == 1
        assert data["verification_rate"] == 0.5
        assert data["members_by_hop_depth"] == {"0": 1, "1": 1}
        assert data["members_by_status"]["active"] == 1
        assert data["top_referrers"][0]["member_id"] == seed.id
        assert data["top_referrers"][0]["referrals"] == 1
        assert data["potential_reach"] == int(round(1 * settings.SNOWBALL_MULTIPLIER))
        assert sum(point["added"] for point in data["growth_timeline"]) == 2

    @pytest.mark.asyncio
    async def test_stats_unknown_repository(self, client):
        response = await client.get("/repositories/missing/snowball/stats")

        assert response.status_code == 404
