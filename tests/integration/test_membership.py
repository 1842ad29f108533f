"""
Integration tests for the membership store and repository registry
"""

import pytest
from datetime import datetime
from core.exceptions import (
    InvalidTokenError,
    InvalidTransitionError,
    MemberNotFoundError,
    RepositoryNotFoundError,
    ValidationError,
)
from models.base import JobStatus, MemberStatus
from models.distribution_job import DistributionJob
from snowball.membership import MembershipStore, NewMember
from snowball.repositories import RepositoryRegistry


class TestMembershipStore:
    """Test member writes and counters"""

    @pytest.mark.asyncio
    async def test_add_member_is_idempotent(self, db_session, make_repository):
        repository = await make_repository()
        store = MembershipStore(db_session)

        first, created = await store.add_member(repository.id, NewMember(email="a@example.com"))
        again, created_again = await store.add_member(repository.id, NewMember(email="a@example.com", hop_depth=2))

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert again.hop_depth == 0
        assert repository.member_count == 1

    @pytest.mark.asyncio
    async def test_adds_from_separate_sessions_create_one_member(self, session_factory, make_repository):
        repository = await make_repository()

        results = []
        for _ in range(3):
            async with session_factory() as session:
                results.append(
                    await MembershipStore(session).add_member(repository.id, NewMember(email="race@example.com"))
                )

        assert [created for _, created in results] == [True, False, False]
        async with session_factory() as session:
            assert await MembershipStore(session).count(repository.id) == 1

    @pytest.mark.asyncio
    async def test_counts_track_status(self, db_session, make_repository, make_member):
        repository = await make_repository()
        store = MembershipStore(db_session)
        await make_member(repository, "a@example.com", verified=True)
        b = await make_member(repository, "b@example.com", status=MemberStatus.INACTIVE, verified=False)

        assert (repository.member_count, repository.verified_member_count) == (2, 1)

        await store.update_status(b.id, MemberStatus.BOUNCED)

        assert (repository.member_count, repository.verified_member_count) == (1, 1)
        assert repository.verified_member_count <= repository.member_count

    @pytest.mark.asyncio
    async def test_bounced_is_terminal(self, db_session, make_repository, make_member):
        repository = await make_repository()
        store = MembershipStore(db_session)
        member = await make_member(repository, "a@example.com")
        await store.update_status(member.id, MemberStatus.BOUNCED)

        with pytest.raises(InvalidTransitionError):
            await store.update_status(member.id, MemberStatus.ACTIVE)
        with pytest.raises(InvalidTransitionError):
            await store.verify(repository.id, "a@example.com", member.verification_token)

    @pytest.mark.asyncio
    async def test_opt_in(self, db_session, make_repository, make_member):
        repository = await make_repository()
        member = await make_member(repository, "a@example.com", status=MemberStatus.INACTIVE, verified=False)

        verified = await MembershipStore(db_session).verify(repository.id, "a@example.com", member.verification_token)

        assert verified.verified is True
        assert verified.status == MemberStatus.ACTIVE
        assert verified.verified_at is not None
        assert repository.verified_member_count == 1

    @pytest.mark.asyncio
    async def test_opt_out_stops_delivery(self, db_session, make_repository, make_member):
        repository = await make_repository()
        store = MembershipStore(db_session)
        member = await make_member(repository, "a@example.com", delivered=True)

        await store.opt_out(repository.id, "a@example.com", member.verification_token)

        assert member.opted_out is True
        assert member.status == MemberStatus.INACTIVE
        assert member.can_refer is False
        assert await store.list_deliverable(repository.id) == []

    @pytest.mark.asyncio
    async def test_wrong_token(self, db_session, make_repository, make_member):
        repository = await make_repository()
        await make_member(repository, "a@example.com")
        store = MembershipStore(db_session)

        with pytest.raises(InvalidTokenError):
            await store.verify(repository.id, "a@example.com", "not-the-token")
        with pytest.raises(MemberNotFoundError):
            await store.opt_out(repository.id, "nobody@example.com", "whatever")

    @pytest.mark.asyncio
    async def test_list_deliverable_keeps_requested_order(self, db_session, make_repository, make_member):
        repository = await make_repository()
        store = MembershipStore(db_session)
        a = await make_member(repository, "a@example.com")
        b = await make_member(repository, "b@example.com")
        c = await make_member(repository, "c@example.com")
        await store.update_status(b.id, MemberStatus.BOUNCED)

        members = await store.list_deliverable(repository.id, [c.id, b.id, "missing", a.id, c.id])

        assert [m.id for m in members] == [c.id, a.id]


class TestRepositoryRegistry:
    """Test repository creation and settings"""

    @pytest.mark.asyncio
    async def test_create_uses_platform_defaults(self, db_session):
        repository = await RepositoryRegistry(db_session).create("rust-async", "owner_1", max_hops=1)

        assert repository.max_hops == 1
        assert repository.min_karma_required == 100
        assert repository.min_quality_score == 0.7
        assert repository.auto_approve_threshold == 0.9
        assert repository.is_accepting

    @pytest.mark.asyncio
    async def test_create_rejects_bad_settings(self, db_session):
        registry = RepositoryRegistry(db_session)

        with pytest.raises(ValidationError):
            await registry.create("t", "owner_1", min_quality_score=0.95, auto_approve_threshold=0.5)
        with pytest.raises(ValidationError):
            await registry.create("t", "owner_1", colour="blue")
        with pytest.raises(ValidationError):
            await registry.create("t", "owner_1", max_hops=-1)

    @pytest.mark.asyncio
    async def test_update_thresholds_in_either_direction(self, db_session):
        registry = RepositoryRegistry(db_session)
        repository = await registry.create("t", "owner_1")

        await registry.update_settings(repository.id, min_quality_score=0.2, auto_approve_threshold=0.3)
        assert (repository.min_quality_score, repository.auto_approve_threshold) == (0.2, 0.3)

        await registry.update_settings(repository.id, min_quality_score=0.95, auto_approve_threshold=0.99)
        assert (repository.min_quality_score, repository.auto_approve_threshold) == (0.95, 0.99)

    @pytest.mark.asyncio
    async def test_archive_cancels_jobs(self, db_session, make_repository):
        repository = await make_repository()
        job = DistributionJob(
            repository_id=repository.id, target_member_ids=["m1"], subject="s", body="b", status=JobStatus.QUEUED
        )
        db_session.add(job)
        await db_session.commit()

        archived = await RepositoryRegistry(db_session).archive(repository.id, now=datetime(2026, 3, 1))

        assert archived.archived_at == datetime(2026, 3, 1)
        assert not archived.is_accepting
        await db_session.refresh(job)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "cancelled"

    @pytest.mark.asyncio
    async def test_unknown_repository(self, db_session):
        with pytest.raises(RepositoryNotFoundError):
            await RepositoryRegistry(db_session).get("missing")
