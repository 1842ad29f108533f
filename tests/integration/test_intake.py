"""
Integration tests for candidate intake against a real (SQLite) database
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from core.exceptions import (
    InvalidEmailError,
    MemberNotFoundError,
    ReferralNotAllowedError,
    RepositoryNotFoundError,
    SnowballDisabledError,
)
from models.base import CandidateStatus, MemberStatus, RejectionReason
from models.candidate import Candidate
from models.member import Member
from snowball.events import CandidateDecided, MemberAdded

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _sums_to_total(result):
    return (
        result.added + result.duplicates + result.invalid
        + result.rejected_low_quality + result.rejected_other + result.over_limit
    ) == result.total


async def _members(db_session, repository):
    result = await db_session.execute(select(Member).where(Member.repository_id == repository.id))
    return list(result.scalars().all())


class TestBulkIntake:
    """Test bulk uploads end to end"""

    @pytest.mark.asyncio
    async def test_case_and_whitespace_variants_collapse(self, db_session, make_repository, make_intake):
        """Foo@X.com and foo@x.com are one address; malformed rows are counted, never stored"""
        repository = await make_repository()
        intake = make_intake(default=0.95)

        result = await intake.submit_bulk(repository.id, ["Foo@X.com", "foo@x.com", "not-an-email"], "user_1", now=NOW)

        assert result.total == 3
        assert result.added == 1
        assert result.approved == 1
        assert result.duplicates == 1
        assert result.invalid == 1
        assert _sums_to_total(result)

        outcomes = [(d.row, d.outcome, d.reason) for d in result.decisions]
        assert outcomes == [
            (1, "approved", None),
            (2, "duplicate", "duplicate-in-upload"),
            (3, "invalid", "invalid-email"),
        ]

        members = await _members(db_session, repository)
        assert [m.email for m in members] == ["foo@x.com"]
        assert members[0].hop_depth == 0
        # Bulk rows are unverified and this repository requires verification
        assert members[0].status == MemberStatus.INACTIVE
        assert repository.member_count == 1
        assert repository.verified_member_count == 0

    @pytest.mark.asyncio
    async def test_reupload_is_idempotent(self, db_session, make_repository, make_intake):
        repository = await make_repository()
        intake = make_intake(default=0.95)
        emails = ["Foo@X.com", "foo@x.com", "not-an-email"]

        await intake.submit_bulk(repository.id, emails, "user_1", now=NOW)
        second = await intake.submit_bulk(repository.id, emails, "user_1", now=NOW + timedelta(days=3))

        assert second.added == 0
        assert second.duplicates == 2
        assert second.invalid == 1
        assert second.decisions[0].reason == RejectionReason.ALREADY_MEMBER.value
        assert len(await _members(db_session, repository)) == 1
        assert repository.member_count == 1

    @pytest.mark.asyncio
    async def test_unverified_member_active_when_verification_not_required(self, db_session, make_repository, make_intake):
        repository = await make_repository(verification_required=False)

        await make_intake(default=0.95).submit_bulk(repository.id, ["a@example.com"], "user_1", now=NOW)

        members = await _members(db_session, repository)
        assert members[0].status == MemberStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_pending_then_dedup_window(self, db_session, make_repository, make_intake):
        """A pending candidate blocks re-submission until the dedup window passes"""
        repository = await make_repository(dedup_window_hours=24)
        intake = make_intake(default=0.4)

        first = await intake.submit_bulk(repository.id, ["pending@example.com"], "user_1", now=NOW)
        assert first.pending == 1
        assert first.decisions[0].quality_score == 0.4

        within = await intake.submit_bulk(repository.id, ["pending@example.com"], "user_1", now=NOW + timedelta(hours=23))
        assert within.duplicates == 1
        assert within.decisions[0].reason == RejectionReason.DUPLICATE_RECENT_CONTACT.value

        after = await intake.submit_bulk(repository.id, ["pending@example.com"], "user_1", now=NOW + timedelta(hours=25))
        assert after.pending == 1

        assert await _members(db_session, repository) == []

    @pytest.mark.asyncio
    async def test_zero_window_disables_dedup(self, make_repository, make_intake):
        repository = await make_repository(dedup_window_hours=0)
        intake = make_intake(default=0.4)

        await intake.submit_bulk(repository.id, ["again@example.com"], "user_1", now=NOW)
        second = await intake.submit_bulk(repository.id, ["again@example.com"], "user_1", now=NOW)

        assert second.pending == 1

    @pytest.mark.asyncio
    async def test_low_quality_is_recorded(self, db_session, make_repository, make_intake):
        repository = await make_repository()
        intake = make_intake(scores={"spam@example.com": 0.1})

        result = await intake.submit_bulk(repository.id, ["spam@example.com"], "user_1", now=NOW)

        assert result.rejected_low_quality == 1
        candidate = (await db_session.execute(select(Candidate))).scalar_one()
        assert candidate.status == CandidateStatus.REJECTED
        assert candidate.rejection_reason == RejectionReason.LOW_QUALITY
        assert candidate.quality_score == 0.1
        assert candidate.decided_at == NOW

        # The decision is on the ledger: resubmitting within the window is a duplicate
        again = await intake.submit_bulk(repository.id, ["spam@example.com"], "user_1", now=NOW + timedelta(hours=1))
        assert again.duplicates == 1

    @pytest.mark.asyncio
    async def test_insufficient_karma(self, make_repository, make_intake):
        repository = await make_repository(min_karma_required=100)

        result = await make_intake(default=0.95, karma=10).submit_bulk(repository.id, ["a@example.com"], "user_1", now=NOW)

        assert result.rejected_other == 1
        assert result.decisions[0].reason == RejectionReason.INSUFFICIENT_KARMA.value

    @pytest.mark.asyncio
    async def test_karma_at_threshold_passes(self, make_repository, make_intake):
        repository = await make_repository(min_karma_required=100)

        result = await make_intake(default=0.95, karma=100).submit_bulk(repository.id, ["a@example.com"], "user_1", now=NOW)

        assert result.approved == 1

    @pytest.mark.asyncio
    async def test_over_limit_rows_are_counted(self, make_repository, make_intake):
        repository = await make_repository(max_emails_per_upload=2)
        emails = ["a@example.com", "b@example.com", "c@example.com", "d@example.com"]

        result = await make_intake(default=0.95).submit_bulk(repository.id, emails, "user_1", now=NOW)

        assert result.total == 4
        assert result.added == 2
        assert result.over_limit == 2
        assert [d.email for d in result.decisions] == ["a@example.com", "b@example.com"]
        assert _sums_to_total(result)

    @pytest.mark.asyncio
    async def test_mixed_batch_counts_add_up(self, make_repository, make_intake):
        repository = await make_repository(max_emails_per_upload=6)
        intake = make_intake(scores={"low@example.com": 0.1, "mid@example.com": 0.4}, default=0.95)
        emails = [
            "high@example.com",
            "mid@example.com",
            "low@example.com",
            "HIGH@example.com",
            "bad",
            None,
            "overflow@example.com",
        ]

        result = await intake.submit_bulk(repository.id, emails, "user_1", now=NOW)

        assert result.to_dict()["added"] == 2
        assert (result.approved, result.pending) == (1, 1)
        assert result.rejected_low_quality == 1
        assert result.duplicates == 1
        assert result.invalid == 2
        assert result.over_limit == 1
        assert _sums_to_total(result)

    @pytest.mark.asyncio
    async def test_csv_upload(self, db_session, make_repository, make_intake, sample_csv):
        repository = await make_repository()

        result = await make_intake(default=0.95).submit_csv(repository.id, sample_csv, "user_1", now=NOW)

        assert result.total == 3
        assert result.added == 2
        assert result.invalid == 1
        emails = sorted(m.email for m in await _members(db_session, repository))
        assert emails == ["ada@example.com", "grace@example.org"]

    @pytest.mark.asyncio
    async def test_disabled_repository(self, make_repository, make_intake):
        repository = await make_repository(snowball_enabled=False)

        with pytest.raises(SnowballDisabledError):
            await make_intake().submit_bulk(repository.id, ["a@example.com"], "user_1")

    @pytest.mark.asyncio
    async def test_archived_repository(self, make_repository, make_intake):
        repository = await make_repository(archived_at=NOW)

        with pytest.raises(SnowballDisabledError):
            await make_intake().submit_bulk(repository.id, ["a@example.com"], "user_1")

    @pytest.mark.asyncio
    async def test_unknown_repository(self, make_intake):
        with pytest.raises(RepositoryNotFoundError):
            await make_intake().submit_bulk("missing", ["a@example.com"], "user_1")

    @pytest.mark.asyncio
    async def test_events_published(self, make_repository, make_intake, publisher):
        repository = await make_repository()
        queue = publisher.subscribe()

        await make_intake(default=0.95).submit_bulk(repository.id, ["a@example.com"], "user_1", now=NOW)

        events = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [type(e) for e in events] == [CandidateDecided, MemberAdded]
        assert events[0].status == "approved"
        assert events[1].email == "a@example.com"


class TestReferralIntake:
    """Test single referrals from existing members"""

    @pytest.mark.asyncio
    async def test_referral_increments_hop(self, db_session, make_repository, make_member, make_intake):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", delivered=True)

        decision = await make_intake(default=0.95).submit_referral(
            repository.id, source.id, " Friend@Example.com ", "user_1", content="Works on async runtimes", now=NOW
        )

        assert decision.outcome == "approved"
        assert decision.hop_depth == 1
        member = await db_session.get(Member, decision.member_id)
        assert member.email == "friend@example.com"
        assert member.source_member_id == source.id
        # Referrals are verified, so the member is active straight away
        assert member.status == MemberStatus.ACTIVE
        assert member.verified is True

    @pytest.mark.asyncio
    async def test_source_must_have_received_a_distribution(self, make_repository, make_member, make_intake):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", delivered=False)

        with pytest.raises(ReferralNotAllowedError):
            await make_intake(default=0.95).submit_referral(repository.id, source.id, "friend@example.com", "user_1")

    @pytest.mark.asyncio
    async def test_inactive_source_cannot_refer(self, make_repository, make_member, make_intake):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", status=MemberStatus.INACTIVE, delivered=True)

        with pytest.raises(ReferralNotAllowedError):
            await make_intake(default=0.95).submit_referral(repository.id, source.id, "friend@example.com", "user_1")

    @pytest.mark.asyncio
    async def test_source_from_other_repository(self, make_repository, make_member, make_intake):
        repository = await make_repository()
        other = await make_repository(topic="other")
        source = await make_member(other, "seed@example.com", delivered=True)

        with pytest.raises(MemberNotFoundError):
            await make_intake().submit_referral(repository.id, source.id, "friend@example.com", "user_1")

    @pytest.mark.asyncio
    async def test_malformed_referral(self, make_repository, make_member, make_intake):
        repository = await make_repository()
        source = await make_member(repository, "seed@example.com", delivered=True)

        with pytest.raises(InvalidEmailError):
            await make_intake().submit_referral(repository.id, source.id, "not-an-email", "user_1")
