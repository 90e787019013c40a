"""
Tests for the Escrow Lifecycle

Tests covering:
1. Creation and the fixed submission deadline
2. Main path with one audit event per transition
3. Expiry rules and the overdue sweep
4. Disputes, cancellation and the refund ceiling
5. Forbidden-caller matrix
6. Persist-then-audit failure handling
"""

import logging
import tempfile
from pathlib import Path

import pytest

from tenancy import (
    ANONYMOUS,
    SUBMISSION_WINDOW_NS,
    DeadlineNotReached,
    EscrowEventType,
    EscrowStatus,
    Forbidden,
    InvalidRequest,
    InvalidState,
    JsonFileRecordStore,
    NotFound,
    RentalStatus,
    Role,
    StorageError,
    Unauthenticated,
)
from tenancy.storage import ESCROW_EVENTS_TABLE, ESCROWS_TABLE

from conftest import (
    DAY,
    HOUR,
    LANDLORD,
    OTHER_LANDLORD,
    OTHER_TENANT,
    STRANGER,
    TENANT,
    FlakyStore,
    make_engine,
    open_escrow,
    seed_rental,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def escrows(engine):
    return engine.escrow_lifecycle


@pytest.fixture
def account(engine):
    """Escrow for a confirmed rental with a deposit of 500."""
    return open_escrow(engine)


@pytest.fixture
def submitted(escrows, account, clock):
    clock.advance(HOUR)
    return escrows.submit_deposit(TENANT, account.id, "0xabc")


@pytest.fixture
def secured(escrows, submitted):
    return escrows.approve_deposit(LANDLORD, submitted.id, "custody-1")


@pytest.fixture
def protected(escrows, secured):
    return escrows.activate_protection(LANDLORD, secured.id)


def _events(escrows, account):
    return escrows.get_timeline(TENANT, account.id)


# =============================================================================
# Creation Tests
# =============================================================================


class TestCreateEscrow:
    """Tests for escrow creation."""

    def test_deadline_is_seven_days_after_creation(self, account):
        assert account.status == EscrowStatus.PENDING_SUBMISSION
        assert account.submission_deadline == account.created_at + 7 * 24 * 3600 * 10**9
        assert account.submission_deadline == account.created_at + SUBMISSION_WINDOW_NS

    def test_deadline_is_immutable(self, escrows, protected, account):
        assert protected.submission_deadline == account.submission_deadline

    def test_created_event(self, escrows, account):
        events = _events(escrows, account)
        assert len(events) == 1
        assert events[0].event_type == EscrowEventType.CREATED
        assert events[0].title == "Escrow Account Created"
        assert events[0].amount == 500
        assert events[0].timestamp >= account.updated_at

    def test_one_account_per_rental(self, escrows, account):
        with pytest.raises(InvalidState):
            escrows.create_escrow(
                LANDLORD, account.rental_id, account.property_id, LANDLORD, TENANT, 500
            )

    def test_negative_amount_rejected(self, engine, escrows):
        rental = seed_rental(engine)
        with pytest.raises(InvalidRequest):
            escrows.create_escrow(LANDLORD, rental.id, rental.property_id, LANDLORD, TENANT, -1)

    def test_anonymous_cannot_create(self, engine, escrows):
        rental = seed_rental(engine)
        with pytest.raises(Unauthenticated):
            escrows.create_escrow(ANONYMOUS, rental.id, rental.property_id, LANDLORD, TENANT, 500)

    def test_tenant_may_open(self, engine):
        account = open_escrow(engine, caller=TENANT)
        assert account.landlord == LANDLORD
        assert _events(engine, account)[0].actor == TENANT

    def test_unknown_rental(self, escrows):
        with pytest.raises(NotFound):
            escrows.create_escrow(LANDLORD, 999, 10, LANDLORD, TENANT, 500)

    @pytest.mark.parametrize("caller", [OTHER_LANDLORD, OTHER_TENANT, STRANGER])
    def test_outsider_cannot_open(self, engine, escrows, caller):
        rental = seed_rental(engine)
        with pytest.raises(Forbidden):
            escrows.create_escrow(caller, rental.id, rental.property_id, caller, TENANT, 1)
        assert escrows.get_escrow_for_rental(TENANT, rental.id) is None

    @pytest.mark.parametrize(
        "terms",
        [
            dict(property_id=0),
            dict(landlord=OTHER_LANDLORD),
            dict(tenant=OTHER_TENANT),
            dict(amount=1),
        ],
    )
    def test_terms_must_match_rental(self, engine, escrows, terms):
        rental = seed_rental(engine)
        values = dict(
            property_id=rental.property_id, landlord=LANDLORD, tenant=TENANT, amount=500
        )
        values.update(terms)
        with pytest.raises(InvalidRequest):
            escrows.create_escrow(TENANT, rental.id, **values)
        assert escrows.get_escrow_for_rental(TENANT, rental.id) is None

    def test_closed_rental_rejected(self, engine, escrows):
        rental = seed_rental(engine, status=RentalStatus.CANCELLED)
        with pytest.raises(InvalidState):
            escrows.create_escrow(LANDLORD, rental.id, rental.property_id, LANDLORD, TENANT, 500)

    def test_configured_window(self, clock):
        engine = make_engine(clock, submission_window_days=3)
        account = open_escrow(engine)
        assert account.submission_deadline == account.created_at + 3 * DAY


# =============================================================================
# Main Path Tests
# =============================================================================


class TestMainPath:
    """Tests for deposit through refund."""

    def test_full_path_records_n_plus_one_events(self, escrows, protected):
        refunding = escrows.initiate_refund(LANDLORD, protected.id, 450)
        done = escrows.complete_refund(OTHER_TENANT, protected.id, "0xrefund")

        assert refunding.refund_amount == 450
        assert done.status == EscrowStatus.COMPLETED
        assert done.transaction_hash == "0xrefund"
        assert done.smart_contract_address == "custody-1"

        events = _events(escrows, done)
        assert [e.event_type for e in events] == [
            EscrowEventType.CREATED,
            EscrowEventType.DEPOSIT_SUBMITTED,
            EscrowEventType.LANDLORD_APPROVAL,
            EscrowEventType.LEASE_ACTIVATED,
            EscrowEventType.REFUND_INITIATED,
            EscrowEventType.REFUND_COMPLETED,
        ]
        assert events[4].description == "Refund of ₹4.50 has been initiated"
        assert events[-1].timestamp == done.updated_at
        assert escrows.verify_timeline(TENANT, done.id)["valid"] is True

    def test_submit_records_reference(self, escrows, submitted):
        assert submitted.status == EscrowStatus.UNDER_REVIEW
        assert submitted.transaction_hash == "0xabc"
        event = _events(escrows, submitted)[-1]
        assert event.title == "Security Deposit Submitted"
        assert event.transaction_hash == "0xabc"
        assert event.actor == TENANT

    def test_blank_reference_rejected(self, escrows, account):
        with pytest.raises(InvalidRequest):
            escrows.submit_deposit(TENANT, account.id, "  ")

    def test_state_guards(self, escrows, account):
        with pytest.raises(InvalidState):
            escrows.approve_deposit(LANDLORD, account.id, "custody")
        with pytest.raises(InvalidState):
            escrows.activate_protection(LANDLORD, account.id)
        with pytest.raises(InvalidState):
            escrows.initiate_refund(LANDLORD, account.id, 100)
        with pytest.raises(InvalidState):
            escrows.complete_refund(TENANT, account.id, "0x1")

    def test_failed_transition_records_no_event(self, escrows, account):
        with pytest.raises(InvalidState):
            escrows.approve_deposit(LANDLORD, account.id, "custody")
        assert len(_events(escrows, account)) == 1

    def test_unknown_escrow(self, escrows):
        with pytest.raises(NotFound):
            escrows.submit_deposit(TENANT, 999, "0xabc")


# =============================================================================
# Forbidden-Caller Matrix
# =============================================================================


class TestForbiddenCallers:
    """Each transition is rejected for callers without the required relation."""

    @pytest.mark.parametrize("caller", [LANDLORD, OTHER_TENANT, STRANGER])
    def test_only_tenant_submits(self, escrows, account, caller):
        with pytest.raises(Forbidden):
            escrows.submit_deposit(caller, account.id, "0xabc")

    @pytest.mark.parametrize("caller", [TENANT, OTHER_LANDLORD, STRANGER])
    def test_only_landlord_approves(self, escrows, submitted, caller):
        with pytest.raises(Forbidden):
            escrows.approve_deposit(caller, submitted.id, "custody")

    @pytest.mark.parametrize("caller", [TENANT, OTHER_LANDLORD])
    def test_only_landlord_activates(self, escrows, secured, caller):
        with pytest.raises(Forbidden):
            escrows.activate_protection(caller, secured.id)

    @pytest.mark.parametrize("caller", [TENANT, OTHER_LANDLORD])
    def test_only_landlord_refunds(self, escrows, protected, caller):
        with pytest.raises(Forbidden):
            escrows.initiate_refund(caller, protected.id, 100)

    @pytest.mark.parametrize("caller", [OTHER_TENANT, STRANGER])
    def test_only_parties_dispute(self, escrows, secured, caller):
        with pytest.raises(Forbidden):
            escrows.raise_dispute(caller, secured.id, "damage")

    @pytest.mark.parametrize(
        "operation,args",
        [
            ("submit_deposit", ("0xabc",)),
            ("approve_deposit", ("custody",)),
            ("activate_protection", ()),
            ("initiate_refund", (100,)),
            ("complete_refund", ("0x1",)),
            ("expire_escrow", ()),
            ("raise_dispute", ("reason",)),
            ("resolve_dispute", ()),
            ("cancel_escrow", ()),
        ],
    )
    def test_anonymous_is_unauthenticated(self, escrows, account, operation, args):
        with pytest.raises(Unauthenticated):
            getattr(escrows, operation)(ANONYMOUS, account.id, *args)


# =============================================================================
# Refund Ceiling Tests
# =============================================================================


class TestRefundCeiling:
    """Tests for refund amount validation."""

    def test_refund_above_deposit_rejected(self, escrows, protected):
        with pytest.raises(InvalidRequest):
            escrows.initiate_refund(LANDLORD, protected.id, 501)

    def test_full_refund_allowed(self, escrows, protected):
        assert escrows.initiate_refund(LANDLORD, protected.id, 500).refund_amount == 500

    def test_negative_refund_rejected(self, escrows, protected):
        with pytest.raises(InvalidRequest):
            escrows.initiate_refund(LANDLORD, protected.id, -5)

    def test_ceiling_can_be_disabled(self, clock):
        engine = make_engine(clock, enforce_refund_ceiling=False)
        account = open_escrow(engine)
        engine.submit_deposit(TENANT, account.id, "0xabc")
        engine.approve_deposit(LANDLORD, account.id, "custody")
        engine.activate_protection(LANDLORD, account.id)

        assert engine.initiate_refund(LANDLORD, account.id, 900).refund_amount == 900


# =============================================================================
# Expiry Tests
# =============================================================================


class TestExpiry:
    """Tests for lazy expiry."""

    def test_expire_before_deadline(self, escrows, submitted):
        """At t0+1h the deadline has not been reached."""
        with pytest.raises(DeadlineNotReached):
            escrows.expire_escrow(STRANGER, submitted.id)

    def test_expire_under_review_after_deadline(self, escrows, submitted, clock):
        """UnderReview is not in the exclusion set, so expiry succeeds at t0+8d."""
        clock.advance(8 * DAY)
        expired = escrows.expire_escrow(STRANGER, submitted.id)
        assert expired.status == EscrowStatus.EXPIRED

        event = _events(escrows, expired)[-1]
        assert event.event_type == EscrowEventType.EXPIRED
        assert event.actor is None
        assert event.description == "Escrow account expired due to deadline"

    def test_expire_twice(self, escrows, account, clock):
        clock.advance(8 * DAY)
        escrows.expire_escrow(LANDLORD, account.id)
        with pytest.raises(InvalidState):
            escrows.expire_escrow(LANDLORD, account.id)
        assert len(_events(escrows, account)) == 2

    def test_secured_funds_never_expire(self, escrows, secured, clock):
        clock.advance(30 * DAY)
        with pytest.raises(InvalidState):
            escrows.expire_escrow(LANDLORD, secured.id)

    def test_state_checked_before_deadline(self, escrows, secured):
        """A non-expirable account reports InvalidState even before its deadline."""
        with pytest.raises(InvalidState):
            escrows.expire_escrow(LANDLORD, secured.id)

    def test_sweep_expires_only_overdue_expirable(self, engine, escrows, clock):
        pending = open_escrow(engine)
        reviewing = open_escrow(engine)
        secured = open_escrow(engine)
        escrows.submit_deposit(TENANT, reviewing.id, "0x2")
        escrows.submit_deposit(TENANT, secured.id, "0x3")
        escrows.approve_deposit(LANDLORD, secured.id, "custody")

        clock.advance(8 * DAY)
        fresh = open_escrow(engine)

        expired = escrows.expire_overdue_escrows(STRANGER)
        assert sorted(a.id for a in expired) == [pending.id, reviewing.id]
        assert escrows.get_escrow(TENANT, secured.id).status == EscrowStatus.FUNDS_SECURED
        assert escrows.get_escrow(TENANT, fresh.id).status == EscrowStatus.PENDING_SUBMISSION

        assert escrows.expire_overdue_escrows(STRANGER) == []


# =============================================================================
# Dispute and Cancellation Tests
# =============================================================================


class TestDisputes:
    """Tests for raising and resolving disputes."""

    def test_raise_dispute_records_reason(self, escrows, secured):
        disputed = escrows.raise_dispute(TENANT, secured.id, "Deposit held unfairly")
        assert disputed.status == EscrowStatus.DISPUTED
        assert disputed.dispute_reason == "Deposit held unfairly"
        assert disputed.status_before_dispute == EscrowStatus.FUNDS_SECURED
        assert _events(escrows, disputed)[-1].event_type == EscrowEventType.DISPUTE_RAISED

    def test_pending_account_cannot_be_disputed(self, escrows, account):
        with pytest.raises(InvalidState):
            escrows.raise_dispute(TENANT, account.id, "too early")

    def test_blank_reason_rejected(self, escrows, secured):
        with pytest.raises(InvalidRequest):
            escrows.raise_dispute(TENANT, secured.id, "")

    def test_restore_policy(self, escrows, protected):
        escrows.raise_dispute(LANDLORD, protected.id, "Damage to kitchen")
        resolved = escrows.resolve_dispute(TENANT, protected.id, "Settled")
        assert resolved.status == EscrowStatus.ACTIVE_PROTECTION

        event = _events(escrows, resolved)[-1]
        assert event.event_type == EscrowEventType.DISPUTE_RESOLVED
        assert event.metadata == {"policy": "restore", "outcome": "active_protection", "note": "Settled"}

    def test_cancel_policy(self, clock):
        engine = make_engine(clock, dispute_resolution="cancel")
        account = open_escrow(engine)
        engine.submit_deposit(TENANT, account.id, "0xabc")
        engine.raise_dispute(LANDLORD, account.id, "Bounced payment")

        resolved = engine.resolve_dispute(LANDLORD, account.id)
        assert resolved.status == EscrowStatus.CANCELLED

    def test_resolve_requires_dispute(self, escrows, secured):
        with pytest.raises(InvalidState):
            escrows.resolve_dispute(TENANT, secured.id)

    def test_disputed_account_does_not_expire(self, escrows, submitted, clock):
        escrows.raise_dispute(TENANT, submitted.id, "wrong amount")
        clock.advance(8 * DAY)
        with pytest.raises(InvalidState):
            escrows.expire_escrow(TENANT, submitted.id)


class TestCancelEscrow:
    """Tests for pre-deposit cancellation."""

    def test_cancel_pending(self, escrows, account):
        cancelled = escrows.cancel_escrow(TENANT, account.id, "Changed plans")
        assert cancelled.status == EscrowStatus.CANCELLED
        assert _events(escrows, cancelled)[-1].description == "Changed plans"

    def test_cannot_cancel_after_submission(self, escrows, submitted):
        with pytest.raises(InvalidState):
            escrows.cancel_escrow(TENANT, submitted.id)


# =============================================================================
# Read Tests
# =============================================================================


class TestEscrowReads:
    """Tests for permissive reads."""

    def test_get_escrow_parties_only(self, escrows, account):
        assert escrows.get_escrow(LANDLORD, account.id).id == account.id
        assert escrows.get_escrow(OTHER_TENANT, account.id) is None
        assert escrows.get_escrow(ANONYMOUS, account.id) is None
        assert escrows.get_escrow(TENANT, 999) is None

    def test_get_timeline_parties_only(self, escrows, account):
        assert len(escrows.get_timeline(LANDLORD, account.id)) == 1
        assert escrows.get_timeline(ANONYMOUS, account.id) == []
        assert escrows.get_timeline(STRANGER, account.id) == []

    def test_get_escrows_for_role(self, escrows, account):
        assert [a.id for a in escrows.get_escrows_for(TENANT, Role.TENANT)] == [account.id]
        assert escrows.get_escrows_for(TENANT, Role.LANDLORD) == []
        assert [a.id for a in escrows.get_escrows_for(LANDLORD)] == [account.id]
        assert escrows.get_escrows_for(ANONYMOUS) == []


# =============================================================================
# Persist-then-Audit Tests
# =============================================================================


class TestAuditFailures:
    """Tests for the persist-then-audit ordering."""

    @pytest.fixture
    def flaky(self):
        return FlakyStore()

    @pytest.fixture
    def flaky_engine(self, clock, flaky):
        return make_engine(clock, store=flaky)

    def test_audit_failure_is_logged_and_transition_stands(self, flaky_engine, flaky, caplog):
        account = open_escrow(flaky_engine)
        flaky.fail_inserts_on = ESCROW_EVENTS_TABLE

        with caplog.at_level(logging.ERROR, logger="tenancy.escrow"):
            updated = flaky_engine.submit_deposit(TENANT, account.id, "0xabc")

        assert updated.status == EscrowStatus.UNDER_REVIEW
        assert flaky_engine.get_escrow(TENANT, account.id).status == EscrowStatus.UNDER_REVIEW
        assert "was not recorded" in caplog.text

        flaky.fail_inserts_on = None
        assert len(flaky_engine.get_timeline(TENANT, account.id)) == 1

    def test_persist_failure_writes_no_event(self, flaky_engine, flaky):
        account = open_escrow(flaky_engine)
        flaky.fail_updates_on = ESCROWS_TABLE

        with pytest.raises(StorageError):
            flaky_engine.submit_deposit(TENANT, account.id, "0xabc")

        flaky.fail_updates_on = None
        assert flaky_engine.get_escrow(TENANT, account.id).status == EscrowStatus.PENDING_SUBMISSION
        assert len(flaky_engine.get_timeline(TENANT, account.id)) == 1

    def test_failed_file_write_leaves_state_unchanged(self, clock):
        """A transition whose file write fails is invisible in memory and on disk."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "store.json"
            engine = make_engine(clock, store=JsonFileRecordStore(path))
            account = open_escrow(engine)

            blocker = Path(tmpdir) / "store.json.tmp"
            blocker.mkdir()
            with pytest.raises(StorageError):
                engine.submit_deposit(TENANT, account.id, "0xabc")

            assert engine.get_escrow(TENANT, account.id).status == EscrowStatus.PENDING_SUBMISSION
            assert len(engine.get_timeline(TENANT, account.id)) == 1

            blocker.rmdir()
            assert engine.submit_deposit(TENANT, account.id, "0xabc").status == EscrowStatus.UNDER_REVIEW

            reopened = make_engine(clock, store=JsonFileRecordStore(path))
            assert reopened.get_escrow(TENANT, account.id).status == EscrowStatus.UNDER_REVIEW
            assert reopened.verify_timeline(TENANT, account.id)["valid"] is True
