"""
Escrow Lifecycle - Security Deposit Custody State Machine

States:
    PendingSubmission -> UnderReview -> FundsSecured -> ActiveProtection
        -> RefundProcessing -> Completed

Side branches: Disputed, Cancelled, Expired.
Terminal: Completed, Cancelled, Expired.

Rules:
- Every mutating call authenticates the caller first
- Checks run in order: authentication, existence, ownership, state, arguments
- A successful transition persists the account, then appends exactly one
  timeline event stamped with the same time as updated_at
- A failed persist writes no event; a failed event append is logged and the
  transition still stands
- Expiry applies only while the deposit is unsecured (PendingSubmission,
  UnderReview) and only after the submission deadline
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from tenancy.context import EngineContext
from tenancy.errors import (
    DeadlineNotReached,
    Forbidden,
    InvalidRequest,
    InvalidState,
    NotFound,
    StorageError,
)
from tenancy.identity import Identity, require_authenticated, resolve_caller
from tenancy.schema import (
    DISPUTABLE_STATUSES,
    EXPIRABLE_STATUSES,
    DisputeResolution,
    EscrowAccount,
    EscrowEventType,
    EscrowStatus,
    EscrowTimelineEvent,
    Role,
    validate_amount,
)
from utils.formatting import format_currency

logger = logging.getLogger(__name__)


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{name} is required")
    return value.strip()


class EscrowLifecycle:
    """Escrow account operations over an engine context."""

    def __init__(self, ctx: EngineContext):
        self._ctx = ctx

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, escrow_id: int) -> EscrowAccount:
        account = self._ctx.escrows.get(escrow_id)
        if not account:
            raise NotFound("Escrow account not found")
        return account

    @staticmethod
    def _require_tenant(account: EscrowAccount, caller: Identity, message: str) -> None:
        if caller != account.tenant:
            logger.warning("Rejected %s on escrow %s: not tenant", caller, account.id)
            raise Forbidden(message)

    @staticmethod
    def _require_landlord(account: EscrowAccount, caller: Identity, message: str) -> None:
        if caller != account.landlord:
            logger.warning("Rejected %s on escrow %s: not landlord", caller, account.id)
            raise Forbidden(message)

    @staticmethod
    def _require_party(account: EscrowAccount, caller: Identity, message: str) -> None:
        if not account.is_party(caller):
            logger.warning("Rejected %s on escrow %s: not a party", caller, account.id)
            raise Forbidden(message)

    @staticmethod
    def _require_status(
        account: EscrowAccount,
        allowed: Iterable[EscrowStatus],
        message: str,
    ) -> None:
        if account.status not in allowed:
            raise InvalidState(message, current_status=account.status.value)

    def _record_event(
        self,
        account: EscrowAccount,
        event_type: EscrowEventType,
        title: str,
        description: str,
        actor: Optional[Identity],
        amount: Optional[int] = None,
        transaction_hash: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append the audit event for a persisted transition."""
        try:
            self._ctx.timeline.add_event(
                escrow_id=account.id,
                event_type=event_type,
                title=title,
                description=description,
                amount=amount,
                transaction_hash=transaction_hash,
                metadata=metadata,
                actor=actor,
                timestamp=account.updated_at,
            )
        except StorageError:
            logger.exception(
                "Escrow %s moved to %s but its %s event was not recorded",
                account.id,
                account.status.value,
                event_type.value,
            )

    def _apply(
        self,
        account: EscrowAccount,
        target: EscrowStatus,
        actor: Optional[Identity],
        event_type: EscrowEventType,
        title: str,
        description: str,
        amount: Optional[int] = None,
        transaction_hash: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EscrowAccount:
        """Transition, persist, then audit."""
        previous = account.status
        account.transition(target, self._ctx.now())
        self._ctx.escrows.save(account)
        self._record_event(
            account, event_type, title, description, actor,
            amount=amount, transaction_hash=transaction_hash, metadata=metadata,
        )
        logger.info(
            "Escrow %s: %s -> %s by %s",
            account.id, previous.value, target.value, actor or "system",
        )
        return account

    def _money(self, amount: int) -> str:
        return format_currency(amount, self._ctx.settings.currency)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_escrow(
        self,
        caller,
        rental_id: int,
        property_id: int,
        landlord,
        tenant,
        amount: int,
    ) -> EscrowAccount:
        """
        Open an escrow account awaiting the tenant's deposit.

        The account mirrors its rental agreement: same property, same
        parties and the agreed deposit. The submission deadline is fixed at
        creation time plus the configured submission window.

        Raises:
            Unauthenticated: Anonymous caller
            NotFound: Unknown rental
            Forbidden: Caller is not a party to the rental
            InvalidState: Rental is closed or already has an escrow account
            InvalidRequest: Negative amount, or terms that differ from the rental
        """
        actor = require_authenticated(caller)

        with self._ctx.lock:
            rental = self._ctx.rentals.get(rental_id)
            if not rental:
                raise NotFound(f"Rental {rental_id} not found")
            if not rental.is_party(actor):
                logger.warning("Rejected %s opening escrow for rental %s", actor, rental_id)
                raise Forbidden("Only landlord or tenant can open the deposit escrow")
            if rental.is_terminal:
                raise InvalidState(
                    f"Rental {rental_id} is closed", current_status=rental.status.value
                )
            existing = self._ctx.escrows.find_for_rental(rental_id)
            if existing:
                raise InvalidState(
                    f"Rental {rental_id} already has escrow account {existing.id}",
                    current_status=existing.status.value,
                )

            validate_amount(amount, "amount")
            terms = (property_id, resolve_caller(landlord), resolve_caller(tenant), amount)
            agreed = (rental.property_id, rental.landlord, rental.tenant, rental.deposit_amount)
            if terms != agreed:
                raise InvalidRequest(
                    f"Escrow terms must match rental {rental_id} "
                    "(property, landlord, tenant and deposit)"
                )

            now = self._ctx.now()
            account = self._ctx.escrows.create(
                lambda escrow_id: EscrowAccount.open(
                    id=escrow_id,
                    rental_id=rental_id,
                    property_id=rental.property_id,
                    landlord=rental.landlord,
                    tenant=rental.tenant,
                    amount=rental.deposit_amount,
                    now=now,
                    submission_window_ns=self._ctx.settings.submission_window_ns,
                )
            )
            self._record_event(
                account,
                EscrowEventType.CREATED,
                "Escrow Account Created",
                "Security deposit escrow account has been created for this rental agreement",
                actor,
                amount=amount,
            )
            logger.info(
                "Escrow %s created for rental %s (%s)", account.id, rental_id, self._money(amount)
            )
            return account

    # =========================================================================
    # Main Path
    # =========================================================================

    def submit_deposit(self, caller, escrow_id: int, tx_ref: str) -> EscrowAccount:
        """Tenant submits the deposit (PendingSubmission -> UnderReview)."""
        tenant = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_tenant(account, tenant, "Only the tenant can submit the security deposit")
            self._require_status(
                account,
                {EscrowStatus.PENDING_SUBMISSION},
                "Security deposit has already been submitted or escrow is not in pending state",
            )
            account.transaction_hash = _require_text(tx_ref, "transaction reference")
            return self._apply(
                account,
                EscrowStatus.UNDER_REVIEW,
                tenant,
                EscrowEventType.DEPOSIT_SUBMITTED,
                "Security Deposit Submitted",
                "Tenant has submitted the security deposit for review",
                amount=account.amount,
                transaction_hash=account.transaction_hash,
            )

    def approve_deposit(self, caller, escrow_id: int, custody_ref: str) -> EscrowAccount:
        """Landlord accepts the deposit into custody (UnderReview -> FundsSecured)."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_landlord(
                account, landlord, "Only the landlord can approve the security deposit"
            )
            self._require_status(
                account,
                {EscrowStatus.UNDER_REVIEW},
                "Security deposit has not been submitted yet",
            )
            account.smart_contract_address = _require_text(custody_ref, "custody reference")
            return self._apply(
                account,
                EscrowStatus.FUNDS_SECURED,
                landlord,
                EscrowEventType.LANDLORD_APPROVAL,
                "Deposit Approved",
                "Landlord has approved the security deposit and funds are secured",
                amount=account.amount,
                metadata={"custody_ref": account.smart_contract_address},
            )

    def activate_protection(self, caller, escrow_id: int) -> EscrowAccount:
        """Landlord starts lease-long protection (FundsSecured -> ActiveProtection)."""
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_landlord(
                account, landlord, "Only the landlord can activate escrow protection"
            )
            self._require_status(
                account,
                {EscrowStatus.FUNDS_SECURED},
                "Funds must be secured before activating protection",
            )
            return self._apply(
                account,
                EscrowStatus.ACTIVE_PROTECTION,
                landlord,
                EscrowEventType.LEASE_ACTIVATED,
                "Escrow Protection Activated",
                "Escrow protection is now active for the duration of the lease",
            )

    def initiate_refund(self, caller, escrow_id: int, refund_amount: int) -> EscrowAccount:
        """
        Landlord starts the refund (ActiveProtection -> RefundProcessing).

        Raises:
            InvalidRequest: Negative amount, or above the deposit while the
                refund ceiling is enforced
        """
        landlord = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_landlord(account, landlord, "Only the landlord can initiate the refund")
            self._require_status(
                account,
                {EscrowStatus.ACTIVE_PROTECTION},
                "Escrow must be in active protection to initiate refund",
            )
            validate_amount(refund_amount, "refund_amount")
            if self._ctx.settings.enforce_refund_ceiling and refund_amount > account.amount:
                raise InvalidRequest(
                    f"Refund {self._money(refund_amount)} exceeds deposit {self._money(account.amount)}"
                )

            account.refund_amount = refund_amount
            return self._apply(
                account,
                EscrowStatus.REFUND_PROCESSING,
                landlord,
                EscrowEventType.REFUND_INITIATED,
                "Refund Processing",
                f"Refund of {self._money(refund_amount)} has been initiated",
                amount=refund_amount,
            )

    def complete_refund(self, caller, escrow_id: int, tx_ref: str) -> EscrowAccount:
        """Finalise the refund (RefundProcessing -> Completed). Any authenticated caller."""
        actor = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_status(
                account,
                {EscrowStatus.REFUND_PROCESSING},
                "No refund is currently processing for this escrow",
            )
            account.transaction_hash = _require_text(tx_ref, "transaction reference")
            return self._apply(
                account,
                EscrowStatus.COMPLETED,
                actor,
                EscrowEventType.REFUND_COMPLETED,
                "Refund Completed",
                "Security deposit refund has been completed successfully",
                amount=account.refund_amount,
                transaction_hash=account.transaction_hash,
            )

    # =========================================================================
    # Expiry
    # =========================================================================

    def _expire(self, account: EscrowAccount) -> EscrowAccount:
        return self._apply(
            account,
            EscrowStatus.EXPIRED,
            None,
            EscrowEventType.EXPIRED,
            "Escrow Expired",
            "Escrow account expired due to deadline",
            metadata={"submission_deadline": account.submission_deadline},
        )

    def expire_escrow(self, caller, escrow_id: int) -> EscrowAccount:
        """
        Expire an account whose deposit was never secured.

        State is checked before the deadline, so expiring twice yields
        InvalidState the second time.

        Raises:
            InvalidState: Account is not PendingSubmission or UnderReview
            DeadlineNotReached: Submission deadline has not passed
        """
        require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_status(
                account,
                EXPIRABLE_STATUSES,
                "Escrow cannot expire once funds are secured or the account is closed",
            )
            if self._ctx.now() <= account.submission_deadline:
                raise DeadlineNotReached(
                    f"Escrow {escrow_id} submission deadline has not passed"
                )
            return self._expire(account)

    def expire_overdue_escrows(self, caller) -> list[EscrowAccount]:
        """Expire every expirable account past its deadline. Safe to repeat."""
        require_authenticated(caller)
        with self._ctx.lock:
            overdue = self._ctx.escrows.list_past_deadline(EXPIRABLE_STATUSES, self._ctx.now())
            expired = [self._expire(account) for account in overdue]
            if expired:
                logger.info("Sweep expired %d escrow account(s)", len(expired))
            return expired

    # =========================================================================
    # Disputes and Cancellation
    # =========================================================================

    def raise_dispute(self, caller, escrow_id: int, reason: str) -> EscrowAccount:
        """Either party freezes the account pending resolution."""
        party = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_party(account, party, "Only the landlord or tenant can raise a dispute")
            self._require_status(
                account,
                DISPUTABLE_STATUSES,
                "Escrow is not in a state that can be disputed",
            )
            account.dispute_reason = _require_text(reason, "dispute reason")
            account.status_before_dispute = account.status
            return self._apply(
                account,
                EscrowStatus.DISPUTED,
                party,
                EscrowEventType.DISPUTE_RAISED,
                "Dispute Raised",
                f"A dispute has been raised: {account.dispute_reason}",
                metadata={"status_before_dispute": account.status_before_dispute.value},
            )

    def resolve_dispute(self, caller, escrow_id: int, note: Optional[str] = None) -> EscrowAccount:
        """
        Either party closes a dispute under the configured policy.

        restore returns the account to its pre-dispute status; cancel forces
        Cancelled.
        """
        party = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_party(account, party, "Only the landlord or tenant can resolve a dispute")
            self._require_status(account, {EscrowStatus.DISPUTED}, "Escrow is not in dispute")

            policy = self._ctx.settings.dispute_resolution
            if policy == DisputeResolution.RESTORE and account.status_before_dispute:
                target = account.status_before_dispute
                description = f"Dispute resolved; escrow restored to {target.value}"
            else:
                target = EscrowStatus.CANCELLED
                description = "Dispute resolved; escrow cancelled"

            metadata: dict[str, Any] = {"policy": policy.value, "outcome": target.value}
            if note:
                metadata["note"] = note
            return self._apply(
                account,
                target,
                party,
                EscrowEventType.DISPUTE_RESOLVED,
                "Dispute Resolved",
                description,
                metadata=metadata,
            )

    def cancel_escrow(self, caller, escrow_id: int, reason: Optional[str] = None) -> EscrowAccount:
        """Either party withdraws an account before the deposit is submitted."""
        party = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_party(account, party, "Only the landlord or tenant can cancel the escrow")
            self._require_status(
                account,
                {EscrowStatus.PENDING_SUBMISSION},
                "Only escrows awaiting the deposit can be cancelled",
            )
            return self._apply(
                account,
                EscrowStatus.CANCELLED,
                party,
                EscrowEventType.CANCELLED,
                "Escrow Cancelled",
                reason or "Escrow account has been cancelled before the deposit was submitted",
            )

    # =========================================================================
    # Read Operations
    # =========================================================================

    def get_escrow(self, caller, escrow_id: int) -> Optional[EscrowAccount]:
        """The account if the caller is a party to it, else None."""
        viewer = resolve_caller(caller)
        if viewer.is_anonymous:
            return None
        with self._ctx.lock:
            account = self._ctx.escrows.get(escrow_id)
            if not account or not account.is_party(viewer):
                return None
            return account

    def get_escrow_for_rental(self, caller, rental_id: int) -> Optional[EscrowAccount]:
        viewer = resolve_caller(caller)
        if viewer.is_anonymous:
            return None
        with self._ctx.lock:
            account = self._ctx.escrows.find_for_rental(rental_id)
            if not account or not account.is_party(viewer):
                return None
            return account

    def get_escrows_for(self, caller, role: Optional[Role] = None) -> list[EscrowAccount]:
        """Accounts where the caller holds the given role (both sides when None)."""
        viewer = resolve_caller(caller)
        if viewer.is_anonymous:
            return []
        with self._ctx.lock:
            if role == Role.LANDLORD:
                return self._ctx.escrows.list_by_landlord(viewer)
            if role == Role.TENANT:
                return self._ctx.escrows.list_by_tenant(viewer)
            return [a for a in self._ctx.escrows.list_all() if a.is_party(viewer)]

    def get_timeline(
        self,
        caller,
        escrow_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[EscrowTimelineEvent]:
        """Ordered events of an account; [] unless the caller is a party."""
        if self.get_escrow(caller, escrow_id) is None:
            return []
        with self._ctx.lock:
            return self._ctx.timeline.events_for(escrow_id, offset=offset, limit=limit)

    def verify_timeline(self, caller, escrow_id: int) -> dict[str, Any]:
        """Check the hash chain of an account's timeline."""
        viewer = require_authenticated(caller)
        with self._ctx.lock:
            account = self._load(escrow_id)
            self._require_party(account, viewer, "Access denied")
            return self._ctx.timeline.verify_chain(escrow_id)
