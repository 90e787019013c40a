"""
Tenancy Engine - Facade over the Rental and Escrow Lifecycles

Exposes every lifecycle operation with the caller identity as the first
argument, and couples the two state machines:

- Confirming a rental opens its escrow for the agreed deposit (configurable)
- Rejecting or cancelling a rental cancels an escrow still awaiting the
  deposit, and is refused while the deposit is submitted or held
- Activating escrow protection activates a Confirmed rental
- Completing the refund completes an Active rental

Coupling only follows an escrow whose property and parties match its rental.

Coupled follow-ups run under the same lock as the call that triggered them
and each records its own audit entry.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from tenancy.collaborators import (
    PropertyDirectory,
    PropertyRegistry,
    ReceiptMinter,
    ReceiptRegistry,
    RoleDirectory,
    UserRegistry,
)
from tenancy.context import Clock, EngineContext, LifecycleSettings, build_context
from tenancy.errors import InvalidState
from tenancy.escrow import EscrowLifecycle
from tenancy.identity import resolve_caller
from tenancy.rentals import RentalLifecycle
from tenancy.schema import (
    EscrowAccount,
    EscrowStatus,
    EscrowTimelineEvent,
    RentalAgreement,
    RentalStatus,
    RentalStatusChange,
    Role,
)
from tenancy.statistics import EscrowStatistics, compute_escrow_statistics
from tenancy.storage import JsonFileRecordStore, RecordStore
from utils.config import Config

logger = logging.getLogger(__name__)


class TenancyEngine:
    """Single entry point for rental and escrow operations."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.rental_lifecycle = RentalLifecycle(ctx)
        self.escrow_lifecycle = EscrowLifecycle(ctx)

    @property
    def properties(self) -> PropertyDirectory:
        return self.ctx.properties

    @property
    def roles(self) -> RoleDirectory:
        return self.ctx.roles

    @property
    def receipts(self) -> ReceiptMinter:
        return self.ctx.receipts

    @property
    def settings(self) -> LifecycleSettings:
        return self.ctx.settings

    # =========================================================================
    # Coupling Helpers
    # =========================================================================

    @staticmethod
    def _is_linked(account: EscrowAccount, rental: RentalAgreement) -> bool:
        """The account holds this agreement's deposit between the same parties."""
        return (
            account.rental_id == rental.id
            and account.property_id == rental.property_id
            and account.landlord == rental.landlord
            and account.tenant == rental.tenant
        )

    def _linked_rental(self, account: EscrowAccount) -> Optional[RentalAgreement]:
        rental = self.ctx.rentals.get(account.rental_id)
        if rental and not self._is_linked(account, rental):
            logger.warning(
                "Escrow %s does not match rental %s; lease left unchanged",
                account.id,
                rental.id,
            )
            return None
        return rental

    def _linked_escrow(self, rental: RentalAgreement) -> Optional[EscrowAccount]:
        account = self.ctx.escrows.find_for_rental(rental.id)
        if account and self._is_linked(account, rental):
            return account
        return None

    def _require_deposit_settled(self, caller, rental_id: int) -> None:
        """
        Refuse to close a rental while its deposit is submitted or held.

        Callers who are not a party fall through to the rental checks, which
        raise the matching authentication or ownership error.
        """
        rental = self.ctx.rentals.get(rental_id)
        if not rental or not rental.is_party(resolve_caller(caller)):
            return
        account = self._linked_escrow(rental)
        if account and account.status != EscrowStatus.PENDING_SUBMISSION and not account.is_terminal:
            raise InvalidState(
                f"Deposit escrow {account.id} must be settled before rental {rental.id} is closed",
                current_status=account.status.value,
            )

    def _cancel_pending_escrow(self, caller, rental: RentalAgreement) -> None:
        account = self._linked_escrow(rental)
        if (
            account
            and account.status == EscrowStatus.PENDING_SUBMISSION
            and account.is_party(resolve_caller(caller))
        ):
            self.escrow_lifecycle.cancel_escrow(
                caller, account.id, f"Rental {rental.id} was {rental.status.value}"
            )

    # =========================================================================
    # Rental Operations
    # =========================================================================

    def create_rental_request(
        self, caller, property_id: int, start_date: int, end_date: int
    ) -> RentalAgreement:
        return self.rental_lifecycle.create_rental_request(caller, property_id, start_date, end_date)

    def mark_under_review(self, caller, rental_id: int) -> RentalAgreement:
        return self.rental_lifecycle.mark_under_review(caller, rental_id)

    def approve_rental(self, caller, rental_id: int) -> RentalAgreement:
        return self.rental_lifecycle.approve_rental(caller, rental_id)

    def reject_rental(self, caller, rental_id: int) -> RentalAgreement:
        with self.ctx.lock:
            self._require_deposit_settled(caller, rental_id)
            rental = self.rental_lifecycle.reject_rental(caller, rental_id)
            self._cancel_pending_escrow(caller, rental)
            return rental

    def confirm_rental(self, caller, rental_id: int) -> RentalAgreement:
        """Confirm, mint the receipt and (by default) open the deposit escrow."""
        with self.ctx.lock:
            rental = self.rental_lifecycle.confirm_rental(caller, rental_id)
            if self.settings.open_escrow_on_confirm and not self.ctx.escrows.find_for_rental(rental.id):
                self.escrow_lifecycle.create_escrow(
                    caller,
                    rental_id=rental.id,
                    property_id=rental.property_id,
                    landlord=rental.landlord,
                    tenant=rental.tenant,
                    amount=rental.deposit_amount,
                )
            return rental

    def activate_rental(self, caller, rental_id: int) -> RentalAgreement:
        return self.rental_lifecycle.activate_rental(caller, rental_id)

    def complete_rental(self, caller, rental_id: int) -> RentalAgreement:
        return self.rental_lifecycle.complete_rental(caller, rental_id)

    def cancel_rental(self, caller, rental_id: int) -> RentalAgreement:
        with self.ctx.lock:
            self._require_deposit_settled(caller, rental_id)
            rental = self.rental_lifecycle.cancel_rental(caller, rental_id)
            self._cancel_pending_escrow(caller, rental)
            return rental

    def get_rental(self, caller, rental_id: int) -> RentalAgreement:
        return self.rental_lifecycle.get_rental(caller, rental_id)

    def get_rentals_for(self, caller) -> list[RentalAgreement]:
        return self.rental_lifecycle.get_rentals_for(caller)

    def get_pending_requests_for_landlord(self, caller) -> list[RentalAgreement]:
        return self.rental_lifecycle.get_pending_requests_for_landlord(caller)

    def get_approved_for_tenant(self, caller) -> list[RentalAgreement]:
        return self.rental_lifecycle.get_approved_for_tenant(caller)

    def get_rental_history(self, caller, rental_id: int) -> list[RentalStatusChange]:
        return self.rental_lifecycle.get_rental_history(caller, rental_id)

    # =========================================================================
    # Escrow Operations
    # =========================================================================

    def create_escrow(
        self, caller, rental_id: int, property_id: int, landlord, tenant, amount: int
    ) -> EscrowAccount:
        return self.escrow_lifecycle.create_escrow(
            caller, rental_id, property_id, landlord, tenant, amount
        )

    def submit_deposit(self, caller, escrow_id: int, tx_ref: str) -> EscrowAccount:
        return self.escrow_lifecycle.submit_deposit(caller, escrow_id, tx_ref)

    def approve_deposit(self, caller, escrow_id: int, custody_ref: str) -> EscrowAccount:
        return self.escrow_lifecycle.approve_deposit(caller, escrow_id, custody_ref)

    def activate_protection(self, caller, escrow_id: int) -> EscrowAccount:
        """Activate protection and start the linked lease if it is Confirmed."""
        with self.ctx.lock:
            account = self.escrow_lifecycle.activate_protection(caller, escrow_id)
            rental = self._linked_rental(account)
            if rental and rental.status == RentalStatus.CONFIRMED:
                self.rental_lifecycle.activate_rental(caller, rental.id)
            return account

    def initiate_refund(self, caller, escrow_id: int, refund_amount: int) -> EscrowAccount:
        return self.escrow_lifecycle.initiate_refund(caller, escrow_id, refund_amount)

    def complete_refund(self, caller, escrow_id: int, tx_ref: str) -> EscrowAccount:
        """Complete the refund and close the linked lease if it is Active."""
        with self.ctx.lock:
            account = self.escrow_lifecycle.complete_refund(caller, escrow_id, tx_ref)
            rental = self._linked_rental(account)
            if rental and rental.status == RentalStatus.ACTIVE:
                self.rental_lifecycle.complete_after_refund(caller, rental.id)
            return account

    def expire_escrow(self, caller, escrow_id: int) -> EscrowAccount:
        return self.escrow_lifecycle.expire_escrow(caller, escrow_id)

    def expire_overdue_escrows(self, caller) -> list[EscrowAccount]:
        return self.escrow_lifecycle.expire_overdue_escrows(caller)

    def raise_dispute(self, caller, escrow_id: int, reason: str) -> EscrowAccount:
        return self.escrow_lifecycle.raise_dispute(caller, escrow_id, reason)

    def resolve_dispute(self, caller, escrow_id: int, note: Optional[str] = None) -> EscrowAccount:
        return self.escrow_lifecycle.resolve_dispute(caller, escrow_id, note)

    def cancel_escrow(self, caller, escrow_id: int, reason: Optional[str] = None) -> EscrowAccount:
        return self.escrow_lifecycle.cancel_escrow(caller, escrow_id, reason)

    def get_escrow(self, caller, escrow_id: int) -> Optional[EscrowAccount]:
        return self.escrow_lifecycle.get_escrow(caller, escrow_id)

    def get_escrow_for_rental(self, caller, rental_id: int) -> Optional[EscrowAccount]:
        return self.escrow_lifecycle.get_escrow_for_rental(caller, rental_id)

    def get_escrows_for(self, caller, role: Optional[Role] = None) -> list[EscrowAccount]:
        return self.escrow_lifecycle.get_escrows_for(caller, role)

    def get_timeline(
        self, caller, escrow_id: int, offset: int = 0, limit: Optional[int] = None
    ) -> list[EscrowTimelineEvent]:
        return self.escrow_lifecycle.get_timeline(caller, escrow_id, offset, limit)

    def verify_timeline(self, caller, escrow_id: int) -> dict[str, Any]:
        return self.escrow_lifecycle.verify_timeline(caller, escrow_id)

    def get_statistics(self, caller, role: Optional[Role] = None) -> EscrowStatistics:
        """Dashboard statistics; zeroed for anonymous callers."""
        viewer = resolve_caller(caller)
        accounts = self.escrow_lifecycle.get_escrows_for(viewer)
        return compute_escrow_statistics(viewer, accounts, self.ctx.now(), role)


# =============================================================================
# Factory
# =============================================================================


def build_engine(
    config: Optional[Config] = None,
    store: Optional[RecordStore] = None,
    properties: Optional[PropertyDirectory] = None,
    roles: Optional[RoleDirectory] = None,
    receipts: Optional[ReceiptMinter] = None,
    clock: Optional[Clock] = None,
) -> TenancyEngine:
    """
    Build an engine from configuration.

    Defaults: a JSON file store under config.data_dir and in-memory
    property, user and receipt registries.
    """
    config = config or Config.load()
    if store is None:
        store = JsonFileRecordStore(Path(config.data_dir) / config.store_filename)
    properties = properties or PropertyRegistry()
    roles = roles or UserRegistry()
    if receipts is None:
        receipts = ReceiptRegistry(properties, clock) if clock else ReceiptRegistry(properties)

    ctx = build_context(
        store=store,
        properties=properties,
        roles=roles,
        receipts=receipts,
        clock=clock,
        settings=LifecycleSettings.from_config(config),
    )
    logger.info(
        "Tenancy engine ready (store=%s, dispute_resolution=%s)",
        type(store).__name__,
        ctx.settings.dispute_resolution.value,
    )
    return TenancyEngine(ctx)
