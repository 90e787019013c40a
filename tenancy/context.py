"""
Engine Context - Shared Handles for Both Lifecycles

One context is built per engine and passed explicitly to every lifecycle.
There is no module-level state: the store, collaborators, clock and lock all
live here.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from tenancy.collaborators import PropertyDirectory, ReceiptMinter, RoleDirectory
from tenancy.errors import InvalidRequest
from tenancy.repository import EscrowRepository, RentalRepository
from tenancy.schema import NANOS_PER_SECOND, DisputeResolution, SUBMISSION_WINDOW_NS
from tenancy.storage import RecordStore
from tenancy.timeline import EscrowTimeline, RentalHistory

Clock = Callable[[], int]

SECONDS_PER_DAY = 24 * 60 * 60


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class LifecycleSettings:
    """Policy knobs for the lifecycles."""

    submission_window_ns: int = SUBMISSION_WINDOW_NS
    dispute_resolution: DisputeResolution = DisputeResolution.RESTORE
    enforce_refund_ceiling: bool = True
    open_escrow_on_confirm: bool = True
    currency: str = "INR"

    @classmethod
    def from_config(cls, config) -> "LifecycleSettings":
        """
        Build settings from a utils.config.Config.

        Raises:
            InvalidRequest: If the dispute policy or window is not recognised
        """
        try:
            resolution = DisputeResolution(config.dispute_resolution)
        except ValueError:
            raise InvalidRequest(
                f"Unknown dispute resolution policy: {config.dispute_resolution}"
            ) from None
        if config.submission_window_days <= 0:
            raise InvalidRequest("submission_window_days must be positive")

        return cls(
            submission_window_ns=config.submission_window_days * SECONDS_PER_DAY * NANOS_PER_SECOND,
            dispute_resolution=resolution,
            enforce_refund_ceiling=config.enforce_refund_ceiling,
            open_escrow_on_confirm=config.open_escrow_on_confirm,
            currency=config.currency,
        )


# =============================================================================
# Context
# =============================================================================


@dataclass
class EngineContext:
    """
    Everything a lifecycle operation touches.

    The lock guards each load-validate-mutate-persist-audit sequence. It is
    re-entrant so coupled follow-ups can run inside the outer operation.
    """

    store: RecordStore
    properties: PropertyDirectory
    roles: RoleDirectory
    receipts: ReceiptMinter
    clock: Clock = time.time_ns
    settings: LifecycleSettings = field(default_factory=LifecycleSettings)
    lock: threading.RLock = field(default_factory=threading.RLock)

    rentals: RentalRepository = field(init=False)
    escrows: EscrowRepository = field(init=False)
    timeline: EscrowTimeline = field(init=False)
    history: RentalHistory = field(init=False)

    def __post_init__(self) -> None:
        self.rentals = RentalRepository(self.store)
        self.escrows = EscrowRepository(self.store)
        self.timeline = EscrowTimeline(self.store, self.clock)
        self.history = RentalHistory(self.store)

    def now(self) -> int:
        return self.clock()


def build_context(
    store: RecordStore,
    properties: PropertyDirectory,
    roles: RoleDirectory,
    receipts: ReceiptMinter,
    clock: Optional[Clock] = None,
    settings: Optional[LifecycleSettings] = None,
) -> EngineContext:
    """Build a context, defaulting the clock to wall time."""
    return EngineContext(
        store=store,
        properties=properties,
        roles=roles,
        receipts=receipts,
        clock=clock or time.time_ns,
        settings=settings or LifecycleSettings(),
    )
