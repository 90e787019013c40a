"""
Escrow Statistics - Dashboard Aggregation

Pure read-side projection over one identity's escrow accounts.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional

from tenancy.identity import Identity
from tenancy.schema import EscrowAccount, EscrowStatus, Role

ACTIVE_CUSTODY = frozenset({EscrowStatus.FUNDS_SECURED, EscrowStatus.ACTIVE_PROTECTION})
PENDING = frozenset({EscrowStatus.PENDING_SUBMISSION, EscrowStatus.UNDER_REVIEW})


@dataclass(frozen=True)
class EscrowStatistics:
    """Bucketed escrow counts and amounts for one identity."""

    total: int = 0
    active: int = 0
    pending: int = 0
    completed: int = 0
    overdue: int = 0
    disputed: int = 0
    amount_held: int = 0
    total_deposits: int = 0
    role: Optional[Role] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value if self.role else None
        return data


def pick_role(as_tenant: int, as_landlord: int) -> Role:
    """Guess the side to report when no role is given: tenant wins ties."""
    return Role.TENANT if as_tenant >= as_landlord else Role.LANDLORD


def summarize(accounts: Iterable[EscrowAccount], now: int, role: Optional[Role] = None) -> EscrowStatistics:
    """Aggregate a set of accounts."""
    accounts = list(accounts)
    return EscrowStatistics(
        total=len(accounts),
        active=sum(1 for a in accounts if a.status in ACTIVE_CUSTODY),
        pending=sum(1 for a in accounts if a.status in PENDING),
        completed=sum(1 for a in accounts if a.status == EscrowStatus.COMPLETED),
        overdue=sum(1 for a in accounts if a.is_overdue(now)),
        disputed=sum(1 for a in accounts if a.status == EscrowStatus.DISPUTED),
        amount_held=sum(a.amount for a in accounts if a.is_holding_funds),
        total_deposits=sum(a.amount for a in accounts),
        role=role,
    )


def compute_escrow_statistics(
    identity: Identity,
    accounts: Iterable[EscrowAccount],
    now: int,
    role: Optional[Role] = None,
) -> EscrowStatistics:
    """
    Statistics for identity's accounts on one side.

    Args:
        identity: Viewer; anonymous viewers get zeroed statistics
        accounts: Candidate accounts (only those identity is party to count)
        now: Current time for the overdue bucket
        role: Side to report; when None the side with more accounts is used
    """
    if identity.is_anonymous:
        return EscrowStatistics(role=role)

    accounts = list(accounts)
    as_tenant = [a for a in accounts if a.tenant == identity]
    as_landlord = [a for a in accounts if a.landlord == identity]

    if role is None:
        role = pick_role(len(as_tenant), len(as_landlord))

    chosen = as_tenant if role == Role.TENANT else as_landlord
    return summarize(chosen, now, role)
