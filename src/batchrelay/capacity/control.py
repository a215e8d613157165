from __future__ import annotations

import typing as t
from dataclasses import dataclass

import structlog
from sqlalchemy import func, select

from batchrelay.db.models import Batch
from batchrelay.status import ACTIVE_RESERVATION_STATES

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.capacity.limits import RateLimits

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CapacityDecision:
    admit: bool
    limit: int
    source: str
    reserved: int
    headroom: int
    needed: int

    def as_log_context(self) -> dict[str, t.Any]:
        return {
            "limit": self.limit,
            "limit_source": self.source,
            "reserved": self.reserved,
            "headroom": self.headroom,
            "needed": self.needed,
        }


def reserved_tokens_for_model(
    session: "Session", model: str, *, exclude_batch_id: int | None = None
) -> int:
    """
    Sum the estimated tokens of the model's batches already holding provider
    queue headroom.
    """
    stmt = select(func.coalesce(func.sum(Batch.estimated_token_total), 0)).where(
        Batch.model == model,
        Batch.state.in_(ACTIVE_RESERVATION_STATES),
    )
    if exclude_batch_id is not None:
        stmt = stmt.where(Batch.id != exclude_batch_id)
    return int(session.execute(stmt).scalar_one())


class CapacityControl:
    """
    Decide whether a batch may be submitted to the provider now.

    Parameters
    ----------
    rate_limits : RateLimits
        Resolves the model's token budget.
    """

    def __init__(self, rate_limits: "RateLimits") -> None:
        self.rate_limits = rate_limits

    def decision(self, session: "Session", batch: Batch) -> CapacityDecision:
        budget = self.rate_limits.budget_for(batch.model, session=session)
        reserved = reserved_tokens_for_model(session, batch.model, exclude_batch_id=batch.id)
        headroom = max(budget.limit - reserved, 0)
        needed = batch.estimated_token_total or 0
        decision = CapacityDecision(
            admit=needed <= headroom,
            limit=budget.limit,
            source=budget.source,
            reserved=reserved,
            headroom=headroom,
            needed=needed,
        )
        log.debug(
            event="Capacity decision",
            batch_id=batch.id,
            model=batch.model,
            admit=decision.admit,
            **decision.as_log_context(),
        )
        return decision

