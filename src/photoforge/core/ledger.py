"""Hybrid free-trial / paid-credit accounting.

Every user has a fixed lifetime free allowance ``F`` and a paid balance.  A
request for ``n`` items is split as::

    free_remaining = max(0, F - free_used)
    free_applied   = min(n, free_remaining)
    paid_applied   = n - free_applied

If ``paid_applied`` exceeds the paid balance the request is rejected with
:class:`~photoforge.core.errors.InsufficientCredits` before any generation
work happens.  Settlement is deferred until every output has been generated
and is applied by the store together with job completion.

Usage
-----
::

    ledger = CreditLedger(store, free_allowance=3)
    split = ledger.preview("user-1", 5)      # CreditPreview(free=3, paid=2)
    ...
    ledger.commit("user-1", split, job_id=job.id, download_url=url)
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from .errors import InsufficientCredits
from .job_store import CreditBalance, JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPreview:
    """How a request is split between the free allowance and paid credits."""

    free_applied: int
    paid_applied: int

    @property
    def total(self) -> int:
        return self.free_applied + self.paid_applied


def preview_credits(
    free_used: int, free_allowance: int, credits: Decimal, requested: int
) -> CreditPreview:
    """Split a request between free allowance and paid credits.

    This is a pure function of its arguments.

    Args:
        free_used: Free items the user has already consumed
        free_allowance: Lifetime free items per user
        credits: Paid balance
        requested: Number of items in the request

    Returns:
        The split, with ``free_applied + paid_applied == requested``

    Raises:
        ValueError: If ``requested`` is negative
        InsufficientCredits: If the paid part exceeds ``credits``
    """
    if requested < 0:
        raise ValueError("requested must be non-negative")

    free_remaining = max(0, free_allowance - free_used)
    free_applied = min(requested, free_remaining)
    paid_applied = requested - free_applied

    if paid_applied > Decimal(credits):
        raise InsufficientCredits(needed=paid_applied, balance=credits)

    return CreditPreview(free_applied=free_applied, paid_applied=paid_applied)


class CreditLedger:
    """Credit preview and settlement backed by a :class:`JobStore`."""

    def __init__(self, store: JobStore, free_allowance: int):
        self._store = store
        self.free_allowance = free_allowance

    def balance(self, user_id: str) -> CreditBalance:
        return self._store.read_credit_balance(user_id)

    def preview(self, user_id: str, requested: int) -> CreditPreview:
        """Compute the split for ``requested`` items against the current balance.

        No state changes; the balance row is created lazily if missing.
        """
        balance = self._store.read_credit_balance(user_id)
        split = preview_credits(balance.free_used, self.free_allowance, balance.credits, requested)
        logger.debug(
            "Credit preview for %s: %d free, %d paid (free_used=%d, credits=%s)",
            user_id,
            split.free_applied,
            split.paid_applied,
            balance.free_used,
            balance.credits,
        )
        return split

    def commit(
        self,
        user_id: str,
        split: CreditPreview,
        *,
        job_id: int,
        download_url: str,
    ) -> CreditBalance:
        """Debit the split and complete the job in one atomic step.

        Raises:
            InsufficientCredits: If the balance changed since the preview
            PersistenceError: If the job is no longer processing
        """
        return self._store.atomic_settle_credits(
            user_id,
            split.free_applied,
            split.paid_applied,
            self.free_allowance,
            job_id=job_id,
            download_url=download_url,
        )
