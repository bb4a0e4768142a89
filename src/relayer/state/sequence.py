"""
Sequence Manager - owns the relayer account's nonce.

Every batch transaction from the relayer needs exactly one nonce, issued in
strictly increasing order with no gaps and no reuse. This module is the only
place that allocates them.
"""

import asyncio
from typing import List, Optional, Set

import structlog

from relayer.chain.interface import ChainInterface
from relayer.core.deadline import Deadline

logger = structlog.get_logger(__name__)


class SequenceConflictError(RuntimeError):
    """
    Raised when the nonce protocol is violated.

    The local counter can no longer be trusted after this, so the manager
    halts and refuses every later call.
    """
    pass


class SequenceHaltedError(SequenceConflictError):
    """Raised by any call made after the manager halted."""
    pass


class SequenceManager:
    """
    Allocates relayer nonces.

    Protocol per nonce: ``reserve_next`` then exactly one of ``confirm``
    (broadcast accepted), ``release`` (nothing was broadcast) or
    ``mark_indeterminate`` (broadcast attempted, outcome unknown).

    ``reserve_next`` is serialized by an asyncio lock. The settling calls are
    synchronous and therefore atomic on the event loop.
    """

    def __init__(self, chain: ChainInterface, address: str):
        """
        Initialize the sequence manager.

        Args:
            chain: Node interface used to read the account's nonce
            address: Relayer account address
        """
        self.chain = chain
        self.address = address

        self._lock = asyncio.Lock()

        # Next nonce to issue; None until first read from the chain
        self._next: Optional[int] = None
        # Reserved and not yet settled, in reservation order
        self._outstanding: List[int] = []
        # Broadcast attempted with unknown result
        self._tentative: Set[int] = set()
        self._highest_confirmed: Optional[int] = None

        self._needs_resync = False
        self._halted_reason: Optional[str] = None

        self._stats = {
            "reserved": 0,
            "confirmed": 0,
            "released": 0,
            "indeterminate": 0,
            "resyncs": 0,
        }

    @property
    def halted(self) -> bool:
        return self._halted_reason is not None

    async def reserve_next(self, deadline: Optional[Deadline] = None) -> int:
        """
        Reserve the next nonce.

        Reads the account's pending transaction count from the chain when no
        value is cached or a resync was requested. The refreshed value never
        moves below the cached one, so a nonce that may already be in flight
        is never issued twice.

        Args:
            deadline: Time budget for the chain query

        Returns:
            The reserved nonce

        Raises:
            SequenceHaltedError: If the manager halted
            ChainConnectionError: If the chain query failed (nothing reserved)
        """
        self._check_halted()
        deadline = deadline or Deadline()

        async with self._lock:
            self._check_halted()

            if self._next is None or self._needs_resync:
                await self._refresh(deadline)

            nonce = self._next
            self._next += 1
            self._outstanding.append(nonce)
            self._stats["reserved"] += 1

            logger.debug("sequence_reserved", nonce=nonce, outstanding=len(self._outstanding))
            return nonce

    async def _refresh(self, deadline: Deadline) -> None:
        chain_next = await deadline.run(
            self.chain.get_transaction_count(self.address, "pending")
        )

        previous = self._next
        self._next = chain_next if previous is None else max(chain_next, previous)

        # Anything below the chain's count is known to the network
        resolved = {n for n in self._tentative if n < chain_next}
        self._tentative -= resolved

        self._needs_resync = False
        self._stats["resyncs"] += 1

        logger.info(
            "sequence_resynced",
            chain_next=chain_next,
            previous_next=previous,
            next=self._next,
            resolved_tentative=sorted(resolved),
            pending_tentative=sorted(self._tentative),
        )

    def confirm(self, nonce: int) -> None:
        """
        Mark a reservation as consumed by an accepted broadcast.

        Raises:
            SequenceConflictError: If ``nonce`` is not an outstanding reservation
        """
        self._check_halted()
        if nonce not in self._outstanding:
            self._conflict(f"confirm of nonce {nonce} which is not reserved")

        self._outstanding.remove(nonce)
        if self._highest_confirmed is None or nonce > self._highest_confirmed:
            self._highest_confirmed = nonce
        self._stats["confirmed"] += 1

        logger.debug("sequence_confirmed", nonce=nonce)

    def release(self, nonce: int) -> None:
        """
        Return an unused reservation.

        Only the most recently reserved outstanding nonce may be released; the
        counter rolls back to it so no gap is left.

        Raises:
            SequenceConflictError: On an out-of-order or unknown release
        """
        self._check_halted()
        if not self._outstanding or self._outstanding[-1] != nonce:
            latest = self._outstanding[-1] if self._outstanding else None
            self._conflict(f"release of nonce {nonce} but latest reservation is {latest}")

        self._outstanding.pop()
        if self._next != nonce + 1:
            # A resync moved the counter past this reservation
            self._needs_resync = True
        self._next = nonce
        self._stats["released"] += 1

        logger.debug("sequence_released", nonce=nonce)

    def mark_indeterminate(self, nonce: int) -> None:
        """
        Keep a reservation whose broadcast outcome is unknown.

        The nonce is treated as used; the next reservation reconciles with
        the chain before issuing.

        Raises:
            SequenceConflictError: If ``nonce`` is not an outstanding reservation
        """
        self._check_halted()
        if nonce not in self._outstanding:
            self._conflict(f"indeterminate mark of nonce {nonce} which is not reserved")

        self._outstanding.remove(nonce)
        self._tentative.add(nonce)
        self._needs_resync = True
        self._stats["indeterminate"] += 1

        logger.warning("sequence_indeterminate", nonce=nonce)

    def resync(self) -> None:
        """Reconcile with the chain before the next reservation."""
        self._check_halted()
        self._needs_resync = True
        logger.info("sequence_resync_requested")

    def snapshot(self) -> dict:
        """Get the current state as a plain dictionary."""
        return {
            "address": self.address,
            "next": self._next,
            "outstanding": list(self._outstanding),
            "tentative": sorted(self._tentative),
            "highest_confirmed": self._highest_confirmed,
            "needs_resync": self._needs_resync,
            "halted": self.halted,
            "halted_reason": self._halted_reason,
            **self._stats,
        }

    def _check_halted(self) -> None:
        if self._halted_reason is not None:
            raise SequenceHaltedError(f"Sequence manager halted: {self._halted_reason}")

    def _conflict(self, reason: str) -> None:
        self._halted_reason = reason
        logger.critical("sequence_conflict", reason=reason, state=self.snapshot())
        raise SequenceConflictError(reason)
