"""Ticket redemption: the scan state machine and its audit trail.

The outcome of a scan depends only on the ticket as stored and the event the
device is scanning for. Only a VALID outcome writes to the ticket, and it does
so with a compare-and-swap on the status while holding the ticket's lock, so
two scanners racing on one ticket produce one VALID and one ALREADY_USED.
The status change and the scan log commit together.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, ClassVar, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

import models
from database import utcnow
from device_auth import DeviceContext
from idempotency import IdempotencyGuard
from store import CredentialStore

logger = logging.getLogger(__name__)


class ScanResult(str, Enum):
    VALID = "VALID"
    ALREADY_USED = "ALREADY_USED"
    BLOCKED = "BLOCKED"
    NOT_FOUND = "NOT_FOUND"
    WRONG_EVENT = "WRONG_EVENT"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class NotFound:
    result: ClassVar[ScanResult] = ScanResult.NOT_FOUND
    message: ClassVar[str] = "Ticket not found"


@dataclass(frozen=True)
class WrongEvent:
    ticket: models.Ticket
    result: ClassVar[ScanResult] = ScanResult.WRONG_EVENT
    message: ClassVar[str] = "Ticket does not belong to this event"


@dataclass(frozen=True)
class Blocked:
    ticket: models.Ticket
    result: ClassVar[ScanResult] = ScanResult.BLOCKED
    message: ClassVar[str] = "Ticket has been blocked"


@dataclass(frozen=True)
class AlreadyUsed:
    ticket: models.Ticket
    result: ClassVar[ScanResult] = ScanResult.ALREADY_USED
    message: ClassVar[str] = "Ticket has already been used"


@dataclass(frozen=True)
class Admitted:
    ticket: models.Ticket
    result: ClassVar[ScanResult] = ScanResult.VALID
    message: ClassVar[str] = "Ticket accepted for entry"


@dataclass(frozen=True)
class Expired:
    ticket: models.Ticket
    result: ClassVar[ScanResult] = ScanResult.EXPIRED
    message: ClassVar[str] = "Ticket is expired or invalid"


Outcome = Union[NotFound, WrongEvent, Blocked, AlreadyUsed, Admitted, Expired]


def evaluate(ticket: Optional[models.Ticket], event_id: str) -> Outcome:
    """Classify a scan. Pure: reads the ticket, never changes it."""
    if ticket is None:
        return NotFound()
    if ticket.event_id != event_id:
        return WrongEvent(ticket)
    if ticket.status == "blocked":
        return Blocked(ticket)
    if ticket.status in models.CONSUMED_STATUSES:
        return AlreadyUsed(ticket)
    if ticket.status in models.REDEEMABLE_STATUSES:
        return Admitted(ticket)
    return Expired(ticket)


@dataclass
class _Holder:
    lock: threading.Lock
    holders: int = 0


class KeyedLocks:
    """One lock per key, created on demand and dropped once nobody holds it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _Holder] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Holder(threading.Lock())
                self._locks[key] = entry
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class ScanReceipt:
    result: ScanResult
    message: str
    scan_log: models.ScanLog
    ticket: Optional[models.Ticket]
    replayed: bool = False


class TicketRedemptionProcessor:
    def __init__(
        self,
        store: CredentialStore,
        locks: KeyedLocks,
        guard: IdempotencyGuard,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.locks = locks
        self.guard = guard
        self.clock = clock

    def scan(
        self,
        context: DeviceContext,
        event_id: str,
        ticket_code: str,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        client_scanned_at: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> ScanReceipt:
        ticket = self.store.find_ticket_by_code(ticket_code).record
        lock_key = f"ticket:{ticket.id}" if ticket is not None else f"code:{ticket_code}"

        with self.locks.hold(lock_key):
            if ticket is not None:
                prior = self.guard.find_replay(ticket.id, context.device_id)
                self.store.refresh(ticket)
                if prior is not None:
                    return ScanReceipt(
                        result=ScanResult(prior.result),
                        message=prior.message,
                        scan_log=prior,
                        ticket=ticket,
                        replayed=True,
                    )

            outcome = evaluate(ticket, event_id)
            now = self.clock()
            try:
                if isinstance(outcome, Admitted):
                    swapped = self.store.mark_ticket_used(ticket.id, now)
                    self.store.refresh(ticket)
                    if not swapped:
                        logger.warning("Ticket %s changed concurrently; re-evaluating", ticket.id)
                        outcome = evaluate(ticket, event_id)

                entry = self.store.append_scan_log(
                    ticket_id=ticket.id if ticket is not None else None,
                    ticket_code=ticket_code,
                    event_id=event_id,
                    device_id=context.device_id,
                    staff_user_id=context.staff_user_id,
                    result=outcome.result.value,
                    message=outcome.message,
                    scanned_at=now,
                    client_scanned_at=client_scanned_at,
                    lat=lat,
                    lon=lon,
                    ip=ip,
                    created_at=now,
                )
                self.store.commit()
            except SQLAlchemyError:
                self.store.rollback()
                logger.exception("Scan of %s by device %s failed; nothing recorded", ticket_code, context.device_id)
                raise

        logger.info(
            "Scan %s by device %s for event %s: %s",
            ticket_code, context.device_id, event_id, outcome.result.value,
        )
        return ScanReceipt(
            result=outcome.result,
            message=outcome.message,
            scan_log=entry,
            ticket=ticket,
        )
