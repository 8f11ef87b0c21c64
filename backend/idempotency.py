"""Replay of recent scans from the same device.

Scanner hardware retries aggressively on flaky networks. A scan of a ticket
that the same device already scanned inside the window is answered from the
stored ScanLog instead of being evaluated again, so a retry can neither write
a second audit row nor turn a VALID into an ALREADY_USED.

The replay key is (ticket, device) only; the event in the request is not
part of it. A device that scanned a ticket against the wrong event keeps
getting that WRONG_EVENT back for the rest of the window, even after it
switches to the ticket's own event.

What happens when the lookup itself fails is an explicit policy:
``open`` treats the scan as fresh, ``closed`` refuses it.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import config
import models
from store import CredentialStore, window_start

logger = logging.getLogger(__name__)

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


class IdempotencyUnavailable(Exception):
    """The duplicate check could not run and the policy is fail-closed."""


class IdempotencyGuard:
    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime],
        window_seconds: Optional[int] = None,
        fail_mode: Optional[str] = None,
    ):
        self.store = store
        self.clock = clock
        self.window_seconds = config.IDEMPOTENCY_WINDOW_SECONDS if window_seconds is None else window_seconds
        self.fail_mode = (fail_mode or config.IDEMPOTENCY_FAIL_MODE).lower()
        if self.fail_mode not in (FAIL_OPEN, FAIL_CLOSED):
            raise ValueError(f"Unknown idempotency fail mode: {self.fail_mode}")

    def find_replay(self, ticket_id: Optional[str], device_id: str) -> Optional[models.ScanLog]:
        if not ticket_id:
            return None
        since = window_start(self.clock(), self.window_seconds)
        try:
            prior = self.store.latest_scan_since(ticket_id, device_id, since)
        except SQLAlchemyError as exc:
            self.store.rollback()
            if self.fail_mode == FAIL_CLOSED:
                logger.error("Duplicate-scan lookup failed for ticket %s; refusing scan", ticket_id)
                raise IdempotencyUnavailable(str(exc)) from exc
            logger.warning("Duplicate-scan lookup failed for ticket %s; treating as fresh scan", ticket_id)
            return None
        if prior.found:
            logger.info("Replaying scan %s for device %s", prior.record.id, device_id)
            return prior.record
        return None
