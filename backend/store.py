"""Credential store: keyed access to devices, tokens, tickets and scan logs.

No business rules live here. Lookups that can legitimately miss or collide
return a ``StoreResult`` instead of raising, so a duplicate code can never be
mistaken for a generic failure by the caller.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

import models


class Lookup(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class StoreResult:
    status: Lookup
    record: Any = None

    @property
    def found(self) -> bool:
        return self.status is Lookup.FOUND


def _result(record) -> StoreResult:
    if record is None:
        return StoreResult(Lookup.NOT_FOUND)
    return StoreResult(Lookup.FOUND, record)


class CredentialStore:
    def __init__(self, db: Session):
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # ---------- devices ----------

    def get_device(self, device_id: str) -> StoreResult:
        return _result(self.db.get(models.Device, device_id))

    def find_device_by_public_id(self, device_public_id: str) -> StoreResult:
        return _result(
            self.db.query(models.Device)
            .filter(models.Device.device_public_id == device_public_id)
            .first()
        )

    def list_devices(self, organizer_id: Optional[str] = None) -> List[models.Device]:
        query = self.db.query(models.Device)
        if organizer_id:
            query = query.filter(models.Device.organizer_id == organizer_id)
        return query.order_by(models.Device.created_at.desc()).all()

    def create_device(self, **fields) -> StoreResult:
        if self.find_device_by_public_id(fields["device_public_id"]).found:
            return StoreResult(Lookup.CONFLICT)
        device = models.Device(**fields)
        self.db.add(device)
        self.db.flush()
        return StoreResult(Lookup.FOUND, device)

    def update_device(self, device: models.Device, **changes) -> models.Device:
        for field, value in changes.items():
            setattr(device, field, value)
        self.db.flush()
        return device

    def delete_device(self, device: models.Device) -> None:
        self.db.query(models.DeviceToken).filter(models.DeviceToken.device_id == device.id).delete()
        self.db.delete(device)
        self.db.flush()

    def device_has_scan_logs(self, device_id: str) -> bool:
        return (
            self.db.query(models.ScanLog.id).filter(models.ScanLog.device_id == device_id).first()
            is not None
        )

    # ---------- staff users ----------

    def get_staff_user(self, staff_user_id: str) -> StoreResult:
        return _result(self.db.get(models.StaffUser, staff_user_id))

    def find_staff_user_by_email(self, email: str) -> StoreResult:
        return _result(
            self.db.query(models.StaffUser)
            .filter(models.StaffUser.email == email.strip().lower())
            .first()
        )

    def create_staff_user(self, **fields) -> StoreResult:
        fields["email"] = fields["email"].strip().lower()
        if self.find_staff_user_by_email(fields["email"]).found:
            return StoreResult(Lookup.CONFLICT)
        staff_user = models.StaffUser(**fields)
        self.db.add(staff_user)
        self.db.flush()
        return StoreResult(Lookup.FOUND, staff_user)

    def list_staff_users(self, organizer_id: Optional[str] = None) -> List[models.StaffUser]:
        query = self.db.query(models.StaffUser)
        if organizer_id:
            query = query.filter(models.StaffUser.organizer_id == organizer_id)
        return query.order_by(models.StaffUser.created_at.desc()).all()

    # ---------- device tokens ----------

    def get_token(self, token_id: str) -> StoreResult:
        return _result(self.db.get(models.DeviceToken, token_id))

    def create_token(self, token_id: str, device_id: str, token_hash: str,
                     expires_at: datetime, created_at: datetime) -> models.DeviceToken:
        record = models.DeviceToken(
            id=token_id,
            device_id=device_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=created_at,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def revoke_token(self, token_id: str, at: datetime) -> bool:
        updated = (
            self.db.query(models.DeviceToken)
            .filter(models.DeviceToken.id == token_id, models.DeviceToken.revoked_at.is_(None))
            .update({models.DeviceToken.revoked_at: at}, synchronize_session="fetch")
        )
        return updated > 0

    def revoke_tokens_for_device(self, device_id: str, at: datetime) -> int:
        return (
            self.db.query(models.DeviceToken)
            .filter(models.DeviceToken.device_id == device_id, models.DeviceToken.revoked_at.is_(None))
            .update({models.DeviceToken.revoked_at: at}, synchronize_session="fetch")
        )

    # ---------- tickets ----------

    def get_ticket(self, ticket_id: str) -> StoreResult:
        return _result(self.db.get(models.Ticket, ticket_id))

    def find_ticket_by_code(self, code: str) -> StoreResult:
        # QR payloads may carry either the dedicated code or the bare ticket id.
        ticket = self.db.query(models.Ticket).filter(models.Ticket.code == code).first()
        if ticket is None:
            ticket = self.db.get(models.Ticket, code)
        return _result(ticket)

    def create_ticket(self, **fields) -> StoreResult:
        fields = {key: value for key, value in fields.items() if value is not None}
        ticket_id = fields.get("id")
        code = fields.get("code") or ticket_id
        if ticket_id and self.db.get(models.Ticket, ticket_id) is not None:
            return StoreResult(Lookup.CONFLICT, self.db.get(models.Ticket, ticket_id))
        if code:
            existing = self.find_ticket_by_code(code)
            if existing.found:
                return StoreResult(Lookup.CONFLICT, existing.record)
        ticket = models.Ticket(**fields)
        self.db.add(ticket)
        self.db.flush()
        if not ticket.code:
            ticket.code = ticket.id
            self.db.flush()
        return StoreResult(Lookup.FOUND, ticket)

    def mark_ticket_used(self, ticket_id: str, at: datetime) -> bool:
        """Compare-and-swap redeemable -> used. False when another writer won."""
        result = self.db.execute(
            update(models.Ticket)
            .where(
                models.Ticket.id == ticket_id,
                models.Ticket.status.in_(models.REDEEMABLE_STATUSES),
            )
            .values(status="used", scan_timestamp=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_ticket_status(self, ticket: models.Ticket, status: str) -> models.Ticket:
        ticket.status = status
        self.db.flush()
        return ticket

    def refresh(self, record) -> None:
        self.db.refresh(record)

    # ---------- scan logs ----------

    def append_scan_log(self, **fields) -> models.ScanLog:
        entry = models.ScanLog(**fields)
        self.db.add(entry)
        self.db.flush()
        return entry

    def latest_scan_since(self, ticket_id: str, device_id: str, since: datetime) -> StoreResult:
        return _result(
            self.db.query(models.ScanLog)
            .filter(
                models.ScanLog.ticket_id == ticket_id,
                models.ScanLog.device_id == device_id,
                models.ScanLog.created_at > since,
            )
            .order_by(models.ScanLog.created_at.desc())
            .first()
        )

    def list_scan_logs(self, event_id: Optional[str] = None, device_id: Optional[str] = None,
                       result: Optional[str] = None, limit: Optional[int] = 500) -> List[models.ScanLog]:
        query = self.db.query(models.ScanLog)
        if event_id:
            query = query.filter(models.ScanLog.event_id == event_id)
        if device_id:
            query = query.filter(models.ScanLog.device_id == device_id)
        if result:
            query = query.filter(models.ScanLog.result == result)
        query = query.order_by(models.ScanLog.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def count_scan_logs(self, ticket_id: Optional[str] = None, device_id: Optional[str] = None) -> int:
        query = self.db.query(models.ScanLog)
        if ticket_id:
            query = query.filter(models.ScanLog.ticket_id == ticket_id)
        if device_id:
            query = query.filter(models.ScanLog.device_id == device_id)
        return query.count()


def window_start(now: datetime, seconds: int) -> datetime:
    return now - timedelta(seconds=seconds)
