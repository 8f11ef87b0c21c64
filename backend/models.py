import uuid
from sqlalchemy import Column, String, Float, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.sql import func
from database import Base


TICKET_STATUSES = ("unused", "valid", "used", "scanned", "blocked", "expired")
REDEEMABLE_STATUSES = ("unused", "valid")
CONSUMED_STATUSES = ("used", "scanned")


class StaffUser(Base):
    __tablename__ = "staff_users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organizer_id = Column(String, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String, nullable=True)
    password_hash = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Device(Base):
    __tablename__ = "devices"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=True)
    organizer_id = Column(String, index=True)
    event_id = Column(String, nullable=True, index=True)
    staff_user_id = Column(String, ForeignKey("staff_users.id"), nullable=True)
    device_public_id = Column(String, unique=True, index=True)
    secret_hash = Column(String)
    is_active = Column(Boolean, default=True)
    last_ip = Column(String, nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = Column(String, ForeignKey("devices.id", ondelete="CASCADE"), index=True)
    token_hash = Column(String, index=True)
    expires_at = Column(DateTime(timezone=True))
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True))


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, index=True)
    holder_name = Column(String, nullable=True)
    holder_email = Column(String, nullable=True)
    code = Column(String, unique=True, index=True)
    status = Column(String, default="valid")  # unused, valid, used, scanned, blocked, expired
    scan_timestamp = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id = Column(String, primary_key=True, default=lambda: f"sl-{uuid.uuid4().hex}")
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=True, index=True)
    ticket_code = Column(String, nullable=True)
    event_id = Column(String, index=True)
    device_id = Column(String, ForeignKey("devices.id"), index=True)
    staff_user_id = Column(String, nullable=True)
    result = Column(String)  # VALID, ALREADY_USED, BLOCKED, NOT_FOUND, WRONG_EVENT, EXPIRED
    message = Column(String)
    scanned_at = Column(DateTime(timezone=True))
    client_scanned_at = Column(String, nullable=True)
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)
    ip = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True))

    __table_args__ = (Index("ix_scan_logs_ticket_device_created", "ticket_id", "device_id", "created_at"),)
