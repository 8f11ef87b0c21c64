from pydantic import BaseModel, ConfigDict
from typing import Optional, List
from datetime import datetime


class AdminLoginRequest(BaseModel):
    username: str
    password: str
    otp: Optional[str] = None


class AdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ---------- device login ----------

class DeviceAuthorizeRequest(BaseModel):
    device_public_id: Optional[str] = None
    device_secret: Optional[str] = None
    staff_user_email: Optional[str] = None
    staff_user_password: Optional[str] = None


class AuthorizedDevice(BaseModel):
    id: str
    device_public_id: str
    staff_user_id: Optional[str] = None
    event_id: Optional[str] = None


class AuthorizedStaffUser(BaseModel):
    id: str
    email: str
    name: Optional[str] = None


class DeviceAuthorizeResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in_seconds: int
    expires_at: datetime
    device: AuthorizedDevice
    staff_user: Optional[AuthorizedStaffUser] = None


# ---------- scanning ----------

class ScanRequest(BaseModel):
    event_id: Optional[str] = None
    ticket_code: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    scanned_at: Optional[str] = None


class ScannedBy(BaseModel):
    device_id: str
    device_public_id: str
    staff_user_id: Optional[str] = None


class ScanAudit(BaseModel):
    scan_log_id: str
    scanned_at_server: datetime
    lat: Optional[float] = None
    lon: Optional[float] = None


class ScannedTicket(BaseModel):
    id: str
    code: str
    status: str
    holder_name: str = ""


class ScanResponse(BaseModel):
    result: str
    message: str
    event_id: str
    scanned_by: ScannedBy
    audit: ScanAudit
    ticket: Optional[ScannedTicket] = None


# ---------- devices (admin) ----------

class DeviceCreateRequest(BaseModel):
    organizer_id: str
    name: Optional[str] = None
    event_id: Optional[str] = None
    staff_user_id: Optional[str] = None
    device_public_id: Optional[str] = None


class DeviceUpdateRequest(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    event_id: Optional[str] = None
    staff_user_id: Optional[str] = None


class DeviceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    organizer_id: Optional[str] = None
    event_id: Optional[str] = None
    staff_user_id: Optional[str] = None
    device_public_id: str
    is_active: bool
    last_ip: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DeviceSecretResponse(BaseModel):
    device: DeviceResponse
    secret: str


class DeviceDeleteResponse(BaseModel):
    message: str
    revoked_tokens: int


# ---------- staff users (admin) ----------

class StaffUserCreateRequest(BaseModel):
    organizer_id: str
    email: str
    password: str
    name: Optional[str] = None


class StaffUserResponse(BaseModel):
    id: str
    organizer_id: Optional[str] = None
    email: str
    name: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ---------- tickets (admin) ----------

class TicketImportItem(BaseModel):
    id: Optional[str] = None
    event_id: str
    holder_name: Optional[str] = None
    holder_email: Optional[str] = None
    code: Optional[str] = None
    status: str = "valid"


class TicketImportRequest(BaseModel):
    tickets: List[TicketImportItem]


class Ticket(BaseModel):
    id: str
    event_id: str
    holder_name: Optional[str] = None
    holder_email: Optional[str] = None
    code: str
    status: str
    scan_timestamp: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TicketImportResponse(BaseModel):
    created: List[Ticket]
    conflicts: List[str]


class BlockTicketRequest(BaseModel):
    reason: Optional[str] = None


# ---------- audit ----------

class ScanLog(BaseModel):
    id: str
    ticket_id: Optional[str] = None
    ticket_code: Optional[str] = None
    event_id: str
    device_id: str
    staff_user_id: Optional[str] = None
    result: str
    message: str
    scanned_at: datetime
    client_scanned_at: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    ip: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
