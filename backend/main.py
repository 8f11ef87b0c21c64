from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import csv
import io
import logging
from typing import Callable, List, Optional

import pyotp
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
import models
import schemas
from database import get_db, init_db, utcnow
from device_auth import (
    AuthFailure,
    DeviceAuthenticator,
    DeviceAuthError,
    DeviceContext,
    DeviceLoginError,
    generate_device_public_id,
    generate_device_secret,
    hash_secret,
)
from idempotency import IdempotencyGuard, IdempotencyUnavailable
from rate_limiter import FixedWindowRateLimiter, auth_key, device_auth_key, ticket_scan_key
from redemption import KeyedLocks, ScanReceipt, TicketRedemptionProcessor
from store import CredentialStore, Lookup

config.configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.rate_limiter = FixedWindowRateLimiter()
    app.state.ticket_locks = KeyedLocks()
    logger.info("Scan service started (idempotency window %ss, fail mode %s)",
                config.IDEMPOTENCY_WINDOW_SECONDS, config.IDEMPOTENCY_FAIL_MODE)
    yield
    app.state.rate_limiter.reset()
    logger.info("Scan service stopped")


app = FastAPI(title="Gatekeeper Scan API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_bearer = HTTPBearer(auto_error=False)
device_bearer = HTTPBearer(auto_error=False)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Missing required fields", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(SQLAlchemyError)
async def store_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(IdempotencyUnavailable)
async def idempotency_exception_handler(request: Request, exc: IdempotencyUnavailable):
    logger.error("Scan refused on %s: duplicate check unavailable", request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ------------- dependencies -------------

def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_store(db: Session = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def get_authenticator(
    store: CredentialStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> DeviceAuthenticator:
    return DeviceAuthenticator(store, clock)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(request: Request, policy_name: str, key: str) -> None:
    policy = config.RATE_LIMITS[policy_name]
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    decision = limiter.allow(key, policy["window_ms"], policy["max"])
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Too Many Requests",
                "message": f"Rate limit exceeded. Retry after {decision.retry_after_seconds} seconds.",
                "retry_after_seconds": decision.retry_after_seconds,
            },
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    return credentials.credentials if credentials else None


def require_device(authenticator: DeviceAuthenticator, token: Optional[str]) -> DeviceContext:
    try:
        return authenticator.verify(token)
    except DeviceAuthError as exc:
        logger.warning("Device authentication failed: %s", exc.reason.value)
        if exc.reason is AuthFailure.MISSING_HEADER:
            raise HTTPException(status_code=401, detail="Missing or invalid authorization header") from exc
        raise HTTPException(status_code=401, detail="Invalid or expired device token") from exc


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def validate_totp(secret: str, otp: str | None) -> bool:
    if not otp:
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(otp, valid_window=1)


def get_admin_actor(credentials: HTTPAuthorizationCredentials | None = Depends(admin_bearer)) -> dict:
    if config.AUTH_DISABLED:
        return {"username": config.ADMIN_USERNAME, "role": "super_admin"}
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing admin token")
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        username: str | None = payload.get("sub")
        role: str | None = payload.get("role")
        if not username or role != "super_admin":
            raise HTTPException(status_code=401, detail="Invalid admin token")
        return {"username": username, "role": role}
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid admin token") from exc


def resolve_staff_user_for_organizer(store: CredentialStore, staff_user_id: Optional[str], organizer_id: str) -> Optional[str]:
    if not staff_user_id or staff_user_id == organizer_id:
        return staff_user_id
    lookup = store.get_staff_user(staff_user_id)
    if not lookup.found or not lookup.record.is_active:
        raise HTTPException(status_code=400, detail="Staff user not found or inactive")
    if lookup.record.organizer_id and lookup.record.organizer_id != organizer_id:
        raise HTTPException(status_code=400, detail="Staff user does not belong to this organizer")
    return lookup.record.id


def get_device_or_404(store: CredentialStore, device_id: str) -> models.Device:
    lookup = store.get_device(device_id)
    if not lookup.found:
        raise HTTPException(status_code=404, detail="Device not found")
    return lookup.record


def build_scan_response(receipt: ScanReceipt, context: DeviceContext, event_id: str) -> schemas.ScanResponse:
    entry = receipt.scan_log
    response = schemas.ScanResponse(
        result=receipt.result.value,
        message=receipt.message,
        event_id=event_id,
        scanned_by=schemas.ScannedBy(
            device_id=context.device_id,
            device_public_id=context.device_public_id,
            staff_user_id=context.staff_user_id,
        ),
        audit=schemas.ScanAudit(
            scan_log_id=entry.id,
            scanned_at_server=entry.scanned_at,
            lat=entry.lat,
            lon=entry.lon,
        ),
    )
    if receipt.ticket is not None:
        response.ticket = schemas.ScannedTicket(
            id=receipt.ticket.id,
            code=receipt.ticket.code or receipt.ticket.id,
            status=receipt.ticket.status,
            holder_name=receipt.ticket.holder_name or "",
        )
    return response


# ------------- routes -------------

@app.get("/")
def read_root():
    return {"message": "Gatekeeper Scan API", "status": "running"}


@app.post("/auth/admin-login", response_model=schemas.AdminLoginResponse)
def admin_login(req: schemas.AdminLoginRequest, request: Request):
    enforce_rate_limit(request, "auth", auth_key(client_ip(request)))
    if req.username != config.ADMIN_USERNAME or req.password != config.ADMIN_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if config.ADMIN_2FA_REQUIRED and not validate_totp(config.ADMIN_TOTP_SECRET, req.otp):
        raise HTTPException(status_code=401, detail="Invalid OTP")
    token = create_access_token(
        data={"sub": req.username, "role": "super_admin"},
        expires_delta=timedelta(hours=config.ADMIN_TOKEN_HOURS),
    )
    return schemas.AdminLoginResponse(access_token=token)


@app.post("/devices/authorize", response_model=schemas.DeviceAuthorizeResponse)
def authorize_device(
    req: schemas.DeviceAuthorizeRequest,
    request: Request,
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
):
    ip = client_ip(request)
    enforce_rate_limit(request, "device_auth", device_auth_key(ip, req.device_public_id))
    if not req.device_public_id or not req.device_secret:
        raise HTTPException(status_code=400, detail="Missing required fields")
    if bool(req.staff_user_email) != bool(req.staff_user_password):
        raise HTTPException(status_code=400, detail="Staff email and password must be sent together")

    try:
        issued = authenticator.authenticate_device(
            req.device_public_id,
            req.device_secret,
            ip,
            staff_email=req.staff_user_email,
            staff_password=req.staff_user_password,
        )
    except DeviceLoginError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc

    staff_user = None
    if issued.staff_user is not None:
        staff_user = schemas.AuthorizedStaffUser(
            id=issued.staff_user.id, email=issued.staff_user.email, name=issued.staff_user.name
        )
    return schemas.DeviceAuthorizeResponse(
        access_token=issued.token,
        expires_in_seconds=issued.expires_in_seconds,
        expires_at=issued.expires_at,
        device=schemas.AuthorizedDevice(
            id=issued.device.id,
            device_public_id=issued.device.device_public_id,
            staff_user_id=issued.staff_user_id,
            event_id=issued.device.event_id,
        ),
        staff_user=staff_user,
    )


@app.post("/devices/logout")
def logout_device(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(device_bearer),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
):
    enforce_rate_limit(request, "auth", auth_key(client_ip(request)))
    context = require_device(authenticator, bearer_token(credentials))
    authenticator.revoke(context.token_id)
    return {"message": "Device logged out successfully"}


@app.post("/tickets/scan", response_model=schemas.ScanResponse, response_model_exclude_none=True)
def scan_ticket(
    req: schemas.ScanRequest,
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(device_bearer),
    store: CredentialStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    authenticator = DeviceAuthenticator(store, clock)
    token = bearer_token(credentials)
    ip = client_ip(request)
    enforce_rate_limit(request, "ticket_scan", ticket_scan_key(authenticator.peek_device_id(token), ip))

    ticket_code = (req.ticket_code or "").strip()
    if not req.event_id or not ticket_code:
        raise HTTPException(status_code=400, detail="Missing required fields")

    context = require_device(authenticator, token)

    processor = TicketRedemptionProcessor(
        store,
        request.app.state.ticket_locks,
        IdempotencyGuard(store, clock),
        clock,
    )
    receipt = processor.scan(
        context,
        req.event_id,
        ticket_code,
        lat=req.lat,
        lon=req.lon,
        client_scanned_at=req.scanned_at,
        ip=ip,
    )
    return build_scan_response(receipt, context, req.event_id)


# ------------- admin: devices -------------

@app.post("/devices", response_model=schemas.DeviceSecretResponse, status_code=201)
def create_device(
    req: schemas.DeviceCreateRequest,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    staff_user_id = resolve_staff_user_for_organizer(store, req.staff_user_id, req.organizer_id)
    secret = generate_device_secret()
    created = store.create_device(
        name=(req.name or "").strip() or "Scanning device",
        organizer_id=req.organizer_id,
        event_id=req.event_id,
        staff_user_id=staff_user_id,
        device_public_id=req.device_public_id or generate_device_public_id(),
        secret_hash=hash_secret(secret),
        is_active=True,
    )
    if created.status is Lookup.CONFLICT:
        raise HTTPException(status_code=409, detail="Device public id already in use")
    store.commit()
    store.refresh(created.record)
    logger.info("Device %s created by %s", created.record.id, actor["username"])
    return {"device": created.record, "secret": secret}


@app.get("/devices", response_model=List[schemas.DeviceResponse])
def list_devices(
    organizer_id: str | None = None,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    return store.list_devices(organizer_id)


@app.patch("/devices/{device_id}", response_model=schemas.DeviceResponse)
def update_device(
    device_id: str,
    req: schemas.DeviceUpdateRequest,
    store: CredentialStore = Depends(get_store),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
    actor: dict = Depends(get_admin_actor),
):
    device = get_device_or_404(store, device_id)
    changes = req.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"]:
        changes["name"] = changes["name"].strip()
    if "staff_user_id" in changes:
        changes["staff_user_id"] = resolve_staff_user_for_organizer(store, changes["staff_user_id"], device.organizer_id)
    store.update_device(device, **changes)
    if changes.get("is_active") is False:
        authenticator.revoke_all_for_device(device.id)
    else:
        store.commit()
    store.refresh(device)
    return device


@app.post("/devices/{device_id}/regenerate-secret", response_model=schemas.DeviceSecretResponse)
def regenerate_device_secret(
    device_id: str,
    store: CredentialStore = Depends(get_store),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
    actor: dict = Depends(get_admin_actor),
):
    device = get_device_or_404(store, device_id)
    secret = generate_device_secret()
    store.update_device(device, secret_hash=hash_secret(secret))
    authenticator.revoke_all_for_device(device.id)
    store.refresh(device)
    return {"device": device, "secret": secret}


@app.delete("/devices/{device_id}", response_model=schemas.DeviceDeleteResponse)
def delete_device(
    device_id: str,
    store: CredentialStore = Depends(get_store),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
    actor: dict = Depends(get_admin_actor),
):
    device = get_device_or_404(store, device_id)
    revoked = authenticator.revoke_all_for_device(device.id)
    if store.device_has_scan_logs(device.id):
        # Audit rows keep pointing at the device, so it is retired instead.
        store.update_device(device, is_active=False)
        store.commit()
        return {"message": "Device deactivated", "revoked_tokens": revoked}
    store.delete_device(device)
    store.commit()
    logger.info("Device %s deleted by %s", device_id, actor["username"])
    return {"message": "Device deleted", "revoked_tokens": revoked}


# ------------- admin: staff users -------------

@app.post("/staff-users", response_model=schemas.StaffUserResponse, status_code=201)
def create_staff_user(
    req: schemas.StaffUserCreateRequest,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    created = store.create_staff_user(
        organizer_id=req.organizer_id,
        email=req.email,
        name=req.name,
        password_hash=hash_secret(req.password),
        is_active=True,
    )
    if created.status is Lookup.CONFLICT:
        raise HTTPException(status_code=409, detail="Staff user email already registered")
    store.commit()
    store.refresh(created.record)
    return created.record


@app.get("/staff-users", response_model=List[schemas.StaffUserResponse])
def list_staff_users(
    organizer_id: str | None = None,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    return store.list_staff_users(organizer_id)


# ------------- admin: tickets -------------

@app.post("/tickets/import", response_model=schemas.TicketImportResponse)
def import_tickets(
    req: schemas.TicketImportRequest,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    created = []
    conflicts = []
    for item in req.tickets:
        if item.status not in models.TICKET_STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown ticket status: {item.status}")
        outcome = store.create_ticket(**item.model_dump())
        if outcome.status is Lookup.CONFLICT:
            conflicts.append(item.code or item.id)
            continue
        created.append(outcome.record)
    if conflicts and not created:
        store.rollback()
        raise HTTPException(status_code=409, detail="Ticket with this code already exists")
    store.commit()
    for ticket in created:
        store.refresh(ticket)
    return {"created": created, "conflicts": conflicts}


@app.get("/tickets/{ticket_id}", response_model=schemas.Ticket)
def get_ticket(
    ticket_id: str,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    lookup = store.get_ticket(ticket_id)
    if not lookup.found:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return lookup.record


@app.post("/tickets/{ticket_id}/block", response_model=schemas.Ticket)
def block_ticket(
    ticket_id: str,
    req: schemas.BlockTicketRequest,
    request: Request,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    lookup = store.get_ticket(ticket_id)
    if not lookup.found:
        raise HTTPException(status_code=404, detail="Ticket not found")
    ticket = lookup.record
    with request.app.state.ticket_locks.hold(f"ticket:{ticket.id}"):
        store.refresh(ticket)
        store.set_ticket_status(ticket, "blocked")
        store.commit()
    logger.info("Ticket %s blocked by %s (%s)", ticket.id, actor["username"], req.reason or "no reason given")
    store.refresh(ticket)
    return ticket


# ------------- admin: audit -------------

@app.get("/scan-logs", response_model=List[schemas.ScanLog])
def list_scan_logs(
    event_id: str | None = None,
    device_id: str | None = None,
    result: str | None = None,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    return store.list_scan_logs(event_id=event_id, device_id=device_id, result=result)


@app.get("/scan-logs/export")
def export_scan_logs(
    event_id: str | None = None,
    device_id: str | None = None,
    store: CredentialStore = Depends(get_store),
    actor: dict = Depends(get_admin_actor),
):
    rows = store.list_scan_logs(event_id=event_id, device_id=device_id, limit=None)
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "id", "ticket_id", "ticket_code", "event_id", "device_id", "staff_user_id",
        "result", "message", "scanned_at", "client_scanned_at", "lat", "lon", "ip",
    ])
    for row in rows:
        writer.writerow([
            row.id, row.ticket_id, row.ticket_code, row.event_id, row.device_id, row.staff_user_id,
            row.result, row.message, row.scanned_at, row.client_scanned_at, row.lat, row.lon, row.ip,
        ])
    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=scan_logs.csv"},
    )
