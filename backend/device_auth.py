"""Bearer tokens for scanning devices.

A device token is a signed JWT carrying the device id, the staff user and the
device public id, plus a ``jti`` that points at the DeviceToken row minted with
it. A valid signature is never enough on its own: every verification goes
back to the store to check revocation, the stored expiry and whether the
device is still active, so revoking a token or deactivating a device takes
effect on the very next request.
"""
import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from jose import ExpiredSignatureError, JWTError, jwt

import config
import models
from database import utcnow
from store import CredentialStore

logger = logging.getLogger(__name__)


def hash_secret(raw_value: str) -> str:
    payload = raw_value.encode("utf-8")
    secret = config.SECRET_KEY.encode("utf-8")
    return hmac.new(secret, payload, hashlib.sha256).hexdigest()


def verify_secret(raw_value: str, hashed_value: Optional[str]) -> bool:
    if not raw_value or not hashed_value:
        return False
    return secrets.compare_digest(hash_secret(raw_value), hashed_value)


def generate_device_public_id() -> str:
    return f"dev-{secrets.token_hex(4)}"


def generate_device_secret() -> str:
    return f"sec-{secrets.token_urlsafe(18)}"


class AuthFailure(str, Enum):
    MISSING_HEADER = "MISSING_HEADER"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    DEVICE_INACTIVE = "DEVICE_INACTIVE"


class DeviceAuthError(Exception):
    def __init__(self, reason: AuthFailure):
        super().__init__(reason.value)
        self.reason = reason


class DeviceLoginError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class DeviceContext:
    device_id: str
    device_public_id: str
    staff_user_id: Optional[str]
    token_id: str
    event_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime
    expires_in_seconds: int
    device: models.Device
    staff_user_id: Optional[str] = None
    staff_user: Optional[models.StaffUser] = None


class DeviceAuthenticator:
    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime] = utcnow,
        token_hours: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock
        self.token_hours = token_hours or config.DEVICE_TOKEN_HOURS

    def issue_token(self, device: models.Device, staff_user_id: Optional[str]) -> IssuedToken:
        now = self.clock()
        expires_at = now + timedelta(hours=self.token_hours)
        token_id = f"dt-{uuid.uuid4().hex}"
        claims = {
            "sub": device.id,
            "staff_user_id": staff_user_id,
            "device_public_id": device.device_public_id,
            "jti": token_id,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM)
        self.store.create_token(token_id, device.id, hash_secret(token), expires_at, now)
        self.store.commit()
        logger.info("Issued device token %s for device %s", token_id, device.id)
        return IssuedToken(
            token=token,
            token_id=token_id,
            expires_at=expires_at,
            expires_in_seconds=self.token_hours * 3600,
            device=device,
            staff_user_id=staff_user_id,
        )

    def peek_device_id(self, token: Optional[str]) -> Optional[str]:
        """Signature-checked ``sub`` claim, without touching the store."""
        if not token:
            return None
        try:
            claims = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        except JWTError:
            return None
        return claims.get("sub")

    def verify(self, token: Optional[str]) -> DeviceContext:
        if not token:
            raise DeviceAuthError(AuthFailure.MISSING_HEADER)
        try:
            claims = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        except ExpiredSignatureError as exc:
            raise DeviceAuthError(AuthFailure.EXPIRED) from exc
        except JWTError as exc:
            raise DeviceAuthError(AuthFailure.INVALID_SIGNATURE) from exc

        device_id = claims.get("sub")
        token_id = claims.get("jti")
        if not device_id or not token_id:
            raise DeviceAuthError(AuthFailure.INVALID_SIGNATURE)

        lookup = self.store.get_token(token_id)
        if not lookup.found:
            # Rows are dropped together with their device.
            raise DeviceAuthError(AuthFailure.REVOKED)
        record = lookup.record
        if record.device_id != device_id or not verify_secret(token, record.token_hash):
            raise DeviceAuthError(AuthFailure.INVALID_SIGNATURE)
        if record.revoked_at is not None:
            raise DeviceAuthError(AuthFailure.REVOKED)
        if record.expires_at is not None and record.expires_at <= self.clock():
            raise DeviceAuthError(AuthFailure.EXPIRED)

        device = self.store.get_device(device_id)
        if not device.found or not device.record.is_active:
            raise DeviceAuthError(AuthFailure.DEVICE_INACTIVE)

        return DeviceContext(
            device_id=device_id,
            device_public_id=claims.get("device_public_id") or device.record.device_public_id,
            staff_user_id=claims.get("staff_user_id"),
            token_id=token_id,
            event_id=device.record.event_id,
        )

    def revoke(self, token_id: str) -> bool:
        revoked = self.store.revoke_token(token_id, self.clock())
        self.store.commit()
        if revoked:
            logger.info("Revoked device token %s", token_id)
        return revoked

    def revoke_all_for_device(self, device_id: str) -> int:
        count = self.store.revoke_tokens_for_device(device_id, self.clock())
        self.store.commit()
        if count:
            logger.info("Revoked %d token(s) for device %s", count, device_id)
        return count

    def authenticate_device(
        self,
        device_public_id: str,
        device_secret: str,
        ip: str,
        staff_email: Optional[str] = None,
        staff_password: Optional[str] = None,
    ) -> IssuedToken:
        lookup = self.store.find_device_by_public_id(device_public_id)
        if not lookup.found or not lookup.record.is_active:
            logger.warning("Device login rejected for %s: unknown or inactive device", device_public_id)
            raise DeviceLoginError(401, "Invalid device credentials")
        device = lookup.record
        if not verify_secret(device_secret, device.secret_hash):
            logger.warning("Device login rejected for %s: bad secret", device_public_id)
            raise DeviceLoginError(401, "Invalid device credentials")

        staff_user = None
        if staff_email:
            staff_user = self._check_staff(device, staff_email, staff_password)
            staff_user_id = staff_user.id
        else:
            staff_user_id = device.staff_user_id or device.organizer_id

        self.store.update_device(device, last_seen_at=self.clock(), last_ip=ip)
        issued = self.issue_token(device, staff_user_id)
        return IssuedToken(
            token=issued.token,
            token_id=issued.token_id,
            expires_at=issued.expires_at,
            expires_in_seconds=issued.expires_in_seconds,
            device=device,
            staff_user_id=staff_user_id,
            staff_user=staff_user,
        )

    def _check_staff(self, device: models.Device, email: str, password: Optional[str]) -> models.StaffUser:
        lookup = self.store.find_staff_user_by_email(email)
        if not lookup.found or not lookup.record.is_active:
            raise DeviceLoginError(401, "Invalid staff credentials")
        staff_user = lookup.record
        if not verify_secret(password or "", staff_user.password_hash):
            raise DeviceLoginError(401, "Invalid staff credentials")
        if device.organizer_id and staff_user.organizer_id != device.organizer_id:
            raise DeviceLoginError(403, "Device not assigned to this organizer")
        if device.staff_user_id and device.staff_user_id != staff_user.id:
            raise DeviceLoginError(403, "Device not assigned to this staff user")
        return staff_user
