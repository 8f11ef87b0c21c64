import models
from database import SessionLocal
from device_auth import hash_secret


def make_device(store, public_id="ANDROID-XYZ-123", secret="s3cr3t-issued-by-admin", organizer_id="org-1",
                staff_user_id=None, is_active=True, event_id=None):
    device = store.create_device(
        name="Gate A",
        organizer_id=organizer_id,
        event_id=event_id,
        staff_user_id=staff_user_id,
        device_public_id=public_id,
        secret_hash=hash_secret(secret),
        is_active=is_active,
    ).record
    store.commit()
    return device


def make_staff_user(store, email="usher1@venue.com", password="Passw0rd!", organizer_id="org-1"):
    staff_user = store.create_staff_user(
        organizer_id=organizer_id,
        email=email,
        name="Usher One",
        password_hash=hash_secret(password),
        is_active=True,
    ).record
    store.commit()
    return staff_user


def make_ticket(store, ticket_id="T-1", event_id="E1", status="valid", code=None, holder_name="Jane Doe"):
    ticket = store.create_ticket(
        id=ticket_id,
        event_id=event_id,
        status=status,
        code=code,
        holder_name=holder_name,
        holder_email="jane@example.com",
    ).record
    store.commit()
    return ticket


def login_device(client, public_id="ANDROID-XYZ-123", secret="s3cr3t-issued-by-admin"):
    resp = client.post("/devices/authorize", json={"device_public_id": public_id, "device_secret": secret})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def count_logs(**filters):
    session = SessionLocal()
    try:
        query = session.query(models.ScanLog)
        for field, value in filters.items():
            query = query.filter(getattr(models.ScanLog, field) == value)
        return query.count()
    finally:
        session.close()


def ticket_status(ticket_id):
    session = SessionLocal()
    try:
        return session.get(models.Ticket, ticket_id).status
    finally:
        session.close()


class MsClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now
