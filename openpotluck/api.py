"""FastAPI application for OpenPotluck."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .crud import (
    AuthorizationError,
    ItemFullError,
    add_item,
    create_event,
    delete_event,
    get_event_by_code,
    get_event_for_admin,
    get_participant_by_email,
    get_participant_by_token,
    message_participant,
    remove_claim,
    remove_item,
    sign_up_for_item,
    update_event,
    update_item,
    update_notification_setting,
)
from .database import SessionLocal
from .models import Claim, Event, Item, Participant
from .notifications import notify_signup, send_admin_link
from .scheduler import start_scheduler, stop_scheduler
from .storage import check_database, init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

ITEM_FULL_ERROR = "ItemFull"


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("openpotluck")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="OpenPotluck", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
    return JSONResponse({"detail": detail}, status_code=503)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class ItemPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(1, ge=1)


class EventCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    date: str = Field(..., description="ISO datetime string")
    theme: str | None = None
    location: str | None = None
    description: str | None = None
    admin_email: str = Field(..., min_length=3, max_length=255)
    admin_name: str | None = None
    notifications_enabled: bool = True
    items: list[ItemPayload] = Field(default_factory=list)


class EventUpdatePayload(BaseModel):
    name: str | None = None
    date: str | None = Field(None, description="ISO datetime string")
    theme: str | None = None
    location: str | None = None
    description: str | None = None
    admin_name: str | None = None


class NotificationPayload(BaseModel):
    enabled: bool


class ItemUpdatePayload(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    quantity: int | None = Field(None, ge=1)


class SignupPayload(BaseModel):
    item_id: str
    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = None
    quantity: int = Field(1, ge=1)


class MessagePayload(BaseModel):
    message: str = Field(..., min_length=1)


def _parse_datetime(raw: str) -> datetime:
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid datetime") from exc


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def _request_token(request: Request) -> str | None:
    """Bearer header first, then the ``?token=`` form used in emailed links."""
    return _get_bearer_token(request) or request.query_params.get("token") or None


def _ensure_event(db: Session, event_code: str) -> Event:
    event = get_event_by_code(db, event_code)
    if not event:
        raise HTTPException(status_code=404, detail="Potluck not found")
    return event


def _require_admin(db: Session, event_code: str, request: Request) -> Event:
    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        event = get_event_for_admin(db, event_code, token)
    except AuthorizationError as exc:
        logger.warning("Rejected admin token for potluck %s", event_code)
        raise HTTPException(status_code=403, detail="Invalid admin token") from exc
    if not event:
        raise HTTPException(status_code=404, detail="Potluck not found")
    return event


def _require_participant(db: Session, event: Event, request: Request) -> Participant:
    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    participant = get_participant_by_token(db, event, token)
    if not participant:
        raise HTTPException(status_code=403, detail="Invalid participant token")
    return participant


def _serialize_claim(claim: Claim, *, include_participant: bool = False):
    payload = {
        "id": claim.id,
        "item_id": claim.item_id,
        "quantity": claim.quantity,
        "name": claim.participant.name or "Someone",
        "created_at": claim.created_at.isoformat(),
        "updated_at": claim.updated_at.isoformat(),
    }
    if include_participant:
        payload["participant_id"] = claim.participant_id
        payload["email"] = claim.participant.email
    return payload


def _serialize_item(item: Item, *, include_participants: bool = False):
    return {
        "id": item.id,
        "name": item.name,
        "quantity": item.quantity,
        "claimed_quantity": item.claimed_quantity,
        "available_quantity": item.available_quantity,
        "claims": [
            _serialize_claim(c, include_participant=include_participants)
            for c in item.claims
        ],
    }


def _serialize_participant(participant: Participant, *, include_token: bool = False):
    payload = {
        "id": participant.id,
        "email": participant.email,
        "name": participant.name,
        "claims": [
            {
                "id": claim.id,
                "item_id": claim.item_id,
                "item_name": claim.item.name,
                "quantity": claim.quantity,
            }
            for claim in participant.claims
        ],
        "created_at": participant.created_at.isoformat(),
    }
    if include_token:
        payload["token"] = participant.token
    return payload


def _serialize_event(event: Event, *, include_admin: bool = False):
    payload = {
        "id": event.id,
        "event_code": event.event_code,
        "name": event.name,
        "date": event.date.isoformat(),
        "theme": event.theme,
        "location": event.location,
        "description": event.description,
        "admin_name": event.admin_name,
        "notifications_enabled": event.notifications_enabled,
        "items": [
            _serialize_item(i, include_participants=include_admin) for i in event.items
        ],
        "links": {"public": f"/api/v1/potlucks/{event.event_code}"},
    }
    if include_admin:
        payload["admin_email"] = event.admin_email
        payload["participants"] = [
            _serialize_participant(p) for p in event.participants
        ]
        payload["links"]["admin"] = f"/api/v1/potlucks/{event.event_code}/admin"
    return payload


@app.get("/healthz")
def healthcheck():
    tables = check_database()
    status = "ok" if all(tables.values()) else "degraded"
    return {"status": status, "version": APP_VERSION, "tables": tables}


# -------- JSON API (v1) --------


@app.post("/api/v1/potlucks", status_code=201)
def api_create_potluck(payload: EventCreatePayload, db: Session = Depends(get_db)):
    try:
        event = create_event(
            db,
            name=payload.name,
            date=_parse_datetime(payload.date),
            admin_email=payload.admin_email,
            admin_name=payload.admin_name,
            theme=payload.theme,
            location=payload.location,
            description=payload.description,
            notifications_enabled=payload.notifications_enabled,
            items=[(item.name, item.quantity) for item in payload.items],
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(
        "Created potluck %s (%s) with %d items",
        event.event_code,
        event.name,
        len(event.items),
    )
    send_admin_link(event)
    return {
        "event": _serialize_event(event, include_admin=True),
        "event_code": event.event_code,
        "admin_token": event.admin_token,
    }


@app.get("/api/v1/potlucks/{event_code}")
def api_get_potluck(event_code: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_code)
    return {"event": _serialize_event(event)}


@app.get("/api/v1/potlucks/{event_code}/admin")
def api_get_potluck_admin(
    event_code: str, request: Request, db: Session = Depends(get_db)
):
    event = _require_admin(db, event_code, request)
    return {"event": _serialize_event(event, include_admin=True)}


@app.patch("/api/v1/potlucks/{event_code}")
def api_update_potluck(
    event_code: str,
    payload: EventUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    data = payload.model_dump(exclude_unset=True)
    if "date" in data and data["date"] is not None:
        data["date"] = _parse_datetime(data["date"])
    try:
        update_event(db, event, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event, include_admin=True)}


@app.delete("/api/v1/potlucks/{event_code}", status_code=204)
def api_delete_potluck(
    event_code: str, request: Request, db: Session = Depends(get_db)
):
    event = _require_admin(db, event_code, request)
    logger.info("Deleting potluck %s (%s)", event.event_code, event.name)
    delete_event(db, event)
    return Response(status_code=204)


@app.patch("/api/v1/potlucks/{event_code}/notifications")
def api_update_notifications(
    event_code: str,
    payload: NotificationPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    update_notification_setting(db, event, payload.enabled)
    logger.info(
        "Notifications for potluck %s set to %s", event.event_code, payload.enabled
    )
    return {"notifications_enabled": event.notifications_enabled}


@app.post(
    "/api/v1/potlucks/{event_code}/participants/{participant_id}/messages",
    status_code=202,
)
def api_message_participant(
    event_code: str,
    participant_id: str,
    payload: MessagePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    try:
        participant = message_participant(db, event, participant_id, payload.message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not participant:
        raise HTTPException(status_code=404, detail="Participant not found")
    return {"sent": True, "participant_id": participant.id}


@app.post("/api/v1/potlucks/{event_code}/items", status_code=201)
def api_add_item(
    event_code: str,
    payload: ItemPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    try:
        item = add_item(db, event, name=payload.name, quantity=payload.quantity)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"item": _serialize_item(item, include_participants=True)}


@app.patch("/api/v1/potlucks/{event_code}/items/{item_id}")
def api_update_item(
    event_code: str,
    item_id: str,
    payload: ItemUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    try:
        item = update_item(
            db, event, item_id, name=payload.name, quantity=payload.quantity
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"item": _serialize_item(item, include_participants=True)}


@app.delete("/api/v1/potlucks/{event_code}/items/{item_id}", status_code=204)
def api_remove_item(
    event_code: str,
    item_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _require_admin(db, event_code, request)
    if not remove_item(db, event, item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    return Response(status_code=204)


def _may_see_participant_token(
    request: Request, participant: Participant, returning: bool
) -> bool:
    """A returning participant only gets their token back by presenting it."""
    if not returning:
        return True
    presented = _request_token(request)
    return bool(
        presented
        and participant.token
        and secrets.compare_digest(presented, participant.token)
    )


@app.post("/api/v1/potlucks/{event_code}/signups", status_code=201)
def api_sign_up(
    event_code: str,
    payload: SignupPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = get_event_by_code(db, event_code)
    returning = bool(event and get_participant_by_email(db, event, payload.email))
    try:
        claim = sign_up_for_item(
            db,
            event_code=event_code,
            item_id=payload.item_id,
            email=payload.email,
            name=payload.name,
            quantity=payload.quantity,
        )
    except ItemFullError as exc:
        return JSONResponse(
            {
                "error": ITEM_FULL_ERROR,
                "message": str(exc),
                "available_quantity": exc.available,
            },
            status_code=409,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IntegrityError as exc:
        # Two first-time signups for the same email raced past the lookup.
        logger.warning("Signup conflict on potluck %s: %s", event_code, exc.orig)
        raise HTTPException(
            status_code=409, detail="Signup conflicted with another request"
        ) from exc
    if not claim:
        raise HTTPException(status_code=404, detail="Potluck or item not found")
    participant = claim.participant
    event = participant.event
    logger.info(
        "Participant %s claimed %d x %s on potluck %s",
        participant.id,
        claim.quantity,
        claim.item.name,
        event.event_code,
    )
    notify_signup(event, participant, claim.item, claim)
    return {
        "claim": _serialize_claim(claim, include_participant=True),
        "item": _serialize_item(claim.item),
        "participant_token": (
            participant.token
            if _may_see_participant_token(request, participant, returning)
            else None
        ),
        "links": {"self": f"/api/v1/potlucks/{event.event_code}/participants/self"},
    }


@app.get("/api/v1/potlucks/{event_code}/participants/self")
def api_get_own_participant(
    event_code: str, request: Request, db: Session = Depends(get_db)
):
    event = _ensure_event(db, event_code)
    participant = _require_participant(db, event, request)
    return {"participant": _serialize_participant(participant, include_token=True)}


@app.delete(
    "/api/v1/potlucks/{event_code}/participants/self/claims/{claim_id}",
    status_code=204,
)
def api_remove_own_claim(
    event_code: str,
    claim_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_code)
    participant = _require_participant(db, event, request)
    if not remove_claim(db, participant, claim_id):
        raise HTTPException(status_code=404, detail="Claim not found")
    return Response(status_code=204)
