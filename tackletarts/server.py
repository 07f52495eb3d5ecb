from __future__ import annotations
import sys

import httpx
import json
import logging
import os
import time
import uuid
from typing import Optional

from .infra.sql import create_schema, make_async_engine
from .infra.timings import install_shutdown_report, summarize, timeit
from .logging_config import configure_logging

from .errors import RaffleError, ReservationFailedError
from .model.allocator import NUMBERINGS, TicketNumberAllocator
from .model.db import (
    Base, COMPETITION_OPEN, ORDER_CREATED, Competition, PendingOrder, Ticket
)
from .model.ledger import CompetitionLedger
from .model.locks import new_locks, BACKEND as LOCK_BACKEND
from .model.reconciliation import PaymentReconciler
from .mockpay import PaymentAdapter, MockPay, SIGNATURE_HEADER

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from fastapi import Form

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from .helpers import (
    clamp_limit, ct_equal, format_minor, is_valid_email, normalize_owner,
    now_ts, to_iso,
)

import redis.asyncio as redis

# ----------------------------
# Config & Constants
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
configure_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.critical("DATABASE_URL is not set, e.g. sqlite:///./tackletarts.db")
    sys.exit(1)

DEFAULT_CAPACITY = int(os.environ.get("DEFAULT_CAPACITY", "200000"))
DEFAULT_INSTANT_WINS = int(os.environ.get("DEFAULT_INSTANT_WINS", "100"))
TICKET_PRICE = int(os.environ.get("TICKET_PRICE", "99"))  # pence
CURRENCY = os.environ.get("CURRENCY", "gbp")
TICKET_NUMBERING = os.environ.get("TICKET_NUMBERING", "random").lower()
MAX_TICKETS_PER_ORDER = int(os.environ.get("MAX_TICKETS_PER_ORDER", "100"))

POOL_THRESHOLD = float(os.environ.get("POOL_THRESHOLD", "0.05"))
ALLOCATION_ATTEMPTS = int(os.environ.get("ALLOCATION_ATTEMPTS", "5"))
LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", "10"))
LOCK_LEASE_SECONDS = float(os.environ.get("LOCK_LEASE_SECONDS", "30"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

if TICKET_NUMBERING not in NUMBERINGS:
    logger.critical("TICKET_NUMBERING must be one of %s", NUMBERINGS)
    sys.exit(1)


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

allocator = TicketNumberAllocator(pool_threshold=POOL_THRESHOLD)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session

adapter: PaymentAdapter = MockPay()

app = FastAPI(
    title="Tackle Tarts",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)

# aggregated timings go to the log on shutdown
install_shutdown_report(app)


async def ledger(db: AsyncSession = Depends(get_db)) -> CompetitionLedger:
    return CompetitionLedger(
        db, gated, app.state.locks,
        allocator=allocator,
        max_attempts=ALLOCATION_ATTEMPTS,
    )


async def reconciler(
    lg: CompetitionLedger = Depends(ledger),
) -> PaymentReconciler:
    return PaymentReconciler(lg)


@app.exception_handler(RaffleError)
async def _raffle_error(request: Request, exc: RaffleError):
    return ORJSONResponse(exc.to_payload(), status_code=exc.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("Tackle Tarts is starting up...")
    logger.info("   - Lock backend:     %s", LOCK_BACKEND)
    logger.info("   - Ticket numbering: %s", TICKET_NUMBERING)
    logger.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _locks_start():
    r = None
    if LOCK_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.locks = new_locks(
        r=r,
        timeout_seconds=LOCK_TIMEOUT_SECONDS,
        lease_seconds=LOCK_LEASE_SECONDS,
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def _positive_int(payload: dict, key: str, default: Optional[int] = None) -> int:
    raw = payload.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise HTTPException(400, detail=f"{key} must be an integer")
    if value < 1:
        raise HTTPException(400, detail=f"{key} must be positive")
    return value


def competition_public(comp: Competition) -> dict:
    # never expose the instant-win numbers here
    available = comp.capacity - comp.sold_count
    return {
        "id": comp.id,
        "name": comp.name,
        "description": comp.description,
        "image": comp.image,
        "capacity": comp.capacity,
        "sold": comp.sold_count,
        "available": available,
        "sold_out": available <= 0,
        "status": comp.status,
        "ticket_price": comp.ticket_price,
        "currency": comp.currency,
        "instant_win_count": comp.instant_win_count,
        "has_end_winner": comp.end_winner_ticket_id is not None,
        "created_at": to_iso(comp.created_at),
        "closed_at": to_iso(comp.closed_at),
    }


def ticket_json(t: Ticket, competition_name: Optional[str] = None) -> dict:
    out = {
        "id": t.id,
        "competition_id": t.competition_id,
        "number": t.number,
        "result": t.result,
        "owner_id": t.owner_id,
        "created_at": to_iso(t.created_at),
    }
    if competition_name is not None:
        out["competition"] = competition_name
    return out


def order_json(o: PendingOrder) -> dict:
    return {
        "order_id": o.order_id,
        "status": o.status,
        "competition_id": o.competition_id,
        "qty": o.quantity,
        "amount": o.amount,
        "currency": o.currency,
        "owner_id": o.owner_id,
        "failure_reason": o.failure_reason or "",
        "created_at": to_iso(o.created_at),
        "settled_at": to_iso(o.settled_at),
    }


# ----------------------------
# Public API
# ----------------------------
@app.get("/api/health")
async def health():
    return {"ok": True}


@app.get("/api/competitions")
async def list_competitions(
    status: Optional[str] = None,
    lg: CompetitionLedger = Depends(ledger),
):
    comps = await lg.list_competitions(status=status)
    return {"items": [competition_public(c) for c in comps]}


@app.get("/api/competitions/{competition_id}")
async def get_competition(
    competition_id: int,
    lg: CompetitionLedger = Depends(ledger),
):
    return competition_public(await lg.get_competition(competition_id))


# ----------------------------
# Checkout (one PendingOrder per payment session)
# ----------------------------
@app.post("/api/competitions/{competition_id}/checkout")
async def create_checkout(
    competition_id: int,
    payload: dict,
    request: Request,
    lg: CompetitionLedger = Depends(ledger),
    rc: PaymentReconciler = Depends(reconciler),
):
    customer_email = (payload.get("customer_email") or "").strip()
    if not is_valid_email(customer_email):
        raise HTTPException(
            400,
            detail="customer_email is required and must be a valid email "
                   "address"
        )
    qty = _positive_int(payload, "qty", 1)
    if qty > MAX_TICKETS_PER_ORDER:
        raise HTTPException(
            400, detail=f"at most {MAX_TICKETS_PER_ORDER} tickets per order"
        )

    comp = await lg.get_competition(competition_id)
    amount = comp.ticket_price * qty
    owner_id = normalize_owner(customer_email)

    session = adapter.create_session_id_and_url()
    psid = session["payment_session_id"]

    async with timeit("checkout.open_order"):
        order = await rc.open_order(
            psid, competition_id, owner_id, qty, amount, comp.currency
        )

    # tickets of this buyer show up under /api/my-tickets
    request.session["owner_id"] = owner_id

    return {
        "order_id": order.order_id,
        "redirect_url": session["redirect_url"],
        "amount": amount,
        "currency": comp.currency,
    }


# ----------------------------
# API: Order status (polled by the buyer after payment)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    rc: PaymentReconciler = Depends(reconciler),
):
    async with timeit("db.get_order"):
        order, tickets = await rc.get_order(order_id)
    out = order_json(order)
    out["tickets"] = [ticket_json(t) for t in tickets]
    return out


@app.get("/api/my-tickets")
async def my_tickets(
    request: Request,
    lg: CompetitionLedger = Depends(ledger),
):
    owner_id = request.session.get("owner_id")
    if not owner_id:
        raise HTTPException(401, detail="no buyer in session")
    rows = await lg.tickets_for_owner(owner_id)
    return {"items": [ticket_json(t, name) for t, name in rows]}


# ----------------------------
# Webhook endpoint (signature checked before anything else)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    rc: PaymentReconciler = Depends(reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    psid, idem = adapter.event_ids(event)
    if not psid:
        raise HTTPException(400, detail="missing payment_session_id")

    if kind == "succeeded":
        competition_id, owner_id, qty = adapter.event_purchase(event)
        try:
            async with timeit("webhook.fulfill"):
                tickets = await rc.on_payment_confirmed(
                    psid, competition_id, owner_id, qty
                )
        except ReservationFailedError as e:
            # provider retries would not change the outcome
            logger.info("event %s for %s: %s", idem, psid, e.details)
            return {"ok": True, "order_status": "failed",
                    "reason": (e.details or {}).get("reason")}
        return {
            "ok": True,
            "order_status": "fulfilled",
            "tickets": [ticket_json(t) for t in tickets],
        }

    if kind in ("failed", "canceled"):
        async with timeit("webhook.void"):
            status = await rc.on_payment_voided(psid, kind)
        return {"ok": True, "order_status": status}

    logger.info("ignoring event %s of type %r", idem, event.get("type"))
    return {"ok": True, "ignored": True}


# ----------------------------
# MockPay (stands in for the hosted checkout page)
# ----------------------------
@app.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str,
    rc: PaymentReconciler = Depends(reconciler),
):
    order = await rc.get_order_by_reference(psid)
    return {
        "psid": psid,
        "order_id": order.order_id,
        "competition_id": order.competition_id,
        "qty": order.quantity,
        "amount": format_minor(order.amount),
        "currency": order.currency,
        "status": order.status,
        "webhook_url": MOCK_WEBHOOK_URL,
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    request: Request,
    rc: PaymentReconciler = Depends(reconciler),
):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")

    order = await rc.get_order_by_reference(psid)
    event = {
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "order_id": order.order_id,
        "competition_id": order.competition_id,
        "owner_id": order.owner_id,
        "quantity": order.quantity,
        "amount": order.amount,
        "currency": order.currency,
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }

    payload = json.dumps(event).encode()
    sig = adapter.sign(payload)

    client_http: httpx.AsyncClient = app.state.http
    delivered = False
    try:
        resp = await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                SIGNATURE_HEADER: sig,
                "content-type": "application/json",
            },
        )
        delivered = resp.status_code < 400
    except httpx.HTTPError:
        # the buyer can press the button again
        logger.exception("webhook delivery for %s failed", psid)

    return {"ok": delivered, "order_id": order.order_id, "kind": kind}


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    raise HTTPException(401, detail="Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.post("/api/admin/competitions", dependencies=[Depends(require_admin)])
async def admin_create_competition(
    payload: dict,
    lg: CompetitionLedger = Depends(ledger),
):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(400, detail="name is required")
    capacity = _positive_int(payload, "capacity", DEFAULT_CAPACITY)
    try:
        instant_wins = int(payload.get("instant_win_count",
                                       min(DEFAULT_INSTANT_WINS, capacity)))
        price = int(payload.get("ticket_price", TICKET_PRICE))
    except (TypeError, ValueError):
        raise HTTPException(
            400, detail="instant_win_count and ticket_price must be integers"
        )
    numbering = (payload.get("numbering") or TICKET_NUMBERING).lower()
    if numbering not in NUMBERINGS:
        raise HTTPException(400, detail=f"numbering must be one of {NUMBERINGS}")

    comp = await lg.create_competition(
        name,
        capacity,
        instant_wins,
        description=payload.get("description") or "",
        image=payload.get("image"),
        ticket_price=price,
        currency=(payload.get("currency") or CURRENCY).lower(),
        numbering=numbering,
    )
    return {"message": "Competition created",
            "competition": competition_public(comp)}


@app.get("/api/admin/competitions/{competition_id}",
         dependencies=[Depends(require_admin)])
async def admin_get_competition(
    competition_id: int,
    lg: CompetitionLedger = Depends(ledger),
):
    comp = await lg.get_competition(competition_id)
    out = competition_public(comp)
    out["numbering"] = comp.numbering
    out["instant_wins"] = await lg.instant_win_numbers(competition_id)
    out["instant_win_hits"] = [
        ticket_json(t) for t in await lg.instant_win_hits(competition_id)
    ]
    out["end_winner"] = None
    if comp.end_winner_ticket_id is not None:
        winner = await lg.get_ticket(comp.end_winner_ticket_id)
        out["end_winner"] = ticket_json(winner) if winner else None
    return out


@app.post("/api/admin/competitions/{competition_id}/close",
          dependencies=[Depends(require_admin)])
async def admin_close_competition(
    competition_id: int,
    lg: CompetitionLedger = Depends(ledger),
):
    comp = await lg.close(competition_id)
    return {"message": "Competition closed",
            "competition": competition_public(comp)}


@app.post("/api/admin/competitions/{competition_id}/end-draw",
          dependencies=[Depends(require_admin)])
async def admin_end_draw(
    competition_id: int,
    lg: CompetitionLedger = Depends(ledger),
):
    async with timeit("ledger.end_draw"):
        winner = await lg.draw_end_winner(competition_id)
    return {"message": "End draw complete", "winner": ticket_json(winner)}


@app.post("/api/admin/competitions/{competition_id}/grant",
          dependencies=[Depends(require_admin)])
async def admin_grant_tickets(
    competition_id: int,
    payload: dict,
    lg: CompetitionLedger = Depends(ledger),
):
    owner = (payload.get("owner_id") or "").strip()
    if not owner:
        raise HTTPException(400, detail="owner_id is required")
    qty = _positive_int(payload, "qty", 1)
    owner_id = normalize_owner(owner) if is_valid_email(owner) else owner
    tickets = await lg.reserve(competition_id, qty, owner_id)
    return {"message": "Tickets granted",
            "tickets": [ticket_json(t) for t in tickets]}


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(
    limit: int = 200,
    status: Optional[str] = None,
    rc: PaymentReconciler = Depends(reconciler),
):
    total, orders = await rc.recent_orders(
        limit=clamp_limit(limit), status=status
    )
    return {"items": [order_json(o) for o in orders],
            "total": total, "limit": limit}


@app.get("/api/pending", dependencies=[Depends(require_admin)])
async def api_pending(
    limit: int = 100,
    rc: PaymentReconciler = Depends(reconciler),
):
    total, orders = await rc.recent_orders(
        limit=clamp_limit(limit), status=ORDER_CREATED
    )
    now = now_ts()
    items = []
    for o in orders:
        item = order_json(o)
        item["age_ms"] = int(max(0.0, now - o.created_at) * 1000)
        items.append(item)
    return {"items": items, "enabled": True, "limit": limit, "total": total}


@app.get("/api/inventory")
async def get_inventory(lg: CompetitionLedger = Depends(ledger)):
    inventory = await lg.inventory()
    return {
        cid: rec for cid, rec in inventory.items()
        if rec["status"] == COMPETITION_OPEN
    }


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": summarize()}
