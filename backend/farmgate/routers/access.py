# farmgate/routers/access.py
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from farmgate import auth, schemas
from farmgate.access_guard import (
    access_status,
    require_dashboard_access,
    require_payment_surface,
    require_subscription,
)
from farmgate.access_policy import GuardRole
from farmgate.context import AppContext
from farmgate.database import get_db
from farmgate.guard import GuardController, GuardView, LoggingErrorReporter, Route
from farmgate.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["access"])


def _role(value: str) -> GuardRole:
    try:
        return GuardRole(value.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_ROLE", "message": f"role must be one of {[r.value for r in GuardRole]}"},
        )


# -----------------------------
# status (never blocks, always answers)
# -----------------------------
@router.get("/access/status", response_model=schemas.AccessStatusOut)
def access_status_endpoint(
    role: str = Query("dashboard"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(auth.get_current_identity),
):
    """
    What the guard for `role` would do right now for the signed-in identity,
    plus the trial countdown.
    """
    return access_status(db, identity, _role(role))


# -----------------------------
# guarded pages
# -----------------------------
@router.get("/access/dashboard")
def dashboard_page(identity: Identity = Depends(require_dashboard_access)):
    return {"ok": True, "page": "dashboard", "uid": identity.uid}


@router.get("/access/payment")
def payment_page(identity: Identity = Depends(require_payment_surface)):
    return {"ok": True, "page": "payment", "uid": identity.uid}


@router.get("/access/general")
def general_page(identity: Identity = Depends(require_subscription)):
    return {"ok": True, "page": "general", "uid": identity.uid}


# -----------------------------
# live guard over a websocket
# -----------------------------
class _QueueNavigator:
    def __init__(self, queue: "asyncio.Queue[dict]"):
        self.queue = queue

    def navigate(self, route: Route) -> None:
        self.queue.put_nowait({"type": "navigate", "route": route.value})


async def _pump(websocket: WebSocket, queue: "asyncio.Queue[dict]") -> None:
    while True:
        msg = await queue.get()
        await websocket.send_json(msg)


def _sign_in_from_token(identity_state, token: str | None, queue: "asyncio.Queue[dict]") -> None:
    try:
        identity_state.sign_in(auth.identity_from_token((token or "").strip()))
    except ValueError:
        queue.put_nowait({"type": "error", "code": "NOT_AUTHENTICATED"})
        identity_state.sign_out()


@router.websocket("/ws/access/{role}")
async def access_stream(websocket: WebSocket, role: str):
    """
    Mounts a live guard for this connection.

    Server -> client:
      {"type": "state", state, decision, render, navigate, ...} on every change
      {"type": "navigate", "route": "dashboard" | "payment" | "login"}
    Client -> server:
      {"type": "sign_in", "token": "..."}  switch identity
      {"type": "sign_out"}
    """
    await websocket.accept()

    try:
        guard_role = GuardRole(role.strip().lower())
    except ValueError:
        await websocket.send_json({"type": "error", "code": "INVALID_ROLE"})
        await websocket.close(code=1008)
        return

    ctx: AppContext = websocket.app.state.ctx
    identity_state = ctx.open_session()
    queue: asyncio.Queue[dict] = asyncio.Queue()

    guard = GuardController(
        guard_role,
        identity_state,
        ctx.feed,
        _QueueNavigator(queue),
        error_reporter=LoggingErrorReporter(logger),
    )

    def on_change(view: GuardView) -> None:
        queue.put_nowait({"type": "state", **view.as_dict()})

    guard.on_change(on_change)
    guard.mount()

    token = websocket.query_params.get("token")
    if token:
        _sign_in_from_token(identity_state, token, queue)
    else:
        identity_state.sign_out()

    sender = asyncio.create_task(_pump(websocket, queue))
    try:
        while True:
            try:
                msg = await websocket.receive_json()
            except ValueError:
                queue.put_nowait({"type": "error", "code": "UNKNOWN_MESSAGE"})
                continue
            kind = (msg or {}).get("type") if isinstance(msg, dict) else None
            if kind == "sign_in":
                _sign_in_from_token(identity_state, msg.get("token"), queue)
            elif kind == "sign_out":
                identity_state.sign_out()
            else:
                queue.put_nowait({"type": "error", "code": "UNKNOWN_MESSAGE"})
    except WebSocketDisconnect:
        pass
    finally:
        guard.unmount()
        ctx.close_session(identity_state)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("access stream %s: sender stopped: %s", guard_role.value, e)
