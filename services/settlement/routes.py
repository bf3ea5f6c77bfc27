# services/settlement/routes.py
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from packages.schemas.session import (
    MediaEvent,
    SessionCreateRequest,
    SessionEndRequest,
    TerminationContext,
)

from .errors import SessionNotFound, SettlementError

log = logging.getLogger("tutorlink.settlement.api")

router = APIRouter()


def _state(request: Request):
    return request.app.state


# -------------------------------------------------
# Infra
# -------------------------------------------------
@router.get("/healthz", tags=["infra"])
async def healthz(request: Request) -> Dict[str, Any]:
    st = _state(request)
    return {
        "status": "ok",
        "env": st.settings.env,
        "ledger": st.gateway.status()["mode"],
        "liveSessions": len(st.lifecycle.monitor.table),
    }


@router.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@router.get("/ledger/status", tags=["ledger"])
async def ledger_status(request: Request) -> Dict[str, Any]:
    st = _state(request)
    status = st.gateway.status()
    status["health"] = st.gateway.health.snapshot()
    status["currency"] = st.settings.ledger.currency_code
    status["decimals"] = st.gateway.token_decimals
    return status


# -------------------------------------------------
# Sessions
# -------------------------------------------------
@router.post("/sessions", status_code=201, tags=["sessions"])
async def create_session(body: SessionCreateRequest, request: Request) -> Dict[str, Any]:
    mapping = await _state(request).registry.create(
        body.session_id,
        body.student_address,
        body.tutor_address,
        body.language_id,
        student_endpoint=body.student_endpoint,
        tutor_endpoint=body.tutor_endpoint,
    )
    return {"success": True, "session": mapping.to_wire()}


@router.get("/sessions/{session_id}", tags=["sessions"])
async def get_session(session_id: str, request: Request) -> Dict[str, Any]:
    mapping = await _state(request).registry.get(session_id)
    if mapping is None:
        raise SessionNotFound(session_id)
    return {"success": True, "session": mapping.to_wire()}


@router.post("/sessions/{session_id}/end", tags=["sessions"])
async def end_session(session_id: str, request: Request, body: Optional[SessionEndRequest] = None) -> Dict[str, Any]:
    body = body or SessionEndRequest()
    ctx = TerminationContext.model_validate({
        **(body.model_extra or {}),
        "source": "api",
        "trigger": "user",
        "userAddress": body.user_address,
        "userRole": body.user_role,
        "reason": body.reason or "user-ended",
        "durationSeconds": body.duration_seconds,
        "ratePerSecondWei": body.rate_per_second_wei,
        "estimatedRatePerSecondWei": body.estimated_rate_per_second_wei,
    })
    initiated_by = body.ended_by or body.user_address
    result = await _state(request).lifecycle.end_session(session_id, initiated_by, ctx)
    return result.to_wire()


# -------------------------------------------------
# Media server events
# -------------------------------------------------
@router.post("/webrtc-events", tags=["media"])
async def webrtc_event(event: MediaEvent, request: Request) -> Dict[str, Any]:
    lifecycle = _state(request).lifecycle
    monitor = lifecycle.monitor
    log.info("media event %s session=%s role=%s", event.type, event.session_id, event.user_role)

    if not event.session_id:
        return {"success": True, "message": "Event ignored (no sessionId)"}

    if event.type == "user-connected":
        monitor.participant_connected(event.session_id, event.user_role or "unknown")
    elif event.type == "session-heartbeat":
        monitor.liveness_signal(event.session_id)
    elif event.type == "user-disconnected":
        monitor.participant_disconnected(event.session_id, event.user_role or "unknown", event.reason)
    elif event.type == "session-ended":
        ctx = TerminationContext.model_validate({
            **event.session,
            "source": "media-server",
            "trigger": "media-session-ended",
            "userAddress": event.user_address,
            "userRole": event.user_role,
            "reason": event.reason or "call-ended",
            "endedBy": event.ended_by,
        })
        try:
            result = await lifecycle.end_session(event.session_id, event.ended_by or event.user_address, ctx)
        except SessionNotFound:
            monitor.forget(event.session_id)
            return {"success": True, "message": "Session already settled"}
        return {"success": True, "message": "Event processed", "summary": result.summary.to_wire()}
    else:
        log.warning("unknown media event type: %s", event.type)
    return {"success": True, "message": "Event processed"}


# -------------------------------------------------
# Registrations
# -------------------------------------------------
@router.get("/tutors/{address}", tags=["registrations"])
async def get_tutor(address: str, request: Request) -> Dict[str, Any]:
    info = await _state(request).gateway.get_tutor_info(address)
    return {"success": True, "tutor": info.to_wire()}


@router.get("/students/{address}", tags=["registrations"])
async def get_student(address: str, request: Request) -> Dict[str, Any]:
    info = await _state(request).gateway.get_student_info(address)
    return {"success": True, "student": info.to_wire()}


@router.post("/tutors/{address}/invalidate-cache", tags=["registrations"])
@router.post("/students/{address}/invalidate-cache", tags=["registrations"])
async def invalidate_registration(address: str, request: Request) -> Dict[str, Any]:
    await _state(request).gateway.invalidate_registration(address)
    return {"success": True, "message": f"Cache invalidated for {address.lower()}"}


# -------------------------------------------------
# Real-time channel
# -------------------------------------------------
# Ledger-notice settlements in flight; they outlive the channel that started them.
_notice_tasks: Set[asyncio.Task] = set()


async def _settle_ledger_notice(websocket: WebSocket, lifecycle, session_id: str, address: Optional[str]) -> None:
    try:
        result = await lifecycle.ledger_already_ended(session_id, address)
    except SettlementError as e:
        reply = {"type": "error", "sessionId": session_id, **e.to_payload()}
    else:
        if result is not None:
            return
        reply = {"type": "session-already-settled", "sessionId": session_id}
    try:
        await websocket.send_json(reply)
    except Exception as e:
        log.debug("ledger notice reply for %s not delivered: %s", session_id, e)


@router.websocket("/ws")
async def ws_channel(websocket: WebSocket) -> None:
    st = websocket.app.state
    hub = st.hub
    await websocket.accept()
    channel_id = uuid.uuid4().hex
    await hub.register(channel_id, websocket)
    try:
        while True:
            msg = await websocket.receive_json()
            if not isinstance(msg, dict):
                continue
            kind = msg.get("type")
            if kind == "register" and msg.get("address"):
                await hub.bind(channel_id, str(msg["address"]))
                await websocket.send_json({"type": "registered", "address": str(msg["address"]).lower()})
            elif kind == "session-ended-onchain" and msg.get("sessionId"):
                # Settlement can wait on the chain; keep reading this channel meanwhile.
                task = asyncio.create_task(
                    _settle_ledger_notice(websocket, st.lifecycle, str(msg["sessionId"]), msg.get("address"))
                )
                _notice_tasks.add(task)
                task.add_done_callback(_notice_tasks.discard)
            else:
                log.debug("ignoring ws message type=%s on %s", kind, channel_id)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(channel_id)
