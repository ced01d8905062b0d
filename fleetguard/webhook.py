from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from fleetguard.logging_config import get_logger

router = APIRouter()
logger = get_logger("webhook", "webhook.log")


class IncomingReply(BaseModel):
    recipient: str
    body: str


# ---------------------------------------------------
#                STATUS SURFACE
# ---------------------------------------------------
@router.get("/status")
async def monitoring_status(request: Request):
    return request.app.state.monitor.status()


@router.post("/check")
async def force_check(request: Request):
    ok = await request.app.state.monitor.force_check()
    return {"ok": ok}


# ---------------------------------------------------
#           INBOUND REPLIES FROM THE GATEWAY
# ---------------------------------------------------
@router.post("/replies")
async def incoming_reply(reply: IncomingReply, request: Request):
    if not reply.recipient.strip():
        raise HTTPException(status_code=400, detail="missing recipient")

    results = await request.app.state.notifier.receive_reply(reply.recipient, reply.body)
    matched = [n for n in results if n is not None]

    if not matched:
        logger.info(f"Reply from {reply.recipient} ignored (no pending alarm)")
        return {"ok": True, "matched": False}

    n = matched[0]
    logger.info(f"Reply from {reply.recipient} recorded on notification {n.id} -> {n.state}")
    return {"ok": True, "matched": True, "notification_id": n.id, "state": n.state}
