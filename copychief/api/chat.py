"""Streaming chat endpoints: the event stream and the send request."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from copychief.api.auth import get_current_account, get_stream_account
from copychief.events import format_sse
from copychief.models import Account
from copychief.runtime import ChatRuntime, get_runtime
from copychief.services.connections import Connection
from copychief.services.relay import SendRequest

logger = logging.getLogger(__name__)
router = APIRouter()


async def _stream_events(runtime: ChatRuntime, connection: Connection):
    try:
        async for event in connection.events():
            yield format_sse(event)
    finally:
        # Client went away or the handle was replaced; drop it only if still current
        await runtime.registry.unregister(connection.account_id, connection.agent_id, connection)


@router.get("/stream")
async def open_stream(
    agent_id: str = Query(alias="agentId", min_length=1),
    account: Account = Depends(get_stream_account),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Open the caller's event stream for one agent.

    Registering replaces any stream the caller already had open for the
    same agent; the old stream receives a CONNECTION_REPLACED error and ends.
    """
    connection = await runtime.registry.register(account.id, agent_id)
    return StreamingResponse(
        _stream_events(runtime, connection),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/send", status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    request: Request,
    account: Account = Depends(get_current_account),
    runtime: ChatRuntime = Depends(get_runtime),
):
    """Send one message; the reply streams to the caller's open event stream.

    Responds once the turn has finished with ``{success, messageId,
    tokensUsed}``. Domain errors (400/402/409/500) are rendered by the
    CopyChiefError handler in main.py.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    send = SendRequest.parse(body)
    if send.user_id != str(account.id):
        raise HTTPException(status_code=403, detail="userId does not match the authenticated account")

    result = await runtime.relay.send(send, account.id)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=result.to_payload())
