from fastapi import APIRouter, Depends, Query, WebSocket

from lightbox.api.deps import Principal, get_principal, get_runtime
from lightbox.services.runtime import Runtime

router = APIRouter()


@router.websocket("")
async def event_stream(websocket: WebSocket, runtime: Runtime = Depends(get_runtime)):
    await runtime.events.serve(websocket, runtime.settings.EVENT_PING_INTERVAL_S)


@router.get("/since")
def events_since(
    cursor: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    records, next_cursor = runtime.events.since(cursor, limit)
    return {"events": [record.to_dict() for record in records], "next_cursor": next_cursor}


@router.get("/history")
def event_history(
    limit: int = Query(50, ge=1, le=1000),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return {"events": [record.to_dict() for record in runtime.events.get_recent(limit)]}


@router.get("/stats")
def event_stats(principal: Principal = Depends(get_principal), runtime: Runtime = Depends(get_runtime)):
    return {**runtime.events.stats(), "connected": runtime.events.clients()}
