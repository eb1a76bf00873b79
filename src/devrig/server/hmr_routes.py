"""Hot-reload endpoints: the event stream, the update manifest and the client script."""

import asyncio
import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from devrig.server.hot_client import CLIENT_PATH, EVENT_PATH, UPDATE_PATH, render_hot_client

router = APIRouter(tags=["hmr"])


@router.get(EVENT_PATH)
async def hmr_stream(request: Request):
    """SSE stream of building / built / sync notifications."""
    event_bus = request.app.state.front_door.event_bus
    queue = event_bus.subscribe()

    async def generate():
        try:
            sync = event_bus.sync_event()
            if sync is not None:
                yield {"data": json.dumps(sync)}
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15.0)
                    yield {"data": json.dumps(event)}
                except asyncio.TimeoutError:
                    yield {"comment": "keepalive"}
        finally:
            event_bus.unsubscribe(queue)

    return EventSourceResponse(generate(), ping=20)


@router.get(UPDATE_PATH)
async def hmr_update(request: Request):
    """What changed in the latest client build."""
    assets = request.app.state.front_door.state.assets
    return JSONResponse(
        {
            "hash": assets.hash,
            "previous_hash": assets.previous_hash,
            "modules": assets.updated_modules,
            "errors": [diagnostic.model_dump() for diagnostic in assets.errors],
        },
        headers={"Cache-Control": "no-cache"},
    )


@router.get(CLIENT_PATH)
async def hmr_client(request: Request):
    front_door = request.app.state.front_door
    return Response(
        render_hot_client(overlay=front_door.overlay),
        media_type="application/javascript",
        headers={"Cache-Control": "no-cache"},
    )
