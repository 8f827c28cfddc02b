"""
Hello router: demo responses over HTTP, HTTPS, WS and WSS.

The same handlers serve both listeners; the scheme tells them which one
accepted the connection.
"""
from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Hello"])


@router.get("/", response_class=PlainTextResponse)
async def hello(request: Request):
    """Greet the requested hostname over HTTP or HTTPS."""
    return f'Hello "{request.url.hostname}" over {request.url.scheme.upper()}!'


@router.websocket("/ws")
async def hello_ws(websocket: WebSocket):
    """Send one greeting over WS or WSS, then close."""
    await websocket.accept()
    await websocket.send_text(
        f'Hello "{websocket.url.hostname}" over {websocket.url.scheme.upper()}!'
    )
    await websocket.close()
