import asyncio
import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from bridge_session import BridgeSession, DRIVE_VECTORS
from camera_signaling import RecorderSink
from errors import ConnectionFailed, NodesNotReady, NotConnected
from registry import RoverSessionRegistry
from rover_config import RoverConfig, load_settings


# --- Models ---

class WaypointModel(BaseModel):
    lat: float
    lng: float


class LaunchRequest(BaseModel):
    waypoints: list[WaypointModel]
    path_id: Optional[int] = None  # log rows are keyed by path when known


class DriveRequest(BaseModel):
    direction: str  # forward | backward | left | right | stop
    speed: float = 1.0


class SinkRequest(BaseModel):
    sink_id: str
    record_path: Optional[str] = None  # None drains the track without writing


# --- Registry ---

def build_registry(settings: Optional[dict] = None) -> RoverSessionRegistry:
    settings = load_settings() if settings is None else settings
    return RoverSessionRegistry(lambda rover_id: RoverConfig.from_settings(settings, rover_id))


def get_session(request: Request, rover_id: str) -> BridgeSession:
    return request.app.state.registry.get_session(rover_id)


def error(e: Exception, **extra) -> dict:
    return {"status": "error", "error": str(e), **extra}


# --- WebSocket Manager ---

class ConnectionManager:
    def __init__(self):
        self.active_connections: list[WebSocket] = []
        self._pending: set = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, data: dict):
        if not self.active_connections:
            return
        message = json.dumps(data)

        async def send_to(ws):
            try:
                await ws.send_text(message)
                return None
            except (WebSocketDisconnect, RuntimeError):
                return ws
        results = await asyncio.gather(*[send_to(ws) for ws in self.active_connections])
        for ws in results:
            if ws is not None:
                self.disconnect(ws)

    def publish_status(self, rover_id: str, status: dict):
        """Registry listener. Runs inside the session's coroutine, so schedule the send."""
        if not self.active_connections:
            return
        task = asyncio.get_running_loop().create_task(
            self.broadcast({"type": "rover_status", "rover_id": rover_id, **status})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


ws_manager = ConnectionManager()


# --- App lifecycle ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    # A registry set before startup (tests) is used as-is
    registry = getattr(app.state, "registry", None) or build_registry()
    app.state.registry = registry
    registry.on_state_change(ws_manager.publish_status)
    yield
    registry.remove_state_listener(ws_manager.publish_status)
    await registry.close()
    app.state.registry = None


app = FastAPI(title="Rover Link", lifespan=lifespan)


# --- Session endpoints ---

@app.get("/api/rovers")
async def api_rovers_list(request: Request):
    statuses = request.app.state.registry.all_statuses()
    return {"status": "ok", "rovers": list(statuses.values())}


@app.get("/api/rovers/{rover_id}/status")
async def api_rover_status(request: Request, rover_id: str):
    return {"status": "ok", "rover": get_session(request, rover_id).status}


@app.post("/api/rovers/{rover_id}/connect")
async def api_connect(request: Request, rover_id: str):
    session = get_session(request, rover_id)
    try:
        await session.connect()
    except ConnectionFailed as e:
        return error(e)
    return {"status": "ok", "rover": session.status}


@app.post("/api/rovers/{rover_id}/disconnect")
async def api_disconnect(request: Request, rover_id: str):
    session = get_session(request, rover_id)
    await session.disconnect()
    return {"status": "ok", "rover": session.status}


# --- Command endpoints ---

@app.post("/api/rovers/{rover_id}/launch")
async def api_launch(request: Request, rover_id: str, req: LaunchRequest):
    session = get_session(request, rover_id)
    if not session.is_connected:
        return {"status": "error", "error": "Not connected"}
    if req.path_id is not None:
        session.uploader.path_id = req.path_id
    try:
        await session.launch_rover([w.model_dump() for w in req.waypoints])
    except NodesNotReady as e:
        return error(e, required_nodes=e.required_nodes)
    except (ValueError, NotConnected) as e:
        return error(e)
    return {"status": "ok", "command": "launch", "waypoints": len(req.waypoints)}


@app.post("/api/rovers/{rover_id}/manual")
async def api_manual(request: Request, rover_id: str):
    session = get_session(request, rover_id)
    try:
        await session.enable_manual_control()
    except NodesNotReady as e:
        return error(e, required_nodes=e.required_nodes)
    except NotConnected as e:
        return error(e)
    return {"status": "ok", "command": "manual"}


@app.post("/api/rovers/{rover_id}/stop")
async def api_stop(request: Request, rover_id: str):
    await get_session(request, rover_id).stop_rover()
    return {"status": "ok", "command": "stop"}


@app.post("/api/rovers/{rover_id}/drive")
async def api_drive(request: Request, rover_id: str, req: DriveRequest):
    if req.direction not in DRIVE_VECTORS:
        return {"status": "error", "error": f"Unknown direction '{req.direction}'"}
    try:
        await get_session(request, rover_id).drive(req.direction, max(0.0, min(req.speed, 1.0)))
    except NotConnected as e:
        return error(e)
    return {"status": "ok", "command": "drive", "direction": req.direction}


@app.get("/api/rovers/{rover_id}/sensors")
async def api_sensors(request: Request, rover_id: str):
    return {"status": "ok", "sensors": get_session(request, rover_id).cache.snapshot()}


# --- Camera endpoints ---

@app.get("/api/rovers/{rover_id}/cameras")
async def api_cameras(request: Request, rover_id: str):
    return {"status": "ok", "cameras": get_session(request, rover_id).cameras.status()}


@app.post("/api/rovers/{rover_id}/cameras/{channel}/start")
async def api_camera_start(request: Request, rover_id: str, channel: str):
    session = get_session(request, rover_id)
    if not session.is_connected:
        return {"status": "error", "error": "Not connected"}
    try:
        session.cameras.start_channel(channel)
    except KeyError:
        raise HTTPException(404, f"Camera channel '{channel}' not found")
    return {"status": "ok", "channel": channel}


@app.post("/api/rovers/{rover_id}/cameras/{channel}/sink")
async def api_camera_sink(request: Request, rover_id: str, channel: str, req: SinkRequest):
    cameras = get_session(request, rover_id).cameras
    if channel not in cameras.channels:
        raise HTTPException(404, f"Camera channel '{channel}' not found")
    cameras.register_sink(RecorderSink(req.sink_id, req.record_path))
    await cameras.set_video_sink(channel, req.sink_id)
    return {"status": "ok", "channel": channel, "camera": cameras.channel(channel).to_dict()}


@app.delete("/api/rovers/{rover_id}/cameras/{channel}/sink")
async def api_camera_unbind(request: Request, rover_id: str, channel: str):
    cameras = get_session(request, rover_id).cameras
    if channel not in cameras.channels:
        raise HTTPException(404, f"Camera channel '{channel}' not found")
    await cameras.set_video_sink(channel, None)
    return {"status": "ok", "channel": channel}


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    registry = websocket.app.state.registry
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            # Manual driving from the joystick panel
            if isinstance(msg, dict) and msg.get("type") == "drive":
                session = registry.get(str(msg.get("rover_id")))
                direction = msg.get("direction")
                if session is None or not session.is_connected or direction not in DRIVE_VECTORS:
                    continue
                try:
                    speed = max(0.0, min(float(msg.get("speed", 1.0)), 1.0))
                except (TypeError, ValueError):
                    speed = 1.0
                try:
                    await session.drive(direction, speed)
                except NotConnected as e:
                    print(f"[Bridge] Drive from websocket dropped: {e}")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
