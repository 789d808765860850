"""
convertd web service
A FastAPI application exposing the background conversion queue of the media library.
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from convertd import __version__
from convertd.config import EngineConfig, cache_path, db_path, load_settings, save_settings
from convertd.engine import ConversionEngine
from convertd.events import ConversionEvent
from convertd.library import MediaLibrary

# Configure logging to output to container logs (stdout)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("convertd")

# Configuration
CONFIG_PATH = os.environ.get("CONFIG_PATH", "/config")
WS_QUEUE_SIZE = 256


class AppState:
    def __init__(self):
        self.settings = load_settings(CONFIG_PATH)
        self.cache_path = cache_path(CONFIG_PATH).resolve()
        self.library = MediaLibrary(db_path(CONFIG_PATH))
        self.engine = ConversionEngine(self.library, self.engine_config())
        self.websocket_clients: list[WebSocket] = []

    def engine_config(self) -> EngineConfig:
        return EngineConfig.from_settings(self.settings, self.cache_path)

    def save_settings(self):
        save_settings(CONFIG_PATH, self.settings)


state = AppState()


@asynccontextmanager
async def lifespan(app_obj: FastAPI):
    logger.info("=" * 50)
    logger.info("convertd starting up")
    logger.info(f"Config path: {CONFIG_PATH}")
    logger.info(f"Database: {state.library.path}")
    logger.info(f"Conversion cache: {state.cache_path}")
    logger.info(f"Max concurrent conversions: {state.engine.config.max_concurrent}")
    logger.info("=" * 50)

    state.library.ensure_schema()
    # Clean up any orphaned temp files from previous runs
    state.engine.startup()
    try:
        yield
    finally:
        await state.engine.shutdown()
        logger.info("convertd stopped")


app = FastAPI(title="convertd", version=__version__, lifespan=lifespan)


class SettingsUpdate(BaseModel):
    # The encoder command is only read from settings.json
    max_concurrent: Optional[int] = None
    audio_codec: Optional[str] = None
    audio_bitrate: Optional[str] = None
    audio_channels: Optional[int] = None
    finished_job_ttl: Optional[float] = None
    watchdog_multiplier: Optional[float] = None
    watchdog_min_seconds: Optional[float] = None
    cache_max_size_gb: Optional[float] = None
    cache_max_age_days: Optional[float] = None


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "version": __version__,
        "websocket_clients": len(state.websocket_clients),
    }


@app.get("/api/settings")
async def get_settings():
    return state.settings


@app.post("/api/settings")
async def update_settings(settings: SettingsUpdate):
    if settings.max_concurrent is not None:
        state.settings["max_concurrent"] = max(1, min(8, settings.max_concurrent))
    if settings.audio_codec is not None:
        state.settings["audio_codec"] = settings.audio_codec
    if settings.audio_bitrate is not None:
        state.settings["audio_bitrate"] = settings.audio_bitrate
    if settings.audio_channels is not None:
        state.settings["audio_channels"] = max(1, min(8, settings.audio_channels))
    if settings.finished_job_ttl is not None:
        state.settings["finished_job_ttl"] = max(0, settings.finished_job_ttl)
    if settings.watchdog_multiplier is not None:
        state.settings["watchdog_multiplier"] = max(0, settings.watchdog_multiplier)
    if settings.watchdog_min_seconds is not None:
        state.settings["watchdog_min_seconds"] = max(0, settings.watchdog_min_seconds)
    if settings.cache_max_size_gb is not None:
        state.settings["cache_max_size_gb"] = max(0, settings.cache_max_size_gb)
    if settings.cache_max_age_days is not None:
        state.settings["cache_max_age_days"] = max(0, settings.cache_max_age_days)

    state.save_settings()
    state.engine.apply_config(state.engine_config())
    return state.settings


@app.get("/api/conversion/status")
async def conversion_status():
    return state.engine.get_status()


@app.get("/api/conversion/status/{item_id}")
async def conversion_item_status(item_id: int):
    if state.library.get_item(item_id) is None:
        raise HTTPException(status_code=404, detail="Media not found")
    return state.engine.get_item_status(item_id)


@app.get("/api/conversion/incompatible")
async def list_incompatible():
    return [
        {
            "id": item.id,
            "file_name": item.file_name,
            "video_codec": item.video_codec,
            "audio_codec": item.audio_codec,
            "converted_path": item.converted_path,
            "is_converted": state.engine.has_converted_version(item.id),
            "is_queued": state.engine.registry.exists(item.id),
        }
        for item in state.library.list_incompatible()
    ]


@app.post("/api/conversion/queue-all")
async def queue_all():
    count = state.engine.request_conversion_for_all_incompatible()
    return {"success": True, "queued": count}


@app.post("/api/conversion/queue/{item_id}")
async def queue_one(item_id: int):
    result = state.engine.request_conversion(item_id)
    return {"success": result.accepted, "message": result.message}


@app.delete("/api/conversion/{item_id}")
async def cancel_conversion(item_id: int):
    return {"success": state.engine.cancel(item_id)}


@app.post("/api/conversion/{item_id}/dismiss")
async def dismiss_conversion(item_id: int):
    return {"success": state.engine.dismiss(item_id)}


@app.delete("/api/conversion/{item_id}/cache")
async def delete_converted(item_id: int):
    if state.library.get_item(item_id) is None:
        raise HTTPException(status_code=404, detail="Media not found")
    return {"success": state.engine.delete_converted(item_id)}


@app.get("/api/conversion/stats")
async def cache_stats():
    return state.engine.get_cache_stats()


async def forward_events(websocket: WebSocket, queue: "asyncio.Queue[ConversionEvent]"):
    while True:
        event = await queue.get()
        await websocket.send_json(event.to_dict())


def queue_sink(queue: asyncio.Queue):
    """Event handler feeding a client's queue, dropping events once it is full."""
    def put(event: ConversionEvent):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"WebSocket client is lagging, dropped '{event.kind.value}' for item {event.item_id}")
    return put


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    try:
        await websocket.accept()
    except Exception as e:
        logger.error(f"WebSocket accept failed: {e}")
        return

    queue: asyncio.Queue = asyncio.Queue(maxsize=WS_QUEUE_SIZE)
    token = state.engine.events.subscribe(None, queue_sink(queue))
    state.websocket_clients.append(websocket)
    logger.info(f"WebSocket connected. Total clients: {len(state.websocket_clients)}")

    sender = None
    try:
        # Send current status so a reconnecting client can redraw progress
        await websocket.send_json({"type": "status", "data": state.engine.get_status()})
        sender = asyncio.create_task(forward_events(websocket, queue))

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=60.0)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "keepalive"})
                except Exception:
                    break

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected normally")
    except Exception as e:
        logger.error(f"WebSocket error: {type(e).__name__}: {e}")
    finally:
        state.engine.events.unsubscribe(token)
        if sender:
            sender.cancel()
            (result,) = await asyncio.gather(sender, return_exceptions=True)
            if isinstance(result, Exception):
                logger.warning(f"WebSocket sender stopped: {type(result).__name__}: {result}")
        if websocket in state.websocket_clients:
            state.websocket_clients.remove(websocket)
        logger.info(f"WebSocket disconnected. Total clients: {len(state.websocket_clients)}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
