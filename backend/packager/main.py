import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from packager.errors import ConfigurationError
from packager.logging_utils import configure_logging
from packager.models.session import WireModel
from packager.services.config_store import ConfigStore
from packager.services.network import get_local_ip, get_public_ip
from packager.services.notifier import LarkNotifier
from packager.services.orchestrator import BuildOrchestrator
from packager.services.progress import PollingProgressChannel, sse_stream
from packager.services.project_detector import detect, list_directories
from packager.settings import load_settings

logger = logging.getLogger(__name__)

settings = load_settings()
config_store = ConfigStore(settings.config_file)
orchestrator = BuildOrchestrator(
    config_store,
    notifier=LarkNotifier(timeout=settings.http_timeout_seconds),
    retention_seconds=settings.session_retention_seconds,
)
progress_channel = PollingProgressChannel(
    orchestrator.registry, interval=settings.poll_interval_seconds
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Packager server ready, config file %s", config_store.path)
    yield
    await orchestrator.shutdown()


app = FastAPI(title="Mobile Packager", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "请求参数无效") if errors else "请求参数无效"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


class CheckProjectRequest(WireModel):
    project_path: str | None = None


class StartBuildRequest(WireModel):
    project_path: str | None = None
    output_path: str | None = None
    build_type: str | None = None
    env_type: str | None = None
    version_name: str | None = None
    version_code: int | str | None = None


class ConfigUpdateRequest(WireModel):
    project_base_path: str | None = None
    output_base_path: str | None = None
    project_paths: list[str] | None = None
    output_paths: list[str] | None = None
    ssh_passphrase: str | None = None
    lark_webhook_url: str | None = None


class AddPathRequest(WireModel):
    type: str | None = None
    path: str | None = None


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.post("/api/check-project")
async def check_project(req: CheckProjectRequest):
    if not req.project_path:
        raise ConfigurationError("项目路径不能为空")
    result = detect(req.project_path)
    types = [p.value for p in result.types]
    return {
        "success": True,
        "projectTypes": types,
        "projectInfo": result.project_info(),
        "message": f"检测到项目类型: {', '.join(types) or '未检测到Android或iOS项目'}",
    }


@app.post("/api/build/start")
async def start_build(req: StartBuildRequest):
    session = orchestrator.start_build(
        project_path=req.project_path,
        output_path=req.output_path,
        build_type=req.build_type,
        env_type=req.env_type,
        version_name=req.version_name,
        version_code=req.version_code,
    )
    return {"sessionId": session.id, "message": "打包已开始"}


@app.get("/api/build/progress/{session_id}")
async def build_progress(session_id: str):
    return StreamingResponse(
        sse_stream(progress_channel, session_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/build/{session_id}")
async def get_build(session_id: str):
    session = orchestrator.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_wire()


@app.websocket("/ws/build/{session_id}")
async def build_websocket(ws: WebSocket, session_id: str):
    await ws.accept()
    try:
        async for frame in progress_channel.subscribe(session_id):
            await ws.send_json(frame)
    except WebSocketDisconnect:
        logger.debug("WebSocket client for session %s disconnected", session_id)
        return
    await ws.close()


@app.get("/api/config")
async def get_config():
    return {"success": True, "config": config_store.load().public_view()}


@app.post("/api/config")
async def update_config(req: ConfigUpdateRequest):
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    try:
        config = config_store.update(changes)
    except OSError:
        logger.exception("Failed to save config to %s", config_store.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "保存配置失败"})
    return {"success": True, "message": "配置已保存", "config": config.public_view()}


@app.post("/api/config/add-path")
async def add_config_path(req: AddPathRequest):
    if not req.type or not req.path:
        raise ConfigurationError("参数不完整")
    config = config_store.add_path(req.type, req.path)
    return {"success": True, "config": config.public_view()}


@app.get("/api/directories")
async def get_directories(basePath: str | None = None):
    if not basePath:
        raise ConfigurationError("基础路径不能为空")
    base = Path(basePath)
    if not base.exists():
        raise ConfigurationError("路径不存在")
    if not base.is_dir():
        raise ConfigurationError("路径不是目录")
    return {"success": True, "directories": list_directories(base)}


@app.get("/api/server-info")
async def server_info():
    public_ip = await get_public_ip(timeout=settings.http_timeout_seconds)
    return {"success": True, "localIp": get_local_ip(), "publicIp": public_ip}


def run() -> None:
    """Console entry point: ``packager-server``."""
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
