import json
import logging
import os
import shutil
import socket
import time
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

import settings
import tabular
from connections import ConnectionManager
from errors import DuplicateStudent, StudentNotFound, SyncError, ValidationFailed
from protocol import SyncProtocol
from schemas import utcnow
from store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ----------------------- Utility Functions -----------------------

def local_ip_addresses() -> List[str]:
    addresses = set()
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            address = info[4][0]
            if not address.startswith("127."):
                addresses.add(address)
    except socket.gaierror:
        logger.warning("Could not resolve local addresses for %s", socket.gethostname())
    return sorted(addresses)


def http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, StudentNotFound):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, DuplicateStudent):
        return HTTPException(status_code=409, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_protocol(request: Request) -> SyncProtocol:
    return request.app.state.protocol


def get_connections(request: Request) -> ConnectionManager:
    return request.app.state.connections


def outbounds_only(handler, *args):
    return None, handler(*args)


# ----------------------- Schemas -----------------------

class RowsImport(BaseModel):
    rows: list


# ----------------------- Health -----------------------

@router.get("/")
def read_root():
    return {"message": f"{settings.APP_NAME} running"}


@router.get("/health")
def health(store: SessionStore = Depends(get_store)):
    return {"status": "healthy", "timestamp": utcnow().isoformat(), "clients": store.client_count()}


@router.get("/api/info")
def server_info(store: SessionStore = Depends(get_store)):
    addresses = local_ip_addresses()
    return {
        "serverName": settings.APP_NAME,
        "version": store.snapshot().version,
        "uptime": store.uptime(),
        "connectedClients": store.client_count(),
        "addresses": addresses,
        "port": settings.PORT,
        "urls": [f"http://{a}:{settings.PORT}" for a in addresses],
    }


# ----------------------- Dataset -----------------------

@router.get("/api/data")
def get_data(store: SessionStore = Depends(get_store)):
    return store.snapshot().to_wire()


@router.get("/api/export")
def export_data(store: SessionStore = Depends(get_store)):
    return store.snapshot().to_wire()


@router.post("/api/import")
async def import_data(
    request: Request,
    store: SessionStore = Depends(get_store),
    protocol: SyncProtocol = Depends(get_protocol),
    connections: ConnectionManager = Depends(get_connections),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid data format")

    def replace_and_sync():
        snapshot = store.replace(payload)
        return snapshot, [protocol.dataset_sync(snapshot)]

    try:
        snapshot = await connections.publish(None, replace_and_sync)
    except ValidationFailed as exc:
        logger.warning("Import rejected: %s", exc.message)
        raise HTTPException(status_code=400, detail=exc.message)

    return {
        "success": True,
        "imported": {
            "students": len(snapshot.students),
            "records": len(snapshot.student_records),
            "logs": len(snapshot.attendance_logs),
            "deleted": len(snapshot.deleted_students),
        },
    }


@router.post("/api/import/rows")
async def import_rows(
    payload: RowsImport,
    store: SessionStore = Depends(get_store),
    protocol: SyncProtocol = Depends(get_protocol),
    connections: ConnectionManager = Depends(get_connections),
):
    def import_and_sync():
        results, snapshot = store.mutate(tabular.import_rows, payload.rows, store.max_sessions)
        outbounds = [protocol.dataset_sync(snapshot)] if results["studentsImported"] else []
        return results, outbounds

    try:
        return await connections.publish(None, import_and_sync)
    except SyncError as exc:
        raise http_error(exc)


@router.get("/api/stats")
def get_statistics(store: SessionStore = Depends(get_store)):
    return store.statistics()


@router.get("/api/next-id")
def next_id(store: SessionStore = Depends(get_store)):
    return {"nextId": store.next_available_id()}


# ----------------------- Uploads -----------------------

@router.post("/api/upload")
def upload_file(file: Optional[UploadFile] = File(None)):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    filename = f"{int(time.time() * 1000)}-{os.path.basename(file.filename)}"
    destination = os.path.join(settings.UPLOAD_DIR, filename)
    with open(destination, "wb") as out:
        shutil.copyfileobj(file.file, out)

    size = os.path.getsize(destination)
    logger.info("Stored upload %s (%d bytes)", filename, size)
    return {"success": True, "filename": filename, "path": f"/uploads/{filename}", "size": size}


# ----------------------- Sync socket -----------------------

@router.websocket("/ws")
async def sync_socket(websocket: WebSocket):
    protocol: SyncProtocol = websocket.app.state.protocol
    connections: ConnectionManager = websocket.app.state.connections

    await websocket.accept()
    conn_id = uuid.uuid4().hex
    connections.add(conn_id, websocket)
    await connections.publish(conn_id, outbounds_only, protocol.on_connect, conn_id)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                message = None
            await connections.publish(conn_id, outbounds_only, protocol.on_message, conn_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        connections.remove(conn_id)
        await connections.publish(conn_id, outbounds_only, protocol.on_disconnect, conn_id)


# ----------------------- App -----------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    addresses = local_ip_addresses()
    logger.info("%s listening on port %s", settings.APP_NAME, settings.PORT)
    for address in addresses or ["localhost"]:
        logger.info("Reachable at http://%s:%s", address, settings.PORT)
    yield
    logger.info("Shutting down, %d clients connected", app.state.store.client_count())


def create_app(store: Optional[SessionStore] = None) -> FastAPI:
    app = FastAPI(title="Student Roster Sync API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store or SessionStore()
    app.state.protocol = SyncProtocol(app.state.store)
    app.state.connections = ConnectionManager()

    app.include_router(router)
    app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=settings.LOGGING)
