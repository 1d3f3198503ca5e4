from fastapi import FastAPI, Depends, HTTPException, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from typing import Any, Callable, Optional
import asyncio
import re
import time
import uuid

from models import get_db, init_db, SessionLocal
from schemas import (
    SyncRequest, SyncResultResponse, IdListRequest, DeviceSummary, SmsOut, CallOut, ContactOut,
    SmsSendRequest, ContactAddRequest, WolRequest, ClonePullRequest, BatteryInfo, LocationInfo, PhoneConfig
)
from auth import require_admin
from background_tasks import background_tasks
from config import config
from observability import structured_logger, metrics, request_id_var
from phone_client import PhoneClient, PhoneTarget, PhoneClientError, PhoneRejectedError
from repositories import SmsRepository, CallRepository, ContactRepository, DeviceRepository, DevicePatch
from sm4_codec import CodecError
from status_poller import refresh_all_devices, mark_online, mark_offline
from sync_service import SyncService, SyncError

app = FastAPI(title="SMServer API")

backend_start_time = datetime.now(timezone.utc)

_ID_SEGMENT = re.compile(r"/\d+")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Attach a request_id for log correlation and record HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000
    route = _ID_SEGMENT.sub("/{id}", request.url.path)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })
    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id
    return response


@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Turn unhandled route exceptions into a logged 500 instead of a crashed worker.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- error mapping ---

@app.exception_handler(PhoneRejectedError)
async def phone_rejected_handler(request: Request, exc: PhoneRejectedError):
    # The agent's message is shown to the operator as-is (e.g. feature disabled)
    return JSONResponse(
        status_code=502,
        content={"error": "phone_rejected", "message": exc.msg, "code": exc.code}
    )


@app.exception_handler(PhoneClientError)
async def phone_client_error_handler(request: Request, exc: PhoneClientError):
    return JSONResponse(
        status_code=502,
        content={"error": "phone_unreachable", "message": str(exc)}
    )


@app.exception_handler(CodecError)
async def codec_error_handler(request: Request, exc: CodecError):
    return JSONResponse(
        status_code=400,
        content={"error": "codec_error", "message": str(exc)}
    )


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    status_code = 400 if isinstance(exc.cause, CodecError) else 502
    return JSONResponse(
        status_code=status_code,
        content={"error": str(exc.cause or exc), "result": exc.result.to_dict()}
    )


# --- dependencies ---

def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_phone_client_factory() -> Callable[..., PhoneClient]:
    return PhoneClient


def get_sync_service(
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_phone_client_factory),
) -> SyncService:
    return SyncService(session_factory=session_factory, client_factory=client_factory)


def load_target(device_id: int, db: Session) -> PhoneTarget:
    device = DeviceRepository(db).get(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return PhoneTarget.from_device(device)


async def call_phone(target: PhoneTarget, client_factory: Callable[..., PhoneClient], fn: Callable[[PhoneClient], Any]):
    """Run one blocking phone call in a worker thread."""
    def run():
        with client_factory(target) as client:
            return fn(client)
    return await asyncio.to_thread(run)


# --- lifecycle ---

@app.on_event("startup")
async def startup_event():
    print("=" * 60)
    print("🚀 Starting SMServer...")
    print(f"⏰ Startup time: {backend_start_time.isoformat()}")
    print("=" * 60)

    config.print_config_summary()

    init_db()
    print("✅ Database initialized")

    try:
        await background_tasks.start()
        structured_logger.log_event(
            "startup.background_tasks.started",
            level="INFO"
        )
    except Exception as e:
        structured_logger.log_event(
            "startup.background_tasks.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
        print(f"⚠️  Background tasks failed to start: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    await background_tasks.stop()


# --- health and metrics ---

@app.get("/healthz")
async def health_check():
    """Liveness check; does not touch the database or any phone."""
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "background_tasks_in_flight": background_tasks.in_flight,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/metrics", dependencies=[Depends(require_admin)])
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint"""
    structured_logger.log_event("metrics.scrape", level="DEBUG")
    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


# --- devices ---

@app.get("/api/devices", response_model=list[DeviceSummary], dependencies=[Depends(require_admin)])
async def list_devices(db: Session = Depends(get_db)):
    return DeviceRepository(db).list_all()


@app.post("/api/devices/refresh", dependencies=[Depends(require_admin)])
async def refresh_devices(
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_phone_client_factory),
):
    """Run a status round for every device now instead of waiting for the poller."""
    summary = await refresh_all_devices(session_factory, client_factory)
    structured_logger.log_event("devices.refresh.completed", **summary)
    return summary


# --- sync triggers ---

@app.post("/api/devices/{device_id}/sms/sync", response_model=SyncResultResponse, dependencies=[Depends(require_admin)])
async def sync_sms(
    device_id: int,
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    sms_type = payload.type if payload else 0
    result = await asyncio.to_thread(service.sync_sms, target, sms_type)
    return result.to_dict()


@app.post("/api/devices/{device_id}/calls/sync", response_model=SyncResultResponse, dependencies=[Depends(require_admin)])
async def sync_calls(
    device_id: int,
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    call_type = payload.type if payload else 0
    result = await asyncio.to_thread(service.sync_calls, target, call_type)
    return result.to_dict()


@app.post("/api/devices/{device_id}/contacts/sync", response_model=SyncResultResponse, dependencies=[Depends(require_admin)])
async def sync_contacts(
    device_id: int,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    result = await asyncio.to_thread(service.sync_contacts, target)
    return result.to_dict()


async def _sync_before_read(label: str, sync: bool, func: Callable, target: PhoneTarget, *args) -> dict:
    """
    Blocking mode returns the sync outcome; a failed sync still lets the
    cached records be read. Otherwise the sync is dispatched in the background,
    at most one per device and filter at a time.
    """
    if not sync:
        background_tasks.dispatch_once((label, target.id, *args), label, func, target, *args)
        return {"sync": None, "sync_error": None}

    try:
        result = await asyncio.to_thread(func, target, *args)
        return {"sync": result.to_dict(), "sync_error": None}
    except SyncError as e:
        return {"sync": e.result.to_dict(), "sync_error": str(e.cause or e)}


# --- reads ---

@app.get("/api/devices/{device_id}/sms", dependencies=[Depends(require_admin)])
async def list_sms(
    device_id: int,
    sms_type: int = Query(0, alias="type", ge=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=500),
    keyword: str = "",
    sync: bool = False,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    sync_info = await _sync_before_read("sync_sms", sync, service.sync_sms, target, sms_type)

    items, total = SmsRepository(db).find_by_device(device_id, sms_type, page, page_size, keyword)
    return {
        "items": [SmsOut(**item).model_dump() for item in items],
        "total": total,
        "page": page,
        "page_size": page_size,
        **sync_info
    }


@app.get("/api/devices/{device_id}/calls", dependencies=[Depends(require_admin)])
async def list_calls(
    device_id: int,
    call_type: int = Query(0, alias="type", ge=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=500),
    keyword: str = "",
    sync: bool = False,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    sync_info = await _sync_before_read("sync_calls", sync, service.sync_calls, target, call_type)

    items, total = CallRepository(db).find_by_device(device_id, call_type, page, page_size, keyword)
    return {
        "items": [CallOut(**item).model_dump() for item in items],
        "total": total,
        "page": page,
        "page_size": page_size,
        **sync_info
    }


@app.get("/api/devices/{device_id}/contacts", dependencies=[Depends(require_admin)])
async def list_contacts(
    device_id: int,
    keyword: str = "",
    sync: bool = False,
    db: Session = Depends(get_db),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    sync_info = await _sync_before_read("sync_contacts", sync, service.sync_contacts, target)

    contacts = ContactRepository(db).find_by_device(device_id, keyword)
    return {
        "items": [ContactOut.model_validate(c).model_dump() for c in contacts],
        "total": len(contacts),
        **sync_info
    }


# --- phone commands ---

@app.post("/api/devices/{device_id}/sms/send", dependencies=[Depends(require_admin)])
async def send_sms(
    device_id: int,
    payload: SmsSendRequest,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
    service: SyncService = Depends(get_sync_service),
):
    target = load_target(device_id, db)
    await call_phone(target, client_factory, lambda client: client.send_sms(payload))

    structured_logger.log_event(
        "sms.send.accepted",
        device_id=device_id,
        sim_slot=payload.sim_slot,
        recipients=len([n for n in payload.phone_numbers.split(";") if n.strip()])
    )
    background_tasks.dispatch(
        "capture_sent_sms", service.capture_sent_message, target, payload.phone_numbers, payload.msg_content
    )
    return {"ok": True}


@app.post("/api/devices/{device_id}/contacts/add", dependencies=[Depends(require_admin)])
async def add_contact(
    device_id: int,
    payload: ContactAddRequest,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    await call_phone(target, client_factory, lambda client: client.add_contact(payload))

    # Mirror locally so records show the new name before the next contact sync
    repo = ContactRepository(db)
    outcomes = {}
    for phone in (n.strip() for n in payload.phone_number.split(";")):
        if phone:
            outcomes[phone] = repo.upsert(device_id, phone, payload.name)
    return {"ok": True, "contacts": outcomes}


@app.get("/api/devices/{device_id}/battery", response_model=BatteryInfo, dependencies=[Depends(require_admin)])
async def query_battery(
    device_id: int,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    battery = await call_phone(target, client_factory, lambda client: client.query_battery())
    DeviceRepository(db).update_columns(device_id, DevicePatch(
        battery_level=battery.level,
        battery_status=battery.status,
        battery_plugged=battery.plugged,
    ))
    return battery


@app.get("/api/devices/{device_id}/location", response_model=LocationInfo, dependencies=[Depends(require_admin)])
async def query_location(
    device_id: int,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    location = await call_phone(target, client_factory, lambda client: client.query_location())
    DeviceRepository(db).update_columns(device_id, DevicePatch(
        latitude=location.latitude,
        longitude=location.longitude,
    ))
    return location


@app.get("/api/devices/{device_id}/config", response_model=PhoneConfig, dependencies=[Depends(require_admin)])
async def query_config(
    device_id: int,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_phone_client_factory),
):
    """Query the phone's config and record the outcome as its current status."""
    target = load_target(device_id, db)

    def run():
        with client_factory(target) as client:
            try:
                phone_config = client.query_config()
            except (PhoneClientError, CodecError):
                mark_offline(target, session_factory)
                raise
            mark_online(target, phone_config, client, session_factory)
            return phone_config

    return await asyncio.to_thread(run)


@app.post("/api/devices/{device_id}/wol", dependencies=[Depends(require_admin)])
async def send_wol(
    device_id: int,
    payload: WolRequest,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    await call_phone(target, client_factory, lambda client: client.send_wol(payload))
    return {"ok": True}


@app.post("/api/devices/{device_id}/clone/pull", dependencies=[Depends(require_admin)])
async def clone_pull(
    device_id: int,
    payload: Optional[ClonePullRequest] = None,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    version_code = payload.version_code if payload else 0
    return await call_phone(target, client_factory, lambda client: client.clone_pull(version_code))


@app.post("/api/devices/{device_id}/clone/push", dependencies=[Depends(require_admin)])
async def clone_push(
    device_id: int,
    payload: dict,
    db: Session = Depends(get_db),
    client_factory=Depends(get_phone_client_factory),
):
    target = load_target(device_id, db)
    await call_phone(target, client_factory, lambda client: client.clone_push(payload))
    return {"ok": True}


# --- record actions ---

def _mark_one_read(repo, record_id: int) -> dict:
    if not repo.mark_read(record_id):
        raise HTTPException(status_code=404, detail="Record not found")
    return {"ok": True}


def _soft_delete_one(repo, record_id: int) -> dict:
    if not repo.soft_delete([record_id]):
        raise HTTPException(status_code=404, detail="Record not found")
    return {"ok": True}


@app.post("/api/sms/{sms_id}/read", dependencies=[Depends(require_admin)])
async def mark_sms_read(sms_id: int, db: Session = Depends(get_db)):
    return _mark_one_read(SmsRepository(db), sms_id)


@app.post("/api/devices/{device_id}/sms/mark-read", dependencies=[Depends(require_admin)])
async def mark_all_sms_read(device_id: int, sms_type: int = Query(0, alias="type", ge=0), db: Session = Depends(get_db)):
    load_target(device_id, db)
    return {"updated": SmsRepository(db).mark_all_read(device_id, sms_type)}


@app.delete("/api/sms/{sms_id}", dependencies=[Depends(require_admin)])
async def delete_sms(sms_id: int, db: Session = Depends(get_db)):
    return _soft_delete_one(SmsRepository(db), sms_id)


@app.post("/api/sms/delete", dependencies=[Depends(require_admin)])
async def delete_sms_batch(payload: IdListRequest, db: Session = Depends(get_db)):
    return {"deleted": SmsRepository(db).soft_delete(payload.ids)}


@app.post("/api/calls/{call_id}/read", dependencies=[Depends(require_admin)])
async def mark_call_read(call_id: int, db: Session = Depends(get_db)):
    return _mark_one_read(CallRepository(db), call_id)


@app.post("/api/devices/{device_id}/calls/mark-read", dependencies=[Depends(require_admin)])
async def mark_all_calls_read(device_id: int, call_type: int = Query(0, alias="type", ge=0), db: Session = Depends(get_db)):
    load_target(device_id, db)
    return {"updated": CallRepository(db).mark_all_read(device_id, call_type)}


@app.delete("/api/calls/{call_id}", dependencies=[Depends(require_admin)])
async def delete_call(call_id: int, db: Session = Depends(get_db)):
    return _soft_delete_one(CallRepository(db), call_id)


@app.post("/api/calls/delete", dependencies=[Depends(require_admin)])
async def delete_call_batch(payload: IdListRequest, db: Session = Depends(get_db)):
    return {"deleted": CallRepository(db).soft_delete(payload.ids)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
