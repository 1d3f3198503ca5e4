import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from config import config
from models import SessionLocal
from observability import structured_logger, metrics, StructuredLogger, MetricsCollector
from phone_client import PhoneClient, PhoneTarget, PhoneClientError
from repositories import DeviceRepository, DevicePatch, RepositoryError
from schemas import PhoneConfig
from sm4_codec import CodecError

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


def mark_offline(target: PhoneTarget, session_factory: Callable = SessionLocal) -> bool:
    """Set the device offline unless it already is. Returns True if a write happened."""
    if target.status == STATUS_OFFLINE:
        return False
    with session_factory() as db:
        DeviceRepository(db).update_columns(target.id, DevicePatch(status=STATUS_OFFLINE))
    return True


def mark_online(
    target: PhoneTarget,
    phone_config: PhoneConfig,
    client: PhoneClient,
    session_factory: Callable = SessionLocal,
    log: Optional[StructuredLogger] = None,
) -> DevicePatch:
    """
    Record a successful config query. Battery fields are only refreshed when
    the phone has battery queries enabled; a failed battery query leaves them
    untouched.
    """
    log = log or structured_logger
    patch = DevicePatch(
        status=STATUS_ONLINE,
        device_mark=phone_config.extra_device_mark,
        extra_sim1=phone_config.extra_sim1,
        extra_sim2=phone_config.extra_sim2,
        last_seen=datetime.now(timezone.utc),
    )

    if phone_config.enable_api_battery_query:
        try:
            battery = client.query_battery()
            patch.set("battery_level", battery.level)
            patch.set("battery_status", battery.status)
            patch.set("battery_plugged", battery.plugged)
        except (PhoneClientError, CodecError) as e:
            log.log_event(
                "status.poll.battery_failed",
                level="WARN",
                device_id=target.id,
                error=str(e)
            )

    with session_factory() as db:
        DeviceRepository(db).update_columns(target.id, patch)
    return patch


def refresh_device_status(
    target: PhoneTarget,
    session_factory: Callable = SessionLocal,
    client_factory: Callable[..., PhoneClient] = PhoneClient,
    log: Optional[StructuredLogger] = None,
) -> bool:
    """
    One status round for one device. Never raises.

    Returns:
        True if the phone answered the config query
    """
    log = log or structured_logger
    try:
        with client_factory(target) as client:
            try:
                phone_config = client.query_config()
            except (PhoneClientError, CodecError) as e:
                log.log_event(
                    "status.poll.offline",
                    level="INFO",
                    device_id=target.id,
                    device_name=target.name,
                    error=str(e),
                    error_type=type(e).__name__
                )
                mark_offline(target, session_factory)
                return False

            mark_online(target, phone_config, client, session_factory, log)
            return True
    except RepositoryError as e:
        log.log_event(
            "status.poll.store_failed",
            level="ERROR",
            device_id=target.id,
            error=str(e)
        )
        return False


def _load_targets(session_factory: Callable) -> list[PhoneTarget]:
    with session_factory() as db:
        return DeviceRepository(db).list_targets()


async def refresh_all_devices(
    session_factory: Callable = SessionLocal,
    client_factory: Callable[..., PhoneClient] = PhoneClient,
    log: Optional[StructuredLogger] = None,
) -> dict:
    """Run a status round for every device concurrently, each in a worker thread."""
    targets = await asyncio.to_thread(_load_targets, session_factory)
    results = await asyncio.gather(*[
        asyncio.to_thread(refresh_device_status, target, session_factory, client_factory, log)
        for target in targets
    ])
    online = sum(1 for ok in results if ok)
    return {"total": len(targets), "online": online, "offline": len(targets) - online}


class StatusPoller:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        client_factory: Callable[..., PhoneClient] = PhoneClient,
        interval_seconds: Optional[int] = None,
        log: Optional[StructuredLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.interval_seconds = interval_seconds or config.poll_interval_seconds
        self.log = log or structured_logger
        self.metrics = metrics_collector or metrics
        self.task: Optional[asyncio.Task] = None
        self.running = False

    async def poll_once(self) -> dict:
        start_time = datetime.now(timezone.utc)

        summary = await refresh_all_devices(self.session_factory, self.client_factory, self.log)

        latency_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        self.metrics.observe_histogram("status_poll_duration_ms", latency_ms)
        self.metrics.inc_counter("status_poll_devices_total", {"status": STATUS_ONLINE}, summary["online"])
        self.metrics.inc_counter("status_poll_devices_total", {"status": STATUS_OFFLINE}, summary["offline"])
        self.log.log_event(
            "status.poll.tick",
            level="INFO",
            latency_ms=round(latency_ms, 2),
            **summary
        )
        return summary

    async def _run_poll_loop(self):
        # First sweep runs immediately at startup
        while self.running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.log_event(
                    "status.poll.error",
                    level="ERROR",
                    error=str(e),
                    error_type=type(e).__name__
                )
            await asyncio.sleep(self.interval_seconds)

    async def start(self):
        if self.running:
            logger.warning("Status poller already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run_poll_loop())

        self.log.log_event(
            "status.poller.started",
            level="INFO",
            interval_seconds=self.interval_seconds
        )

    async def stop(self):
        if not self.running:
            return

        self.running = False

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

        self.log.log_event(
            "status.poller.stopped",
            level="INFO"
        )


status_poller = StatusPoller()
