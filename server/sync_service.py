"""
Incremental sync of SMS, call logs and contacts from a phone into the local store.

SMS and calls are append-only streams read page by page. Every item is checked
against its natural key, soft-deleted rows included, so a record the user
deleted is never re-imported. Paging stops at the first empty page or at the
first page that contributed nothing new. Numbers seen on new records get a
shadow contact so every record has a name to display.

Contacts are a full snapshot and are upserted in one pass.
"""
import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import config
from models import SessionLocal, SmsMessage, CallLog
from observability import structured_logger, metrics, StructuredLogger, MetricsCollector
from phone_client import PhoneClient, PhoneTarget, PhoneClientError
from repositories import SmsRepository, CallRepository, ContactRepository, RepositoryError
from schemas import SmsQueryRequest, CallQueryRequest, ContactQueryRequest
from sm4_codec import CodecError

SMS_RECEIVED = 1
SMS_SENT = 2

# Only the newest sent messages are scanned after a send
SENT_CAPTURE_PAGE_SIZE = 20


@dataclass
class SyncResult:
    new_count: int = 0
    updated_count: int = 0
    is_complete: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class SyncError(Exception):
    """
    A sync stopped because the phone could not be reached or read.
    Rows already inserted stay valid; result holds the progress made.
    """

    def __init__(self, message: str, result: SyncResult, cause: Optional[Exception] = None):
        super().__init__(message)
        self.result = result
        self.cause = cause


class SyncService:
    """
    Runs sync passes for one phone at a time. Each call opens its own session
    and phone client, so one instance is safe to share across threads.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory: Callable[..., PhoneClient] = PhoneClient,
        logger: Optional[StructuredLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.logger = logger or structured_logger
        self.metrics = metrics_collector or metrics
        self.page_size = page_size or config.sync_page_size
        self.max_pages = max_pages or config.sync_max_pages

    # --- public operations ---

    def sync_sms(self, device, sms_type: int = 0) -> SyncResult:
        """
        Pull new messages. sms_type 0 runs separate passes for received (1)
        and sent (2); the result is complete only if both passes were.

        Raises:
            SyncError: If the phone fails mid-sync; carries the partial result
        """
        passes = [SMS_RECEIVED, SMS_SENT] if sms_type == 0 else [sms_type]
        return self._run("sms", device, lambda target, client, db, result: self._sync_records(
            "sms", target, client, db, result, passes, self._fetch_sms_page, SmsRepository(db), self._sms_record
        ))

    def sync_calls(self, device, call_type: int = 0) -> SyncResult:
        """
        Pull new call log entries. The agent's call query accepts 0 for every
        call type, so a single pass is made whatever the filter.
        """
        return self._run("calls", device, lambda target, client, db, result: self._sync_records(
            "calls", target, client, db, result, [call_type], self._fetch_call_page, CallRepository(db), self._call_record
        ))

    def sync_contacts(self, device) -> SyncResult:
        return self._run("contacts", device, self._sync_contacts)

    def capture_sent_message(self, device, phone_numbers: str, content: str, delay_seconds: float = 1.0) -> int:
        """
        Store a message just sent through the phone without waiting for the
        next full sync. Scans the newest sent messages and persists those whose
        number and content match, marked as read.

        Returns:
            Number of messages captured
        """
        target = PhoneTarget.from_device(device)
        numbers = {n.strip() for n in phone_numbers.split(";") if n.strip()}
        if delay_seconds > 0:
            # The agent writes the outbox asynchronously after a send
            time.sleep(delay_seconds)

        try:
            with self.client_factory(target) as client:
                items = client.query_sms(SmsQueryRequest(type=SMS_SENT, page_num=1, page_size=SENT_CAPTURE_PAGE_SIZE))
        except (PhoneClientError, CodecError) as e:
            self.logger.log_event(
                "sync.sent_capture.failed",
                level="WARN",
                device_id=target.id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise SyncError(f"capture sent message: {e}", SyncResult(), e) from e

        captured = 0
        with self.session_factory() as db:
            sms_repo = SmsRepository(db)
            contact_repo = ContactRepository(db)
            for item in items:
                if item.number.strip() not in numbers or item.content != content:
                    continue
                record = self._sms_record(target, item, SMS_SENT)
                try:
                    if sms_repo.exists_including_deleted(target.id, record.address, record.sms_time, record.type):
                        continue
                except RepositoryError as e:
                    self._log_item_error("sms", target, "exists", e)
                    continue
                self._ensure_shadow(contact_repo, "sms", target, item.number, item.name)
                record.is_read = True
                try:
                    sms_repo.insert(record)
                    captured += 1
                except RepositoryError as e:
                    self._log_item_error("sms", target, "insert", e)

        if captured:
            self.logger.log_event("sync.sent_capture.completed", device_id=target.id, captured=captured)
            self.metrics.inc_counter("sync_items_total", {"kind": "sms", "outcome": "new"}, captured)
        return captured

    # --- pass runner ---

    def _run(self, kind: str, device, body) -> SyncResult:
        target = PhoneTarget.from_device(device)
        result = SyncResult(is_complete=True)
        start = time.monotonic()

        try:
            with self.client_factory(target) as client, self.session_factory() as db:
                body(target, client, db, result)
        except (PhoneClientError, CodecError) as e:
            result.is_complete = False
            self.logger.log_event(
                f"sync.{kind}.failed",
                level="WARN",
                device_id=target.id,
                device_name=target.name,
                error=str(e),
                error_type=type(e).__name__,
                **result.to_dict()
            )
            self.metrics.inc_counter("sync_runs_total", {"kind": kind, "status": "error"})
            raise SyncError(f"sync {kind} for device {target.id}: {e}", result, e) from e

        elapsed_ms = (time.monotonic() - start) * 1000
        self.metrics.inc_counter("sync_runs_total", {"kind": kind, "status": "success"})
        self.metrics.observe_histogram("sync_duration_ms", elapsed_ms, {"kind": kind})

        if result.new_count or result.updated_count:
            self.logger.log_event(
                f"sync.{kind}.completed",
                device_id=target.id,
                device_name=target.name,
                elapsed_ms=round(elapsed_ms, 2),
                **result.to_dict()
            )
        return result

    # --- SMS / calls ---

    def _sync_records(self, kind, target, client, db, result, passes, fetch_page, repo, build_record):
        self._ensure_contacts_first(target, client, db)
        contact_repo = ContactRepository(db)

        complete = True
        for record_type in passes:
            if not self._pull_pages(kind, target, client, result, record_type, fetch_page, repo, contact_repo, build_record):
                complete = False
        result.is_complete = complete

    def _pull_pages(self, kind, target, client, result, record_type, fetch_page, repo, contact_repo, build_record) -> bool:
        """Page through one stream; returns True when the stream was exhausted."""
        for page_num in range(1, self.max_pages + 1):
            items = fetch_page(client, record_type, page_num)
            if not items:
                return True

            staged = []
            seen_keys = set()
            skipped = 0
            for item in items:
                record = build_record(target, item, record_type)
                key = self._natural_key(record)
                if key in seen_keys:
                    skipped += 1
                    continue
                try:
                    if repo.exists_including_deleted(target.id, *key):
                        skipped += 1
                        continue
                except RepositoryError as e:
                    self._log_item_error(kind, target, "exists", e)
                    continue

                seen_keys.add(key)
                self._ensure_shadow(contact_repo, kind, target, key[0], item.name)
                staged.append(record)

            if skipped:
                self.metrics.inc_counter("sync_items_total", {"kind": kind, "outcome": "skipped"}, skipped)

            # Caught up: every item on this page was already known
            if not staged:
                return True

            try:
                inserted = repo.insert_batch(staged)
                result.new_count += inserted
                self.metrics.inc_counter("sync_items_total", {"kind": kind, "outcome": "new"}, inserted)
            except RepositoryError as e:
                self.metrics.inc_counter("sync_items_total", {"kind": kind, "outcome": "error"}, len(staged))
                self.logger.log_event(
                    f"sync.{kind}.batch_insert_failed",
                    level="ERROR",
                    device_id=target.id,
                    page=page_num,
                    staged=len(staged),
                    error=str(e)
                )

        self.logger.log_event(
            f"sync.{kind}.max_pages_reached",
            level="WARN",
            device_id=target.id,
            max_pages=self.max_pages,
            type=record_type
        )
        return False

    def _fetch_sms_page(self, client: PhoneClient, sms_type: int, page_num: int):
        return client.query_sms(SmsQueryRequest(type=sms_type, page_num=page_num, page_size=self.page_size))

    def _fetch_call_page(self, client: PhoneClient, call_type: int, page_num: int):
        return client.query_calls(CallQueryRequest(type=call_type, page_num=page_num, page_size=self.page_size))

    @staticmethod
    def _sms_record(target: PhoneTarget, item, sms_type: int) -> SmsMessage:
        return SmsMessage(
            device_id=target.id,
            address=item.number,
            name=item.name,
            body=item.content,
            type=item.type or sms_type,
            sim_id=item.sim_id,
            sms_time=item.date,
            is_read=False,
        )

    @staticmethod
    def _call_record(target: PhoneTarget, item, call_type: int) -> CallLog:
        return CallLog(
            device_id=target.id,
            number=item.number,
            name=item.name,
            type=item.type or call_type,
            duration=item.duration,
            sim_id=item.sim_id,
            call_time=item.date_long,
            is_read=False,
        )

    @staticmethod
    def _natural_key(record) -> tuple:
        if isinstance(record, SmsMessage):
            return (record.address, record.sms_time, record.type)
        return (record.number, record.call_time, record.type)

    def _ensure_shadow(self, contact_repo: ContactRepository, kind: str, target: PhoneTarget, phone: str, name: str):
        if not phone:
            return
        try:
            contact_repo.ensure_shadow_contact(target.id, phone, name)
        except RepositoryError as e:
            self._log_item_error(kind, target, "ensure_shadow", e, phone=phone)

    def _log_item_error(self, kind: str, target: PhoneTarget, step: str, error: Exception, **fields):
        self.logger.log_event(
            f"sync.{kind}.item_failed",
            level="WARN",
            device_id=target.id,
            step=step,
            error=str(error),
            **fields
        )

    # --- contacts ---

    def _ensure_contacts_first(self, target: PhoneTarget, client: PhoneClient, db: Session):
        try:
            if ContactRepository(db).has_any(target.id):
                return
        except RepositoryError as e:
            self._log_item_error("contacts", target, "has_any", e)
            return

        try:
            synced = self._sync_contacts(target, client, db, SyncResult(is_complete=True))
            self.logger.log_event(
                "sync.contacts.prefetched",
                device_id=target.id,
                **synced.to_dict()
            )
        except (PhoneClientError, CodecError) as e:
            self.logger.log_event(
                "sync.contacts.prefetch_failed",
                level="WARN",
                device_id=target.id,
                error=str(e),
                error_type=type(e).__name__
            )

    def _sync_contacts(self, target: PhoneTarget, client: PhoneClient, db: Session, result: SyncResult) -> SyncResult:
        contacts = client.query_contacts(ContactQueryRequest())
        repo = ContactRepository(db)

        for item in contacts:
            phone = item.phone_number.strip()
            if not phone:
                continue
            try:
                outcome = repo.upsert(target.id, phone, item.name)
            except RepositoryError as e:
                self._log_item_error("contacts", target, "upsert", e, phone=phone)
                continue
            if outcome == "created":
                result.new_count += 1
            elif outcome == "updated":
                result.updated_count += 1

        self.metrics.inc_counter("sync_items_total", {"kind": "contacts", "outcome": "new"}, result.new_count)
        self.metrics.inc_counter("sync_items_total", {"kind": "contacts", "outcome": "updated"}, result.updated_count)
        result.is_complete = True
        return result
