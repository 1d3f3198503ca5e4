"""
Data access for synced phone records.

Natural keys are enforced by unique constraints, so a concurrent duplicate
insert fails instead of silently duplicating a row. Existence checks used by
sync ignore soft deletion: a record the user deleted must never come back.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Device, SmsMessage, CallLog, Contact
from phone_client import PhoneTarget

UNKNOWN_NUMBER = "Unknown Number"

# Names the agent reports when the caller is not in the phone book
UNKNOWN_CALLER_NAMES = frozenset({"未知号码", "Unknown Number"})


class RepositoryError(Exception):
    """Persistence failure; the caller decides whether the operation continues"""


def _normalize_page(page: int, page_size: int) -> tuple[int, int]:
    if page <= 0:
        page = 1
    if page_size <= 0:
        page_size = 20
    return page, min(page_size, 500)


def _like(keyword: str) -> str:
    return f"%{keyword}%"


class _RecordRepository:
    """Shared behaviour for append-only records (SMS and call logs)."""

    model: Any = None
    address_column: str = ""
    time_column: str = ""

    def __init__(self, db: Session):
        self.db = db

    def _exists(self, device_id: int, address: str, ts: int, record_type: int) -> bool:
        model = self.model
        try:
            row = self.db.query(model.id).filter(
                model.device_id == device_id,
                getattr(model, self.address_column) == address,
                getattr(model, self.time_column) == ts,
                model.type == record_type,
            ).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"check exists: {e}") from e
        return row is not None

    def insert(self, record) -> None:
        try:
            self.db.add(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"insert {self.model.__tablename__}: {e}") from e

    def insert_batch(self, records: list) -> int:
        """Insert all records in one transaction; nothing is kept if any row fails."""
        if not records:
            return 0
        try:
            self.db.add_all(records)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"insert batch {self.model.__tablename__}: {e}") from e
        return len(records)

    def mark_read(self, record_id: int) -> bool:
        return self._update_where(self.model.id == record_id, is_read=True) > 0

    def mark_all_read(self, device_id: int, record_type: int = 0) -> int:
        conditions = [self.model.device_id == device_id, self.model.deleted_at.is_(None)]
        if record_type > 0:
            conditions.append(self.model.type == record_type)
        return self._update_where(and_(*conditions), is_read=True)

    def soft_delete(self, ids: list[int]) -> int:
        if not ids:
            return 0
        return self._update_where(
            and_(self.model.id.in_(ids), self.model.deleted_at.is_(None)),
            deleted_at=datetime.now(timezone.utc),
        )

    def _update_where(self, condition, **values) -> int:
        try:
            result = self.db.execute(update(self.model).where(condition).values(**values))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"update {self.model.__tablename__}: {e}") from e
        return result.rowcount or 0

    def _find_by_device(self, device_id: int, record_type: int, page: int, page_size: int, keyword_columns: list, keyword: str):
        model = self.model
        address = getattr(model, self.address_column)
        page, page_size = _normalize_page(page, page_size)

        query = self.db.query(model, Contact.name).outerjoin(
            Contact,
            and_(Contact.device_id == model.device_id, Contact.phone == address),
        ).filter(model.device_id == device_id, model.deleted_at.is_(None))

        if record_type > 0:
            query = query.filter(model.type == record_type)
        if keyword:
            query = query.filter(or_(*[col.like(_like(keyword)) for col in keyword_columns], Contact.name.like(_like(keyword))))

        try:
            total = query.count()
            rows = query.order_by(getattr(model, self.time_column).desc()) \
                .offset((page - 1) * page_size).limit(page_size).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"find {model.__tablename__}: {e}") from e

        return rows, total


class SmsRepository(_RecordRepository):
    model = SmsMessage
    address_column = "address"
    time_column = "sms_time"

    def exists_including_deleted(self, device_id: int, address: str, sms_time: int, sms_type: int) -> bool:
        return self._exists(device_id, address, sms_time, sms_type)

    def find_by_device(self, device_id: int, sms_type: int = 0, page: int = 1, page_size: int = 20, keyword: str = ""):
        """
        Page through non-deleted messages, newest first.

        Returns:
            (list of dicts, total count). Each dict carries contact_name resolved
            from the contact list, then the name the phone reported, then
            "Unknown Number".
        """
        rows, total = self._find_by_device(
            device_id, sms_type, page, page_size,
            [SmsMessage.address, SmsMessage.name, SmsMessage.body], keyword
        )
        items = [
            {
                "id": sms.id,
                "device_id": sms.device_id,
                "address": sms.address,
                "name": sms.name,
                "contact_name": contact_name or sms.name or UNKNOWN_NUMBER,
                "body": sms.body,
                "type": sms.type,
                "sim_id": sms.sim_id,
                "sms_time": sms.sms_time,
                "is_read": sms.is_read,
            }
            for sms, contact_name in rows
        ]
        return items, total


class CallRepository(_RecordRepository):
    model = CallLog
    address_column = "number"
    time_column = "call_time"

    def exists_including_deleted(self, device_id: int, number: str, call_time: int, call_type: int) -> bool:
        return self._exists(device_id, number, call_time, call_type)

    def find_by_device(self, device_id: int, call_type: int = 0, page: int = 1, page_size: int = 20, keyword: str = ""):
        rows, total = self._find_by_device(
            device_id, call_type, page, page_size,
            [CallLog.number, CallLog.name], keyword
        )
        items = [
            {
                "id": call.id,
                "device_id": call.device_id,
                "number": call.number,
                "name": call.name,
                "contact_name": contact_name or call.name or UNKNOWN_NUMBER,
                "type": call.type,
                "duration": call.duration,
                "sim_id": call.sim_id,
                "call_time": call.call_time,
                "is_read": call.is_read,
            }
            for call, contact_name in rows
        ]
        return items, total


def shadow_display_name(phone: str, observed_name: Optional[str]) -> str:
    """Name for a placeholder contact: the number itself unless the phone gave a real name."""
    name = (observed_name or "").strip()
    if not name or name == phone or name in UNKNOWN_CALLER_NAMES:
        return phone
    return name


class ContactRepository:
    def __init__(self, db: Session):
        self.db = db

    def find_by_phone(self, device_id: int, phone: str) -> Optional[Contact]:
        try:
            return self.db.query(Contact).filter(
                Contact.device_id == device_id,
                Contact.phone == phone
            ).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"find contact: {e}") from e

    def has_any(self, device_id: int) -> bool:
        """True once any contact (shadow or real) exists for the device."""
        try:
            return self.db.query(Contact.id).filter(Contact.device_id == device_id).first() is not None
        except SQLAlchemyError as e:
            raise RepositoryError(f"count contacts: {e}") from e

    def upsert(self, device_id: int, phone: str, name: str) -> str:
        """
        Insert or update a real contact from the phone.

        An existing shadow is promoted in place and its name replaced.

        Returns:
            "created", "updated" or "unchanged"
        """
        existing = self.find_by_phone(device_id, phone)
        try:
            if existing is None:
                self.db.add(Contact(device_id=device_id, phone=phone, name=name, is_shadow=False))
                self.db.commit()
                return "created"

            if existing.name == name and not existing.is_shadow:
                return "unchanged"

            existing.name = name
            existing.is_shadow = False
            self.db.commit()
            return "updated"
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"upsert contact: {e}") from e

    def ensure_shadow_contact(self, device_id: int, phone: str, observed_name: Optional[str]) -> Contact:
        """
        Return the contact for phone, creating a shadow placeholder if none exists.
        Existing contacts (shadow or real) are returned unchanged.
        """
        existing = self.find_by_phone(device_id, phone)
        if existing is not None:
            return existing

        contact = Contact(
            device_id=device_id,
            phone=phone,
            name=shadow_display_name(phone, observed_name),
            is_shadow=True,
        )
        try:
            self.db.add(contact)
            self.db.commit()
        except IntegrityError:
            # Created concurrently by another sync of the same device
            self.db.rollback()
            existing = self.find_by_phone(device_id, phone)
            if existing is None:
                raise RepositoryError(f"ensure shadow contact {phone}: conflicting insert vanished")
            return existing
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"ensure shadow contact: {e}") from e
        return contact

    def find_by_device(self, device_id: int, keyword: str = "") -> list[Contact]:
        """Real contacts only, ordered by name."""
        query = self.db.query(Contact).filter(
            Contact.device_id == device_id,
            Contact.is_shadow.is_(False)
        )
        if keyword:
            query = query.filter(or_(Contact.name.like(_like(keyword)), Contact.phone.like(_like(keyword))))
        try:
            return query.order_by(Contact.name.asc()).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"find contacts: {e}") from e


_UNSET = object()


class DevicePatch:
    """
    Sparse set of device columns to write. Only columns passed to the
    constructor are updated, so fields owned elsewhere (name, remark, key)
    are never overwritten by a status refresh.
    """

    COLUMNS = (
        "status", "device_mark", "extra_sim1", "extra_sim2", "last_seen",
        "battery_level", "battery_status", "battery_plugged", "latitude", "longitude",
    )

    def __init__(self, **columns):
        unknown = set(columns) - set(self.COLUMNS)
        if unknown:
            raise ValueError(f"DevicePatch does not allow columns: {sorted(unknown)}")
        self._values = {k: v for k, v in columns.items() if v is not _UNSET}

    def set(self, column: str, value) -> "DevicePatch":
        if column not in self.COLUMNS:
            raise ValueError(f"DevicePatch does not allow column: {column}")
        self._values[column] = value
        return self

    def columns(self) -> dict:
        return dict(self._values)

    def __bool__(self) -> bool:
        return bool(self._values)

    def __repr__(self) -> str:
        return f"DevicePatch({self._values!r})"


class DeviceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, device_id: int) -> Optional[Device]:
        try:
            return self.db.get(Device, device_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"get device: {e}") from e

    def list_all(self) -> list[Device]:
        try:
            return self.db.query(Device).order_by(Device.id.asc()).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"list devices: {e}") from e

    def list_targets(self) -> list[PhoneTarget]:
        return [PhoneTarget.from_device(d) for d in self.list_all()]

    def update_columns(self, device_id: int, patch: DevicePatch) -> int:
        """Write only the columns carried by the patch; returns rows touched."""
        if not patch:
            return 0
        try:
            result = self.db.execute(
                update(Device).where(Device.id == device_id).values(**patch.columns())
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"update device {device_id}: {e}") from e
        return result.rowcount or 0
