from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Index, Boolean, ForeignKey, UniqueConstraint, BigInteger, Float
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from typing import Optional

from config import config


class Base(DeclarativeBase):
    pass


class Device(Base):
    """
    A phone running SmsForwarder. The server is the HTTP client and the phone
    serves the encrypted API at phone_addr.
    """
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_addr: Mapped[str] = mapped_column(String(255), nullable=False)
    sm4_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    battery_level: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    battery_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    battery_plugged: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    device_mark: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    extra_sim1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    extra_sim2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))


class SmsMessage(Base):
    __tablename__ = "sms_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[int] = mapped_column(Integer, nullable=False)  # 1=received, 2=sent
    sim_id: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)  # 0=SIM1, 1=SIM2, -1=unknown
    sms_time: Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch ms reported by the phone
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('device_id', 'address', 'sms_time', 'type', name='uq_sms_natural_key'),
        Index('idx_sms_device_time', 'device_id', 'sms_time'),
    )


class CallLog(Base):
    __tablename__ = "call_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    number: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    type: Mapped[int] = mapped_column(Integer, nullable=False)  # 1=incoming, 2=outgoing, 3=missed
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sim_id: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    call_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('device_id', 'number', 'call_time', 'type', name='uq_call_natural_key'),
        Index('idx_call_device_time', 'device_id', 'call_time'),
    )


class Contact(Base):
    """
    Contact per device. Shadow contacts are placeholders created while syncing
    messages and calls so every number resolves to a display name; a real
    contact sync promotes them in place.
    """
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone: Mapped[str] = mapped_column(String(40), nullable=False)
    is_shadow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('device_id', 'phone', name='uq_contact_device_phone'),
    )


DATABASE_URL = config.get_database_url()

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    # Poller rounds and background syncs each hold a connection for a whole page
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
