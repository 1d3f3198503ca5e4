from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional
from datetime import datetime


# --- SmsForwarder agent payloads ---

class AgentModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def null_as_default(cls, value, info):
        # The agent sends null for empty fields (e.g. a name it could not resolve)
        if value is None:
            field = cls.model_fields[info.field_name]
            if not field.is_required():
                return field.get_default(call_default_factory=True)
        return value


class PhoneConfig(AgentModel):
    enable_api_battery_query: bool = False
    enable_api_call_query: bool = False
    enable_api_clone: bool = False
    enable_api_contact_query: bool = False
    enable_api_sms_query: bool = False
    enable_api_sms_send: bool = False
    enable_api_wol: bool = False
    extra_device_mark: str = ""
    extra_sim1: str = ""
    extra_sim2: str = ""
    sim_info_list: Optional[dict[str, Any]] = None


class SmsQueryRequest(AgentModel):
    type: int = 0  # 1=received, 2=sent
    page_num: int = 1
    page_size: int = 10
    keyword: str = ""


class SmsItem(AgentModel):
    content: str = ""
    number: str = ""
    name: str = ""
    type: int = 0
    date: int = 0  # epoch ms
    sim_id: int = -1
    sub_id: int = 0


class SmsSendRequest(AgentModel):
    sim_slot: int = Field(1, ge=1, le=2)
    phone_numbers: str = Field(..., min_length=1)  # semicolon-separated
    msg_content: str = Field(..., min_length=1)


class CallQueryRequest(AgentModel):
    type: int = 0  # 0=all, 1=incoming, 2=outgoing, 3=missed
    page_num: int = 1
    page_size: int = 10
    phone_number: str = ""


class CallItem(AgentModel):
    date_long: int = Field(0, alias="dateLong")
    number: str = ""
    name: str = ""
    sim_id: int = -1
    type: int = 0
    duration: int = 0


class ContactQueryRequest(AgentModel):
    phone_number: str = ""
    name: str = ""


class ContactItem(AgentModel):
    name: str = ""
    phone_number: str = ""


class ContactAddRequest(AgentModel):
    phone_number: str = Field(..., min_length=1)  # semicolon-separated
    name: str = Field(..., min_length=1)


class BatteryInfo(AgentModel):
    level: str = ""
    scale: str = ""
    voltage: str = ""
    temperature: str = ""
    status: str = ""
    health: str = ""
    plugged: str = ""


class LocationInfo(AgentModel):
    address: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    provider: str = ""
    time: str = ""


class WolRequest(AgentModel):
    mac: str = Field(..., min_length=1)
    ip: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)


class ClonePullRequest(AgentModel):
    version_code: int = 0


# --- REST API ---

class SyncRequest(BaseModel):
    type: int = Field(0, ge=0)


class SyncResultResponse(BaseModel):
    new_count: int
    updated_count: int
    is_complete: bool


class IdListRequest(BaseModel):
    ids: list[int] = Field(..., min_length=1, max_length=1000)

    @field_validator("ids")
    @classmethod
    def ids_positive(cls, v: list[int]) -> list[int]:
        if any(i <= 0 for i in v):
            raise ValueError("ids must be positive")
        return v


class DeviceSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone_addr: str
    status: Optional[str] = None
    battery_level: Optional[str] = None
    battery_status: Optional[str] = None
    battery_plugged: Optional[str] = None
    device_mark: Optional[str] = None
    extra_sim1: Optional[str] = None
    extra_sim2: Optional[str] = None
    remark: Optional[str] = None
    last_seen: Optional[datetime] = None


class SmsOut(BaseModel):
    id: int
    device_id: int
    address: str
    name: Optional[str] = None
    contact_name: str
    body: Optional[str] = None
    type: int
    sim_id: int
    sms_time: int
    is_read: bool


class CallOut(BaseModel):
    id: int
    device_id: int
    number: str
    name: Optional[str] = None
    contact_name: str
    type: int
    duration: int
    sim_id: int
    call_time: int
    is_read: bool


class ContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: int
    name: Optional[str] = None
    phone: str
