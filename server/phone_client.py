"""
HTTP client for the SmsForwarder API served by each phone.

Every request is wrapped as {"data", "timestamp", "sign"}, encrypted with the
device's SM4 key and POSTed as hex text. Responses come back the same way as
{"code", "msg", "data", "timestamp"}; code 200 means success.
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from config import config
from observability import structured_logger, metrics, StructuredLogger, MetricsCollector
from schemas import (
    PhoneConfig, SmsQueryRequest, SmsItem, SmsSendRequest, CallQueryRequest, CallItem,
    ContactQueryRequest, ContactItem, ContactAddRequest, BatteryInfo, LocationInfo, WolRequest
)
from sm4_codec import encrypt_hex, decrypt_hex, CodecError

CONFIG_QUERY = "/config/query"
SMS_SEND = "/sms/send"
SMS_QUERY = "/sms/query"
CALL_QUERY = "/call/query"
CONTACT_QUERY = "/contact/query"
CONTACT_ADD = "/contact/add"
BATTERY_QUERY = "/battery/query"
LOCATION_QUERY = "/location/query"
WOL_SEND = "/wol/send"
CLONE_PULL = "/clone/pull"
CLONE_PUSH = "/clone/push"

AGENT_OK = 200

T = TypeVar("T", bound=BaseModel)


class PhoneClientError(Exception):
    """Base class for failures talking to a phone"""


class PhoneTransportError(PhoneClientError):
    """Network failure, timeout, or a response that could not be read"""


class PhoneRejectedError(PhoneClientError):
    """The agent answered but reported a non-200 code"""

    def __init__(self, msg: str, code: int):
        super().__init__(f"phone returned error: {msg}")
        self.msg = msg
        self.code = code


@dataclass(frozen=True)
class PhoneTarget:
    """Detached copy of the device fields needed to reach a phone."""
    id: int
    name: str
    phone_addr: str
    sm4_key: str
    status: Optional[str] = None

    @classmethod
    def from_device(cls, device) -> "PhoneTarget":
        if isinstance(device, cls):
            return device
        return cls(
            id=device.id,
            name=device.name,
            phone_addr=device.phone_addr,
            sm4_key=device.sm4_key,
            status=device.status,
        )


@dataclass
class AgentResponse:
    code: int
    msg: str
    data: Any = None
    timestamp: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class PhoneClient:
    """
    Client for one phone. Not thread-safe; create one per task.

    Usage:
        with PhoneClient(device) as client:
            items = client.query_sms(SmsQueryRequest(type=1, page_num=1, page_size=50))
    """

    def __init__(
        self,
        device,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[StructuredLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.target = PhoneTarget.from_device(device)
        self.timeout = timeout if timeout is not None else config.phone_timeout_seconds
        self.logger = logger or structured_logger
        self.metrics = metrics_collector or metrics
        self._http = httpx.Client(timeout=self.timeout, transport=transport)

    def __enter__(self) -> "PhoneClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _url(self, uri: str) -> str:
        return self.target.phone_addr.rstrip("/") + uri

    def request(self, uri: str, data: Any) -> AgentResponse:
        """
        Send one encrypted request and return the decoded agent envelope.

        Raises:
            CodecError: If the device key is invalid or the reply does not decrypt
            PhoneTransportError: On network failure or an unreadable reply
            PhoneRejectedError: If the agent reports a non-200 code
        """
        start = time.monotonic()
        outcome = "error"
        try:
            response = self._do_request(uri, data)
            outcome = "ok"
            return response
        except PhoneRejectedError:
            outcome = "rejected"
            raise
        finally:
            latency_ms = (time.monotonic() - start) * 1000
            self.metrics.inc_counter("phone_requests_total", {"endpoint": uri, "outcome": outcome})
            self.metrics.observe_histogram("phone_request_latency_ms", latency_ms, {"endpoint": uri})

    def _do_request(self, uri: str, data: Any) -> AgentResponse:
        envelope = {
            "data": data,
            "timestamp": _now_ms(),
            "sign": "",
        }
        body = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        encrypted = encrypt_hex(self.target.sm4_key, body)

        try:
            http_response = self._http.post(
                self._url(uri),
                content=encrypted,
                headers={"Content-Type": "application/json; charset=utf-8"},
            )
        except httpx.HTTPError as e:
            self.logger.log_event(
                "phone.request.failed",
                level="WARN",
                device_id=self.target.id,
                endpoint=uri,
                error=str(e),
                error_type=type(e).__name__
            )
            raise PhoneTransportError(f"send request: {e}") from e

        try:
            plain = decrypt_hex(self.target.sm4_key, http_response.text)
        except CodecError as e:
            if not http_response.is_success:
                raise PhoneTransportError(f"phone answered HTTP {http_response.status_code}") from e
            self.logger.log_event(
                "phone.response.undecryptable",
                level="WARN",
                device_id=self.target.id,
                endpoint=uri,
                error=str(e)
            )
            raise

        try:
            payload = json.loads(plain)
            response = AgentResponse(
                code=int(payload.get("code", 0)),
                msg=str(payload.get("msg", "")),
                data=payload.get("data"),
                timestamp=int(payload.get("timestamp") or 0),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise PhoneTransportError(f"unmarshal response: {e}") from e

        if response.code != AGENT_OK:
            self.logger.log_event(
                "phone.request.rejected",
                level="WARN",
                device_id=self.target.id,
                endpoint=uri,
                code=response.code,
                msg=response.msg
            )
            raise PhoneRejectedError(response.msg, response.code)

        return response

    def _call(self, uri: str, payload: Optional[BaseModel] = None) -> AgentResponse:
        data = payload.model_dump(by_alias=True, exclude_none=True) if payload is not None else {}
        return self.request(uri, data)

    @staticmethod
    def _parse(model: Type[T], data: Any) -> T:
        try:
            return model.model_validate(data or {})
        except ValidationError as e:
            raise PhoneTransportError(f"unmarshal {model.__name__}: {e}") from e

    @staticmethod
    def _parse_list(model: Type[T], data: Any) -> list[T]:
        try:
            return TypeAdapter(list[model]).validate_python(data or [])
        except ValidationError as e:
            raise PhoneTransportError(f"unmarshal {model.__name__} list: {e}") from e

    # --- typed endpoints ---

    def query_config(self) -> PhoneConfig:
        return self._parse(PhoneConfig, self._call(CONFIG_QUERY).data)

    def send_sms(self, request: SmsSendRequest) -> None:
        self._call(SMS_SEND, request)

    def query_sms(self, request: SmsQueryRequest) -> list[SmsItem]:
        if request.page_num <= 0:
            request = request.model_copy(update={"page_num": 1})
        if request.page_size <= 0:
            request = request.model_copy(update={"page_size": 10})
        return self._parse_list(SmsItem, self._call(SMS_QUERY, request).data)

    def query_calls(self, request: CallQueryRequest) -> list[CallItem]:
        if request.page_num <= 0:
            request = request.model_copy(update={"page_num": 1})
        if request.page_size <= 0:
            request = request.model_copy(update={"page_size": 10})
        return self._parse_list(CallItem, self._call(CALL_QUERY, request).data)

    def query_contacts(self, request: Optional[ContactQueryRequest] = None) -> list[ContactItem]:
        return self._parse_list(ContactItem, self._call(CONTACT_QUERY, request or ContactQueryRequest()).data)

    def add_contact(self, request: ContactAddRequest) -> None:
        self._call(CONTACT_ADD, request)

    def query_battery(self) -> BatteryInfo:
        return self._parse(BatteryInfo, self._call(BATTERY_QUERY).data)

    def query_location(self) -> LocationInfo:
        return self._parse(LocationInfo, self._call(LOCATION_QUERY).data)

    def send_wol(self, request: WolRequest) -> None:
        self._call(WOL_SEND, request)

    def clone_pull(self, version_code: int) -> dict:
        """Pull the phone's SmsForwarder configuration for cloning to another phone."""
        data = self.request(CLONE_PULL, {"version_code": version_code}).data
        if not isinstance(data, dict):
            raise PhoneTransportError("unmarshal clone config: expected an object")
        return data

    def clone_push(self, clone_config: dict) -> None:
        self.request(CLONE_PUSH, clone_config)
