"""
Tests for the encrypted phone transport.
"""
import json

import httpx
import pytest

from phone_client import (
    PhoneClient, PhoneTarget, PhoneTransportError, PhoneRejectedError,
    SMS_QUERY, CALL_QUERY, CONFIG_QUERY, CLONE_PULL
)
from schemas import SmsQueryRequest, CallQueryRequest, SmsSendRequest, ContactAddRequest, WolRequest
from sm4_codec import encrypt_hex, InvalidKeyError, CodecError
from conftest import FakePhone, TEST_KEY

TARGET = PhoneTarget(id=7, name="Pixel", phone_addr="http://phone.test:5000/", sm4_key=TEST_KEY)


def make_client(transport, target=TARGET) -> PhoneClient:
    return PhoneClient(target, transport=transport)


class TestEnvelope:
    def test_request_is_encrypted_envelope_with_json_content_type(self, fake_phone: FakePhone):
        with make_client(fake_phone.transport) as client:
            client.query_sms(SmsQueryRequest(type=1, page_num=2, page_size=50))

        request = fake_phone.calls_to(SMS_QUERY)[0]
        assert request["content_type"] == "application/json; charset=utf-8"
        assert request["envelope"]["sign"] == ""
        assert isinstance(request["envelope"]["timestamp"], int)
        assert request["data"] == {"type": 1, "page_num": 2, "page_size": 50, "keyword": ""}

    def test_trailing_slash_in_address_is_not_doubled(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            reply = json.dumps({"code": 200, "msg": "success", "data": {}, "timestamp": 0})
            return httpx.Response(200, text=encrypt_hex(TEST_KEY, reply.encode()))

        with make_client(httpx.MockTransport(handler)) as client:
            client.query_config()

        assert seen == ["http://phone.test:5000/config/query"]

    def test_non_positive_paging_defaults(self, fake_phone: FakePhone):
        with make_client(fake_phone.transport) as client:
            client.query_calls(CallQueryRequest(type=0, page_num=0, page_size=-5))

        data = fake_phone.calls_to(CALL_QUERY)[0]["data"]
        assert data["page_num"] == 1
        assert data["page_size"] == 10


class TestTypedResults:
    def test_query_sms_parses_items(self, fake_phone: FakePhone):
        fake_phone.sms_pages[1] = [[
            {"content": "hi", "number": "+1555", "name": "", "type": 1, "date": 1700000000000, "sim_id": 0, "sub_id": 1},
        ]]
        with make_client(fake_phone.transport) as client:
            items = client.query_sms(SmsQueryRequest(type=1, page_num=1, page_size=50))

        assert len(items) == 1
        assert items[0].number == "+1555"
        assert items[0].date == 1700000000000

    def test_call_items_read_date_long_key(self, fake_phone: FakePhone):
        fake_phone.call_pages[0] = [[
            {"dateLong": 1700000001000, "number": "10086", "name": "", "sim_id": 1, "type": 3, "duration": 0},
        ]]
        with make_client(fake_phone.transport) as client:
            items = client.query_calls(CallQueryRequest(type=0, page_num=1, page_size=50))

        assert items[0].date_long == 1700000001000
        assert items[0].type == 3

    def test_null_list_is_empty(self, fake_phone: FakePhone):
        fake_phone.handlers[SMS_QUERY] = lambda data: (200, "success", None)
        with make_client(fake_phone.transport) as client:
            assert client.query_sms(SmsQueryRequest(type=1)) == []

    def test_config_and_battery(self, fake_phone: FakePhone):
        fake_phone.config["enable_api_battery_query"] = True
        with make_client(fake_phone.transport) as client:
            config = client.query_config()
            battery = client.query_battery()

        assert config.enable_api_battery_query is True
        assert config.extra_device_mark == "Pixel 7"
        assert battery.level == "85%"

    def test_commands_send_payloads(self, fake_phone: FakePhone):
        with make_client(fake_phone.transport) as client:
            client.send_sms(SmsSendRequest(sim_slot=2, phone_numbers="10086;10010", msg_content="test"))
            client.add_contact(ContactAddRequest(phone_number="+1555", name="Alice"))
            client.send_wol(WolRequest(mac="AA:BB:CC:DD:EE:FF"))

        assert fake_phone.calls_to("/sms/send")[0]["data"] == {
            "sim_slot": 2, "phone_numbers": "10086;10010", "msg_content": "test"
        }
        assert fake_phone.calls_to("/contact/add")[0]["data"] == {"phone_number": "+1555", "name": "Alice"}
        assert fake_phone.calls_to("/wol/send")[0]["data"] == {"mac": "AA:BB:CC:DD:EE:FF"}

    def test_clone_pull_returns_raw_config(self, fake_phone: FakePhone):
        with make_client(fake_phone.transport) as client:
            data = client.clone_pull(100)

        assert data["settings"] == {"enable_sms": True}
        assert fake_phone.calls_to(CLONE_PULL)[0]["data"] == {"version_code": 100}

    def test_unexpected_data_shape_is_transport_error(self, fake_phone: FakePhone):
        fake_phone.handlers[SMS_QUERY] = lambda data: (200, "success", {"not": "a list"})
        with make_client(fake_phone.transport) as client:
            with pytest.raises(PhoneTransportError):
                client.query_sms(SmsQueryRequest(type=1))


class TestErrors:
    def test_agent_code_is_surfaced_verbatim(self, fake_phone: FakePhone):
        fake_phone.handlers[SMS_QUERY] = lambda data: (500, "短信查询功能未开启", None)
        with make_client(fake_phone.transport) as client:
            with pytest.raises(PhoneRejectedError) as exc_info:
                client.query_sms(SmsQueryRequest(type=1))

        assert exc_info.value.msg == "短信查询功能未开启"
        assert exc_info.value.code == 500

    def test_connection_failure_is_transport_error(self, fake_phone: FakePhone, capture_logs):
        fake_phone.fail_with = httpx.ConnectError("connection refused")
        with make_client(fake_phone.transport) as client:
            with pytest.raises(PhoneTransportError):
                client.query_config()

        events = [log["event"] for log in capture_logs]
        assert "phone.request.failed" in events

    def test_non_2xx_with_plain_body_is_transport_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="Not Found"))
        with make_client(transport) as client:
            with pytest.raises(PhoneTransportError):
                client.query_config()

    def test_2xx_with_undecryptable_body_is_codec_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>captive portal</html>"))
        with make_client(transport) as client:
            with pytest.raises(CodecError):
                client.query_config()

    def test_invalid_json_envelope_is_transport_error(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text=encrypt_hex(TEST_KEY, b"not json"))
        )
        with make_client(transport) as client:
            with pytest.raises(PhoneTransportError):
                client.query_config()

    def test_bad_device_key_fails_before_sending(self, fake_phone: FakePhone):
        target = PhoneTarget(id=1, name="bad", phone_addr="http://phone.test", sm4_key="0123456789abcdef")
        with make_client(fake_phone.transport, target) as client:
            with pytest.raises(InvalidKeyError):
                client.query_config()

        assert fake_phone.requests == []

    def test_metrics_record_outcome(self, fake_phone: FakePhone, capture_metrics):
        fake_phone.handlers[CONFIG_QUERY] = lambda data: (403, "denied", None)
        with make_client(fake_phone.transport) as client:
            with pytest.raises(PhoneRejectedError):
                client.query_config()
            client.query_battery()

        outcomes = [
            c["labels"]["outcome"] for c in capture_metrics["counters"]
            if c["name"] == "phone_requests_total"
        ]
        assert outcomes == ["rejected", "ok"]
