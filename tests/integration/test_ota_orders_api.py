"""OTA 인바운드 주문 API 통합 테스트 (Ctrip 주문 콜백, Meituan 주문/가격 일정)"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select

from otabridge.api import ota_orders
from otabridge.codecs.base import compact_json, loads_json
from otabridge.codecs.ctrip import CtripCodec
from otabridge.codecs.meituan import MeituanCodec
from otabridge.db import get_session
from otabridge.enums import OrderStatus
from otabridge.models import Order
from otabridge.worker import JobQueue, cancel_order_job, confirm_order_job, sync_price_stock_job

CTRIP_URL = "/webhooks/ota/ctrip/order"
MEITUAN_URL = "/webhooks/ota/meituan/order"
PRICE_CALENDAR_URL = "/webhooks/ota/meituan/product/level/price/calendar/v2"


@pytest.fixture
def jobs(session_factory):
    return JobQueue(session_factory=session_factory, queue_size=10)


@pytest.fixture
def client(db_session, jobs):
    app = FastAPI()
    app.include_router(ota_orders.router, prefix="/webhooks")
    app.state.jobs = jobs

    def override_session():
        yield db_session

    app.dependency_overrides[get_session] = override_session
    return TestClient(app)


@pytest.fixture
def ctrip_codec(world):
    config = world.ctrip.config
    return CtripCodec(config["account"], config["secret_key"], config["aes_key"], config["aes_iv"])


@pytest.fixture
def meituan_codec(world):
    config = world.meituan.config
    return MeituanCodec(config["app_key"], config["app_secret"], config["aes_key"])


def _queued(jobs):
    return list(jobs._queue.queue)


def _order(db_session, ota_order_no):
    return db_session.scalars(select(Order).where(Order.ota_order_no == ota_order_no)).first()


def _pre_order_body(world, ota_order_id="CT100", quantity=1, plu="H001|STD|P001"):
    return {
        "otaOrderId": ota_order_id,
        "items": [
            {
                "PLU": plu,
                "useStartDate": world.today.isoformat(),
                "useEndDate": (world.today + timedelta(days=1)).isoformat(),
                "quantity": quantity,
                "passengers": [{"name": "张 三", "cardNo": "110101199001011234", "cardType": "1"}],
            }
        ],
        "contacts": [{"name": "张 三", "mobile": "13800000000"}],
    }


class CtripCaller:
    def __init__(self, client, codec):
        self.client = client
        self.codec = codec

    def __call__(self, service_name, body, envelope=None):
        envelope = envelope or self.codec.build_envelope(service_name, body)
        response = self.client.post(CTRIP_URL, json=envelope)
        assert response.status_code == 200
        payload = response.json()
        header = payload["header"]
        data = self.codec.decrypt_body(payload["body"]) if payload.get("body") else None
        return header["resultCode"], header["resultMessage"], data


@pytest.fixture
def ctrip(client, ctrip_codec):
    return CtripCaller(client, ctrip_codec)


@pytest.mark.integration
class TestCtripEnvelope:
    def test_bad_sign(self, ctrip, ctrip_codec, jobs):
        envelope = ctrip_codec.build_envelope("QueryOrder", {"otaOrderId": "CT9001"})
        envelope["header"]["sign"] = "0" * 32

        code, message, _ = ctrip("QueryOrder", None, envelope=envelope)

        assert (code, message) == ("0002", "签名不正确")

    def test_account_mismatch(self, ctrip, world):
        other = CtripCodec("other", "secret", world.ctrip.config["aes_key"], world.ctrip.config["aes_iv"])
        code, message, _ = ctrip("QueryOrder", None, envelope=other.build_envelope("QueryOrder", {"otaOrderId": "X"}))
        assert (code, message) == ("0003", "供应商账户信息不正确")

    def test_unknown_service(self, ctrip):
        code, message, _ = ctrip("ModifyOrder", {"otaOrderId": "CT9001"})
        assert (code, message) == ("0004", "请求方法为空")

    def test_malformed_body(self, client, world):
        response = client.post(CTRIP_URL, content=b"not json")
        assert response.json() == {"header": {"resultCode": "0003", "resultMessage": "报文解析失败"}}

    def test_missing_platform(self, client, db_session, world):
        world.ctrip.is_active = False
        db_session.flush()
        response = client.post(CTRIP_URL, json={"header": {}, "body": ""})
        assert response.json()["header"]["resultCode"] == "0001"


@pytest.mark.integration
class TestCtripPreOrder:
    def test_pre_create_locks_stock(self, ctrip, db_session, world, jobs):
        code, _, body = ctrip("CreatePreOrder", _pre_order_body(world))

        assert code == "0000"
        order = _order(db_session, "CT100")
        assert body == {"otaOrderId": "CT100", "supplierOrderId": order.order_no}
        assert order.order_no.startswith("ORD")
        assert order.status == OrderStatus.PAID_PENDING.value
        assert order.paid_at is None
        assert order.total_amount == Decimal("300.00")
        assert order.settlement_amount == Decimal("260.00")
        assert order.card_no == "110101199001011234"
        assert order.contact_phone == "13800000000"
        assert [rate.available_quantity for rate in world.rates] == [9, 10, 10]
        assert jobs.pending() == 0

    def test_duplicate_pre_create_is_idempotent(self, ctrip, world):
        _, _, first = ctrip("CreatePreOrder", _pre_order_body(world))
        code, _, second = ctrip("CreatePreOrder", _pre_order_body(world))

        assert code == "0000"
        assert second == first
        assert world.rates[0].available_quantity == 9

    def test_stock_shortage(self, ctrip, db_session, world):
        code, message, _ = ctrip("CreatePreOrder", _pre_order_body(world, quantity=11))

        assert code == "1003"
        assert message.startswith("库存不足")
        assert _order(db_session, "CT100") is None
        assert world.rates[0].available_quantity == 10

    def test_unknown_plu(self, ctrip, world):
        code, _, _ = ctrip("CreatePreOrder", _pre_order_body(world, plu="H001|STD|NOPE"))
        assert code == "1002"

    def test_pay_enqueues_confirmation(self, ctrip, db_session, world, jobs):
        ctrip("CreatePreOrder", _pre_order_body(world))

        code, _, body = ctrip("PayPreOrder", {"otaOrderId": "CT100", "items": [{"itemId": "IT-1"}]})

        order = _order(db_session, "CT100")
        assert code == "0000"
        assert body["supplierConfirmType"] == 2
        assert body["items"] == [{"itemId": "IT-1", "isCredentialVouchers": 0}]
        assert order.status == OrderStatus.CONFIRMING.value
        assert order.paid_at is not None
        assert order.ota_item_id == "IT-1"
        name, func, args, _ = _queued(jobs)[0]
        assert func is confirm_order_job
        assert args == (order.order_no,)

    def test_pay_without_direct_connection_confirms(self, ctrip, db_session, world, jobs):
        world.config.extra_config = dict(world.config.extra_config, sync_mode={"order": "manual"})
        db_session.flush()
        ctrip("CreatePreOrder", _pre_order_body(world))

        code, _, body = ctrip("PayPreOrder", {"otaOrderId": "CT100", "items": [{"itemId": "IT-1"}]})

        order = _order(db_session, "CT100")
        assert body["supplierConfirmType"] == 1
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.confirmed_at is not None
        assert jobs.pending() == 0

    def test_pay_unknown_order(self, ctrip):
        code, message, _ = ctrip("PayPreOrder", {"otaOrderId": "NOPE"})
        assert (code, message) == ("1001", "携程订单号不存在")

    def test_cancel_pre_order_releases_stock(self, ctrip, db_session, world):
        ctrip("CreatePreOrder", _pre_order_body(world))

        code, _, _ = ctrip("CancelPreOrder", {"otaOrderId": "CT100"})

        assert code == "0000"
        assert _order(db_session, "CT100").status == OrderStatus.CANCEL_APPROVED.value
        assert world.rates[0].available_quantity == 10


@pytest.mark.integration
class TestCtripOrder:
    def test_cancel_unpaid_order_releases_stock(self, ctrip, db_session, world):
        ctrip("CreatePreOrder", _pre_order_body(world))

        code, _, body = ctrip("CancelOrder", {"otaOrderId": "CT100", "items": [{"itemId": "1", "quantity": 1}]})

        assert code == "0000"
        assert body == {"supplierConfirmType": 1, "items": [{"itemId": "1"}]}
        assert _order(db_session, "CT100").status == OrderStatus.CANCEL_APPROVED.value
        assert world.rates[0].available_quantity == 10

    def test_cancel_connected_order_enqueues_cancel(self, ctrip, world, make_order, jobs):
        order = make_order(status=OrderStatus.CONFIRMED.value, check_in_date=world.today + timedelta(days=1))

        code, _, body = ctrip("CancelOrder", {"otaOrderId": "CT9001", "items": [{"itemId": "1", "quantity": 1}]})

        assert code == "0000"
        assert body["supplierConfirmType"] == 2
        assert order.status == OrderStatus.CANCEL_REQUESTED.value
        name, func, args, _ = _queued(jobs)[0]
        assert func is cancel_order_job
        assert args == (order.order_no, "OTA平台申请取消订单")

    def test_cancel_rules(self, ctrip, world, make_order):
        make_order(status=OrderStatus.VERIFIED.value, check_in_date=world.today)
        make_order(order_no="O2", ota_order_no="CT2", status=OrderStatus.CONFIRMED.value, check_in_date=world.today - timedelta(days=1))
        make_order(order_no="O3", ota_order_no="CT3", status=OrderStatus.CONFIRMED.value, check_in_date=world.today)

        assert ctrip("CancelOrder", {"otaOrderId": "CT9001"})[0] == "2002"
        assert ctrip("CancelOrder", {"otaOrderId": "CT2"})[0] == "2003"
        assert ctrip("CancelOrder", {"otaOrderId": "CT3", "items": [{"itemId": "1", "quantity": 2}]})[0] == "2004"
        assert ctrip("CancelOrder", {"otaOrderId": "NOPE"})[0] == "2001"

    def test_query_order(self, ctrip, make_order):
        order = make_order(status=OrderStatus.CONFIRMED.value, ota_item_id="IT-9")

        code, _, body = ctrip("QueryOrder", {"otaOrderId": "CT9001"})

        assert code == "0000"
        assert body["supplierOrderId"] == order.order_no
        assert body["items"] == [
            {
                "itemId": "IT-9",
                "orderStatus": 2,
                "quantity": 1,
                "useQuantity": 0,
                "cancelQuantity": 0,
                "useStartDate": "2026-11-01",
                "useEndDate": "2026-11-02",
            }
        ]

    def test_query_cancelled_pre_order(self, ctrip, make_order):
        make_order(status=OrderStatus.CANCEL_APPROVED.value, paid_at=None)

        _, _, body = ctrip("OrderQuery", {"otaOrderId": "CT9001"})

        assert body["items"][0]["itemId"] == "0"
        assert body["items"][0]["orderStatus"] == 14

    def test_refund_only_after_cancel(self, ctrip, make_order):
        make_order(status=OrderStatus.CONFIRMED.value)
        make_order(order_no="O2", ota_order_no="CT2", status=OrderStatus.CANCEL_APPROVED.value)

        assert ctrip("RefundOrder", {"otaOrderId": "CT9001"})[:2] == ("3002", "该订单拒绝退款")
        assert ctrip("RefundOrder", {"otaOrderId": "CT2"})[0] == "0000"

    def test_verify_order(self, ctrip, world):
        item = {"PLU": "H001|STD|P001", "useStartDate": world.today.isoformat(), "quantity": 2}

        code, _, body = ctrip("VerifyOrder", {"items": [item]})

        assert code == "0000"
        assert body == {"verifyResult": True}
        assert ctrip("VerifyOrder", {"items": [dict(item, quantity=50)]})[0] == "1003"
        assert ctrip("VerifyOrder", {"items": [dict(item, PLU="H001|STD|NOPE")]})[0] == "1001"


def _meituan_create_body(world, order_id=7001, quantity=1):
    return {
        "partnerId": 9527,
        "body": {
            "orderId": order_id,
            "partnerDealId": "P001",
            "quantity": quantity,
            "useDate": world.today.isoformat(),
            "realNameType": 1,
            "credentialList": [{"credentialType": 0, "credentialNo": "110101199202021234", "name": "李 四"}],
            "contacts": [{"name": "李 四", "mobile": "13900000000"}],
        },
    }


@pytest.mark.integration
class TestMeituanOrder:
    def test_create_reply_is_encrypted(self, client, db_session, world, meituan_codec):
        response = client.post(f"{MEITUAN_URL}/create/v2", json=_meituan_create_body(world))

        assert response.headers["X-Encryption-Status"] == "encrypted"
        envelope = loads_json(meituan_codec.decrypt(response.text))
        order = _order(db_session, "7001")
        assert envelope == {
            "code": 200,
            "describe": "success",
            "partnerId": 9527,
            "body": {"orderId": 7001, "partnerOrderId": order.order_no},
        }
        assert order.paid_at is None
        assert order.real_name_type == 1
        assert order.credential_list[0]["credentialNo"] == "110101199202021234"
        assert world.rates[0].available_quantity == 9

    def test_create_shortage(self, client, world, meituan_codec):
        response = client.post(f"{MEITUAN_URL}/create/v2", json=_meituan_create_body(world, quantity=20))
        assert loads_json(meituan_codec.decrypt(response.text))["code"] == 503

    def test_pay_enqueues_confirmation(self, client, db_session, world, jobs):
        client.post(f"{MEITUAN_URL}/create/v2", json=_meituan_create_body(world))

        response = client.post(f"{MEITUAN_URL}/pay", json={"partnerId": 9527, "body": {"orderId": 7001}})

        assert response.json()["code"] == 598
        assert response.json()["describe"] == "出票中"
        order = _order(db_session, "7001")
        assert order.status == OrderStatus.CONFIRMING.value
        assert _queued(jobs)[0][1] is confirm_order_job

    def test_pay_unknown_order(self, client, world):
        response = client.post(f"{MEITUAN_URL}/pay", json={"body": {"orderId": 1}})
        assert response.json()["code"] == 400

    def test_encrypted_query(self, client, world, make_order, meituan_codec):
        make_order(
            ota_platform_id=world.meituan.id,
            ota_order_no="7002",
            status=OrderStatus.CONFIRMED.value,
            real_name_type=1,
            credential_list=[{"credentialType": 0, "credentialNo": "X1", "voucher": "", "status": 0}],
        )
        wire = meituan_codec.encrypt(compact_json({"partnerId": 9527, "body": {"orderId": 7002}}))

        response = client.post(f"{MEITUAN_URL}/query", content=wire, headers={"X-Encryption-Status": "encrypted"})

        body = loads_json(meituan_codec.decrypt(response.text))["body"]
        assert body["orderStatus"] == 4
        assert body["orderQuantity"] == 1
        assert body["realNameType"] == 1
        assert body["credentialList"][0]["credentialNo"] == "X1"

    def test_close_unpaid_order_releases_stock(self, client, db_session, world):
        client.post(f"{MEITUAN_URL}/create/v2", json=_meituan_create_body(world))

        response = client.post(f"{MEITUAN_URL}/close", json={"body": {"orderId": 7001, "closeType": 1}})

        assert response.json()["code"] == 200
        order = _order(db_session, "7001")
        assert order.status == OrderStatus.CANCEL_APPROVED.value
        assert world.rates[0].available_quantity == 10

    def test_refund_rules(self, client, world, make_order):
        make_order(ota_platform_id=world.meituan.id, ota_order_no="7003", status=OrderStatus.VERIFIED.value)
        make_order(
            order_no="O2",
            ota_platform_id=world.meituan.id,
            ota_order_no="7004",
            status=OrderStatus.CONFIRMED.value,
            check_in_date=world.today + timedelta(days=1),
        )

        assert client.post(f"{MEITUAN_URL}/refund", json={"body": {"orderId": 7003}}).json()["code"] == 506
        bad_quantity = client.post(f"{MEITUAN_URL}/refund", json={"body": {"orderId": 7004, "refundQuantity": 3}})
        assert bad_quantity.json()["code"] == 400
        accepted = client.post(f"{MEITUAN_URL}/refund", json={"body": {"orderId": 7004, "refundId": "R1"}}).json()
        assert accepted["code"] == 200
        assert accepted["body"]["refundId"] == "R1"

    def test_unknown_action(self, client, world):
        response = client.post(f"{MEITUAN_URL}/reschedule", json={})
        assert response.json()["code"] == 400
        assert response.json()["describe"] == "未知接口类型"


@pytest.mark.integration
class TestMeituanPriceCalendar:
    def _request(self, world, **overrides):
        body = {
            "partnerDealId": "P001",
            "startTime": world.today.isoformat(),
            "endTime": (world.today + timedelta(days=2)).isoformat(),
        }
        body.update(overrides)
        return {"partnerId": 9527, "body": body}

    def test_sync_pull(self, client, world):
        response = client.post(PRICE_CALENDAR_URL, json=self._request(world))

        envelope = response.json()
        assert envelope["code"] == 200
        assert envelope["partnerDealId"] == "P001"
        assert [entry["priceDate"] for entry in envelope["body"]] == [rate.rate_date.isoformat() for rate in world.rates]
        assert envelope["body"][0]["mtPrice"] == 300.0
        assert envelope["body"][0]["stock"] == 10

    def test_async_pull_enqueues_sync(self, client, world, jobs):
        response = client.post(PRICE_CALENDAR_URL, json=self._request(world, asyncType=1))

        assert response.json()["code"] == 999
        name, func, args, _ = _queued(jobs)[0]
        assert func is sync_price_stock_job
        assert args == (world.product.id, world.hotel.id, world.room_type.id, world.meituan.id)

    def test_missing_parameters(self, client, world):
        response = client.post(PRICE_CALENDAR_URL, json=self._request(world, startTime=""))
        assert response.json()["code"] == 400
        assert response.json()["describe"] == "参数不完整"

    def test_unknown_deal(self, client, world):
        response = client.post(PRICE_CALENDAR_URL, json=self._request(world, partnerDealId="NOPE"))
        assert response.json()["code"] == 505
