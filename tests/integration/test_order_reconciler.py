"""주문 상태 조정 / OTA 통지 통합 테스트"""

import pytest

from otabridge.enums import ExceptionOrderType, OrderStatus
from otabridge.models import ExceptionRecord
from otabridge.results import AdapterResult, ErrorKind, ServiceResult
from otabridge.services.order_reconciler import OrderReconciler
from otabridge.services.ota_notifier import OtaOrderNotifier
from otabridge.services.resource_router import ResourceServiceRouter


@pytest.fixture
def hengdian_client(scripted):
    return scripted(
        validate=AdapterResult.ok({"ResultCode": "0"}),
        book=AdapterResult.ok({"ResultCode": "0", "OrderId": "HD-1"}),
        cancel=AdapterResult.ok({"ResultCode": "0"}),
        query_status=AdapterResult.ok({"Status": "CONFIRMED"}),
    )


@pytest.fixture
def ota_client(scripted):
    return scripted(
        confirm_order=AdapterResult.ok(code="0000"),
        notify_order_consumed=AdapterResult.ok(code="0000"),
        notify_order_pay=AdapterResult.ok(code="200"),
    )


@pytest.fixture
def reconciler(db_session, hengdian_client, ota_client, no_sleep):
    router = ResourceServiceRouter(db_session, sleep=no_sleep, client_factory=lambda config: hengdian_client)
    return OrderReconciler(db_session, router=router, notifier=OtaOrderNotifier(client_factory=lambda platform: ota_client))


def _exceptions(session):
    return session.query(ExceptionRecord).all()


@pytest.mark.integration
class TestOrderReconciler:
    def test_confirm_success_notifies_ota(self, db_session, world, make_order, reconciler, ota_client):
        order = make_order()
        outcome = reconciler.confirm(order)

        assert outcome.success
        assert outcome.status == OrderStatus.CONFIRMED.value
        assert order.confirmed_at is not None
        assert ota_client.calls == [("confirm_order", ("CT9001", "HD-1"), {})]

    def test_confirm_failure_creates_single_exception(self, db_session, world, make_order, reconciler, hengdian_client):
        hengdian_client._responses["book"] = [AdapterResult.err(ErrorKind.BUSINESS, "系统错误", code="-1")]
        order = make_order()

        outcome = reconciler.confirm(order)

        assert not outcome.success
        assert order.status == OrderStatus.CONFIRMING.value
        assert len(_exceptions(db_session)) == 1

    def test_manual_scenic_spot_is_skipped(self, db_session, world, make_order, reconciler):
        world.config.extra_config = {"sync_mode": {"order": "manual"}}
        order = make_order()

        outcome = reconciler.confirm(order)

        assert outcome.skipped
        assert order.status == OrderStatus.PAID_PENDING.value
        assert _exceptions(db_session) == []

    def test_cancel(self, db_session, world, make_order, reconciler):
        order = make_order(resource_order_no="HD-1", status=OrderStatus.CONFIRMED.value)
        outcome = reconciler.cancel(order, "行程变更")
        assert outcome.success
        assert order.status == OrderStatus.CANCEL_APPROVED.value
        assert order.cancelled_at is not None

    def test_cancel_failure_keeps_request_open(self, db_session, world, make_order, reconciler, hengdian_client):
        hengdian_client._responses["cancel"] = [AdapterResult.err(ErrorKind.BUSINESS, "已入住", code="-1")]
        order = make_order(resource_order_no="HD-1", status=OrderStatus.CONFIRMED.value)

        outcome = reconciler.cancel(order)

        assert not outcome.success
        assert order.status == OrderStatus.CANCEL_REQUESTED.value
        assert len(_exceptions(db_session)) == 1

    def test_reject(self, db_session, world, make_order, reconciler):
        order = make_order(resource_order_no="HD-1")
        assert reconciler.reject(order, "满房").success
        assert order.status == OrderStatus.REJECTED.value

    def test_verify_notifies_consumption(self, db_session, world, make_order, reconciler, ota_client):
        order = make_order(resource_order_no="HD-1", status=OrderStatus.CONFIRMED.value)
        outcome = reconciler.verify(order, {"use_quantity": 1})

        assert outcome.success
        assert order.status == OrderStatus.VERIFIED.value
        name, args, _ = ota_client.calls[0]
        assert name == "notify_order_consumed"
        assert args[0] == "CT9001"
        assert args[2][0]["useQuantity"] == 1
        assert args[2][0]["useStartDate"] == "2026-11-01"

    def test_refresh_status(self, db_session, world, make_order, reconciler, hengdian_client):
        hengdian_client._responses["query_status"] = [AdapterResult.ok({"Status": "CANCELLED"})]
        order = make_order(resource_order_no="HD-1", status=OrderStatus.CANCEL_REQUESTED.value)

        outcome = reconciler.refresh_status(order)

        assert outcome.status == OrderStatus.CANCEL_APPROVED.value
        assert order.cancelled_at is not None

    def test_notify_error_keeps_booking(self, db_session, world, make_order, hengdian_client, no_sleep):
        """OTA 통지가 예외를 던져도 리소스 주문 번호와 확정 상태는 유지됩니다."""

        def broken_factory(platform):
            raise RuntimeError("通知客户端故障")

        router = ResourceServiceRouter(db_session, sleep=no_sleep, client_factory=lambda config: hengdian_client)
        reconciler = OrderReconciler(db_session, router=router, notifier=OtaOrderNotifier(client_factory=broken_factory))
        order = make_order()

        outcome = reconciler.confirm(order)

        assert outcome.success
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.resource_order_no == "HD-1"
        records = _exceptions(db_session)
        assert len(records) == 1
        assert records[0].exception_data["operation"] == "notify_confirm"

    def test_rejected_notice_is_recorded(self, db_session, world, make_order, reconciler, ota_client):
        ota_client._responses["confirm_order"] = [AdapterResult.err(ErrorKind.BUSINESS, "订单不存在", code="1001")]
        order = make_order()

        outcome = reconciler.confirm(order)

        assert outcome.success
        assert order.status == OrderStatus.CONFIRMED.value
        record = _exceptions(db_session)[0]
        assert record.exception_message == "OTA通知失败：订单不存在"
        assert record.exception_data["ota_response"]["code"] == "1001"

    def test_silent_service_failure_is_escalated(self, db_session, world, make_order, monkeypatch):
        class SilentService:
            def reject_order(self, order, reason=""):
                return ServiceResult.fail("请求超时")

        router = ResourceServiceRouter(db_session)
        monkeypatch.setattr(router, "resolve", lambda order, operation: SilentService())
        order = make_order()

        outcome = OrderReconciler(db_session, router=router).reject(order)

        assert not outcome.success
        records = _exceptions(db_session)
        assert len(records) == 1
        assert records[0].exception_type == ExceptionOrderType.TIMEOUT.value
        assert records[0].exception_data["operation"] == "reject"


@pytest.mark.integration
class TestOtaOrderNotifier:
    def test_meituan_pay_notice(self, db_session, world, make_order, ota_client):
        order = make_order(
            ota_platform_id=world.meituan.id,
            ota_order_no="123456",
            real_name_type=1,
            credential_list=[{"credentialType": 0, "credentialNo": "110101199001011234"}],
        )
        OtaOrderNotifier(client_factory=lambda platform: ota_client).notify_confirmed(order)

        name, args, _ = ota_client.calls[0]
        assert name == "notify_order_pay"
        body = args[0]["body"]
        assert body["orderId"] == 123456
        assert body["partnerOrderId"] == "ORD20260101001"
        assert body["credentialList"] == [{"credentialType": 0, "credentialNo": "110101199001011234", "voucher": ""}]

    def test_meituan_has_no_consumed_notice(self, db_session, world, make_order, ota_client):
        order = make_order(ota_platform_id=world.meituan.id)
        assert OtaOrderNotifier(client_factory=lambda platform: ota_client).notify_consumed(order) is None
        assert ota_client.calls == []

    def test_order_without_platform(self, db_session, world, make_order, ota_client):
        order = make_order(ota_platform_id=None)
        assert OtaOrderNotifier(client_factory=lambda platform: ota_client).notify_confirmed(order) is None

    def test_misconfigured_platform_returns_failure(self, db_session, world, make_order):
        world.meituan.config = dict(world.meituan.config, aes_key="short")
        order = make_order(ota_platform_id=world.meituan.id)

        result = OtaOrderNotifier().notify_confirmed(order)

        assert not result.success
        assert result.error_kind == ErrorKind.ROUTING
        assert result.message.startswith("OTA平台配置错误")
