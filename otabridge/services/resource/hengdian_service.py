"""Hengdian(横店) 호텔 시스템 리소스 서비스"""

from __future__ import annotations

import json
import logging
from typing import Any

from otabridge.auth_config import UsernamePassword
from otabridge.codecs.hengdian import select_credentials
from otabridge.hengdian_client import HengdianClient
from otabridge.models import Order
from otabridge.results import AdapterResult, ServiceResult
from otabridge.services.resource.base import CLIENT_CONFIG_ERRORS, ResourceService, ResourceServiceError
from otabridge.services.resource.status_maps import HENGDIAN_CANCELLABLE, map_hengdian_state
from otabridge.settings import settings

logger = logging.getLogger(__name__)

PAYMENT_TYPE_PREPAID = 5


def build_book_payload(order: Order) -> dict[str, Any]:
    """Order → ValidateRQ/BookRQ 본문"""
    if order.check_in_date is None or order.check_out_date is None:
        raise ResourceServiceError("订单缺少入住/离店日期")
    hotel = order.hotel
    room_type = order.room_type
    if hotel is None or room_type is None:
        raise ResourceServiceError("订单缺少酒店或房型信息")

    payload: dict[str, Any] = {
        "OtaOrderId": order.ota_order_no or order.order_no,
        "PackageId": order.product.code if order.product is not None else "",
        "HotelId": hotel.external_code or hotel.code or "",
        "RoomType": room_type.external_code or room_type.name,
        "CheckIn": order.check_in_date.isoformat(),
        "CheckOut": order.check_out_date.isoformat(),
        "RoomNum": order.room_count or 1,
        "CustomerNumber": order.guest_count or 1,
        "PaymentType": PAYMENT_TYPE_PREPAID,
        "Extensions": json.dumps([]),
    }
    guests = [
        {"Name": guest.get("name") or guest.get("Name") or "", "IdCode": guest.get("idCode") or guest.get("IdCode") or ""}
        for guest in order.guest_info or []
    ]
    guests = [guest for guest in guests if guest["Name"]]
    if not guests and order.contact_name:
        guests = [{"Name": order.contact_name, "IdCode": order.card_no or ""}]
    if guests:
        payload["OrderGuests"] = {"OrderGuest": guests}
    return payload


class HengdianService(ResourceService):
    provider_code = "hengdian"

    def get_client(self, order: Order | None = None) -> HengdianClient:
        """주문의 OTA 플랫폼별 계정이 설정되어 있으면 그 계정으로 클라이언트를 만듭니다."""
        if self._client is not None:
            return self._client
        auth = self.config.auth_config()
        username = auth.username if isinstance(auth, UsernamePassword) else self.config.username
        password = auth.password if isinstance(auth, UsernamePassword) else self.config.password
        ota_code = None
        if order is not None and order.ota_platform is not None:
            ota_code = order.ota_platform.code
        username, password = select_credentials(self.config.extra_config, ota_code, username, password)
        return HengdianClient(self.config.api_url or "", username, password)

    # 접수 ---------------------------------------------------------------

    def confirm_order(self, order: Order) -> ServiceResult:
        existing = self.already_confirmed(order)
        if existing is not None:
            return existing

        try:
            payload = build_book_payload(order)
        except ResourceServiceError as e:
            self.escalate(order, "confirmOrder", str(e))
            return ServiceResult.fail(f"接单失败：{e}", need_manual=True)

        try:
            client = self.get_client(order)
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "confirmOrder", e)
        validation = self.call_with_retry("ValidateRQ", lambda: client.validate(payload))
        if not validation.success:
            message = f"订单校验失败：{validation.message}"
            logger.error(f"[HENGDIAN] 예약 검증 실패: order={order.order_no} msg={validation.message}")
            self.escalate(order, "confirmOrder", message, validation)
            return ServiceResult.fail(message, need_manual=True, code=validation.code)

        result = self.call_with_retry("BookRQ", lambda: client.book(payload))
        if not result.success:
            message = f"订单创建失败：{result.message}"
            logger.error(f"[HENGDIAN] 예약 실패: order={order.order_no} msg={result.message}")
            self.escalate(order, "confirmOrder", message, result)
            return ServiceResult.fail(message, need_manual=True, code=result.code)

        data = result.data if isinstance(result.data, dict) else {}
        resource_order_no = str(data.get("OrderId") or payload["OtaOrderId"])
        order.assign_resource_order_no(resource_order_no)
        self.session.flush()
        logger.info(f"[HENGDIAN] 예약 성공: order={order.order_no} hengdian_order={resource_order_no}")
        return ServiceResult.ok("订单创建成功", resource_order_no=resource_order_no)

    def reject_order(self, order: Order, reason: str = "") -> ServiceResult:
        return self.cancel_order(order, reason)

    # 취소 ---------------------------------------------------------------

    def cancel_order(self, order: Order, reason: str = "") -> ServiceResult:
        if not order.resource_order_no:
            message = "订单没有资源方订单号，无法取消"
            self.escalate(order, "cancelOrder", message)
            return ServiceResult.fail(f"取消失败：{message}", need_manual=True)

        try:
            client = self.get_client(order)
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "cancelOrder", e)
        payload = {"OtaOrderId": order.ota_order_no or order.order_no, "Reason": reason or None}
        result = self.call_with_retry("CancelRQ", lambda: client.cancel(payload))
        if result.success:
            logger.info(f"[HENGDIAN] 취소 완료: order={order.order_no}")
            return ServiceResult.ok("订单取消成功")
        logger.error(f"[HENGDIAN] 취소 실패: order={order.order_no} msg={result.message}")
        self.escalate(order, "cancelOrder", result.message or "订单取消失败", result)
        return ServiceResult.fail(f"取消失败：{result.message}", need_manual=True)

    def can_cancel_order(self, order: Order) -> ServiceResult:
        status = self.query_order_status(order)
        if not status.success:
            return ServiceResult.ok(f"无法查询订单状态：{status.message}", can_cancel=False)
        raw_status = str(status.data.get("hengdian_status") or "").upper()
        can_cancel = raw_status in HENGDIAN_CANCELLABLE
        return ServiceResult.ok(
            "可以取消" if can_cancel else "订单状态不允许取消",
            can_cancel=can_cancel,
            hengdian_status=raw_status,
        )

    # 조회 ---------------------------------------------------------------

    def query_order_status(self, order_or_no: Order | str) -> ServiceResult:
        if isinstance(order_or_no, Order):
            order: Order | None = order_or_no
            ota_order_id = order_or_no.ota_order_no or order_or_no.order_no
        else:
            order = None
            ota_order_id = str(order_or_no)

        try:
            client = self.get_client(order)
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "queryOrderStatus", e, escalate=False)
        result = self.call_with_retry("QueryStatusRQ", lambda: client.query_status(ota_order_id))
        if not result.success:
            return ServiceResult.fail(result.message or "查询订单状态失败")

        data = result.data if isinstance(result.data, dict) else {}
        raw_status = data.get("Status") or data.get("OrderStatus")
        mapped = map_hengdian_state(raw_status)
        return ServiceResult.ok(
            "查询成功",
            order_no=ota_order_id,
            hengdian_status=raw_status,
            status=self.status_value(mapped),
            resource_order_no=data.get("OrderId"),
        )

    # 재고 구독 -------------------------------------------------------------

    def subscribe_inventory(
        self, hotels: list[dict[str, Any]], notify_url: str | None = None, unsubscribe: bool = False
    ) -> AdapterResult:
        """
        방 상태(재고) 푸시를 구독합니다.

        Args:
            hotels: [{"hotel_id": "001", "room_types": ["标准间"]}]
            notify_url: 없으면 settings.hengdian_webhook_url
        """
        url = notify_url or settings.hengdian_webhook_url
        if not url:
            raise ResourceServiceError("未配置横店库存推送回调地址")
        logger.info(f"[HENGDIAN] 방 상태 구독 요청: hotels={len(hotels)} unsubscribe={unsubscribe} url={url}")
        return self.get_client().subscribe_room_status(url, hotels, unsubscribe=unsubscribe)
