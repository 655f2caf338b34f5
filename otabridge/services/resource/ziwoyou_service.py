"""
Ziwoyou(自我游) 티켓 시스템 리소스 서비스.

주문 생성은 state==0 만으로 성공을 판단하지 않고, 응답 메시지의 오류 키워드와
orderId 존재 여부까지 함께 확인합니다.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from otabridge.enums import OrderStatus
from otabridge.models import Order
from otabridge.results import AdapterResult, ServiceResult
from otabridge.services.resource.base import CLIENT_CONFIG_ERRORS, ResourceService, ResourceServiceError
from otabridge.services.resource.status_maps import ZIWOYOU_CANCELLABLE, map_ziwoyou_state
from otabridge.settings import settings
from otabridge.ziwoyou_client import ZiwoyouClient

logger = logging.getLogger(__name__)

# 제공자 문구가 바뀌면 오판 가능성이 있음 (state=0 + 오류 문구 조합)
ERROR_KEYWORDS = (
    "失败",
    "下单失败",
    "错误",
    "异常",
    "白名单",
    "不在白名单",
    "IP不在白名单",
    "未授权",
    "无权限",
    "拒绝",
    "不允许",
    "无效",
    "不存在",
    "不正确",
    "超时",
    "网络错误",
)


def is_error_message(message: str | None) -> bool:
    if not message:
        return False
    return any(keyword in message for keyword in ERROR_KEYWORDS)


def map_credential_type(value: Any) -> int:
    """0~21 범위는 그대로, 그 외는 0(신분증)"""
    try:
        credential_type = int(value)
    except (TypeError, ValueError):
        return 0
    return credential_type if 0 <= credential_type <= 21 else 0


def _split_name(name: str) -> tuple[str, str]:
    """'성 이름' → (lastName, firstName). 공백이 없으면 firstName에 전체 이름"""
    name = name.strip()
    if " " in name:
        last_name, first_name = name.split(" ", 1)
        return last_name, first_name.strip()
    return "", name


def _resolve_credential(order: Order) -> tuple[str, int]:
    for credential in order.credential_list or []:
        number = credential.get("credentialNo") or credential.get("idCode")
        if number:
            return str(number), map_credential_type(credential.get("credentialType", 0))

    guests = order.guest_info or []
    if guests:
        guest = guests[0]
        number = guest.get("cardNo") or guest.get("credentialNo") or guest.get("IdCode") or guest.get("idCode")
        if number:
            card_type = guest.get("cardType", guest.get("credentialType", 0))
            # 내부 cardType "1"(신분증) → Ziwoyou 0
            credential_type = 0 if str(card_type) == "1" else map_credential_type(card_type)
            return str(number), credential_type

    if order.card_no:
        return order.card_no, 0

    raise ResourceServiceError("订单缺少联系人证件号码，无法创建自我游订单")


def build_order_request(order: Order, product_id: str) -> dict[str, Any]:
    """Order → Ziwoyou add/check 요청 본문"""
    guests = order.guest_info or []
    first_guest = guests[0] if guests else {}
    link_man = (first_guest.get("name") or first_guest.get("Name") or order.contact_name or "").strip()
    if not link_man:
        raise ResourceServiceError("订单缺少联系人姓名，无法创建自我游订单")
    last_name, first_name = _split_name(link_man)
    credential_no, credential_type = _resolve_credential(order)

    num = order.room_count or 1
    travel_date = order.check_in_date.isoformat() if order.check_in_date else None
    price = float(order.settlement_amount or order.total_amount or 0)

    request: dict[str, Any] = {
        "infoId": int(product_id),
        "orderSourceId": order.order_no or order.ota_order_no,
        "num": num,
        "travelDate": travel_date,
        "linkMan": link_man,
        "firstName": first_name,
        "lastName": last_name,
        "linkCreditNo": credential_no,
        "linkCreditType": credential_type,
    }
    if order.contact_phone:
        request["linkPhone"] = order.contact_phone
    if order.contact_email:
        request["linkEmail"] = order.contact_email
    if order.remark:
        request["orderMemo"] = order.remark
    request["details"] = [{"cond": travel_date, "num": num, "price": price}]

    peoples = []
    for index, guest in enumerate(guests):
        name = guest.get("name") or guest.get("Name") or ""
        if not name:
            continue
        peoples.append(
            {
                "linkMan": name,
                "linkPhone": guest.get("phone") or order.contact_phone or "",
                "linkCreditNo": guest.get("idCode") or guest.get("IdCode") or guest.get("cardNo") or "",
                "linkCreditType": map_credential_type(guest.get("credentialType", 0)),
                "roomNum": index + 1,
            }
        )
    if peoples:
        request["peoples"] = peoples
    return request


def _to_decimal(value: Any) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


class ZiwoyouService(ResourceService):
    provider_code = "ziwoyou"

    def get_client(self) -> ZiwoyouClient:
        if self._client is None:
            self._client = ZiwoyouClient.from_auth(self.config.api_url or "", self.config.auth_config())
        return self._client

    def _order_source_id(self, order_or_no: Order | str) -> str:
        if isinstance(order_or_no, Order):
            return order_or_no.order_no or order_or_no.ota_order_no or ""
        return str(order_or_no)

    # 접수 ---------------------------------------------------------------

    def confirm_order(self, order: Order) -> ServiceResult:
        existing = self.already_confirmed(order)
        if existing is not None:
            return existing

        logger.info(f"[ZIWOYOU] 주문 접수 시작: order={order.order_no}")
        try:
            product_id = self.find_external_product_id(order)
            if not product_id:
                raise ResourceServiceError("未找到自我游产品映射关系")

            request = build_order_request(order, product_id)
            client = self.get_client()

            if settings.ziwoyou_validate_before_add:
                check = client.check_order(request)
                if not check.success:
                    raise ResourceServiceError(f"订单校验失败：{check.message or '订单校验失败'}")

            result = self.call_with_retry("add", lambda: client.create_order(request))
        except (ResourceServiceError, *CLIENT_CONFIG_ERRORS) as e:
            logger.error(f"[ZIWOYOU] 주문 접수 실패: order={order.order_no} error={e}")
            self.escalate(order, "confirmOrder", str(e))
            return ServiceResult.fail(f"接单失败：{e}", need_manual=True)

        return self._apply_create_result(order, result)

    def _apply_create_result(self, order: Order, result: AdapterResult) -> ServiceResult:
        data = result.data if isinstance(result.data, dict) else {}
        message = result.message or ""
        order_id = data.get("orderId")
        error_message = is_error_message(message)

        if result.success and not error_message and order_id:
            order.assign_resource_order_no(str(order_id))
            settlement = _to_decimal(data.get("orderMoney"))
            if settlement is not None:
                order.settlement_amount = settlement
            order_state = data.get("orderState")
            # 2: 已成功 (현장결제 환급 상품) → 바로 확정. 0/1 은 확정 콜백 대기
            if str(order_state) == "2":
                order.status = OrderStatus.CONFIRMED.value
            self.session.flush()
            logger.info(
                f"[ZIWOYOU] 주문 생성 성공: order={order.order_no} ziwoyou_order={order_id} "
                f"orderState={order_state} payType={data.get('payType')}"
            )
            return ServiceResult.ok(
                "订单创建成功",
                resource_order_no=str(order_id),
                order_state=order_state,
                pending_confirmation=str(order_state) != "2",
                settlement_amount=str(settlement) if settlement is not None else None,
            )

        if result.success and error_message:
            error = f"自我游接口返回 state=0 但包含错误信息：{message}"
        elif result.success:
            error = message or "订单创建失败：未返回订单号"
        else:
            error = message or "订单创建失败"
        logger.error(f"[ZIWOYOU] 주문 생성 실패: order={order.order_no} code={result.code} msg={message}")
        self.escalate(order, "confirmOrder", error, result)
        return ServiceResult.fail(error, need_manual=True, code=result.code)

    def reject_order(self, order: Order, reason: str = "") -> ServiceResult:
        # 거절 전용 API 없음 → 취소로 대체
        logger.info(f"[ZIWOYOU] 거절을 취소로 처리: order={order.order_no}")
        return self.cancel_order(order, f"拒单：{reason}")

    # 취소 ---------------------------------------------------------------

    def cancel_order(self, order: Order, reason: str = "") -> ServiceResult:
        if not order.resource_order_no:
            message = "订单没有资源方订单号，无法取消"
            self.escalate(order, "cancelOrder", message)
            return ServiceResult.fail(f"取消失败：{message}", need_manual=True)

        try:
            client = self.get_client()
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "cancelOrder", e)
        result = self.call_with_retry("cancel", lambda: client.cancel_order(order.resource_order_no, reason))
        data = result.data if isinstance(result.data, dict) else {}

        if result.success and str(data.get("cancelState")) == "1":
            logger.info(f"[ZIWOYOU] 취소 완료: order={order.order_no} ziwoyou_order={order.resource_order_no}")
            return ServiceResult.ok("订单取消成功", resource_response=data)

        if result.success:
            message = result.message or f"取消未完成 (cancelState={data.get('cancelState')})"
        else:
            message = result.message or "订单取消失败"
        logger.error(f"[ZIWOYOU] 취소 실패: order={order.order_no} msg={message}")
        self.escalate(order, "cancelOrder", message, result)
        return ServiceResult.fail(f"取消失败：{message}", need_manual=True)

    def can_cancel_order(self, order: Order) -> ServiceResult:
        status = self.query_order_status(order)
        if not status.success:
            # 조회 실패 시 취소 API 에 판단을 넘김
            return ServiceResult.ok("查询订单状态失败，允许尝试取消", can_cancel=True, query_result=status.message)

        order_state = status.data.get("order_state")
        try:
            can_cancel = int(order_state) in ZIWOYOU_CANCELLABLE
        except (TypeError, ValueError):
            can_cancel = False
        return ServiceResult.ok(
            "可以取消" if can_cancel else "订单状态不允许取消",
            can_cancel=can_cancel,
            status=status.data.get("status"),
            order_data=status.data,
        )

    # 조회 ---------------------------------------------------------------

    def query_order_status(self, order_or_no: Order | str) -> ServiceResult:
        order_source_id = self._order_source_id(order_or_no)
        resource_order_no = order_or_no.resource_order_no if isinstance(order_or_no, Order) else None

        try:
            client = self.get_client()
        except CLIENT_CONFIG_ERRORS as e:
            order = order_or_no if isinstance(order_or_no, Order) else None
            return self.config_failure(order, "queryOrderStatus", e, escalate=False)
        result = self.call_with_retry("detail", lambda: client.query_order(order_source_id, resource_order_no))
        if not result.success:
            return ServiceResult.fail(result.message or "查询订单状态失败")
        detail = result.data if isinstance(result.data, dict) else None
        if not detail:
            return ServiceResult.fail("查询结果数据为空")

        order_state = detail.get("orderState")
        mapped = map_ziwoyou_state(order_state)
        passengers = [
            {
                "name": people.get("linkMan") or f"{people.get('lastName', '')}{people.get('firstName', '')}",
                "idCode": people.get("linkCreditNo", ""),
                "credentialType": people.get("linkCreditType", 0),
                "phone": people.get("linkPhone", ""),
            }
            for people in detail.get("peoples") or []
        ]
        logger.info(f"[ZIWOYOU] 주문 조회: order={order_source_id} orderState={order_state} mapped={self.status_value(mapped)}")
        return ServiceResult.ok(
            "查询成功",
            order_no=order_source_id,
            status=self.status_value(mapped),
            order_state=order_state,
            verified_at=detail.get("cancelDate") if str(order_state) == "4" else None,
            use_start_date=detail.get("travelDate"),
            use_end_date=detail.get("endTravelDate"),
            use_quantity=detail.get("finishNum"),
            passengers=passengers,
            vouchers=detail.get("vouchers") or [],
        )
