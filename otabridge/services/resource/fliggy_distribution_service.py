"""
Fliggy 분销(飞猪分销) 리소스 서비스.

접수 흐름: 실시간 가격 조회 → 주문 데이터 구성 → validateOrder → createOrder(재시도).
금액 단위는 Fliggy 측이 분(fen), 내부 주문은 원(yuan)입니다.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from otabridge.enums import ExceptionOrderType
from otabridge.fliggy_distribution_client import FliggyDistributionClient
from otabridge.models import Order
from otabridge.results import ServiceResult
from otabridge.services.exception_queue import has_pending_exception
from otabridge.services.resource.base import CLIENT_CONFIG_ERRORS, ResourceService, ResourceServiceError
from otabridge.services.resource.status_maps import FLIGGY_CANCELLABLE, describe_fliggy_state, map_fliggy_state

logger = logging.getLogger(__name__)

# Fliggy 가격 달력의 date 는 베이징 시간 자정의 epoch ms
FLIGGY_TZ = timezone(timedelta(hours=8))
PRICE_MISMATCH_MARKERS = ("价格", "price", "4101")

# 내부 real_name_type → Fliggy certificatesType
CERTIFICATE_TYPES = {1: 3, 2: 19, 3: 20, 4: 21, 5: 22, 6: 23}
DEFAULT_CERTIFICATE_TYPE = 3


def map_certificates_type(value: Any) -> int:
    try:
        return CERTIFICATE_TYPES.get(int(value), DEFAULT_CERTIFICATE_TYPE)
    except (TypeError, ValueError):
        return DEFAULT_CERTIFICATE_TYPE


def date_to_millis(value: date | None) -> int | None:
    if value is None:
        return None
    return int(datetime.combine(value, time(), tzinfo=FLIGGY_TZ).timestamp() * 1000)


def yuan_to_fen(value: Any) -> int:
    return int(Decimal(str(value)) * 100)


def extract_live_price(data: Any, date_millis: int | None) -> tuple[int, int]:
    """
    queryProductPriceStock 응답에서 (가격(분), 재고)를 뽑습니다.

    calendarStock 에 여행일과 일치하는 항목이 있으면 그 값을, 날짜 지정이 없으면 첫 항목을,
    달력이 없으면 최상위 distributionPrice 를 사용합니다.
    """
    if not isinstance(data, dict):
        return 0, 0
    calendar = data.get("calendarStock")
    if isinstance(calendar, list):
        for item in calendar:
            if not isinstance(item, dict) or "date" not in item or "distributionPrice" not in item:
                continue
            try:
                item_date = int(item["date"])
            except (TypeError, ValueError):
                continue
            if date_millis is None or item_date == date_millis:
                return yuan_to_fen(item["distributionPrice"]), int(item.get("stock") or 0)
        return 0, 0
    if data.get("distributionPrice") is not None:
        return yuan_to_fen(data["distributionPrice"]), int(data.get("stock") or 0)
    return 0, 0


def contact_certificates(order: Order) -> str:
    for credential in (order.credential_list or [])[:1]:
        number = credential.get("credentialNo") or credential.get("credential_no")
        if number:
            return str(number)
    for guest in (order.guest_info or [])[:1]:
        number = guest.get("idCode") or guest.get("id_code") or guest.get("cardNo") or guest.get("card_no")
        if number:
            return str(number)
    return order.card_no or ""


def build_traveller_infos(order: Order) -> list[dict[str, Any]]:
    travellers = []
    for guest in order.guest_info or []:
        name = guest.get("name") or guest.get("Name") or ""
        if not name:
            continue
        travellers.append(
            {
                "name": name,
                "mobile": guest.get("mobile") or guest.get("phone") or "",
                "certificatesType": map_certificates_type(guest.get("credentialType", order.real_name_type or 0)),
                "certificates": guest.get("idCode") or guest.get("id_code") or guest.get("cardNo") or "",
                "travellerType": guest.get("travellerType", 1),
            }
        )
    if not travellers:
        for credential in order.credential_list or []:
            number = credential.get("credentialNo") or credential.get("credential_no") or ""
            if not (order.contact_name or number):
                continue
            travellers.append(
                {
                    "name": order.contact_name or "",
                    "mobile": order.contact_phone or "",
                    "certificatesType": map_certificates_type(credential.get("credentialType", order.real_name_type or 0)),
                    "certificates": number,
                    "travellerType": 1,
                }
            )
    if not travellers:
        travellers.append(
            {
                "name": order.contact_name or "",
                "mobile": order.contact_phone or "",
                "certificatesType": map_certificates_type(order.real_name_type or 0),
                "certificates": contact_certificates(order),
                "travellerType": 1,
            }
        )
    return travellers


class FliggyDistributionService(ResourceService):
    provider_code = "fliggy_distribution"
    transient_codes = frozenset({"5000", "5001", "5002"})

    def get_client(self) -> FliggyDistributionClient:
        if self._client is None:
            self._client = FliggyDistributionClient.from_config(self.config)
        return self._client

    def build_order_data(self, order: Order, product_id: str) -> dict[str, Any]:
        date_millis = date_to_millis(order.check_in_date)
        result = self.get_client().query_product_price_stock(product_id, date_millis, date_millis)
        if not result.success:
            logger.warning(f"[FLIGGY] 가격 조회 실패: product={product_id} msg={result.message}")
            raise ResourceServiceError("无法获取飞猪产品价格，请检查产品配置")
        price, stock = extract_live_price(result.data, date_millis)
        if price <= 0:
            raise ResourceServiceError("无法获取飞猪产品价格，请检查产品配置")

        quantity = order.room_count or 1
        return {
            "outOrderId": order.order_no,
            "productInfo": {
                "productId": product_id,
                "price": price,
                "quantity": quantity,
                "travelDate": order.check_in_date.strftime("%Y%m%d") if order.check_in_date else "",
            },
            "contactInfo": {
                "name": order.contact_name or "",
                "mobile": order.contact_phone or "",
                "email": order.contact_email or "",
                "certificatesType": map_certificates_type(order.real_name_type or 0),
                "certificates": contact_certificates(order),
            },
            "travellerInfos": build_traveller_infos(order),
            "totalPrice": price * quantity,
        }

    # 접수 ---------------------------------------------------------------

    def confirm_order(self, order: Order) -> ServiceResult:
        existing = self.already_confirmed(order)
        if existing is not None:
            return existing

        try:
            product_id = self.find_external_product_id(order)
            if not product_id:
                raise ResourceServiceError("未找到飞猪产品映射关系")
            order_data = self.build_order_data(order, product_id)
        except (ResourceServiceError, *CLIENT_CONFIG_ERRORS) as e:
            logger.error(f"[FLIGGY] 주문 데이터 구성 실패: order={order.order_no} error={e}")
            self.escalate(order, "confirm", f"飞猪接口调用失败：{e}")
            return ServiceResult.fail(str(e), need_manual=True)

        fliggy_price = order_data["totalPrice"]
        our_price = yuan_to_fen(order.total_amount or 0)
        logger.info(
            f"[FLIGGY] 가격 비교: order={order.order_no} fliggy={fliggy_price} ours={our_price} "
            f"diff={fliggy_price - our_price}"
        )

        client = self.get_client()
        validation = client.validate_order(order_data)
        if not validation.success:
            message = validation.message or "订单校验失败"
            price_mismatch = any(marker in message for marker in PRICE_MISMATCH_MARKERS)
            self.escalate(
                order,
                "confirm",
                f"飞猪接口调用失败：订单校验失败：{message}",
                validation,
                exception_type=ExceptionOrderType.PRICE_MISMATCH if price_mismatch else None,
                fliggy_price=fliggy_price,
                our_price=our_price,
            )
            return ServiceResult.fail(f"订单校验失败：{message}", need_manual=True, code=validation.code)

        result = self.call_with_retry("createOrder", lambda: client.create_order(order_data))
        if not result.success:
            message = f"订单创建失败：{result.message or '未知错误'}"
            self.escalate(order, "confirm", f"飞猪接口调用失败：{message}", result)
            return ServiceResult.fail(message, need_manual=True, code=result.code)

        order_ids = result.data.get("orderIds") if isinstance(result.data, dict) else None
        if not order_ids:
            self.escalate(order, "confirm", "飞猪接口调用失败：未获取到飞猪订单号", result)
            return ServiceResult.fail("未获取到飞猪订单号", need_manual=True)

        fliggy_order_id = str(order_ids[0])
        order.assign_resource_order_no(fliggy_order_id)
        order.settlement_amount = Decimal(fliggy_price) / 100
        self.session.flush()
        logger.info(f"[FLIGGY] 주문 생성 성공: order={order.order_no} fliggy_order={fliggy_order_id}")
        return ServiceResult.ok(
            "订单创建成功",
            resource_order_no=fliggy_order_id,
            fliggy_price=fliggy_price,
            settlement_amount=str(order.settlement_amount),
        )

    def reject_order(self, order: Order, reason: str = "") -> ServiceResult:
        return ServiceResult.fail("飞猪分销系统不支持拒单操作")

    # 취소 ---------------------------------------------------------------

    def cancel_order(self, order: Order, reason: str = "") -> ServiceResult:
        if not order.resource_order_no:
            return ServiceResult.fail("订单未关联飞猪订单号，无法取消")

        try:
            client = self.get_client()
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "cancel", e)
        result = self.call_with_retry(
            "cancelOrder", lambda: client.cancel_order(order.resource_order_no, order.order_no, reason)
        )
        if result.success:
            logger.info(f"[FLIGGY] 취소 완료: order={order.order_no} fliggy_order={order.resource_order_no}")
            return ServiceResult.ok("订单取消成功", resource_response=result.data)
        logger.error(f"[FLIGGY] 취소 실패: order={order.order_no} msg={result.message}")
        self.escalate(order, "cancel", result.message or "订单取消失败", result)
        return ServiceResult.fail(result.message or "订单取消失败", need_manual=True, resource_response=result.data)

    def can_cancel_order(self, order: Order) -> ServiceResult:
        status = self.query_order_status(order)
        if not status.success:
            return ServiceResult.ok(f"无法查询订单状态：{status.message}", can_cancel=False)
        fliggy_status = status.data.get("fliggy_status")
        try:
            can_cancel = int(fliggy_status) in FLIGGY_CANCELLABLE
        except (TypeError, ValueError):
            can_cancel = False
        return ServiceResult.ok(
            "可以取消" if can_cancel else "订单状态不允许取消",
            can_cancel=can_cancel,
            fliggy_status=fliggy_status,
            status_description=describe_fliggy_state(fliggy_status),
        )

    # 조회 ---------------------------------------------------------------

    def query_order_status(self, order_or_no: Order | str) -> ServiceResult:
        order = order_or_no
        if not isinstance(order, Order):
            order = self.session.query(Order).filter(Order.order_no == str(order_or_no)).first()
            if order is None:
                return ServiceResult.fail("订单不存在")
        if not order.resource_order_no:
            return ServiceResult.fail("订单未关联飞猪订单号")

        try:
            client = self.get_client()
        except CLIENT_CONFIG_ERRORS as e:
            return self.config_failure(order, "queryOrderStatus", e, escalate=False)
        result = self.call_with_retry("searchOrder", lambda: client.search_order(order.resource_order_no, order.order_no))
        if not result.success:
            return ServiceResult.fail(result.message or "查询失败")

        detail = result.data if isinstance(result.data, dict) else {}
        fliggy_status = detail.get("orderStatus")
        mapped = map_fliggy_state(fliggy_status)
        if mapped is None:
            # 1004(出票失败) 등 매핑 불가 상태는 사람이 확인. 미처리 건이 있으면 다시 만들지 않음
            message = f"飞猪订单状态异常：{describe_fliggy_state(fliggy_status)}"
            logger.warning(f"[FLIGGY] {message}: order={order.order_no}")
            if not has_pending_exception(self.session, order, "queryOrderStatus"):
                self.escalate(order, "queryOrderStatus", message, result, fliggy_status=fliggy_status)

        return ServiceResult.ok(
            "查询成功",
            order_no=order.order_no,
            fliggy_status=fliggy_status,
            status=self.status_value(mapped),
            status_description=describe_fliggy_state(fliggy_status),
            code_infos=detail.get("codeInfos") or [],
            verified_at=detail.get("verifiedAt"),
            use_start_date=detail.get("useStartDate"),
            use_end_date=detail.get("useEndDate"),
            use_quantity=detail.get("useQuantity"),
        )
