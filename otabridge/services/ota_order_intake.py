"""
OTA 인바운드 주문 접수.

Ctrip 주문 콜백(serviceName 별)과 Meituan 주문/가격 일정 요청을 Order 에 반영합니다.
리소스 측 처리가 필요하면 후속 작업(confirm/cancel/sync)을 IntakeReply 에 담아 돌려주고,
응답 봉투 암호화와 작업 등록은 웹훅 라우트가 담당합니다.

예약(미결제) 주문은 paid_at 이 비어 있는 PAID_PENDING 이며, 생성 시 DailyRate 재고를 잠그고
결제 전 취소/종료 시 되돌립니다.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.enums import OrderStatus, SyncOperation
from otabridge.models import DailyRate, Hotel, Order, OtaPlatform, OtaProduct, Product, RoomType
from otabridge.services.ota_price_stock_sync import OtaPriceStockSync, partner_primary_key
from otabridge.services.resource_router import ResourceServiceRouter

logger = logging.getLogger(__name__)

CONFIRM = "confirm"
CANCEL = "cancel"
SYNC = "sync"


class IntakeError(Exception):
    """OTA 고유 결과 코드로 돌려줄 업무 오류"""

    def __init__(self, code: str | int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class FollowUp:
    action: str  # confirm | cancel | sync
    args: tuple[Any, ...]


@dataclass
class IntakeReply:
    code: str | int
    message: str
    body: Any = None
    envelope: dict[str, Any] = field(default_factory=dict)
    follow_ups: list[FollowUp] = field(default_factory=list)


@dataclass(frozen=True)
class BookingCodes:
    """예약 검증 실패 시 OTA 별 결과 코드"""

    invalid: str | int
    unknown_product: str | int
    inactive_product: str | int
    no_price: str | int
    no_stock: str | int


@dataclass
class BookingRequest:
    ota_order_no: str
    product_code: str
    start: str
    end: str = ""
    quantity: Any = 1
    hotel_code: str | None = None
    room_type_code: str | None = None
    primary_key: str | None = None
    sale_price: Any = None
    cost_price: Any = None
    guests: list[dict[str, Any]] = field(default_factory=list)
    contact: dict[str, Any] = field(default_factory=dict)
    real_name_type: int | None = None
    credential_list: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class Booking:
    product: Product
    hotel: Hotel
    room_type: RoomType
    check_in: date
    check_out: date
    quantity: int
    rates: list[DailyRate]


def parse_plu(plu: str) -> tuple[str | None, str | None, str]:
    """Ctrip PLU (호텔코드|방타입코드|상품코드) 분해. 구분자가 부족하면 마지막 조각을 상품 코드로 봅니다."""
    parts = [part.strip() for part in str(plu).split("|")]
    if len(parts) >= 3:
        return parts[0] or None, parts[1] or None, parts[2]
    return None, None, parts[-1]


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


def _ota_int(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


class OrderIntake:
    booking_codes: BookingCodes

    def __init__(
        self,
        session: Session,
        platform: OtaPlatform,
        router: ResourceServiceRouter | None = None,
        now: Callable[[], datetime] | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.session = session
        self.platform = platform
        self.router = router or ResourceServiceRouter(session)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._today = today

    # 조회 ---------------------------------------------------------------

    def find_order(self, ota_order_no: Any) -> Order | None:
        if ota_order_no in (None, ""):
            return None
        return self.session.scalars(
            select(Order)
            .where(Order.ota_order_no == str(ota_order_no))
            .where(Order.ota_platform_id == self.platform.id)
        ).first()

    def require_order(self, ota_order_no: Any, code: str | int, message: str) -> Order:
        order = self.find_order(ota_order_no)
        if order is None:
            raise IntakeError(code, message)
        return order

    def find_product(self, code: str) -> Product | None:
        """OTA 상품 매핑을 먼저 보고, 없으면 내부 상품 코드로 찾습니다."""
        product = self.session.scalars(
            select(Product)
            .join(OtaProduct, OtaProduct.product_id == Product.id)
            .where(OtaProduct.ota_platform_id == self.platform.id)
            .where(OtaProduct.ota_product_id == code)
            .where(OtaProduct.is_active.is_(True))
        ).first()
        if product is not None:
            return product
        return self.session.scalars(select(Product).where(Product.code == code)).first()

    def stay_rates(self, product_id: int, hotel_id: int, room_type_id: int, check_in: date, nights: int) -> list[DailyRate]:
        stmt = (
            select(DailyRate)
            .where(DailyRate.product_id == product_id)
            .where(DailyRate.hotel_id == hotel_id)
            .where(DailyRate.room_type_id == room_type_id)
            .where(DailyRate.rate_date >= check_in)
            .where(DailyRate.rate_date < check_in + timedelta(days=nights))
            .order_by(DailyRate.rate_date)
        )
        return list(self.session.scalars(stmt).all())

    def _rate_on(self, product: Product, day: date, primary_key: str | None = None) -> DailyRate | None:
        rates = self.session.scalars(
            select(DailyRate)
            .where(DailyRate.product_id == product.id)
            .where(DailyRate.rate_date == day)
            .order_by(DailyRate.id)
        ).all()
        if primary_key:
            for rate in rates:
                if partner_primary_key(rate.hotel_id, rate.room_type_id, day.isoformat()) == primary_key:
                    return rate
            return None
        return rates[0] if rates else None

    # 예약 검증 -------------------------------------------------------------

    @staticmethod
    def check_stock(rates: list[DailyRate], check_in: date, nights: int, quantity: int) -> str | None:
        by_date = {rate.rate_date: rate for rate in rates}
        for offset in range(nights):
            day = check_in + timedelta(days=offset)
            rate = by_date.get(day)
            if rate is None:
                return f"库存不足。日期：{day.isoformat()}，没有库存记录"
            if rate.is_closed:
                return f"库存不足。日期：{day.isoformat()}，库存已关闭"
            if (rate.available_quantity or 0) < quantity:
                return f"库存不足。日期：{day.isoformat()}，实际可用库存：{rate.available_quantity}，需要：{quantity}"
        return None

    def resolve_booking(self, request: BookingRequest, codes: BookingCodes | None = None) -> Booking:
        """상품/호텔/방 타입과 숙박 일자별 DailyRate 를 찾고 재고를 확인합니다."""
        codes = codes or self.booking_codes
        try:
            check_in = date.fromisoformat(str(request.start)[:10])
            check_out = date.fromisoformat(str(request.end)[:10]) if request.end else None
            quantity = int(request.quantity or 1)
        except (TypeError, ValueError):
            raise IntakeError(codes.invalid, "数据参数不合法：日期或数量格式错误")
        if quantity <= 0:
            raise IntakeError(codes.invalid, "数据参数不合法：数量必须大于0")

        product = self.find_product(request.product_code)
        if product is None:
            raise IntakeError(codes.unknown_product, "供应商PLU不存在/错误")
        if not product.is_active:
            raise IntakeError(codes.inactive_product, "产品已经下架")

        if request.hotel_code and request.room_type_code:
            hotel = self.session.scalars(select(Hotel).where(Hotel.code == request.hotel_code)).first()
            if hotel is None:
                raise IntakeError(codes.unknown_product, "供应商PLU不存在/错误：酒店编码不存在")
            room_type = self.session.scalars(
                select(RoomType).where(RoomType.hotel_id == hotel.id).where(RoomType.code == request.room_type_code)
            ).first()
            if room_type is None:
                raise IntakeError(codes.unknown_product, "供应商PLU不存在/错误：房型编码不存在")
        else:
            rate = self._rate_on(product, check_in, request.primary_key)
            if rate is None:
                raise IntakeError(codes.no_price, "数据参数不合法：指定日期没有价格")
            hotel = self.session.get(Hotel, rate.hotel_id)
            room_type = self.session.get(RoomType, rate.room_type_id)

        nights = (check_out - check_in).days if check_out and check_out > check_in else 1
        check_out = check_in + timedelta(days=nights)
        rates = self.stay_rates(product.id, hotel.id, room_type.id, check_in, nights)
        if not rates or rates[0].rate_date != check_in:
            raise IntakeError(codes.no_price, "数据参数不合法：指定日期没有价格或产品-酒店-房型组合不匹配")
        shortage = self.check_stock(rates, check_in, nights, quantity)
        if shortage:
            raise IntakeError(codes.no_stock, shortage)
        return Booking(product, hotel, room_type, check_in, check_out, quantity, rates)

    # 주문 생성 / 재고 -------------------------------------------------------

    def new_order_no(self) -> str:
        while True:
            order_no = f"ORD{self._now():%Y%m%d%H%M%S}{random.randint(1, 99999):05d}"
            if self.session.scalars(select(Order.id).where(Order.order_no == order_no)).first() is None:
                return order_no

    def create_order(self, request: BookingRequest, booking: Booking, paid: bool) -> Order:
        quantity = booking.quantity
        sale = _decimal(request.sale_price)
        cost = _decimal(request.cost_price)
        total = sale * quantity if sale else sum((rate.sale_price for rate in booking.rates), Decimal("0")) * quantity
        settlement = (
            cost * quantity if cost else sum((rate.settlement_price for rate in booking.rates), Decimal("0")) * quantity
        )
        first_guest = request.guests[0] if request.guests else {}
        contact = request.contact or {}

        order = Order(
            order_no=self.new_order_no(),
            ota_order_no=str(request.ota_order_no),
            ota_platform=self.platform,
            product=booking.product,
            hotel=booking.hotel,
            room_type=booking.room_type,
            status=OrderStatus.PAID_PENDING.value,
            check_in_date=booking.check_in,
            check_out_date=booking.check_out,
            room_count=quantity,
            guest_count=len(request.guests) or 1,
            contact_name=contact.get("name") or first_guest.get("name") or "",
            contact_phone=contact.get("mobile") or contact.get("phone") or "",
            contact_email=contact.get("email") or "",
            card_no=first_guest.get("idCode") or None,
            guest_info=request.guests,
            real_name_type=request.real_name_type,
            credential_list=request.credential_list,
            total_amount=total,
            settlement_amount=settlement,
            paid_at=self._now() if paid else None,
        )
        self.session.add(order)
        self._adjust_stock(booking.rates, -quantity)
        self.session.flush()
        logger.info(
            f"[INTAKE] {self.platform.code} 주문 생성: order={order.order_no} ota_order={order.ota_order_no} "
            f"paid={paid} stay={booking.check_in}~{booking.check_out} qty={quantity}"
        )
        return order

    @staticmethod
    def _adjust_stock(rates: list[DailyRate], delta: int) -> None:
        for rate in rates:
            rate.available_quantity = max((rate.available_quantity or 0) + delta, 0)

    def release_stock(self, order: Order) -> None:
        if not (order.product_id and order.hotel_id and order.room_type_id and order.check_in_date):
            return
        nights = (
            (order.check_out_date - order.check_in_date).days
            if order.check_out_date and order.check_out_date > order.check_in_date
            else 1
        )
        rates = self.stay_rates(order.product_id, order.hotel_id, order.room_type_id, order.check_in_date, nights)
        self._adjust_stock(rates, order.room_count)
        logger.info(f"[INTAKE] 잠금 재고 해제: order={order.order_no} days={len(rates)} qty={order.room_count}")

    # 상태 전이 -------------------------------------------------------------

    def is_system_connected(self, order: Order) -> bool:
        return self.router.is_system_connected(order, SyncOperation.ORDER.value)

    def begin_confirmation(self, order: Order, manual_status: OrderStatus) -> list[FollowUp]:
        """직접 연동이면 CONFIRMING 으로 두고 접수 작업을, 아니면 manual_status 로 둡니다."""
        if self.is_system_connected(order):
            order.status = OrderStatus.CONFIRMING.value
            return [FollowUp(CONFIRM, (order.order_no,))]
        order.status = manual_status.value
        if manual_status == OrderStatus.CONFIRMED:
            order.confirmed_at = order.confirmed_at or self._now()
        return []

    def close_unpaid(self, order: Order, remark: str) -> None:
        order.status = OrderStatus.CANCEL_APPROVED.value
        order.cancelled_at = order.cancelled_at or self._now()
        order.remark = remark
        self.release_stock(order)

    def is_expired(self, order: Order) -> bool:
        return order.check_in_date is not None and order.check_in_date < self._today()


# Ctrip ---------------------------------------------------------------

CTRIP_SUCCESS = "0000"

# QueryOrder orderStatus: 1 新订待确认, 2 新订已确认, 3 取消待确认, 5 全部取消, 8 全部使用,
# 11 待支付, 12 支付待确认, 14 预下单取消成功
CTRIP_ORDER_STATUS = {
    OrderStatus.PAID_PENDING.value: 11,
    OrderStatus.CONFIRMING.value: 12,
    OrderStatus.CONFIRMED.value: 2,
    OrderStatus.REJECTED.value: 1,
    OrderStatus.CANCEL_REQUESTED.value: 3,
    OrderStatus.CANCEL_REJECTED.value: 2,
    OrderStatus.CANCEL_APPROVED.value: 5,
    OrderStatus.VERIFIED.value: 8,
}
CTRIP_PRE_ORDER_CANCELLED = 14


class CtripOrderIntake(OrderIntake):
    booking_codes = BookingCodes(invalid="1003", unknown_product="1002", inactive_product="1002", no_price="1003", no_stock="1003")
    verify_codes = BookingCodes(invalid="1009", unknown_product="1001", inactive_product="1002", no_price="1007", no_stock="1003")

    def handle(self, service_name: str, data: dict[str, Any]) -> IntakeReply:
        handlers: dict[str, Callable[[dict[str, Any]], IntakeReply]] = {
            "PreCreateOrder": self.pre_create_order,
            "CreatePreOrder": self.pre_create_order,
            "PayPreOrder": self.pay_pre_order,
            "CancelPreOrder": self.cancel_pre_order,
            "CreateOrder": self.create_order_paid,
            "CancelOrder": self.cancel_order,
            "QueryOrder": self.query_order,
            "OrderQuery": self.query_order,
            "VerifyOrder": self.verify_order,
            "RefundOrder": self.refund_order,
        }
        handler = handlers.get(service_name)
        if handler is None:
            logger.warning(f"[INTAKE] Ctrip 지원하지 않는 serviceName: {service_name!r}")
            return IntakeReply("0004", "请求方法为空")
        try:
            return handler(data)
        except IntakeError as e:
            logger.warning(f"[INTAKE] Ctrip {service_name} 거부: code={e.code} msg={e.message}")
            return IntakeReply(e.code, e.message)

    @staticmethod
    def _ok(body: dict[str, Any], follow_ups: list[FollowUp] | None = None) -> IntakeReply:
        return IntakeReply(CTRIP_SUCCESS, "success", body=body, follow_ups=follow_ups or [])

    @staticmethod
    def booking_request(data: dict[str, Any]) -> BookingRequest:
        """items 배열 형식(CreatePreOrder)과 평면 필드 형식(PreCreateOrder) 모두 받습니다."""
        items = data.get("items")
        if isinstance(items, list) and items:
            item = items[0] or {}
            contacts = data.get("contacts") or []
            plu = item.get("PLU") or ""
            ota_order_no = data.get("otaOrderId") or ""
            start = item.get("useStartDate") or ""
            end = item.get("useEndDate") or ""
            quantity = item.get("quantity") or 1
            sale_price, cost_price = item.get("salePrice"), item.get("cost")
            passengers = item.get("passengers") or []
            contact = contacts[0] if contacts else {}
        else:
            plu = data.get("supplierOptionId") or ""
            ota_order_no = data.get("orderId") or data.get("otaOrderId") or ""
            start = data.get("useDate") or data.get("useStartDate") or ""
            end = data.get("useEndDate") or ""
            quantity = data.get("quantity") or 1
            sale_price = cost_price = None
            passengers = data.get("travelers") or data.get("passengers") or []
            contact = data.get("contactInfo") or {}

        hotel_code, room_type_code, product_code = parse_plu(plu) if plu else (None, None, "")
        guests = [
            {
                "name": passenger.get("name") or "",
                "idCode": passenger.get("cardNo") or passenger.get("card_no") or "",
                "cardType": str(passenger.get("cardType") or "1"),
            }
            for passenger in passengers
            if isinstance(passenger, dict)
        ]
        return BookingRequest(
            ota_order_no=str(ota_order_no),
            product_code=product_code,
            start=str(start),
            end=str(end),
            quantity=quantity,
            hotel_code=hotel_code,
            room_type_code=room_type_code,
            sale_price=sale_price,
            cost_price=cost_price,
            guests=guests,
            contact=contact if isinstance(contact, dict) else {},
        )

    def _validate_request(self, request: BookingRequest) -> None:
        if not request.product_code:
            raise IntakeError("1003", "数据参数不合法：产品编码(PLU/supplierOptionId)为空")
        if not request.ota_order_no:
            raise IntakeError("1003", "数据参数不合法：订单号(otaOrderId/orderId)为空")
        if not request.start:
            raise IntakeError("1003", "数据参数不合法：使用日期(useStartDate/useDate)为空")

    @staticmethod
    def _order_ids(order: Order) -> dict[str, Any]:
        return {"otaOrderId": order.ota_order_no, "supplierOrderId": order.order_no}

    def _remember_item_id(self, order: Order, items: list[Any]) -> None:
        if order.ota_item_id or not items or not isinstance(items[0], dict):
            return
        item_id = items[0].get("itemId")
        if item_id not in (None, ""):
            order.ota_item_id = str(item_id)

    @staticmethod
    def _response_items(items: list[Any], order: Order) -> list[dict[str, Any]]:
        if not items:
            return [{"itemId": str(order.id), "isCredentialVouchers": 0}]
        return [
            {"itemId": str(item.get("itemId") or order.id), "isCredentialVouchers": 0}
            for item in items
            if isinstance(item, dict)
        ]

    # 예약 생성 / 직접 주문 ---------------------------------------------------

    def pre_create_order(self, data: dict[str, Any]) -> IntakeReply:
        request = self.booking_request(data)
        self._validate_request(request)
        existing = self.find_order(request.ota_order_no)
        if existing is not None:
            logger.info(f"[INTAKE] Ctrip 예약 주문 중복 수신: ota_order={request.ota_order_no} order={existing.order_no}")
            return self._ok(self._order_ids(existing))

        booking = self.resolve_booking(request)
        order = self.create_order(request, booking, paid=False)
        return self._ok(self._order_ids(order))

    def create_order_paid(self, data: dict[str, Any]) -> IntakeReply:
        request = self.booking_request(data)
        self._validate_request(request)
        order = self.find_order(request.ota_order_no)
        follow_ups: list[FollowUp] = []
        if order is None:
            booking = self.resolve_booking(request)
            order = self.create_order(request, booking, paid=True)
            follow_ups = self.begin_confirmation(order, manual_status=OrderStatus.CONFIRMED)
            self.session.flush()

        body = self._order_ids(order)
        if order.status == OrderStatus.CONFIRMING.value:
            body["supplierConfirmType"] = 2
        return self._ok(body, follow_ups)

    def pay_pre_order(self, data: dict[str, Any]) -> IntakeReply:
        order = self.require_order(data.get("otaOrderId"), "1001", "携程订单号不存在")
        items = data.get("items") or []
        self._remember_item_id(order, items)

        if order.status == OrderStatus.CONFIRMED.value:
            return self._ok({"supplierConfirmType": 1, "voucherSender": 1})

        follow_ups: list[FollowUp] = []
        if order.status == OrderStatus.CONFIRMING.value:
            # 중복 결제 통지: 직접 연동이면 접수 작업을 다시 넣음 (resource_order_no 로 멱등)
            if self.is_system_connected(order):
                follow_ups = [FollowUp(CONFIRM, (order.order_no,))]
        elif order.status == OrderStatus.PAID_PENDING.value:
            order.paid_at = order.paid_at or self._now()
            follow_ups = self.begin_confirmation(order, manual_status=OrderStatus.CONFIRMED)
        else:
            raise IntakeError("1003", f"订单状态不允许支付：{order.status}")
        self.session.flush()

        body = self._order_ids(order)
        body.update(
            supplierConfirmType=2 if order.status == OrderStatus.CONFIRMING.value else 1,
            voucherSender=1,
            items=self._response_items(items, order),
        )
        return self._ok(body, follow_ups)

    # 취소 ---------------------------------------------------------------

    def cancel_pre_order(self, data: dict[str, Any]) -> IntakeReply:
        order = self.require_order(data.get("otaOrderId"), "2001", "该订单号不存在")
        if order.status == OrderStatus.PAID_PENDING.value and order.paid_at is None:
            self.close_unpaid(order, "携程预下单取消")
            self.session.flush()
        elif order.status != OrderStatus.CANCEL_APPROVED.value:
            logger.warning(f"[INTAKE] Ctrip 결제된 주문에 대한 예약 취소 무시: order={order.order_no} status={order.status}")
        return self._ok(self._order_ids(order))

    def cancel_order(self, data: dict[str, Any]) -> IntakeReply:
        order = self.require_order(data.get("otaOrderId"), "2001", "该订单号不存在")
        if order.status == OrderStatus.VERIFIED.value:
            raise IntakeError("2002", "该订单已经使用")
        if self.is_expired(order):
            raise IntakeError("2003", "该订单已过期，不可退")

        items = [item for item in data.get("items") or [] if isinstance(item, dict)]
        total = 0
        for item in items:
            try:
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                quantity = 0
            if quantity <= 0 or quantity > order.room_count:
                raise IntakeError("2004", "取消数量不正确")
            total += quantity
        if total > order.room_count:
            raise IntakeError("2004", "取消数量不正确")

        response_items = [{"itemId": str(item.get("itemId") or "1")} for item in items]
        follow_ups: list[FollowUp] = []
        if order.status == OrderStatus.CANCEL_APPROVED.value:
            confirm_type = 1
        elif order.status == OrderStatus.CANCEL_REQUESTED.value:
            confirm_type = 2
        elif order.paid_at is None and order.status == OrderStatus.PAID_PENDING.value:
            self.close_unpaid(order, "携程取消未支付订单")
            confirm_type = 1
        elif self.is_system_connected(order):
            order.status = OrderStatus.CANCEL_REQUESTED.value
            follow_ups = [FollowUp(CANCEL, (order.order_no, "OTA平台申请取消订单"))]
            confirm_type = 2
        else:
            order.status = OrderStatus.CANCEL_APPROVED.value
            order.cancelled_at = order.cancelled_at or self._now()
            confirm_type = 1
        self.session.flush()
        return self._ok({"supplierConfirmType": confirm_type, "items": response_items}, follow_ups)

    # 조회 / 검증 / 환불 -------------------------------------------------------

    def query_order(self, data: dict[str, Any]) -> IntakeReply:
        order = self.require_order(data.get("otaOrderId"), "4001", "该订单号不存在")
        # 결제 전 예약 주문은 itemId 0
        item_id = "0" if order.paid_at is None else (order.ota_item_id or str(order.id))
        status = CTRIP_ORDER_STATUS.get(order.status, 1)
        if order.status == OrderStatus.CANCEL_APPROVED.value and order.paid_at is None:
            status = CTRIP_PRE_ORDER_CANCELLED
        cancelled = order.status in (OrderStatus.CANCEL_APPROVED.value, OrderStatus.CANCEL_REQUESTED.value)
        item = {
            "itemId": item_id,
            "orderStatus": status,
            "quantity": order.room_count,
            "useQuantity": order.room_count if order.status == OrderStatus.VERIFIED.value else 0,
            "cancelQuantity": order.room_count if cancelled else 0,
            "useStartDate": order.check_in_date.isoformat() if order.check_in_date else "",
            "useEndDate": order.check_out_date.isoformat() if order.check_out_date else "",
        }
        body = self._order_ids(order)
        body["items"] = [item]
        return self._ok(body)

    def verify_order(self, data: dict[str, Any]) -> IntakeReply:
        items = data.get("items") or [{}]
        item = items[0] if isinstance(items[0], dict) else {}
        if not item.get("PLU"):
            raise IntakeError("1001", "产品PLU不存在/错误")
        if not item.get("useStartDate"):
            raise IntakeError("1009", "日期错误：使用日期为空")
        request = self.booking_request({"otaOrderId": data.get("otaOrderId") or "", "items": [item]})
        self.resolve_booking(request, self.verify_codes)
        return self._ok({"verifyResult": True})

    def refund_order(self, data: dict[str, Any]) -> IntakeReply:
        order = self.require_order(data.get("otaOrderId"), "3001", "该订单号不存在")
        if order.status not in (OrderStatus.CANCEL_APPROVED.value, OrderStatus.REJECTED.value):
            raise IntakeError("3002", "该订单拒绝退款")
        logger.info(f"[INTAKE] Ctrip 환불 확인: order={order.order_no} amount={data.get('totalAmount')}")
        return self._ok({"supplierConfirmType": 1})


# Meituan ---------------------------------------------------------------

MEITUAN_SUCCESS = 200
MEITUAN_TICKETING = 598
MEITUAN_ASYNC_PULL = 999

# 2 创建订单成功, 3 创建订单失败, 4 出票成功, 5 出票中
MEITUAN_ORDER_STATUS = {
    OrderStatus.PAID_PENDING.value: 2,
    OrderStatus.REJECTED.value: 3,
    OrderStatus.CONFIRMED.value: 4,
    OrderStatus.CONFIRMING.value: 5,
    OrderStatus.VERIFIED.value: 4,
    OrderStatus.CANCEL_REQUESTED.value: 4,
    OrderStatus.CANCEL_REJECTED.value: 4,
    OrderStatus.CANCEL_APPROVED.value: 4,
}

MEITUAN_CLOSE_REASONS = {
    1: "用户未支付，美团关闭订单",
    2: "合作方下单接口异常，美团关闭订单",
    3: "合作方出票接口异常，美团出票失败且已退款",
}


class MeituanOrderIntake(OrderIntake):
    booking_codes = BookingCodes(invalid=400, unknown_product=505, inactive_product=505, no_price=400, no_stock=503)

    def handle(self, action: str, data: dict[str, Any]) -> IntakeReply:
        handlers: dict[str, Callable[[dict[str, Any]], IntakeReply]] = {
            "create": self.create_order_v2,
            "pay": self.pay_order,
            "query": self.query_order,
            "refund": self.refund_order,
            "close": self.close_order,
            "price_calendar": self.price_calendar,
        }
        handler = handlers.get(action)
        if handler is None:
            return IntakeReply(400, "未知接口类型")
        body = data.get("body") if isinstance(data.get("body"), dict) else data
        try:
            return handler(body)
        except IntakeError as e:
            logger.warning(f"[INTAKE] Meituan {action} 거부: code={e.code} msg={e.message}")
            return IntakeReply(e.code, e.message)

    @staticmethod
    def _ok(body: Any = None, follow_ups: list[FollowUp] | None = None, code: int = MEITUAN_SUCCESS, message: str = "success") -> IntakeReply:
        return IntakeReply(code, message, body=body, follow_ups=follow_ups or [])

    def _order(self, body: dict[str, Any]) -> Order:
        if not body.get("orderId"):
            raise IntakeError(400, "订单号(orderId)为空")
        return self.require_order(body["orderId"], 400, "订单不存在")

    @staticmethod
    def _order_ids(order: Order) -> dict[str, Any]:
        return {"orderId": _ota_int(order.ota_order_no), "partnerOrderId": order.order_no}

    # 주문 ---------------------------------------------------------------

    def create_order_v2(self, body: dict[str, Any]) -> IntakeReply:
        if not body.get("orderId"):
            raise IntakeError(400, "订单号(orderId)为空")
        if not body.get("partnerDealId"):
            raise IntakeError(400, "产品编码(partnerDealId)为空")
        use_date = body.get("travelDate") or body.get("useDate") or ""
        if not use_date:
            raise IntakeError(400, "使用日期(useDate)为空")

        existing = self.find_order(body["orderId"])
        if existing is not None:
            return self._ok(self._order_ids(existing))

        credentials = [c for c in body.get("credentialList") or [] if isinstance(c, dict)]
        contacts = [c for c in body.get("contacts") or body.get("visitors") or [] if isinstance(c, dict)]
        guests = [
            {
                "name": credential.get("name") or (contacts[0].get("name") if contacts else "") or "",
                "idCode": credential.get("credentialNo") or "",
                "cardType": str(credential.get("credentialType") or 0),
            }
            for credential in credentials
        ]
        real_name_type = int(body.get("realNameType") or 0)
        request = BookingRequest(
            ota_order_no=str(body["orderId"]),
            product_code=str(body["partnerDealId"]),
            start=str(use_date),
            quantity=body.get("quantity") or 1,
            primary_key=body.get("partnerPrimaryKey"),
            guests=guests,
            contact=contacts[0] if contacts else {},
            real_name_type=real_name_type,
            credential_list=[
                {
                    "credentialType": int(credential.get("credentialType") or 0),
                    "credentialNo": credential.get("credentialNo") or "",
                    "voucher": credential.get("voucher") or "",
                    "status": 0,
                }
                for credential in credentials
            ]
            or None,
        )
        booking = self.resolve_booking(request)
        order = self.create_order(request, booking, paid=False)
        return self._ok(self._order_ids(order))

    def pay_order(self, body: dict[str, Any]) -> IntakeReply:
        order = self._order(body)
        if order.status == OrderStatus.CONFIRMED.value:
            return self._ok(self._order_ids(order))
        if order.status != OrderStatus.PAID_PENDING.value:
            raise IntakeError(506, f"订单状态不正确，当前状态：{order.status}")

        order.paid_at = order.paid_at or self._now()
        # 직접 연동이 아니면 CONFIRMING 으로 두고 사람이 접수
        follow_ups = self.begin_confirmation(order, manual_status=OrderStatus.CONFIRMING)
        self.session.flush()
        return self._ok({"orderId": _ota_int(order.ota_order_no)}, follow_ups, code=MEITUAN_TICKETING, message="出票中")

    def query_order(self, body: dict[str, Any]) -> IntakeReply:
        order = self._order(body)
        response = self._order_ids(order)
        response.update(
            orderStatus=MEITUAN_ORDER_STATUS.get(order.status, 2),
            orderQuantity=order.room_count,
            usedQuantity=order.room_count if order.status == OrderStatus.VERIFIED.value else 0,
            refundedQuantity=order.room_count if order.status == OrderStatus.CANCEL_APPROVED.value else 0,
            voucherType=0,
        )
        if order.real_name_type == 1 and order.credential_list:
            response["realNameType"] = 1
            response["credentialList"] = order.credential_list
        return self._ok(response)

    def refund_order(self, body: dict[str, Any]) -> IntakeReply:
        order = self._order(body)
        if order.status == OrderStatus.VERIFIED.value:
            raise IntakeError(506, "订单已使用，不允许退款")
        if order.status not in (OrderStatus.PAID_PENDING.value, OrderStatus.CONFIRMED.value):
            raise IntakeError(506, f"订单状态不允许退款，当前状态：{order.status}")
        if self.is_expired(order):
            raise IntakeError(506, "订单已过期，不允许退款")
        try:
            quantity = int(body.get("refundQuantity") or order.room_count)
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0 or quantity > order.room_count:
            raise IntakeError(400, "退款数量不正确")

        follow_ups: list[FollowUp] = []
        if order.paid_at is None:
            self.close_unpaid(order, "美团申请退款（未支付）")
        else:
            order.status = OrderStatus.CANCEL_REQUESTED.value
            if self.is_system_connected(order):
                follow_ups = [FollowUp(CANCEL, (order.order_no, "美团申请退款"))]
        self.session.flush()
        response = self._order_ids(order)
        response["refundId"] = body.get("refundId") or ""
        return self._ok(response, follow_ups)

    def close_order(self, body: dict[str, Any]) -> IntakeReply:
        order = self._order(body)
        if order.status == OrderStatus.CANCEL_APPROVED.value:
            return self._ok()
        close_type = _ota_int(body.get("closeType") or 0)
        reason = f"{MEITUAN_CLOSE_REASONS.get(close_type, '订单关闭')}，closeType={close_type}"
        if order.paid_at is None:
            self.close_unpaid(order, reason)
        else:
            order.status = OrderStatus.CANCEL_APPROVED.value
            order.cancelled_at = order.cancelled_at or self._now()
            order.remark = reason
        self.session.flush()
        logger.info(f"[INTAKE] Meituan 주문 종료: order={order.order_no} {reason}")
        return self._ok()

    # 가격 일정 ---------------------------------------------------------------

    def price_calendar(self, body: dict[str, Any]) -> IntakeReply:
        """다층 가격 일정 조회. asyncType=1 이면 999 로 답하고 가격/재고 푸시 작업을 넣습니다."""
        deal_id = body.get("partnerDealId") or ""
        if not deal_id or not body.get("startTime") or not body.get("endTime"):
            raise IntakeError(400, "参数不完整")
        try:
            start = date.fromisoformat(str(body["startTime"])[:10])
            end = date.fromisoformat(str(body["endTime"])[:10])
        except ValueError:
            raise IntakeError(400, "参数不完整")
        product = self.find_product(str(deal_id))
        if product is None:
            raise IntakeError(505, "产品不存在")

        rates = list(
            self.session.scalars(
                select(DailyRate)
                .where(DailyRate.product_id == product.id)
                .where(DailyRate.rate_date >= start)
                .where(DailyRate.rate_date <= end)
                .order_by(DailyRate.hotel_id, DailyRate.room_type_id, DailyRate.rate_date)
            ).all()
        )
        combos: dict[tuple[int, int], list[DailyRate]] = {}
        for rate in rates:
            combos.setdefault((rate.hotel_id, rate.room_type_id), []).append(rate)

        if _ota_int(body.get("asyncType") or 0) == 1:
            follow_ups = [
                FollowUp(SYNC, (product.id, hotel_id, room_type_id, self.platform.id))
                for hotel_id, room_type_id in combos
            ]
            reply = self._ok(None, follow_ups, code=MEITUAN_ASYNC_PULL, message="异步拉取，将通过通知接口推送")
        else:
            sync = OtaPriceStockSync(self.session)
            calendar: list[dict[str, Any]] = []
            for (hotel_id, room_type_id), combo_rates in combos.items():
                hotel = self.session.get(Hotel, hotel_id)
                room_type = self.session.get(RoomType, room_type_id)
                if hotel is None or room_type is None:
                    continue
                calendar.extend(sync.meituan_body(hotel, room_type, combo_rates))
            reply = self._ok(calendar)
        reply.envelope["partnerDealId"] = deal_id
        return reply
