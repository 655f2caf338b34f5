"""
리소스 제공자 인바운드 콜백 처리.

- Hengdian RoomStatus 푸시 → DailyRate 재고 갱신 (가격 행이 있는 날짜만)
- 주문 이벤트 (Ziwoyou confirm/cancel/finish/print, 그 외 제공자는 상태 재조회)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from otabridge.enums import OrderStatus
from otabridge.models import DailyRate, Hotel, Order, RoomType
from otabridge.services.order_reconciler import OrderReconciler, ReconcileOutcome

logger = logging.getLogger(__name__)


class CallbackError(Exception):
    """콜백 내용으로 대상을 찾을 수 없음"""


@dataclass
class InventoryPushResult:
    updated_rows: int = 0
    combos: set[tuple[int, int, int]] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)


def apply_room_status(session: Session, entries: list[dict[str, Any]]) -> InventoryPushResult:
    """
    RoomQuotaMap 항목을 DailyRate.available_quantity 에 반영합니다.

    entries: [{"hotelNo": "001", "roomType": "标准间", "roomQuota": [{"date": "2021-10-21", "quota": 100}]}]
    """
    result = InventoryPushResult()
    for entry in entries:
        hotel_no = entry.get("hotelNo")
        room_type_name = entry.get("roomType")
        if not hotel_no or not room_type_name:
            result.errors.append("缺少hotelNo或roomType")
            continue

        hotel = session.scalars(
            select(Hotel).where(or_(Hotel.external_code == str(hotel_no), Hotel.code == str(hotel_no)))
        ).first()
        if hotel is None:
            result.errors.append(f"未找到酒店：{hotel_no}")
            continue
        room_type = session.scalars(
            select(RoomType)
            .where(RoomType.hotel_id == hotel.id)
            .where(or_(RoomType.external_code == str(room_type_name), RoomType.name == str(room_type_name)))
        ).first()
        if room_type is None:
            result.errors.append(f"未找到房型：{room_type_name}（酒店：{hotel_no}）")
            continue

        for quota in entry.get("roomQuota") or []:
            raw_date = quota.get("date")
            if not raw_date:
                continue
            try:
                day = date.fromisoformat(str(raw_date))
                available = int(quota.get("quota") or 0)
            except ValueError:
                result.errors.append(f"库存数据格式错误：{quota}")
                continue
            rates = session.scalars(
                select(DailyRate)
                .where(DailyRate.hotel_id == hotel.id)
                .where(DailyRate.room_type_id == room_type.id)
                .where(DailyRate.rate_date == day)
            ).all()
            if not rates:
                result.errors.append(f"没有价格数据：{hotel_no}/{room_type_name}/{day.isoformat()}")
                continue
            for rate in rates:
                rate.available_quantity = available
                result.updated_rows += 1
                result.combos.add((rate.product_id, rate.hotel_id, rate.room_type_id))

    session.flush()
    if result.errors:
        logger.warning(f"[WEBHOOK] 방 상태 일부 실패: updated={result.updated_rows} errors={result.errors}")
    else:
        logger.info(f"[WEBHOOK] 방 상태 반영: updated={result.updated_rows} combos={len(result.combos)}")
    return result


def find_order(session: Session, reference: str) -> Order | None:
    stmt = select(Order).where(
        or_(Order.order_no == reference, Order.ota_order_no == reference, Order.resource_order_no == reference)
    )
    return session.scalars(stmt).first()


def order_reference(payload: dict[str, Any]) -> str:
    reference = payload.get("orderSourceId") or payload.get("orderNo") or payload.get("order_id") or payload.get("orderId")
    return str(reference) if reference else ""


def _state(payload: dict[str, Any], key: str) -> int:
    try:
        return int(payload.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def apply_order_event(
    session: Session,
    provider_code: str,
    payload: dict[str, Any],
    reconciler: OrderReconciler | None = None,
) -> ReconcileOutcome:
    reference = order_reference(payload)
    if not reference:
        raise CallbackError("回调缺少订单号")
    order = find_order(session, reference)
    if order is None:
        raise CallbackError(f"订单不存在：{reference}")

    reconciler = reconciler or OrderReconciler(session)
    if provider_code != "ziwoyou":
        return reconciler.refresh_status(order)

    method = payload.get("method") or ""
    now = datetime.now(timezone.utc)
    if method == "confirm":
        confirm_state = _state(payload, "confirmState")
        if confirm_state == 1:
            order.status = OrderStatus.CONFIRMED.value
            order.confirmed_at = order.confirmed_at or now
            reconciler.notify_confirmed(order)
        elif confirm_state == 2:
            order.status = OrderStatus.REJECTED.value
    elif method == "cancel":
        cancel_state = _state(payload, "cancelState")
        if cancel_state == 1:
            order.status = OrderStatus.CANCEL_APPROVED.value
            order.cancelled_at = order.cancelled_at or now
        elif cancel_state == 2:
            order.status = OrderStatus.CANCEL_REJECTED.value
    elif method == "finish":
        return reconciler.verify(
            order,
            {"use_quantity": payload.get("finishNum"), "finish_codes": payload.get("finishCodes") or []},
        )
    elif method == "print":
        logger.info(
            f"[WEBHOOK] Ziwoyou 출표 통지: order={order.order_no} printState={payload.get('printState')} "
            f"vouchers={len(payload.get('vouchers') or [])}"
        )
    else:
        logger.warning(f"[WEBHOOK] 처리하지 않는 Ziwoyou 콜백: method={method} order={order.order_no}")

    session.flush()
    logger.info(f"[WEBHOOK] Ziwoyou {method} 반영: order={order.order_no} status={order.status}")
    return ReconcileOutcome(order_no=order.order_no, action=f"callback:{method}", success=True, status=order.status)
