"""리소스 제공자별 주문 상태 → OrderStatus 매핑 테이블."""

from __future__ import annotations

from typing import Any

from otabridge.enums import OrderStatus

# orderState: 0=新订单, 1=已确认, 2=已成功, 3=已取消, 4=已完成
ZIWOYOU_STATUS: dict[int, OrderStatus] = {
    0: OrderStatus.CONFIRMING,
    1: OrderStatus.CONFIRMED,
    2: OrderStatus.CONFIRMED,
    3: OrderStatus.CANCEL_APPROVED,
    4: OrderStatus.VERIFIED,
}
ZIWOYOU_CANCELLABLE = frozenset({0, 1})

# 1004(出票失败)은 매핑 없음 → 예외 처리 대상
FLIGGY_STATUS: dict[int, OrderStatus | None] = {
    1001: OrderStatus.CONFIRMING,
    1002: OrderStatus.PAID_PENDING,
    1003: OrderStatus.CONFIRMED,
    1004: None,
    1005: OrderStatus.VERIFIED,
    1010: OrderStatus.CANCEL_APPROVED,
}
FLIGGY_STATUS_DESCRIPTIONS: dict[int, str] = {
    1001: "已创建",
    1002: "已支付",
    1003: "出票成功",
    1004: "出票失败",
    1005: "交易完成",
    1010: "订单关闭",
}
FLIGGY_CANCELLABLE = frozenset({1001, 1002})

HENGDIAN_STATUS: dict[str, OrderStatus] = {
    "PENDING": OrderStatus.CONFIRMING,
    "CONFIRMED": OrderStatus.CONFIRMED,
    "CANCELLED": OrderStatus.CANCEL_APPROVED,
    "CHECKED_IN": OrderStatus.VERIFIED,
    "CHECKED_OUT": OrderStatus.VERIFIED,
}
HENGDIAN_CANCELLABLE = frozenset({"PENDING", "CONFIRMED"})


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def map_ziwoyou_state(value: Any) -> OrderStatus | None:
    state = _as_int(value)
    return ZIWOYOU_STATUS.get(state) if state is not None else None


def map_fliggy_state(value: Any) -> OrderStatus | None:
    state = _as_int(value)
    return FLIGGY_STATUS.get(state) if state is not None else None


def describe_fliggy_state(value: Any) -> str:
    state = _as_int(value)
    return FLIGGY_STATUS_DESCRIPTIONS.get(state, f"未知状态({value})") if state is not None else f"未知状态({value})"


def map_hengdian_state(value: Any) -> OrderStatus | None:
    if value is None:
        return None
    return HENGDIAN_STATUS.get(str(value).strip().upper())
