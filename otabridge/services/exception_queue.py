"""
사람이 처리할 예외 주문 기록 (ExceptionRecord).

상대방이 보낸 원문 메시지는 가공하지 않고 그대로 보존합니다.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from otabridge.enums import ExceptionOrderType, ExceptionStatus
from otabridge.models import ExceptionRecord, Order
from otabridge.results import AdapterResult, ErrorKind

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("超时", "timeout", "timed out")
_PRICE_MARKERS = ("价格", "price", "4101")
_INVENTORY_MARKERS = ("库存", "inventory", "stock", "房量", "满房")


def classify_exception_type(result: AdapterResult | None, message: str = "") -> ExceptionOrderType:
    text = (message or (result.message if result else "")).lower()
    if result is not None and result.error_kind == ErrorKind.TRANSPORT and result.code == "timeout":
        return ExceptionOrderType.TIMEOUT
    if any(m in text for m in _TIMEOUT_MARKERS):
        return ExceptionOrderType.TIMEOUT
    if any(m in text for m in _PRICE_MARKERS):
        return ExceptionOrderType.PRICE_MISMATCH
    if any(m in text for m in _INVENTORY_MARKERS):
        return ExceptionOrderType.INVENTORY_MISMATCH
    return ExceptionOrderType.API_ERROR


def create_exception_record(
    session: Session,
    order: Order | None,
    exception_type: ExceptionOrderType,
    message: str,
    data: dict[str, Any] | None = None,
) -> ExceptionRecord:
    record = ExceptionRecord(
        order_id=order.id if order is not None else None,
        exception_type=exception_type.value,
        exception_message=message or "",
        exception_data=data or {},
        status=ExceptionStatus.PENDING.value,
    )
    session.add(record)
    session.flush()
    logger.warning(
        f"[EXCEPTION] 예외 주문 생성: order={order.order_no if order is not None else '-'} "
        f"type={exception_type.value} message={message}"
    )
    return record


def has_pending_exception(session: Session, order: Order, operation: str | None = None) -> bool:
    query = session.query(ExceptionRecord).filter(
        ExceptionRecord.order_id == order.id,
        ExceptionRecord.status == ExceptionStatus.PENDING.value,
    )
    records = query.all()
    if operation is None:
        return bool(records)
    return any((r.exception_data or {}).get("operation") == operation for r in records)


def count_pending_exceptions(session: Session, order: Order) -> int:
    stmt = select(func.count(ExceptionRecord.id)).where(
        ExceptionRecord.order_id == order.id,
        ExceptionRecord.status == ExceptionStatus.PENDING.value,
    )
    return int(session.scalar(stmt) or 0)
