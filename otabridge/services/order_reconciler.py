"""
주문 상태 조정기.

라우터로 리소스 서비스를 찾아 접수/취소/사용/거절/상태 조회를 호출하고 결과에 따라
Order 상태를 전이합니다. 서비스가 None 이면 수동 처리 대상이므로 건너뜁니다.
커밋은 호출 측(워커/CLI)이 담당합니다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from otabridge.enums import ExceptionOrderType, OrderStatus, SyncOperation
from otabridge.models import Order
from otabridge.results import AdapterResult, ServiceResult
from otabridge.services.exception_queue import count_pending_exceptions, create_exception_record
from otabridge.services.ota_notifier import OtaOrderNotifier
from otabridge.services.resource_router import ResourceServiceRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    order_no: str
    action: str
    skipped: bool = False
    success: bool = False
    status: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class OrderReconciler:
    def __init__(
        self,
        session: Session,
        router: ResourceServiceRouter | None = None,
        notifier: OtaOrderNotifier | None = None,
    ) -> None:
        self.session = session
        self.router = router or ResourceServiceRouter(session)
        self.notifier = notifier

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _skipped(self, order: Order, action: str) -> ReconcileOutcome:
        logger.info(f"[RECONCILE] 직접 연동 대상 아님, 수동 처리: order={order.order_no} action={action}")
        return ReconcileOutcome(order_no=order.order_no, action=action, skipped=True, status=order.status)

    def _escalate_if_silent(
        self,
        order: Order,
        pending_before: int,
        operation: str,
        result: ServiceResult,
    ) -> None:
        """서비스가 이미 예외 주문을 만들었으면 중복 생성하지 않습니다."""
        if count_pending_exceptions(self.session, order) > pending_before:
            return
        message = result.message or f"{operation} 실패"
        timeout = "超时" in message or "timeout" in message.lower()
        create_exception_record(
            self.session,
            order,
            ExceptionOrderType.TIMEOUT if timeout else ExceptionOrderType.API_ERROR,
            message,
            {"operation": operation, "resource_response": result.data, "timeout": timeout},
        )

    def _notify(self, order: Order, action: str, send: Callable[[], AdapterResult | None]) -> None:
        """OTA 통지 실패는 예외 주문으로 남기고, 리소스 측 처리 결과는 그대로 둡니다."""
        try:
            result = send()
        except Exception as e:
            logger.exception(f"[RECONCILE] OTA 통지 중 예외: order={order.order_no} action={action} error={e}")
            message = f"OTA通知异常：{e}"
            response = None
        else:
            if result is None or result.success:
                return
            message = f"OTA通知失败：{result.message}"
            response = result.to_dict()
        create_exception_record(
            self.session,
            order,
            ExceptionOrderType.API_ERROR,
            message,
            {"operation": f"notify_{action}", "ota_response": response},
        )

    def notify_confirmed(self, order: Order) -> None:
        if self.notifier is not None:
            self._notify(order, "confirm", lambda: self.notifier.notify_confirmed(order))

    def _outcome(self, order: Order, action: str, result: ServiceResult) -> ReconcileOutcome:
        return ReconcileOutcome(
            order_no=order.order_no,
            action=action,
            success=result.success,
            status=order.status,
            message=result.message,
            data=dict(result.data),
        )

    # 접수 ---------------------------------------------------------------

    def confirm(self, order: Order) -> ReconcileOutcome:
        service = self.router.resolve(order, SyncOperation.ORDER.value)
        if service is None:
            return self._skipped(order, "confirm")

        if order.status == OrderStatus.PAID_PENDING.value:
            order.status = OrderStatus.CONFIRMING.value
        pending_before = count_pending_exceptions(self.session, order)
        result = service.confirm_order(order)

        if result.success and not result.data.get("pending_confirmation"):
            order.status = OrderStatus.CONFIRMED.value
            order.confirmed_at = order.confirmed_at or self._now()
            logger.info(f"[RECONCILE] 접수 완료: order={order.order_no} resource_order_no={order.resource_order_no}")
            self.notify_confirmed(order)
        elif result.success:
            # 리소스 측 확인 콜백 대기
            order.status = OrderStatus.CONFIRMING.value
            logger.info(f"[RECONCILE] 리소스 확인 대기: order={order.order_no} resource_order_no={order.resource_order_no}")
        else:
            order.status = OrderStatus.CONFIRMING.value
            self._escalate_if_silent(order, pending_before, "confirm", result)
            logger.warning(f"[RECONCILE] 접수 실패, 수동 처리 필요: order={order.order_no} msg={result.message}")
        self.session.flush()
        return self._outcome(order, "confirm", result)

    def reject(self, order: Order, reason: str = "") -> ReconcileOutcome:
        service = self.router.resolve(order, SyncOperation.ORDER.value)
        if service is None:
            return self._skipped(order, "reject")

        pending_before = count_pending_exceptions(self.session, order)
        result = service.reject_order(order, reason)
        if result.success:
            order.status = OrderStatus.REJECTED.value
            logger.info(f"[RECONCILE] 거절 완료: order={order.order_no}")
        else:
            self._escalate_if_silent(order, pending_before, "reject", result)
        self.session.flush()
        return self._outcome(order, "reject", result)

    # 취소 ---------------------------------------------------------------

    def cancel(self, order: Order, reason: str = "") -> ReconcileOutcome:
        service = self.router.resolve(order, SyncOperation.ORDER.value)
        if service is None:
            return self._skipped(order, "cancel")

        pending_before = count_pending_exceptions(self.session, order)
        result = service.cancel_order(order, reason)
        if result.success:
            order.status = OrderStatus.CANCEL_APPROVED.value
            order.cancelled_at = order.cancelled_at or self._now()
            logger.info(f"[RECONCILE] 취소 완료: order={order.order_no}")
        else:
            order.status = OrderStatus.CANCEL_REQUESTED.value
            self._escalate_if_silent(order, pending_before, "cancel", result)
            logger.warning(f"[RECONCILE] 취소 실패, 수동 처리 필요: order={order.order_no} msg={result.message}")
        self.session.flush()
        return self._outcome(order, "cancel", result)

    # 사용 ---------------------------------------------------------------

    def verify(self, order: Order, data: dict[str, Any] | None = None) -> ReconcileOutcome:
        service = self.router.resolve(order, SyncOperation.ORDER.value)
        if service is None:
            return self._skipped(order, "verify")

        result = service.verify_order(order, data or {})
        if result.success:
            order.status = OrderStatus.VERIFIED.value
            if self.notifier is not None:
                self._notify(order, "verify", lambda: self.notifier.notify_consumed(order, data or {}))
        self.session.flush()
        return self._outcome(order, "verify", result)

    # 상태 조회 -------------------------------------------------------------

    def refresh_status(self, order: Order) -> ReconcileOutcome:
        service = self.router.resolve(order, SyncOperation.ORDER.value)
        if service is None:
            return self._skipped(order, "refresh")

        result = service.query_order_status(order)
        if not result.success:
            logger.warning(f"[RECONCILE] 상태 조회 실패: order={order.order_no} msg={result.message}")
            return self._outcome(order, "refresh", result)

        new_status = result.data.get("status")
        if new_status and new_status != order.status:
            logger.info(f"[RECONCILE] 상태 변경: order={order.order_no} {order.status} -> {new_status}")
            order.status = new_status
            if new_status == OrderStatus.CONFIRMED.value:
                order.confirmed_at = order.confirmed_at or self._now()
            elif new_status == OrderStatus.CANCEL_APPROVED.value:
                order.cancelled_at = order.cancelled_at or self._now()
            self.session.flush()
        return self._outcome(order, "refresh", result)
