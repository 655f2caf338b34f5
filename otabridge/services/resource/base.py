"""
리소스 서비스 공통 계약과 재시도/예외 처리.

모든 공개 작업은 예외를 밖으로 던지지 않고 ServiceResult를 반환합니다.
일시적 실패(전송 오류, 제공자 정의 일시 코드/메시지)만 재시도하고,
그 외 업무 실패는 ExceptionRecord로 올립니다.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, retry_if_exception, retry_if_result, stop_after_attempt, wait_fixed

from otabridge.auth_config import SecretStoreError
from otabridge.enums import ExceptionOrderType, OrderStatus
from otabridge.models import Order, ProductExternalMapping, ResourceConfig
from otabridge.results import AdapterResult, ErrorKind, ServiceResult
from otabridge.services.exception_queue import classify_exception_type, create_exception_record
from otabridge.settings import settings

logger = logging.getLogger(__name__)

TRANSIENT_MESSAGE_MARKERS = ("超时", "网络", "timeout")
TRANSIENT_EXCEPTIONS = (httpx.TransportError, ConnectionError, TimeoutError)
# 클라이언트 생성 단계의 설정 오류 (CodecError 는 ValueError 하위)
CLIENT_CONFIG_ERRORS = (ValueError, SecretStoreError)


class ResourceServiceError(Exception):
    """업무 전제 조건 실패 (매핑 없음, 필수 정보 누락 등)"""


def is_transient_exception(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


class ResourceService(ABC):
    provider_code: str = ""
    transient_codes: frozenset[str] = frozenset()

    def __init__(
        self,
        session: Session,
        config: ResourceConfig,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_attempts: int | None = None,
        retry_wait: float | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self._client = client
        self._sleep = sleep
        self.retry_attempts = retry_attempts or settings.resource_retry_attempts
        self.retry_wait = settings.resource_retry_wait_seconds if retry_wait is None else retry_wait

    # 계약 ---------------------------------------------------------------

    @abstractmethod
    def confirm_order(self, order: Order) -> ServiceResult: ...

    @abstractmethod
    def cancel_order(self, order: Order, reason: str = "") -> ServiceResult: ...

    @abstractmethod
    def can_cancel_order(self, order: Order) -> ServiceResult: ...

    @abstractmethod
    def query_order_status(self, order_or_no: Order | str) -> ServiceResult: ...

    def verify_order(self, order: Order, data: dict[str, Any] | None = None) -> ServiceResult:
        """사용(核销) 통지는 웹훅으로만 들어오므로 수신 확인만 합니다."""
        logger.info(f"[RESOURCE] {self.provider_code} 사용 처리 통지 수신 확인: order={order.order_no}")
        return ServiceResult.ok("核销通知已接收", order_no=order.order_no, verify_data=data or {})

    def reject_order(self, order: Order, reason: str = "") -> ServiceResult:
        return ServiceResult.fail(f"{self.provider_code}不支持拒单操作")

    # 재시도 ---------------------------------------------------------------

    def is_transient(self, result: AdapterResult) -> bool:
        if result.success:
            return False
        if result.error_kind == ErrorKind.TRANSPORT:
            return True
        if result.error_kind == ErrorKind.DECODE:
            return False
        if result.code and result.code in self.transient_codes:
            return True
        message = (result.message or "").lower()
        return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)

    def _log_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            if outcome is None:
                return
            reason = outcome.exception() if outcome.failed else outcome.result().message
            logger.warning(
                f"[RESOURCE] {self.provider_code}.{operation} 일시적 오류, 재시도 "
                f"({retry_state.attempt_number}/{self.retry_attempts}): {reason}"
            )

        return before_sleep

    @staticmethod
    def _last_outcome(retry_state: RetryCallState) -> AdapterResult:
        outcome = retry_state.outcome
        if outcome.failed:
            exc = outcome.exception()
            return AdapterResult.err(ErrorKind.TRANSPORT, f"网络错误: {exc}", code="network")
        return outcome.result()

    def call_with_retry(self, operation: str, call: Callable[[], AdapterResult]) -> AdapterResult:
        """
        일시적 실패일 때만 고정 간격으로 재시도합니다.

        Args:
            operation: 로그용 작업 이름
            call: AdapterResult를 반환하는 호출

        Returns:
            마지막 시도의 AdapterResult (재시도 소진 시에도 마지막 오류를 그대로 반환)
        """
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_result(self.is_transient) | retry_if_exception(is_transient_exception),
            retry_error_callback=self._last_outcome,
            before_sleep=self._log_retry(operation),
            sleep=self._sleep,
        )
        result = retryer(call)
        attempts = retryer.statistics.get("attempt_number", 1)
        if not result.success and attempts > 1:
            logger.warning(f"[RESOURCE] {self.provider_code}.{operation} {attempts}회 시도 후 실패: {result.message}")
        return result

    # 공용 보조 -------------------------------------------------------------

    def find_external_product_id(self, order: Order) -> str | None:
        query = self.session.query(ProductExternalMapping).filter(
            ProductExternalMapping.product_id == order.product_id,
            ProductExternalMapping.software_provider_id == self.config.software_provider_id,
            ProductExternalMapping.is_active.is_(True),
        )
        candidates = query.all()
        # 호텔/방 타입까지 일치하는 매핑 우선
        for mapping in candidates:
            if mapping.hotel_id == order.hotel_id and mapping.room_type_id == order.room_type_id:
                return mapping.external_product_id
        for mapping in candidates:
            if mapping.hotel_id in (None, order.hotel_id) and mapping.room_type_id is None:
                return mapping.external_product_id
        return None

    def escalate(
        self,
        order: Order,
        operation: str,
        message: str,
        result: AdapterResult | None = None,
        exception_type: ExceptionOrderType | None = None,
        **extra: Any,
    ) -> None:
        data: dict[str, Any] = {
            "operation": operation,
            "provider": self.provider_code,
            "resource_response": result.to_dict() if result is not None else None,
        }
        data.update(extra)
        create_exception_record(
            self.session,
            order,
            exception_type or classify_exception_type(result, message),
            message,
            data,
        )

    def config_failure(
        self, order: Order | None, operation: str, error: Exception, escalate: bool = True
    ) -> ServiceResult:
        """클라이언트를 만들 수 없는 설정 오류를 실패 결과로 바꿉니다."""
        message = f"资源方配置错误：{error}"
        logger.error(
            f"[RESOURCE] {self.provider_code}.{operation} 클라이언트 생성 실패: "
            f"order={order.order_no if order is not None else '-'} error={error}"
        )
        if escalate and order is not None:
            self.escalate(order, operation, message, exception_type=ExceptionOrderType.API_ERROR)
        return ServiceResult.fail(message, need_manual=escalate)

    def already_confirmed(self, order: Order) -> ServiceResult | None:
        if order.resource_order_no:
            logger.info(
                f"[RESOURCE] {self.provider_code} 이미 리소스 주문이 존재합니다: "
                f"order={order.order_no} resource_order_no={order.resource_order_no}"
            )
            return ServiceResult.ok(
                "订单已在资源方创建",
                resource_order_no=order.resource_order_no,
                status=order.status,
            )
        return None

    @staticmethod
    def status_value(status: OrderStatus | None) -> str | None:
        return status.value if status is not None else None
