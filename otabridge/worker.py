"""
백그라운드 작업 큐와 스케줄러.

작업은 session 을 첫 인자로 받는 일반 함수입니다. 큐는 작업마다 새 세션을 열고
성공 시 커밋, 예외 시 롤백합니다. 같은 주문에 대한 작업은 주문별 Lock 으로 직렬화합니다.
"""

from __future__ import annotations

import logging
import queue
import threading
import weakref
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from otabridge.db import session_factory as default_session_factory
from otabridge.enums import OrderStatus, SyncKind
from otabridge.models import DailyRate, Hotel, Order, OtaPlatform, OtaProduct, Product, RoomType
from otabridge.services.order_reconciler import OrderReconciler, ReconcileOutcome
from otabridge.services.ota_notifier import OtaOrderNotifier
from otabridge.services.ota_price_stock_sync import OtaPriceStockSync, SyncReport
from otabridge.services.resource_callbacks import (
    CallbackError,
    InventoryPushResult,
    apply_order_event,
    apply_room_status,
    find_order,
    order_reference,
)
from otabridge.settings import settings

logger = logging.getLogger(__name__)

_STOP = object()


class _OrderLock:
    """WeakValueDictionary 에 담을 수 있는 Lock 래퍼"""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_OrderLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._lock.release()


# 잠금을 쥔 작업이 없으면 항목이 자동으로 사라짐
_order_locks: weakref.WeakValueDictionary[str, _OrderLock] = weakref.WeakValueDictionary()
_order_locks_guard = threading.Lock()


@contextmanager
def order_lock(order_no: str) -> Iterator[None]:
    with _order_locks_guard:
        lock = _order_locks.get(order_no)
        if lock is None:
            lock = _OrderLock()
            _order_locks[order_no] = lock
    with lock:
        yield


class JobQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session] = default_session_factory,
        pool_size: int | None = None,
        queue_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.pool_size = pool_size or settings.worker_pool_size
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size or settings.worker_queue_size)
        self._executor: ThreadPoolExecutor | None = None

    def start(self) -> None:
        if self._executor is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix="otabridge-worker")
        for _ in range(self.pool_size):
            self._executor.submit(self._loop)
        logger.info(f"[WORKER] 워커 시작: pool={self.pool_size} queue={self._queue.maxsize}")

    def submit(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """큐가 가득 차면 기다리지 않고 False 를 반환합니다."""
        try:
            self._queue.put_nowait((name, func, args, kwargs))
        except queue.Full:
            logger.warning(f"[WORKER] 큐가 가득 참, 작업 버림: {name}")
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.run_job(*item)
            finally:
                self._queue.task_done()

    def run_job(self, name: str, func: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        with self._session_factory() as session:
            try:
                result = func(session, *args, **kwargs)
                session.commit()
                return result
            except Exception as e:
                session.rollback()
                logger.exception(f"[WORKER] 작업 실패 ({name}): {e}")
                return None

    def run_pending(self) -> int:
        """워커 스레드 없이 현재 쌓인 작업을 호출 스레드에서 처리합니다 (CLI 일회 실행용)."""
        count = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return count
            try:
                if item is not _STOP:
                    self.run_job(*item)
                    count += 1
            finally:
                self._queue.task_done()

    def join(self) -> None:
        self._queue.join()

    def stop(self, wait: bool = True) -> None:
        if self._executor is None:
            return
        for _ in range(self.pool_size):
            self._queue.put(_STOP)
        self._executor.shutdown(wait=wait)
        self._executor = None
        logger.info("[WORKER] 워커 종료")


# 작업 ---------------------------------------------------------------


def _load_order(session: Session, order_no: str) -> Order | None:
    order = session.scalars(select(Order).where(Order.order_no == order_no)).first()
    if order is None:
        logger.warning(f"[WORKER] 주문 없음: {order_no}")
    return order


def confirm_order_job(session: Session, order_no: str, reconciler: OrderReconciler | None = None) -> ReconcileOutcome | None:
    with order_lock(order_no):
        order = _load_order(session, order_no)
        if order is None:
            return None
        if order.status not in (OrderStatus.PAID_PENDING.value, OrderStatus.CONFIRMING.value):
            logger.info(f"[WORKER] 접수 대상 상태 아님: order={order_no} status={order.status}")
            return None
        if order.paid_at is None and order.status == OrderStatus.PAID_PENDING.value:
            logger.info(f"[WORKER] 결제 전 예약 주문은 접수하지 않습니다: order={order_no}")
            return None
        reconciler = reconciler or OrderReconciler(session, notifier=OtaOrderNotifier())
        return reconciler.confirm(order)


def cancel_order_job(
    session: Session, order_no: str, reason: str = "", reconciler: OrderReconciler | None = None
) -> ReconcileOutcome | None:
    with order_lock(order_no):
        order = _load_order(session, order_no)
        if order is None:
            return None
        reconciler = reconciler or OrderReconciler(session)
        return reconciler.cancel(order, reason)


def refresh_order_job(session: Session, order_no: str, reconciler: OrderReconciler | None = None) -> ReconcileOutcome | None:
    with order_lock(order_no):
        order = _load_order(session, order_no)
        if order is None:
            return None
        reconciler = reconciler or OrderReconciler(session)
        return reconciler.refresh_status(order)


def sync_price_stock_job(
    session: Session,
    product_id: int,
    hotel_id: int,
    room_type_id: int,
    ota_platform_id: int | None = None,
    kinds: tuple[SyncKind, ...] = (SyncKind.PRICE, SyncKind.STOCK),
    client_factory: Callable[[OtaPlatform], Any] | None = None,
) -> list[SyncReport]:
    """ota_platform_id 가 없으면 상품이 등록된 모든 활성 OTA 로 푸시합니다."""
    product = session.get(Product, product_id)
    hotel = session.get(Hotel, hotel_id)
    room_type = session.get(RoomType, room_type_id)
    if product is None or hotel is None or room_type is None:
        logger.warning(f"[WORKER] 동기화 대상 없음: product={product_id} hotel={hotel_id} room_type={room_type_id}")
        return []

    if ota_platform_id is not None:
        platform = session.get(OtaPlatform, ota_platform_id)
        platforms = [platform] if platform is not None else []
    else:
        platforms = list(
            session.scalars(
                select(OtaPlatform)
                .join(OtaProduct, OtaProduct.ota_platform_id == OtaPlatform.id)
                .where(OtaProduct.product_id == product_id)
                .where(OtaProduct.is_active.is_(True))
            ).all()
        )

    sync = OtaPriceStockSync(session, client_factory=client_factory)
    reports = []
    for platform in platforms:
        report = sync.sync(product, hotel, room_type, platform, kinds)
        logger.info(
            f"[WORKER] 가격/재고 동기화: {product.code}/{hotel.code}/{room_type.code}@{platform.code} "
            f"pushed={report.pushed} skipped={report.skipped} failed={list(report.failed)}"
        )
        reports.append(report)
    return reports


def hengdian_inventory_job(
    session: Session,
    entries: list[dict[str, Any]],
    client_factory: Callable[[OtaPlatform], Any] | None = None,
) -> InventoryPushResult:
    """Hengdian 방 상태 푸시를 반영하고 바뀐 조합의 재고를 OTA 로 다시 푸시합니다."""
    result = apply_room_status(session, entries)
    for product_id, hotel_id, room_type_id in sorted(result.combos):
        sync_price_stock_job(session, product_id, hotel_id, room_type_id, kinds=(SyncKind.STOCK,), client_factory=client_factory)
    return result


def resource_order_event_job(
    session: Session,
    provider_code: str,
    payload: dict[str, Any],
    reconciler: OrderReconciler | None = None,
) -> ReconcileOutcome:
    """콜백이 가리키는 주문을 먼저 찾고, 접수 작업과 같은 order_no 잠금 아래에서 반영합니다."""
    reference = order_reference(payload)
    order = find_order(session, reference) if reference else None
    if order is None:
        raise CallbackError(f"订单不存在：{reference}" if reference else "回调缺少订单号")
    with order_lock(order.order_no):
        reconciler = reconciler or OrderReconciler(session, notifier=OtaOrderNotifier())
        return apply_order_event(session, provider_code, payload, reconciler)


# 스케줄러 ---------------------------------------------------------------


def schedule_price_stock_sync(session: Session, jobs: JobQueue, today: date | None = None) -> int:
    """앞으로의 DailyRate 가 있는 (상품, 호텔, 방 타입) × 활성 OTA 상품 조합마다 작업을 넣습니다."""
    today = today or date.today()
    stmt = (
        select(DailyRate.product_id, DailyRate.hotel_id, DailyRate.room_type_id, OtaProduct.ota_platform_id)
        .join(OtaProduct, OtaProduct.product_id == DailyRate.product_id)
        .join(Product, Product.id == DailyRate.product_id)
        .where(DailyRate.rate_date >= today)
        .where(OtaProduct.is_active.is_(True))
        .where(Product.is_active.is_(True))
        .distinct()
    )
    count = 0
    for product_id, hotel_id, room_type_id, ota_platform_id in session.execute(stmt).all():
        name = f"sync:{product_id}/{hotel_id}/{room_type_id}@{ota_platform_id}"
        if jobs.submit(name, sync_price_stock_job, product_id, hotel_id, room_type_id, ota_platform_id):
            count += 1
    logger.info(f"[WORKER] 가격/재고 동기화 예약: {count}건")
    return count


def schedule_order_status_polls(session: Session, jobs: JobQueue) -> int:
    """리소스 측 결과를 기다리는 주문마다 상태 조회 작업을 넣습니다."""
    stmt = (
        select(Order.order_no)
        .where(Order.status.in_([OrderStatus.CONFIRMING.value, OrderStatus.CANCEL_REQUESTED.value]))
        .where(Order.resource_order_no.is_not(None))
        .order_by(Order.id)
    )
    count = 0
    for order_no in session.scalars(stmt).all():
        if jobs.submit(f"refresh:{order_no}", refresh_order_job, order_no):
            count += 1
    logger.info(f"[WORKER] 주문 상태 조회 예약: {count}건")
    return count


def schedule_pending_confirmations(session: Session, jobs: JobQueue) -> int:
    """결제된 미접수 주문과 리소스 주문 번호 없이 CONFIRMING 에 머문 주문을 접수 작업으로 넣습니다."""
    stmt = (
        select(Order.order_no)
        .where(
            or_(
                and_(Order.status == OrderStatus.PAID_PENDING.value, Order.paid_at.is_not(None)),
                and_(Order.status == OrderStatus.CONFIRMING.value, Order.resource_order_no.is_(None)),
            )
        )
        .order_by(Order.id)
    )
    count = 0
    for order_no in session.scalars(stmt).all():
        if jobs.submit(f"confirm:{order_no}", confirm_order_job, order_no):
            count += 1
    logger.info(f"[WORKER] 주문 접수 예약: {count}건")
    return count
