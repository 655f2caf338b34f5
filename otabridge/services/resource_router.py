"""
주문/재고 작업을 처리할 리소스 서비스를 고릅니다.

경로: Order → Hotel(없으면 Product) → 관광지 → 활성 ResourceConfig → sync_mode → ApiType 디스패치.
직접 연동 대상이 아니면 None 을 반환하며, 이는 실패가 아니라 수동 처리 대상이라는 뜻입니다.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.enums import ApiType, SyncOperation
from otabridge.models import Order, ProductExternalMapping, ResourceConfig, ScenicSpot, SoftwareProvider
from otabridge.services.resource import SERVICE_CLASSES, ResourceService

logger = logging.getLogger(__name__)

ORDER_MODE_AUTO = "auto"
INVENTORY_MODE_PUSH = "push"


class ResourceServiceRouter:
    def __init__(
        self,
        session: Session,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Callable[[ResourceConfig], Any] | None = None,
    ) -> None:
        self.session = session
        self._sleep = sleep
        # 테스트에서 프로토콜 클라이언트를 주입할 때 사용
        self._client_factory = client_factory

    # 조회 보조 -------------------------------------------------------------

    def _scenic_spot_for(self, order: Order) -> ScenicSpot | None:
        if order.hotel is not None and order.hotel.scenic_spot is not None:
            return order.hotel.scenic_spot
        if order.product is not None:
            return order.product.scenic_spot
        return None

    def _configs_for(self, scenic_spot: ScenicSpot) -> list[ResourceConfig]:
        stmt = (
            select(ResourceConfig)
            .where(ResourceConfig.scenic_spot_id == scenic_spot.id)
            .where(ResourceConfig.is_active.is_(True))
            .order_by(ResourceConfig.id)
        )
        return list(self.session.scalars(stmt).all())

    def _primary_config(self, order: Order) -> ResourceConfig | None:
        scenic_spot = self._scenic_spot_for(order)
        if scenic_spot is None:
            logger.info(f"[ROUTER] 관광지를 찾을 수 없음: order={order.order_no}")
            return None
        configs = self._configs_for(scenic_spot)
        if not configs:
            logger.info(f"[ROUTER] 활성 리소스 설정 없음: order={order.order_no} scenic={scenic_spot.code}")
            return None

        # 상품 → 관광지 기본 제공자 순으로 제공자 결정
        provider_id = None
        if order.product is not None and order.product.software_provider_id:
            provider_id = order.product.software_provider_id
        elif scenic_spot.software_provider_id:
            provider_id = scenic_spot.software_provider_id
        if provider_id is not None:
            for config in configs:
                if config.software_provider_id == provider_id:
                    return config
            logger.warning(
                f"[ROUTER] 관광지에 해당 제공자 설정이 없음: order={order.order_no} "
                f"scenic={scenic_spot.code} provider_id={provider_id}"
            )
            return None
        return configs[0]

    def _find_provider(self, ref: Any) -> SoftwareProvider | None:
        if ref is None or ref == "":
            return None
        if isinstance(ref, int) or str(ref).isdigit():
            return self.session.get(SoftwareProvider, int(ref))
        return self.session.scalars(select(SoftwareProvider).where(SoftwareProvider.code == str(ref))).first()

    def _apply_order_provider(self, order: Order, config: ResourceConfig) -> ResourceConfig:
        """extra_config.order_provider 가 있으면 주문 전달을 다른 제공자 설정으로 돌립니다."""
        provider = self._find_provider(config.extra("order_provider"))
        if provider is None:
            if config.extra("order_provider"):
                logger.warning(f"[ROUTER] order_provider 제공자를 찾을 수 없음: {config.extra('order_provider')}")
            return config
        if provider.id == config.software_provider_id:
            return config
        stmt = (
            select(ResourceConfig)
            .where(ResourceConfig.scenic_spot_id == config.scenic_spot_id)
            .where(ResourceConfig.software_provider_id == provider.id)
            .where(ResourceConfig.is_active.is_(True))
        )
        order_config = self.session.scalars(stmt).first()
        if order_config is None or not order_config.api_url:
            logger.warning(
                f"[ROUTER] order_provider={provider.code} 설정이 없거나 api_url 누락, 기존 제공자 유지: "
                f"order={order.order_no}"
            )
            return config
        logger.info(f"[ROUTER] 주문 전달 제공자 전환: order={order.order_no} -> {provider.code}")
        return order_config

    def _has_product_mapping(self, order: Order, provider_id: int) -> bool:
        stmt = (
            select(ProductExternalMapping.id)
            .where(ProductExternalMapping.product_id == order.product_id)
            .where(ProductExternalMapping.software_provider_id == provider_id)
            .where(ProductExternalMapping.is_active.is_(True))
        )
        return self.session.execute(stmt).first() is not None

    # 공개 API ---------------------------------------------------------------

    def resolve_config(self, order: Order, operation: str = SyncOperation.ORDER.value) -> ResourceConfig | None:
        operation = SyncOperation(operation).value
        config = self._primary_config(order)
        if config is None:
            return None

        if operation == SyncOperation.ORDER.value:
            if config.sync_mode("order") != ORDER_MODE_AUTO:
                return None
            config = self._apply_order_provider(order, config)
            if ApiType.parse(config.software_provider.api_type) == ApiType.ZIWOYOU:
                if not self._has_product_mapping(order, config.software_provider_id):
                    logger.info(f"[ROUTER] Ziwoyou 상품 매핑 없음, 수동 처리: order={order.order_no}")
                    return None
        elif config.sync_mode("inventory") != INVENTORY_MODE_PUSH:
            return None
        return config

    def service_for_config(self, config: ResourceConfig) -> ResourceService | None:
        api_type = ApiType.parse(config.software_provider.api_type)
        service_cls = SERVICE_CLASSES.get(api_type) if api_type is not None else None
        if service_cls is None:
            logger.warning(
                f"[ROUTER] 지원하지 않는 api_type: {config.software_provider.api_type} "
                f"(provider={config.software_provider.code})"
            )
            return None
        client = self._client_factory(config) if self._client_factory else None
        return service_cls(self.session, config, client=client, sleep=self._sleep)

    def resolve(self, order: Order, operation: str = SyncOperation.ORDER.value) -> ResourceService | None:
        config = self.resolve_config(order, operation)
        if config is None:
            return None
        return self.service_for_config(config)

    def is_system_connected(self, order: Order, operation: str = SyncOperation.ORDER.value) -> bool:
        """order_provider 전환이나 매핑 검사 없이 sync_mode 만 봅니다."""
        config = self._primary_config(order)
        if config is None:
            return False
        if SyncOperation(operation) == SyncOperation.ORDER:
            return config.sync_mode("order") == ORDER_MODE_AUTO
        return config.sync_mode("inventory") == INVENTORY_MODE_PUSH
