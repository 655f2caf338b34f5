"""
인바운드 웹훅이 어느 관광지/리소스 설정에 속하는지 식별합니다.

우선순위:
    1. 업무 데이터 (hotelNo → orderNo/order_id → productId/product_id)
    2. 인증 파라미터 (username → appkey/app_id → token/access_token), 제공자 ID가 있을 때만
    3. URL 경로의 관광지 코드

아무것도 일치하지 않으면 None. 호출 측은 추측하지 말고 거절해야 합니다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from otabridge.auth_config import AppKeySecret, Custom, SecretStoreError, Token, UsernamePassword
from otabridge.models import Hotel, Order, Product, ResourceConfig, ScenicSpot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identification:
    scenic_spot: ScenicSpot
    config: ResourceConfig
    method: str


class IdentificationResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def identify(
        self,
        payload: dict[str, Any],
        software_provider_id: int | None = None,
        scenic_spot_code: str | None = None,
    ) -> Identification | None:
        payload = payload or {}
        result = self.identify_by_business_data(payload, software_provider_id)
        if result is None and software_provider_id:
            result = self.identify_by_auth_params(payload, software_provider_id)
        if result is None and scenic_spot_code:
            result = self.identify_by_url_path(scenic_spot_code, software_provider_id)

        if result is None:
            logger.warning(
                f"[IDENTIFY] 관광지 식별 실패: provider_id={software_provider_id} keys={sorted(payload.keys())}"
            )
        else:
            logger.info(
                f"[IDENTIFY] 식별 성공: method={result.method} scenic={result.scenic_spot.code} config={result.config.id}"
            )
        return result

    # 설정 선택 ---------------------------------------------------------------

    def _config_for(self, scenic_spot: ScenicSpot | None, software_provider_id: int | None) -> ResourceConfig | None:
        if scenic_spot is None:
            return None
        stmt = (
            select(ResourceConfig)
            .where(ResourceConfig.scenic_spot_id == scenic_spot.id)
            .where(ResourceConfig.is_active.is_(True))
            .order_by(ResourceConfig.id)
        )
        if software_provider_id:
            stmt = stmt.where(ResourceConfig.software_provider_id == software_provider_id)
        return self.session.scalars(stmt).first()

    def _match(self, scenic_spot: ScenicSpot | None, software_provider_id: int | None, method: str) -> Identification | None:
        config = self._config_for(scenic_spot, software_provider_id)
        if config is None:
            return None
        return Identification(scenic_spot=scenic_spot, config=config, method=method)

    # 1. 업무 데이터 -------------------------------------------------------------

    def identify_by_business_data(self, payload: dict[str, Any], software_provider_id: int | None = None) -> Identification | None:
        hotel_no = payload.get("hotelNo")
        if hotel_no:
            result = self.identify_by_hotel_no(str(hotel_no), software_provider_id)
            if result is not None:
                return result

        order_no = payload.get("orderNo") or payload.get("order_id")
        if order_no:
            result = self.identify_by_order_no(str(order_no), software_provider_id)
            if result is not None:
                return result

        product_id = payload.get("productId") or payload.get("product_id")
        if product_id:
            return self.identify_by_product_id(str(product_id), software_provider_id)
        return None

    def identify_by_hotel_no(self, hotel_no: str, software_provider_id: int | None = None) -> Identification | None:
        stmt = select(Hotel).where(or_(Hotel.external_code == hotel_no, Hotel.code == hotel_no)).order_by(Hotel.id)
        if software_provider_id:
            # 제공자마다 external_code 가 겹칠 수 있으므로 해당 제공자 설정이 있는 관광지로 한정
            configured = select(ResourceConfig.scenic_spot_id).where(
                ResourceConfig.software_provider_id == software_provider_id
            )
            stmt = stmt.where(Hotel.scenic_spot_id.in_(configured))
        for hotel in self.session.scalars(stmt).all():
            result = self._match(hotel.scenic_spot, software_provider_id, "hotelNo")
            if result is not None:
                return result
        return None

    def identify_by_order_no(self, order_no: str, software_provider_id: int | None = None) -> Identification | None:
        stmt = select(Order).where(
            or_(Order.resource_order_no == order_no, Order.ota_order_no == order_no, Order.order_no == order_no)
        )
        order = self.session.scalars(stmt).first()
        if order is None:
            return None
        # 티켓 주문은 호텔이 없으므로 상품의 관광지로 대체
        if order.hotel is not None:
            scenic_spot = order.hotel.scenic_spot
        elif order.product is not None:
            scenic_spot = order.product.scenic_spot
        else:
            return None
        return self._match(scenic_spot, software_provider_id, "orderNo")

    def identify_by_product_id(self, product_id: str, software_provider_id: int | None = None) -> Identification | None:
        stmt = select(Product).where(or_(Product.external_code == product_id, Product.code == product_id))
        product = self.session.scalars(stmt).first()
        if product is None:
            return None
        return self._match(product.scenic_spot, software_provider_id, "productId")

    # 2. 인증 파라미터 -----------------------------------------------------------

    @staticmethod
    def _auth_values(config: ResourceConfig) -> dict[str, set[str]]:
        values: dict[str, set[str]] = {"username": set(), "appkey": set(), "token": set()}
        if config.username:
            values["username"].add(config.username)
        try:
            auth = config.auth_config()
        except SecretStoreError as e:
            logger.warning(f"[IDENTIFY] 인증 정보 복호화 실패, 건너뜀: config={config.id} error={e}")
            return values
        if isinstance(auth, UsernamePassword):
            values["username"].add(auth.username)
        elif isinstance(auth, AppKeySecret):
            values["appkey"].add(auth.app_key)
        elif isinstance(auth, Token):
            values["token"].add(auth.token)
        elif isinstance(auth, Custom):
            for key in ("appkey", "app_key", "app_id"):
                if auth.get(key):
                    values["appkey"].add(str(auth.get(key)))
            for key in ("token", "access_token"):
                if auth.get(key):
                    values["token"].add(str(auth.get(key)))
            if auth.get("username"):
                values["username"].add(str(auth.get("username")))
        return values

    def identify_by_auth_params(self, payload: dict[str, Any], software_provider_id: int) -> Identification | None:
        candidates = [
            ("username", payload.get("username"), "username"),
            ("appkey", payload.get("appkey") or payload.get("app_id"), "appkey"),
            ("token", payload.get("token") or payload.get("access_token"), "token"),
        ]
        candidates = [(field, str(value), method) for field, value, method in candidates if value]
        if not candidates:
            return None

        stmt = (
            select(ResourceConfig)
            .where(ResourceConfig.software_provider_id == software_provider_id)
            .where(ResourceConfig.is_active.is_(True))
            .order_by(ResourceConfig.id)
        )
        configs = self.session.scalars(stmt).all()
        known = [(config, self._auth_values(config)) for config in configs]
        for field, value, method in candidates:
            for config, values in known:
                if value in values[field]:
                    return Identification(scenic_spot=config.scenic_spot, config=config, method=method)
        return None

    # 3. URL 경로 ---------------------------------------------------------------

    def identify_by_url_path(self, scenic_spot_code: str, software_provider_id: int | None = None) -> Identification | None:
        scenic_spot = self.session.scalars(select(ScenicSpot).where(ScenicSpot.code == scenic_spot_code)).first()
        return self._match(scenic_spot, software_provider_id, "url_path")
