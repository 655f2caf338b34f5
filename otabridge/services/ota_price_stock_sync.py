"""
OTA 가격/재고 동기화.

DailyRate 를 원천으로 (상품, 호텔, 방 타입, OTA) 조합의 가격/재고 목록을 만들고,
변경 감지기를 통과한 경우에만 OTA 로 푸시합니다. 지문은 푸시 성공 후에만 기록합니다.

- Ctrip: DatePriceModify / DateInventoryModify 를 각각 푸시
- Meituan: 가격과 재고를 한 번에 보내는 level price 통지 (SKU 40개 단위 분할)
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.ctrip_client import CtripClient, new_sequence_id
from otabridge.enums import OtaPlatformCode, SyncKind
from otabridge.meituan_client import MAX_SKU_PER_REQUEST, MeituanClient
from otabridge.models import DailyRate, Hotel, OtaPlatform, OtaProduct, Product, RoomType
from otabridge.results import AdapterResult
from otabridge.services.sync_change_detector import FingerprintKey, SyncChangeDetector

logger = logging.getLogger(__name__)

DATE_REQUIRED = "DATE_REQUIRED"


@dataclass
class SyncReport:
    pushed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


def _money(value: Any) -> float:
    return round(float(value), 2)


def ctrip_product_code(product: Product, hotel: Hotel, room_type: RoomType) -> str:
    """supplierOptionId = 호텔코드|방타입코드|상품코드"""
    return f"{hotel.code}|{room_type.code}|{product.code}".strip()


def partner_primary_key(hotel_id: int, room_type_id: int, day: str) -> str:
    return hashlib.md5(f"{hotel_id}|{room_type_id}|{day}".encode("utf-8")).hexdigest()


def _default_client(platform: OtaPlatform) -> Any:
    if platform.code == OtaPlatformCode.CTRIP.value:
        return CtripClient.from_config(platform.config or {})
    if platform.code == OtaPlatformCode.MEITUAN.value:
        return MeituanClient.from_config(platform.config or {})
    return None


class OtaPriceStockSync:
    def __init__(
        self,
        session: Session,
        detector: SyncChangeDetector | None = None,
        client_factory: Callable[[OtaPlatform], Any] | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.session = session
        self.detector = detector or SyncChangeDetector(session)
        self._client_factory = client_factory or _default_client
        self._today = today

    # 원천 데이터 ---------------------------------------------------------------

    def load_rates(self, product: Product, hotel: Hotel, room_type: RoomType) -> list[DailyRate]:
        stmt = (
            select(DailyRate)
            .where(DailyRate.product_id == product.id)
            .where(DailyRate.hotel_id == hotel.id)
            .where(DailyRate.room_type_id == room_type.id)
            .where(DailyRate.rate_date >= self._today())
            .order_by(DailyRate.rate_date)
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def price_rows(rates: list[DailyRate]) -> list[dict[str, Any]]:
        return [
            {
                "date": rate.rate_date.isoformat(),
                "sale_price": str(rate.sale_price),
                "settlement_price": str(rate.settlement_price),
            }
            for rate in rates
        ]

    @staticmethod
    def stock_rows(rates: list[DailyRate]) -> list[dict[str, Any]]:
        return [
            {
                "date": rate.rate_date.isoformat(),
                "available_quantity": int(rate.available_quantity or 0),
                "is_closed": bool(rate.is_closed),
            }
            for rate in rates
        ]

    # 동기화 ---------------------------------------------------------------

    def sync(
        self,
        product: Product,
        hotel: Hotel,
        room_type: RoomType,
        ota_platform: OtaPlatform,
        kinds: tuple[SyncKind, ...] = (SyncKind.PRICE, SyncKind.STOCK),
    ) -> SyncReport:
        report = SyncReport()
        combo = f"{product.code}/{hotel.code}/{room_type.code}@{ota_platform.code}"
        if not product.is_active or not ota_platform.is_active:
            logger.info(f"[SYNC] 비활성 상품/플랫폼, 건너뜀: {combo}")
            return report

        ota_product = self.session.scalars(
            select(OtaProduct)
            .where(OtaProduct.product_id == product.id)
            .where(OtaProduct.ota_platform_id == ota_platform.id)
            .where(OtaProduct.is_active.is_(True))
        ).first()
        if ota_product is None:
            logger.info(f"[SYNC] OTA 에 등록되지 않은 상품, 건너뜀: {combo}")
            return report

        rates = self.load_rates(product, hotel, room_type)
        if not rates:
            logger.info(f"[SYNC] 가격/재고 데이터 없음: {combo}")
            return report

        client = self._client_factory(ota_platform)
        if client is None:
            logger.warning(f"[SYNC] 지원하지 않는 OTA 플랫폼: {ota_platform.code}")
            return report

        payloads = {SyncKind.PRICE: self.price_rows(rates), SyncKind.STOCK: self.stock_rows(rates)}
        keys = {
            kind: FingerprintKey(product.id, hotel.id, room_type.id, ota_platform.id, kind)
            for kind in payloads
        }
        changed = [kind for kind in kinds if self.detector.should_push(keys[kind], payloads[kind])]
        for kind in kinds:
            if kind not in changed:
                report.skipped.append(kind.value)
        if not changed:
            return report

        if ota_platform.code == OtaPlatformCode.MEITUAN.value:
            result = self._push_meituan(client, ota_product, hotel, room_type, rates)
            # 가격과 재고가 한 요청으로 나가므로 둘 다 기록
            self._record(report, result, [(k, keys[k], payloads[k]) for k in payloads], combo)
            return report

        for kind in changed:
            if kind == SyncKind.PRICE:
                result = self._push_ctrip_price(client, product, hotel, room_type, rates)
            else:
                result = self._push_ctrip_stock(client, product, hotel, room_type, rates)
            self._record(report, result, [(kind, keys[kind], payloads[kind])], combo)
        return report

    def _record(
        self,
        report: SyncReport,
        result: AdapterResult,
        entries: list[tuple[SyncKind, FingerprintKey, Any]],
        combo: str,
    ) -> None:
        for kind, key, payload in entries:
            if result.success:
                self.detector.record_push(key, payload)
                if kind.value in report.skipped:
                    report.skipped.remove(kind.value)
                report.pushed.append(kind.value)
            else:
                report.failed[kind.value] = result.message
                logger.error(f"[SYNC] {kind.value} 푸시 실패: {combo} code={result.code} msg={result.message}")

    # Ctrip ---------------------------------------------------------------

    def _push_ctrip_price(
        self, client: CtripClient, product: Product, hotel: Hotel, room_type: RoomType, rates: list[DailyRate]
    ) -> AdapterResult:
        body = {
            "sequenceId": new_sequence_id(),
            "dateType": DATE_REQUIRED,
            "supplierOptionId": ctrip_product_code(product, hotel, room_type),
            "prices": [
                {
                    "salePrice": _money(rate.sale_price),
                    "costPrice": _money(rate.settlement_price),
                    "date": rate.rate_date.isoformat(),
                }
                for rate in rates
            ],
        }
        return client.modify_date_price(body)

    def _push_ctrip_stock(
        self, client: CtripClient, product: Product, hotel: Hotel, room_type: RoomType, rates: list[DailyRate]
    ) -> AdapterResult:
        body = {
            "sequenceId": new_sequence_id(),
            "dateType": DATE_REQUIRED,
            "supplierOptionId": ctrip_product_code(product, hotel, room_type),
            "inventorys": [
                {
                    "date": rate.rate_date.isoformat(),
                    "quantity": 0 if rate.is_closed else int(rate.available_quantity or 0),
                }
                for rate in rates
            ],
        }
        return client.modify_date_inventory(body)

    # Meituan ---------------------------------------------------------------

    def meituan_body(self, hotel: Hotel, room_type: RoomType, rates: list[DailyRate]) -> list[dict[str, Any]]:
        body = []
        for rate in rates:
            day = rate.rate_date.isoformat()
            body.append(
                {
                    "partnerPrimaryKey": partner_primary_key(hotel.id, room_type.id, day),
                    "skuInfo": {
                        "startTime": "14:00",
                        "endTime": "16:00",
                        "levelInfoList": [
                            {"levelNo": 1, "levelName": hotel.name},
                            {"levelNo": 2, "levelName": room_type.name},
                        ],
                    },
                    "priceDate": day,
                    "marketPrice": _money(rate.sale_price),
                    "mtPrice": _money(rate.sale_price),
                    "settlementPrice": _money(rate.settlement_price),
                    "stock": 0 if rate.is_closed else int(rate.available_quantity or 0),
                    "attr": None,
                }
            )
        return body

    def _push_meituan(
        self, client: MeituanClient, ota_product: OtaProduct, hotel: Hotel, room_type: RoomType, rates: list[DailyRate]
    ) -> AdapterResult:
        body = self.meituan_body(hotel, room_type, rates)
        result: AdapterResult | None = None
        for start in range(0, len(body), MAX_SKU_PER_REQUEST):
            chunk = body[start:start + MAX_SKU_PER_REQUEST]
            result = client.notify_level_price_stock(
                {
                    "startTime": chunk[0]["priceDate"],
                    "endTime": chunk[-1]["priceDate"],
                    "partnerDealId": ota_product.ota_product_id,
                    "body": chunk,
                }
            )
            if not result.success:
                return result
        return result
