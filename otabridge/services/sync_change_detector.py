"""
가격/재고 푸시 변경 감지.

푸시 내용을 정렬된 JSON → SHA-256 으로 지문화하여 마지막으로 성공한 푸시와 같으면 건너뜁니다.
지문은 푸시가 성공한 뒤에만 기록합니다 (record_push). 읽고 쓰는 사이에 잠금은 없으며,
경쟁 시 최악의 경우는 중복 푸시 한 번입니다.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from otabridge.codecs.base import stable_json
from otabridge.enums import SyncKind
from otabridge.models import SyncFingerprintRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerprintKey:
    product_id: int
    hotel_id: int
    room_type_id: int
    ota_platform_id: int
    kind: SyncKind

    def label(self) -> str:
        return f"{self.kind.value}:{self.product_id}/{self.hotel_id}/{self.room_type_id}@{self.ota_platform_id}"


def fingerprint(payload: Any) -> str:
    return hashlib.sha256(stable_json(payload).encode("utf-8")).hexdigest()


class SyncChangeDetector:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _find(self, key: FingerprintKey) -> SyncFingerprintRecord | None:
        stmt = select(SyncFingerprintRecord).where(
            SyncFingerprintRecord.product_id == key.product_id,
            SyncFingerprintRecord.hotel_id == key.hotel_id,
            SyncFingerprintRecord.room_type_id == key.room_type_id,
            SyncFingerprintRecord.ota_platform_id == key.ota_platform_id,
        )
        return self.session.scalars(stmt).first()

    def last_hash(self, key: FingerprintKey) -> str | None:
        record = self._find(key)
        if record is None:
            return None
        return record.last_price_hash if key.kind == SyncKind.PRICE else record.last_stock_hash

    def should_push(self, key: FingerprintKey, payload: Any) -> bool:
        """마지막으로 성공한 푸시와 내용이 같으면 False"""
        current = fingerprint(payload)
        if self.last_hash(key) == current:
            logger.info(f"[SYNC] 변경 없음, 푸시 생략: {key.label()}")
            return False
        return True

    def record_push(self, key: FingerprintKey, payload: Any) -> SyncFingerprintRecord:
        """푸시 성공 후 호출. 첫 성공 시 레코드를 만들고 이후에는 덮어씁니다."""
        record = self._find(key)
        if record is None:
            record = SyncFingerprintRecord(
                product_id=key.product_id,
                hotel_id=key.hotel_id,
                room_type_id=key.room_type_id,
                ota_platform_id=key.ota_platform_id,
            )
            self.session.add(record)

        now = datetime.now(timezone.utc)
        digest = fingerprint(payload)
        snapshot = json.loads(stable_json(payload))
        if key.kind == SyncKind.PRICE:
            record.last_price_hash = digest
            record.last_price_synced_at = now
            record.last_price_data = snapshot
        else:
            record.last_stock_hash = digest
            record.last_stock_synced_at = now
            record.last_stock_data = snapshot
        self.session.flush()
        logger.info(f"[SYNC] 지문 기록: {key.label()} hash={digest[:12]}")
        return record

    def reset(self, key: FingerprintKey) -> None:
        """다음 스케줄에서 강제로 다시 푸시하도록 해당 종류의 지문을 비웁니다."""
        record = self._find(key)
        if record is None:
            return
        if key.kind == SyncKind.PRICE:
            record.last_price_hash = None
        else:
            record.last_stock_hash = None
        self.session.flush()
