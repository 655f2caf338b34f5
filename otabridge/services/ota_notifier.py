"""
리소스 측 처리 결과를 판매 OTA 에 통지합니다.

- Ctrip: 접수 완료 → OrderConfirm, 사용 완료 → OrderConsumedNotice
- Meituan: 접수 완료 → 결제(出票) 통지. 사용 통지는 보내지 않음
- Fliggy(OTA): 통지 없음
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from otabridge.ctrip_client import CtripClient
from otabridge.enums import OtaPlatformCode
from otabridge.meituan_client import MeituanClient
from otabridge.models import Order, OtaPlatform
from otabridge.results import AdapterResult, ErrorKind

logger = logging.getLogger(__name__)


def _default_client(platform: OtaPlatform) -> Any:
    config = platform.config or {}
    if platform.code == OtaPlatformCode.CTRIP.value:
        return CtripClient.from_config(config)
    if platform.code == OtaPlatformCode.MEITUAN.value:
        return MeituanClient.from_config(config)
    return None


class OtaOrderNotifier:
    def __init__(self, client_factory: Callable[[OtaPlatform], Any] | None = None) -> None:
        self._client_factory = client_factory or _default_client

    def _client_for(self, order: Order) -> tuple[str | None, Any]:
        """
        OTA 플랫폼 클라이언트를 만듭니다.

        설정 오류(키 길이 등)로 만들 수 없으면 클라이언트 대신 실패 AdapterResult 를 돌려줍니다.
        """
        platform = order.ota_platform
        if platform is None:
            return None, None
        try:
            return platform.code, self._client_factory(platform)
        except ValueError as e:
            logger.error(f"[NOTIFY] {platform.code} 클라이언트 생성 실패: order={order.order_no} error={e}")
            return platform.code, AdapterResult.err(ErrorKind.ROUTING, f"OTA平台配置错误：{e}", code="config")

    def notify_confirmed(self, order: Order) -> AdapterResult | None:
        code, client = self._client_for(order)
        if isinstance(client, AdapterResult):
            return client
        if client is None:
            logger.info(f"[NOTIFY] 접수 통지 대상 아님: order={order.order_no} platform={code}")
            return None

        if code == OtaPlatformCode.CTRIP.value:
            result = client.confirm_order(order.ota_order_no or "", order.resource_order_no or order.order_no)
        else:
            body: dict[str, Any] = {
                "orderId": int(order.ota_order_no) if (order.ota_order_no or "").isdigit() else order.ota_order_no,
                "partnerOrderId": order.order_no,
                "code": 200,
                "describe": "出票成功",
                "voucherType": 0,
                "realNameType": order.real_name_type or 0,
            }
            if order.real_name_type == 1 and order.credential_list:
                body["credentialList"] = [
                    {
                        "credentialType": c.get("credentialType", 0),
                        "credentialNo": c.get("credentialNo", ""),
                        "voucher": c.get("voucher", ""),
                    }
                    for c in order.credential_list
                ]
            result = client.notify_order_pay({"body": body})

        self._log(order, code, "접수", result)
        return result

    def notify_consumed(self, order: Order, data: dict[str, Any] | None = None) -> AdapterResult | None:
        code = order.ota_platform.code if order.ota_platform is not None else None
        if code != OtaPlatformCode.CTRIP.value:
            logger.info(f"[NOTIFY] 사용 통지 대상 아님: order={order.order_no} platform={code}")
            return None
        code, client = self._client_for(order)
        if isinstance(client, AdapterResult):
            return client
        if client is None:
            logger.info(f"[NOTIFY] 사용 통지 대상 아님: order={order.order_no} platform={code}")
            return None

        data = data or {}
        quantity = order.room_count or 1
        item = {
            "itemId": str(data.get("item_id") or order.id),
            "useStartDate": data.get("use_start_date") or (order.check_in_date.isoformat() if order.check_in_date else None),
            "useEndDate": data.get("use_end_date") or (order.check_out_date.isoformat() if order.check_out_date else None),
            "quantity": quantity,
            "useQuantity": int(data.get("use_quantity") or quantity),
            "passengers": data.get("passengers") or None,
            "vouchers": data.get("vouchers") or None,
        }
        result = client.notify_order_consumed(order.ota_order_no or "", order.order_no, [item])
        self._log(order, code, "사용", result)
        return result

    @staticmethod
    def _log(order: Order, code: str | None, action: str, result: AdapterResult) -> None:
        if result.success:
            logger.info(f"[NOTIFY] {code} {action} 통지 성공: order={order.order_no}")
        else:
            logger.error(f"[NOTIFY] {code} {action} 통지 실패: order={order.order_no} code={result.code} msg={result.message}")
