from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from otabridge.auth_config import Custom
from otabridge.codecs.base import CodecError, DecodeError
from otabridge.codecs.fliggy import FliggySigner
from otabridge.http_adapter import HttpProtocolAdapter, PreparedRequest
from otabridge.results import AdapterResult, ErrorKind
from otabridge.settings import settings

logger = logging.getLogger(__name__)

SUCCESS_CODE = "2000"
VALIDATION_ERROR_CODE = "4001"
API_PREFIX = "/api/v1/hotelticket"


@dataclass(frozen=True)
class FliggyEndpoint:
    sign_formula: str
    required: tuple[str, ...] = ()


ENDPOINTS: dict[str, FliggyEndpoint] = {
    "queryProductBaseInfoByPage": FliggyEndpoint("distributorId_timestamp_"),
    # productIds 배열은 첫 번째 ID만 서명에 사용
    "queryProductBaseInfoByIds": FliggyEndpoint("distributorId_timestamp_productIds", ("productIds",)),
    "queryProductDetailInfo": FliggyEndpoint("distributorId_timestamp_productId", ("productId",)),
    "queryProductPriceStock": FliggyEndpoint("distributorId_timestamp_productId", ("productId",)),
    "validateOrder": FliggyEndpoint("distributorId_timestamp_outOrderId", ("outOrderId",)),
    "createOrder": FliggyEndpoint("distributorId_timestamp_outOrderId", ("outOrderId",)),
    "searchOrder": FliggyEndpoint("distributorId_timestamp_orderId", ("orderId",)),
    "cancelOrder": FliggyEndpoint("distributorId_timestamp_orderId", ("orderId",)),
    "refundOrder": FliggyEndpoint("distributorId_timestamp_orderId", ("orderId",)),
}

MAX_PRODUCT_IDS = 100


class FliggyDistributionClient(HttpProtocolAdapter):
    log_tag = "[FLIGGY]"

    def __init__(
        self,
        distributor_id: str,
        private_key: str,
        base_url: str | None = None,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(base_url or settings.fliggy_distribution_base_url, timeout=timeout, client=client)
        self.signer = FliggySigner(distributor_id, private_key)

    @classmethod
    def from_config(cls, config: Any, client: httpx.Client | None = None) -> "FliggyDistributionClient":
        """
        ResourceConfig에서 클라이언트를 생성합니다.

        extra_config.distributor_id / private_key 를 우선 사용하고,
        없으면 custom 인증 파라미터(distributorId / private_key)를 사용합니다.
        """
        distributor_id = config.extra("distributor_id")
        private_key = config.extra("private_key")
        if not (distributor_id and private_key):
            auth = config.auth_config()
            if isinstance(auth, Custom):
                distributor_id = distributor_id or auth.get("distributorId") or auth.get("distributor_id")
                private_key = private_key or auth.get("private_key") or auth.get("privateKey")
        if not distributor_id or not private_key:
            raise CodecError("飞猪分销系统配置不完整：缺少 distributorId 或 privateKey")
        return cls(str(distributor_id), private_key, base_url=config.api_url or None, client=client)

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        endpoint = ENDPOINTS.get(operation)
        if endpoint is None:
            return AdapterResult.err(ErrorKind.BUSINESS, f"지원하지 않는 엔드포인트: {operation}", code=VALIDATION_ERROR_CODE)
        for name in endpoint.required:
            if payload.get(name) in (None, "", [], ()):
                return AdapterResult.err(ErrorKind.BUSINESS, f"{name}不能为空", code=VALIDATION_ERROR_CODE)
        ids = payload.get("productIds")
        if isinstance(ids, (list, tuple)) and len(ids) > MAX_PRODUCT_IDS:
            return AdapterResult.err(ErrorKind.BUSINESS, f"产品ID列表最多{MAX_PRODUCT_IDS}个", code=VALIDATION_ERROR_CODE)
        return None

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        endpoint = ENDPOINTS[operation]
        params = self.signer.build_params(payload)
        params["sign"] = self.signer.sign(endpoint.sign_formula, params)
        return PreparedRequest(
            url=f"{self.base_url}{API_PREFIX}/{operation}",
            params={"format": "json"},
            json=params,
        )

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise DecodeError(f"Fliggy 응답 JSON 파싱 실패: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError("Fliggy 응답이 객체가 아닙니다.")

        code = str(data.get("code", ""))
        message = data.get("message") or ""
        payload = data.get("data")
        if payload is None:
            payload = data
        if code == SUCCESS_CODE:
            return AdapterResult.ok(data=payload, code=code, message=message)
        logger.warning(f"[FLIGGY] {operation} 오류 코드 {code}: {message}")
        return AdapterResult.err(ErrorKind.BUSINESS, message or f"code={code}", code=code, data=payload)

    # 상품 조회 ---------------------------------------------------------

    def query_product_base_info_by_page(self, page_no: int = 1, page_size: int = 20) -> AdapterResult:
        return self.send("queryProductBaseInfoByPage", {"pageNo": page_no, "pageSize": page_size})

    def query_product_base_info_by_ids(self, product_ids: list[str]) -> AdapterResult:
        return self.send("queryProductBaseInfoByIds", {"productIds": [str(p) for p in product_ids]})

    def query_product_detail_info(self, product_id: str) -> AdapterResult:
        return self.send("queryProductDetailInfo", {"productId": product_id})

    def query_product_price_stock(
        self,
        product_id: str,
        begin_time: int | None = None,
        end_time: int | None = None,
    ) -> AdapterResult:
        payload: dict[str, Any] = {"productId": product_id}
        if begin_time is not None:
            payload["beginTime"] = begin_time
        if end_time is not None:
            payload["endTime"] = end_time
        return self.send("queryProductPriceStock", payload)

    # 주문 ---------------------------------------------------------------

    def validate_order(self, order_data: dict[str, Any]) -> AdapterResult:
        return self.send("validateOrder", order_data)

    def create_order(self, order_data: dict[str, Any]) -> AdapterResult:
        return self.send("createOrder", order_data)

    def search_order(self, order_id: str, out_order_id: str | None = None) -> AdapterResult:
        payload: dict[str, Any] = {"orderId": order_id}
        if out_order_id:
            payload["outOrderId"] = out_order_id
        return self.send("searchOrder", payload)

    def cancel_order(self, order_id: str, out_order_id: str | None = None, reason: str = "") -> AdapterResult:
        payload: dict[str, Any] = {"orderId": order_id, "reason": reason}
        if out_order_id:
            payload["outOrderId"] = out_order_id
        return self.send("cancelOrder", payload)

    def refund_order(self, order_id: str, out_order_id: str | None = None, reason: str = "") -> AdapterResult:
        payload: dict[str, Any] = {"orderId": order_id, "reason": reason}
        if out_order_id:
            payload["outOrderId"] = out_order_id
        return self.send("refundOrder", payload)
