from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from otabridge.codecs.base import DecodeError, compact_json, loads_json
from otabridge.codecs.meituan import MeituanCodec, build_auth_headers
from otabridge.http_adapter import HttpProtocolAdapter, PreparedRequest
from otabridge.results import AdapterResult, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openapi.meituan.com"
MAX_SKU_PER_REQUEST = 40


@dataclass(frozen=True)
class MeituanEndpoint:
    path: str
    encrypted: bool


# 주문 결제/환불/사용 통지는 평문 전송
ENDPOINTS: dict[str, MeituanEndpoint] = {
    "level_price_notice": MeituanEndpoint("/rhone/mtp/api/level/price/notice/v2", encrypted=True),
    "order_pay_notice": MeituanEndpoint("/rhone/mtp/api/order/pay/notice", encrypted=False),
    "order_refund_notice": MeituanEndpoint("/rhone/mtp/api/order/refund/notice", encrypted=False),
    "order_consume_notice": MeituanEndpoint("/rhone/mtp/api/order/consume/notice", encrypted=False),
    "order_reschedule_notice": MeituanEndpoint("/rhone/mtp/api/order/reschedule/notice", encrypted=True),
}


class MeituanClient(HttpProtocolAdapter):
    log_tag = "[MEITUAN]"

    def __init__(
        self,
        partner_id: int | str,
        app_key: str,
        app_secret: str,
        aes_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(base_url or DEFAULT_BASE_URL, timeout=timeout, client=client)
        self.partner_id = int(partner_id or 0)
        self.codec = MeituanCodec(app_key, app_secret, aes_key)

    @classmethod
    def from_config(cls, config: dict[str, Any], client: httpx.Client | None = None) -> "MeituanClient":
        return cls(
            partner_id=config.get("partner_id") or config.get("account") or 0,
            app_key=config.get("app_key", ""),
            app_secret=config.get("app_secret", ""),
            aes_key=config.get("aes_key") or config.get("app_secret", ""),
            base_url=config.get("api_url") or DEFAULT_BASE_URL,
            client=client,
        )

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        if operation not in ENDPOINTS:
            return AdapterResult.err(ErrorKind.BUSINESS, f"지원하지 않는 Meituan 엔드포인트: {operation}", code="400")
        return None

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        endpoint = ENDPOINTS[operation]
        url = f"{self.base_url}{endpoint.path}"
        split = urlsplit(url)
        uri = split.path + (f"?{split.query}" if split.query else "")

        request_data: dict[str, Any] = {"partnerId": payload.get("partnerId", self.partner_id)}
        for key, value in payload.items():
            if key not in ("partnerId", "body"):
                request_data[key] = value
        if "body" in payload:
            body = payload["body"]
            request_data["body"] = self.codec.encrypt(compact_json(body)) if endpoint.encrypted else body

        headers = build_auth_headers(
            self.partner_id,
            self.codec.app_key,
            self.codec.app_secret,
            "POST",
            uri,
            encrypted=endpoint.encrypted,
        )
        return PreparedRequest(
            url=url,
            headers=headers,
            content=compact_json(request_data).encode("utf-8"),
            log_payload=payload,
        )

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        raw = response.text
        if not raw:
            return AdapterResult.ok(data={}, code=str(response.status_code), message="success")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            # 암호화 엔드포인트는 응답 전체가 암호문일 수 있음
            if not ENDPOINTS[operation].encrypted:
                raise DecodeError("Meituan 응답 JSON 파싱 실패")
            try:
                data = json.loads(self.codec.decrypt(raw))
            except json.JSONDecodeError as e:
                raise DecodeError(f"Meituan 복호화 응답 JSON 파싱 실패: {e}") from e

        if not isinstance(data, dict):
            raise DecodeError("Meituan 응답이 객체가 아닙니다.")

        code = str(data.get("code", ""))
        message = data.get("describe") or data.get("message") or ""
        if code == "200":
            return AdapterResult.ok(data=data, code=code, message=message)
        return AdapterResult.err(ErrorKind.BUSINESS, message or f"code={code}", code=code, data=data)

    # 업무 API -----------------------------------------------------------

    def notify_level_price_stock(self, data: dict[str, Any]) -> AdapterResult:
        """data: {startTime, endTime, partnerDealId, body:[...]} (body는 암호화 전송)"""
        return self.send("level_price_notice", data)

    def notify_order_pay(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("order_pay_notice", data)

    def notify_order_refund(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("order_refund_notice", data)

    def notify_order_consume(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("order_consume_notice", data)

    def notify_order_reschedule(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("order_reschedule_notice", data)

    # 인바운드 요청 -------------------------------------------------------

    def decrypt_inbound(self, wire: str) -> Any:
        """X-Encryption-Status: encrypted 요청 본문 (전체가 base64 암호문)"""
        return loads_json(self.codec.decrypt(wire.strip()))

    def encrypt_response(self, envelope: dict[str, Any]) -> str:
        return self.codec.encrypt(compact_json(envelope))
