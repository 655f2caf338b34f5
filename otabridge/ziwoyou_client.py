from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from otabridge.auth_config import AuthConfig, Custom
from otabridge.codecs.base import CodecError, DecodeError
from otabridge.codecs.ziwoyou import build_signed_request
from otabridge.http_adapter import HttpProtocolAdapter, PreparedRequest
from otabridge.results import AdapterResult, ErrorKind

logger = logging.getLogger(__name__)

API_PREFIX = "/api/thirdPaty/order"
OPERATIONS = frozenset({"check", "add", "detail", "cancel", "pay", "balance"})


class ZiwoyouClient(HttpProtocolAdapter):
    log_tag = "[ZIWOYOU]"

    def __init__(
        self,
        api_url: str,
        cust_id: int | str | None,
        apikey: str | None,
        sign_required: bool = False,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(api_url, timeout=timeout, client=client)
        self.cust_id = int(cust_id) if cust_id not in (None, "") else None
        self.apikey = apikey or ""
        self.sign_required = sign_required

    @classmethod
    def from_auth(cls, api_url: str, auth: AuthConfig, client: httpx.Client | None = None) -> "ZiwoyouClient":
        """extra_config.auth.params = {apikey, custId, sign?}"""
        if not isinstance(auth, Custom):
            raise CodecError(f"Ziwoyou는 custom 인증 파라미터가 필요합니다 (현재 {auth.kind})")
        return cls(
            api_url=api_url,
            cust_id=auth.get("custId"),
            apikey=auth.get("apikey"),
            sign_required=bool(auth.get("sign")),
            client=client,
        )

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        if operation not in OPERATIONS:
            return AdapterResult.err(ErrorKind.BUSINESS, f"지원하지 않는 Ziwoyou 작업: {operation}", code="-1")
        if not self.base_url:
            return AdapterResult.err(ErrorKind.ROUTING, "API地址未配置", code="-1")
        return None

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        request = build_signed_request(
            payload,
            cust_id=self.cust_id,
            apikey=self.apikey,
            timestamp_ms=int(time.time() * 1000),
            sign_required=self.sign_required,
        )
        return PreparedRequest(
            url=f"{self.base_url}{API_PREFIX}/{operation}",
            headers={"Content-Type": "application/json"},
            json=request,
        )

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise DecodeError(f"Ziwoyou 응답 JSON 파싱 실패: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError("Ziwoyou 응답이 객체가 아닙니다.")

        state = data.get("state", -1)
        message = data.get("msg") or ""
        try:
            state = int(state)
        except (TypeError, ValueError):
            state = -1
        if state == 0:
            return AdapterResult.ok(data=data.get("data"), code="0", message=message)
        return AdapterResult.err(ErrorKind.BUSINESS, message or f"state={state}", code=str(state), data=data.get("data"))

    # 업무 API -----------------------------------------------------------

    def check_order(self, order_request: dict[str, Any]) -> AdapterResult:
        return self.send("check", order_request)

    def create_order(self, order_request: dict[str, Any]) -> AdapterResult:
        return self.send("add", order_request)

    def query_order(self, order_source_id: str, order_id: str | None = None) -> AdapterResult:
        payload: dict[str, Any] = {"orderSourceId": order_source_id}
        if order_id:
            payload["orderId"] = order_id
        return self.send("detail", payload)

    def cancel_order(self, order_id: str, cancel_memo: str = "") -> AdapterResult:
        return self.send("cancel", {"orderId": order_id, "cancelMemo": cancel_memo})

    def pay_order(self, order_id: str) -> AdapterResult:
        return self.send("pay", {"orderId": order_id})

    def query_balance(self) -> AdapterResult:
        return self.send("balance", {})
