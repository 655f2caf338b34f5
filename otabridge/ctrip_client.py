from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any

import httpx

from otabridge.codecs.base import DecodeError
from otabridge.codecs.ctrip import CtripCodec, format_request_time
from otabridge.http_adapter import HttpProtocolAdapter, PreparedRequest
from otabridge.results import AdapterResult, ErrorKind
from otabridge.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ttdopen.ctrip.com/api"
SUCCESS_CODE = "0000"

SERVICE_PATHS = {
    "DatePriceModify": "/product/DatePriceModify.do",
    "DateInventoryModify": "/product/DateInventoryModify.do",
    "OrderConfirm": "/order/confirm.do",
    "OrderConsumedNotice": "/order/notice.do",
}

# Ctrip 응답 resultCode 설명
RESULT_CODE_MESSAGES = {
    "0000": "操作成功",
    "0001": "供应商账户为空",
    "0002": "签名不正确",
    "0003": "报文解析失败",
    "0004": "请求方法为空",
    "0005": "系统处理异常",
    "0006": "请求数据异常",
    "0007": "提交数据超载",
    "0008": "提交频率过快",
    # 가격 동기화
    "1001": "携程资源编号不存在/错误",
    "1002": "供应商 PLU 不存在/错误",
    "1003": "数据参数不合法（价格数值或日期格式错误）",
    # 재고 동기화
    "2001": "携程资源编号不存在/错误",
    "2002": "供应商 PLU 不存在/错误",
    "2003": "数据参数不合法（库存数值或日期格式错误）",
}

# 재시도 가능한 Ctrip resultCode (시스템 이상, 빈도 제한)
TRANSIENT_CODES = frozenset({"0005", "0008"})


def describe_result_code(code: str) -> str:
    return RESULT_CODE_MESSAGES.get(code, f"未知错误码: {code}")


def new_sequence_id(now: datetime | None = None, date_format: str = "%Y%m%d") -> str:
    """날짜 + 32자리 hex uuid"""
    return (now or datetime.now()).strftime(date_format) + uuid.uuid4().hex


class CtripClient(HttpProtocolAdapter):
    log_tag = "[CTRIP]"

    def __init__(
        self,
        account_id: str,
        secret_key: str,
        aes_key: str,
        aes_iv: str,
        base_url: str = DEFAULT_BASE_URL,
        version: str | None = None,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(base_url or DEFAULT_BASE_URL, timeout=timeout, client=client)
        self.codec = CtripCodec(account_id, secret_key, aes_key, aes_iv, version=version or settings.ctrip_version)

    @classmethod
    def from_config(cls, config: dict[str, Any], client: httpx.Client | None = None) -> "CtripClient":
        """OtaPlatform.config 로부터 생성"""
        return cls(
            account_id=config.get("account", ""),
            secret_key=config.get("secret_key", ""),
            aes_key=config.get("aes_key", ""),
            aes_iv=config.get("aes_iv", ""),
            base_url=config.get("api_url") or DEFAULT_BASE_URL,
            client=client,
        )

    @property
    def account_id(self) -> str:
        return self.codec.account_id

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        if operation not in SERVICE_PATHS:
            return AdapterResult.err(ErrorKind.BUSINESS, f"지원하지 않는 Ctrip 서비스: {operation}", code="0004")
        return None

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        envelope = self.codec.build_envelope(operation, payload, request_time=format_request_time())
        return PreparedRequest(
            url=f"{self.base_url}{SERVICE_PATHS[operation]}",
            headers={"Content-Type": "application/json"},
            json=envelope,
            log_payload={"header": envelope["header"], "body": payload},
        )

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        try:
            data = response.json() if response.content else {}
        except json.JSONDecodeError as e:
            raise DecodeError(f"Ctrip 응답 JSON 파싱 실패: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError("Ctrip 응답이 객체가 아닙니다.")

        header = data.get("header") or {}
        body = data.get("body")
        if isinstance(body, str) and body:
            data["body"] = self.codec.decrypt_body(body)

        code = str(header.get("resultCode", ""))
        message = header.get("resultMessage") or describe_result_code(code)
        if code == SUCCESS_CODE:
            return AdapterResult.ok(data=data, code=code, message=message)
        return AdapterResult.err(ErrorKind.BUSINESS, message, code=code, data=data)

    # 업무 API -----------------------------------------------------------

    def modify_date_price(self, body: dict[str, Any]) -> AdapterResult:
        return self.send("DatePriceModify", body)

    def modify_date_inventory(self, body: dict[str, Any]) -> AdapterResult:
        return self.send("DateInventoryModify", body)

    def confirm_order(self, order_id: str, confirm_no: str) -> AdapterResult:
        return self.send("OrderConfirm", {"orderId": order_id, "confirmNo": confirm_no})

    def notify_order_consumed(
        self,
        ota_order_id: str,
        supplier_order_id: str,
        items: list[dict[str, Any]],
        sequence_id: str | None = None,
    ) -> AdapterResult:
        """
        OrderConsumedNotice 전송.

        items: [{itemId, useStartDate, useEndDate, quantity, useQuantity, passengers?, vouchers?}]
        """
        body = {
            "sequenceId": sequence_id or new_sequence_id(),
            "otaOrderId": ota_order_id,
            "supplierOrderId": supplier_order_id,
            "items": [{k: v for k, v in item.items() if v is not None} for item in items],
        }
        return self.send("OrderConsumedNotice", body)

    # 인바운드 통지 -------------------------------------------------------

    def verify_inbound(self, header: dict[str, Any], encrypted_body: str) -> bool:
        return self.codec.verify_sign(header, encrypted_body)

    def decrypt_inbound(self, encrypted_body: str) -> Any:
        return self.codec.decrypt_body(encrypted_body)

    def encrypt_response_body(self, body: dict[str, Any]) -> str:
        return self.codec.encrypt_body(body)
