from __future__ import annotations

import logging
from typing import Any

import httpx

from otabridge.codecs.hengdian import build_xml, parse_xml
from otabridge.http_adapter import HttpProtocolAdapter, PreparedRequest
from otabridge.results import AdapterResult, ErrorKind

logger = logging.getLogger(__name__)

ROOT_ELEMENTS = frozenset({"ValidateRQ", "BookRQ", "QueryStatusRQ", "SubscribeRoomStatusRQ", "CancelRQ"})
SUCCESS_CODE = "0"


class HengdianClient(HttpProtocolAdapter):
    """
    Hengdian 호텔 시스템 XML 클라이언트.

    모든 요청은 동일한 api_url로 POST하며 루트 요소 이름으로 작업을 구분합니다.
    """

    log_tag = "[HENGDIAN]"

    def __init__(
        self,
        api_url: str,
        username: str,
        password: str,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(api_url, timeout=timeout, client=client)
        self.username = username
        self.password = password

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        if operation not in ROOT_ELEMENTS:
            return AdapterResult.err(ErrorKind.BUSINESS, f"지원하지 않는 Hengdian 요청: {operation}", code="-1")
        if not self.base_url:
            return AdapterResult.err(ErrorKind.ROUTING, "Hengdian api_url이 설정되지 않았습니다.", code="-1")
        return None

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        return PreparedRequest(
            url=self.base_url,
            headers={"Content-Type": "application/xml"},
            content=build_xml(operation, payload, self.username, self.password).encode("utf-8"),
            log_payload=payload,
        )

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        data = parse_xml(response.content)
        code = str(data.get("ResultCode", ""))
        message = data.get("Message") or ""
        if not isinstance(message, str):
            message = str(message)
        if code == SUCCESS_CODE:
            return AdapterResult.ok(data=data, code=code, message=message)
        return AdapterResult.err(ErrorKind.BUSINESS, message or f"ResultCode={code}", code=code, data=data)

    def validate(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("ValidateRQ", data)

    def book(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("BookRQ", data)

    def query_status(self, ota_order_id: str) -> AdapterResult:
        return self.send("QueryStatusRQ", {"OtaOrderId": ota_order_id})

    def cancel(self, data: dict[str, Any]) -> AdapterResult:
        return self.send("CancelRQ", data)

    def subscribe_room_status(self, notify_url: str, hotels: list[dict[str, Any]], unsubscribe: bool = False) -> AdapterResult:
        """
        방 상태 푸시 구독.

        hotels: [{"hotel_id": "001", "room_types": ["标准间", ...]}]
        """
        payload = {
            "NotifyUrl": notify_url,
            "IsUnsubscribe": "1" if unsubscribe else "0",
            "Hotels": {
                "Hotel": [
                    {"HotelId": h["hotel_id"], "RoomTypes": {"RoomType": list(h.get("room_types") or [])}}
                    for h in hotels
                ]
            },
        }
        return self.send("SubscribeRoomStatusRQ", payload)
