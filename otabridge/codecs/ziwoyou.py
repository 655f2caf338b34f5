"""Ziwoyou(自我游) 서명: md5(custId + apikey + timestampMillis + jsonBody)"""

from __future__ import annotations

from typing import Any

from otabridge.codecs.base import CodecError, compact_json, md5_hex


def ziwoyou_sign(cust_id: int | str, apikey: str, timestamp_ms: int, data: Any) -> str:
    body = data if isinstance(data, str) else compact_json(data)
    return md5_hex(f"{cust_id}{apikey}{timestamp_ms}{body}")


def build_signed_request(
    data: dict[str, Any],
    cust_id: int | str | None,
    apikey: str | None,
    timestamp_ms: int,
    sign_required: bool = False,
) -> dict[str, Any]:
    """
    요청 본문 생성.

    apikey가 설정되어 있고 서명이 강제되지 않으면 apikey를 그대로 전송합니다.
    서명 모드에서는 apikey와 custId가 모두 필요합니다.
    """
    request: dict[str, Any] = {}
    if cust_id not in (None, ""):
        request["custId"] = int(cust_id)

    if apikey and not sign_required:
        request["apikey"] = apikey
        request.update(data)
        return request

    if not apikey or cust_id in (None, ""):
        raise CodecError("Ziwoyou 서명에는 apikey와 custId가 모두 필요합니다.")

    request.update(data)
    request["timestamp"] = timestamp_ms
    request["sign"] = ziwoyou_sign(int(cust_id), apikey, timestamp_ms, data)
    return request
