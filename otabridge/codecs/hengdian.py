"""
Hengdian(横店) XML 코덱.

요청은 루트 요소 아래에 AuthenticationToken(Username/Password)을 먼저 두고
업무 데이터를 이어 붙입니다. 리스트는 같은 이름의 형제 요소로, dict는 중첩 요소로
직렬화하며 None은 생략합니다.
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Any

from otabridge.codecs.base import DecodeError

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

# OTA별 자격 증명을 둘 수 있는 플랫폼
PLATFORM_CREDENTIAL_KEYS = ("ctrip", "meituan", "fliggy")


def _append(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, dict):
        child = ET.SubElement(parent, tag)
        for key, item in value.items():
            _append(child, str(key), item)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append(parent, tag, item)
        return
    child = ET.SubElement(parent, tag)
    if isinstance(value, bool):
        child.text = "true" if value else "false"
    else:
        child.text = str(value)


def build_xml(root_name: str, data: dict[str, Any], username: str, password: str) -> str:
    root = ET.Element(root_name)
    token = ET.SubElement(root, "AuthenticationToken")
    ET.SubElement(token, "Username").text = username
    ET.SubElement(token, "Password").text = password
    for key, value in data.items():
        _append(root, str(key), value)
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")


def _element_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        value = _element_to_value(child)
        if child.tag in result:
            existing = result[child.tag]
            if not isinstance(existing, list):
                result[child.tag] = [existing]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    return result


def parse_xml(text: str | bytes) -> dict[str, Any]:
    """XML 응답을 dict로 변환합니다. 루트 태그는 '_root' 키에 담깁니다."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise DecodeError(f"XML 파싱 실패: {e}") from e
    value = _element_to_value(root)
    result = value if isinstance(value, dict) else {"_text": value}
    result["_root"] = root.tag
    return result


def select_credentials(
    extra_config: dict[str, Any] | None,
    ota_code: str | None,
    default_username: str | None,
    default_password: str | None,
) -> tuple[str, str]:
    """OTA 플랫폼별 자격 증명이 있으면 우선 사용하고 없으면 기본 계정을 사용합니다."""
    credentials = (extra_config or {}).get("credentials") or {}
    code = (ota_code or "").lower()
    if code in PLATFORM_CREDENTIAL_KEYS and isinstance(credentials.get(code), dict):
        pair = credentials[code]
        if pair.get("username") and pair.get("password"):
            return str(pair["username"]), str(pair["password"])
    return str(default_username or ""), str(default_password or "")


def parse_room_status(text: str | bytes) -> list[dict[str, Any]]:
    """
    RoomStatus 푸시 파싱.

    <RoomStatus><RoomQuotaMap>[{"hotelNo":"001","roomType":"标准间",
        "roomQuota":[{"date":"2021-10-21","quota":100}]}]</RoomQuotaMap></RoomStatus>
    """
    parsed = parse_xml(text)
    if parsed.get("_root") != "RoomStatus":
        raise DecodeError(f"RoomStatus 문서가 아닙니다: {parsed.get('_root')}")
    raw_map = parsed.get("RoomQuotaMap") or "[]"
    if not isinstance(raw_map, str):
        raise DecodeError("RoomQuotaMap은 JSON 문자열이어야 합니다.")
    try:
        entries = json.loads(raw_map)
    except json.JSONDecodeError as e:
        raise DecodeError(f"RoomQuotaMap JSON 파싱 실패: {e}") from e
    if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
        raise DecodeError("RoomQuotaMap은 객체 배열이어야 합니다.")
    return entries


def build_result_xml(result_code: str, message: str) -> str:
    """웹훅 응답용 <Result> 문서"""
    root = ET.Element("Result")
    ET.SubElement(root, "ResultCode").text = result_code
    ET.SubElement(root, "Message").text = message
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")
