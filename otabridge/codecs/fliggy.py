"""
Fliggy 분销(飞猪分销) 서명.

SHA256withRSA(PKCS#1 v1.5) + base64. 서명 문자열은 엔드포인트별 공식
(예: distributorId_timestamp_productId)에 따라 파라미터 값을 '_'로 연결합니다.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from otabridge.codecs.base import CodecError

logger = logging.getLogger(__name__)

INT_PARAMS = frozenset({"timestamp", "pageNo", "pageSize", "beginTime", "endTime"})


def _wrap_pem(key: str, label: str) -> str:
    key = key.strip()
    if "-----BEGIN" in key:
        return key
    body = key.replace("\r", "").replace("\n", "")
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----\n"


def format_private_key(key: str) -> str:
    """헤더 없는 PKCS8 키 본문에 PEM 헤더를 붙이고 64자 단위로 줄바꿈합니다."""
    return _wrap_pem(key, "PRIVATE KEY")


def format_public_key(key: str) -> str:
    return _wrap_pem(key, "PUBLIC KEY")


def normalize_params(params: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if key in INT_PARAMS:
            normalized[key] = int(value)
        elif isinstance(value, (list, tuple)):
            normalized[key] = list(value)
        elif isinstance(value, dict):
            normalized[key] = value
        elif isinstance(value, bool):
            normalized[key] = "true" if value else "false"
        else:
            normalized[key] = str(value)
    return normalized


def build_sign_string(formula: str, params: dict[str, Any]) -> str:
    """
    서명 문자열 생성.

    - 공식이 '_'로 끝나면 결과 끝에도 '_'를 붙입니다 (뒤따르는 파라미터 없음).
    - 빈 값은 건너뜁니다.
    - 배열 값은 첫 번째 요소만 사용합니다.
    """
    ends_with_underscore = formula.endswith("_")
    parts: list[str] = []
    for name in formula.rstrip("_").split("_"):
        if not name:
            continue
        value = params.get(name, "")
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        if value is None or value == "":
            continue
        parts.append(str(value))
    sign_string = "_".join(parts)
    if ends_with_underscore:
        sign_string += "_"
    return sign_string


def rsa_sign(data: str, private_key: str) -> str:
    try:
        key = serialization.load_pem_private_key(format_private_key(private_key).encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise CodecError(f"RSA 개인키 형식이 올바르지 않습니다: {e}") from e
    signature = key.sign(data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def rsa_verify(data: str, signature: str, public_key: str) -> bool:
    try:
        key = serialization.load_pem_public_key(format_public_key(public_key).encode("utf-8"))
        key.verify(base64.b64decode(signature), data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError, binascii.Error) as e:
        logger.warning(f"[FLIGGY] 서명 검증 실패: {e}")
        return False


def timestamp_ms() -> int:
    return int(time.time() * 1000)


class FliggySigner:
    def __init__(self, distributor_id: str, private_key: str) -> None:
        self.distributor_id = str(distributor_id)
        self.private_key = private_key

    def build_params(self, business: dict[str, Any], timestamp: int | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {
            "distributorId": self.distributor_id,
            "timestamp": int(timestamp if timestamp is not None else timestamp_ms()),
        }
        params.update(business)
        return normalize_params(params)

    def sign(self, formula: str, params: dict[str, Any]) -> str:
        return rsa_sign(build_sign_string(formula, params), self.private_key)
