"""
Ctrip(携程) 코덱.

본문: JSON → AES-128-CBC(raw bytes) → 니블 인코딩(a~p).
서명: md5(accountId + serviceName + requestTime + body + version + secretKey), 소문자 hex.
"""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any

from otabridge.codecs.base import (
    DecodeError,
    aes_cbc_decrypt,
    aes_cbc_encrypt,
    compact_json,
    fit_key,
    loads_json,
    md5_hex,
    to_bytes,
)

ALPHABET = "abcdefghijklmnop"
_ORD_A = ord("a")
REQUEST_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def encode_bytes(data: bytes) -> str:
    """각 바이트를 상위/하위 니블 순서로 'a'~'p' 두 글자로 변환합니다."""
    out = []
    for b in data:
        out.append(chr((b >> 4) + _ORD_A))
        out.append(chr((b & 0x0F) + _ORD_A))
    return "".join(out)


def decode_bytes(text: str) -> bytes:
    if len(text) % 2 != 0:
        raise DecodeError(f"인코딩 문자열 길이가 홀수입니다: {len(text)}")
    out = bytearray()
    for i in range(0, len(text), 2):
        high, low = text[i], text[i + 1]
        if high not in ALPHABET or low not in ALPHABET:
            raise DecodeError(f"허용되지 않은 문자: {text[i:i + 2]!r} (위치 {i})")
        out.append(((ord(high) - _ORD_A) << 4) | (ord(low) - _ORD_A))
    return bytes(out)


def ctrip_sign(
    account_id: str,
    service_name: str,
    request_time: str,
    encrypted_body: str,
    version: str,
    secret_key: str,
) -> str:
    return md5_hex(f"{account_id}{service_name}{request_time}{encrypted_body}{version}{secret_key}").lower()


def format_request_time(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(REQUEST_TIME_FORMAT)


class CtripCodec:
    def __init__(
        self,
        account_id: str,
        secret_key: str,
        aes_key: str | bytes,
        aes_iv: str | bytes,
        version: str = "1.0",
    ) -> None:
        self.account_id = str(account_id)
        self.secret_key = secret_key
        self.version = version
        self._key = fit_key(aes_key)
        self._iv = fit_key(aes_iv)

    def encrypt(self, plaintext: str | bytes) -> str:
        return encode_bytes(aes_cbc_encrypt(to_bytes(plaintext), self._key, self._iv))

    def decrypt_bytes(self, wire: str) -> bytes:
        return aes_cbc_decrypt(decode_bytes(wire), self._key, self._iv)

    def decrypt(self, wire: str) -> str:
        raw = self.decrypt_bytes(wire)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("복호화 결과가 UTF-8이 아닙니다.") from e

    def encrypt_body(self, body: Any) -> str:
        return self.encrypt(compact_json(body))

    def decrypt_body(self, wire: str) -> Any:
        return loads_json(self.decrypt(wire))

    def sign(self, service_name: str, request_time: str, encrypted_body: str) -> str:
        return ctrip_sign(self.account_id, service_name, request_time, encrypted_body, self.version, self.secret_key)

    def verify_sign(self, header: dict[str, Any], encrypted_body: str) -> bool:
        """Ctrip이 보낸 통지의 header.sign 검증"""
        expected = ctrip_sign(
            str(header.get("accountId", "")),
            str(header.get("serviceName", "")),
            str(header.get("requestTime", "")),
            encrypted_body,
            str(header.get("version", "")),
            self.secret_key,
        )
        return hmac.compare_digest(expected, str(header.get("sign", "")).lower())

    def build_envelope(self, service_name: str, body: Any, request_time: str | None = None) -> dict[str, Any]:
        request_time = request_time or format_request_time()
        encrypted = self.encrypt_body(body)
        return {
            "header": {
                "accountId": self.account_id,
                "serviceName": service_name,
                "requestTime": request_time,
                "version": self.version,
                "sign": self.sign(service_name, request_time, encrypted),
            },
            "body": encrypted,
        }
