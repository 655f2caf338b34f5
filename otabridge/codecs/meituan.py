"""
Meituan(美团) 코덱.

인증: Authorization: MWS {appKey}:{base64(hmac_sha1(appSecret, "METHOD URI\\nDATE"))}
본문: AES-128-CBC + base64, IV는 키를 왼쪽으로 8바이트 회전한 값.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import string
from email.utils import formatdate

from otabridge.codecs.base import (
    AES_BLOCK_SIZE,
    CodecError,
    DecodeError,
    aes_cbc_decrypt,
    aes_cbc_encrypt,
    to_bytes,
)


def normalize_aes_key(key: str | bytes) -> bytes:
    """
    16바이트 키는 그대로, 32자리 hex 문자열은 hex 디코딩하여 16바이트로 사용합니다.
    그 외 길이는 설정 오류입니다.
    """
    raw = to_bytes(key)
    if len(raw) == AES_BLOCK_SIZE:
        return raw
    if len(raw) == AES_BLOCK_SIZE * 2:
        text = raw.decode("ascii", errors="replace")
        if all(c in string.hexdigits for c in text):
            return bytes.fromhex(text)
    raise CodecError(f"Meituan AES 키는 16바이트 또는 32자리 hex여야 합니다 (현재 {len(raw)}바이트)")


def derive_iv(key: bytes) -> bytes:
    return bytes(key[(i + 8) % AES_BLOCK_SIZE] for i in range(AES_BLOCK_SIZE))


def gmt_date(timestamp: float | None = None) -> str:
    """RFC 1123 GMT 날짜 (예: Sat, 27 Dec 2025 08:00:00 GMT)"""
    return formatdate(timeval=timestamp, usegmt=True)


def meituan_signature(app_secret: str, method: str, uri: str, date_str: str) -> str:
    string_to_sign = f"{method.upper()} {uri}\n{date_str}"
    digest = hmac.new(app_secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def build_auth_headers(
    partner_id: str,
    app_key: str,
    app_secret: str,
    method: str,
    uri: str,
    date_str: str | None = None,
    encrypted: bool = True,
) -> dict[str, str]:
    date_str = date_str or gmt_date()
    signature = meituan_signature(app_secret, method, uri, date_str)
    return {
        "Content-Type": "application/json; charset=utf-8",
        "PartnerId": str(partner_id),
        "Date": date_str,
        "Authorization": f"MWS {app_key}:{signature}",
        "AppKey": app_key,
        "X-Encryption-Status": "encrypted" if encrypted else "unencrypted",
    }


class MeituanCodec:
    def __init__(self, app_key: str, app_secret: str, aes_key: str | bytes) -> None:
        self.app_key = app_key
        self.app_secret = app_secret
        self._key = normalize_aes_key(aes_key)
        self._iv = derive_iv(self._key)

    @property
    def iv(self) -> bytes:
        return self._iv

    def sign(self, method: str, uri: str, date_str: str) -> str:
        return meituan_signature(self.app_secret, method, uri, date_str)

    def encrypt(self, plaintext: str | bytes) -> str:
        return base64.b64encode(aes_cbc_encrypt(to_bytes(plaintext), self._key, self._iv)).decode("ascii")

    def decrypt_bytes(self, wire: str) -> bytes:
        try:
            raw = base64.b64decode(wire, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError("base64 형식이 올바르지 않습니다.") from e
        return aes_cbc_decrypt(raw, self._key, self._iv)

    def decrypt(self, wire: str) -> str:
        try:
            return self.decrypt_bytes(wire).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("복호화 결과가 UTF-8이 아닙니다.") from e
