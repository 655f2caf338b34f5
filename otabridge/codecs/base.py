"""공용 암호화/직렬화 유틸리티."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AES_BLOCK_SIZE = 16


class CodecError(ValueError):
    """잘못된 키 등 코덱 설정 오류."""


class DecodeError(CodecError):
    """수신 데이터의 길이/문자 집합/패딩이 올바르지 않음."""


def compact_json(data: Any) -> str:
    """키 순서를 유지한 압축 JSON (유니코드와 슬래시는 이스케이프하지 않음)."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def stable_json(data: Any) -> str:
    """키 정렬된 압축 JSON. 해시 입력용."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), sort_keys=True, default=str)


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def fit_key(value: str | bytes, size: int = AES_BLOCK_SIZE) -> bytes:
    """OpenSSL과 동일하게 키/IV를 자르거나 NUL로 채웁니다."""
    raw = to_bytes(value)
    if len(raw) >= size:
        return raw[:size]
    return raw + b"\0" * (size - len(raw))


def aes_cbc_encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def aes_cbc_decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % AES_BLOCK_SIZE != 0:
        raise DecodeError(f"암호문 길이가 블록 크기의 배수가 아닙니다: {len(ciphertext)}")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecodeError("PKCS7 패딩이 올바르지 않습니다.") from e


def loads_json(text: str | bytes) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"JSON 파싱 실패: {e}") from e
