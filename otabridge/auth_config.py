"""
ResourceConfig 인증 정보의 타입 표현과 비밀값 저장소.

extra_config["auth"] 구조:
    {"type": "username_password" | "app_key" | "token" | "custom",
     "encrypted": true,              # 비밀 필드가 SecretStore로 암호화되어 있음
     "params": {...}}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from cryptography.fernet import Fernet, InvalidToken

from otabridge.settings import settings

logger = logging.getLogger(__name__)

SECRET_FIELDS = frozenset(
    {"password", "app_secret", "appsecret", "secret", "secret_key", "token", "access_token", "apikey", "private_key"}
)


class SecretStoreError(Exception):
    pass


class SecretStore:
    """Fernet 기반 비밀값 암복호화 경계."""

    def __init__(self, key: str | bytes | None = None) -> None:
        key = key if key is not None else settings.secret_store_key
        self._fernet = Fernet(key) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise SecretStoreError("secret_store_key가 설정되지 않았습니다.")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._require().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._require().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise SecretStoreError("비밀값 복호화 실패 (키 불일치 또는 손상된 값)") from e

    def reveal(self, params: dict[str, Any]) -> dict[str, Any]:
        """SECRET_FIELDS에 해당하는 문자열 값만 복호화한 사본을 반환합니다."""
        out: dict[str, Any] = {}
        for k, v in params.items():
            if k.lower() in SECRET_FIELDS and isinstance(v, str) and v:
                out[k] = self.decrypt(v)
            else:
                out[k] = v
        return out


@dataclass(frozen=True)
class UsernamePassword:
    username: str
    password: str
    kind: str = field(default="username_password", init=False)


@dataclass(frozen=True)
class AppKeySecret:
    app_key: str
    app_secret: str = ""
    kind: str = field(default="app_key", init=False)


@dataclass(frozen=True)
class Token:
    token: str
    kind: str = field(default="token", init=False)


@dataclass(frozen=True)
class Custom:
    params: dict[str, Any]
    kind: str = field(default="custom", init=False)

    def get(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)


AuthConfig = Union[UsernamePassword, AppKeySecret, Token, Custom]


def parse_auth_config(
    extra_config: dict[str, Any] | None,
    username: str | None = None,
    password: str | None = None,
    store: SecretStore | None = None,
) -> AuthConfig:
    """
    ResourceConfig의 컬럼/extra_config로부터 AuthConfig를 만듭니다.

    Args:
        extra_config: ResourceConfig.extra_config
        username: ResourceConfig.username
        password: ResourceConfig.password
        store: auth.encrypted가 true일 때 사용할 SecretStore

    Returns:
        UsernamePassword | AppKeySecret | Token | Custom
    """
    auth = (extra_config or {}).get("auth") or {}
    if not isinstance(auth, dict):
        auth = {}

    params = dict(auth.get("params") or {})
    # 예전 형식: auth 바로 아래에 appkey/app_secret/token 저장
    for legacy_key in ("appkey", "app_key", "app_id", "app_secret", "token", "access_token"):
        if legacy_key in auth and legacy_key not in params:
            params[legacy_key] = auth[legacy_key]

    encrypted = bool(auth.get("encrypted"))
    if encrypted:
        store = store or SecretStore()
        params = store.reveal(params)
        if password:
            password = store.decrypt(password)

    kind = (auth.get("type") or "").lower()

    if kind == "app_key":
        return AppKeySecret(
            app_key=str(params.get("appkey") or params.get("app_key") or params.get("app_id") or ""),
            app_secret=str(params.get("app_secret") or params.get("appsecret") or ""),
        )
    if kind == "token":
        return Token(token=str(params.get("token") or params.get("access_token") or ""))
    if kind == "custom":
        return Custom(params=params)
    if kind == "username_password" or (not kind and username and not params):
        return UsernamePassword(
            username=str(params.get("username") or username or ""),
            password=str(params.get("password") or password or ""),
        )
    if kind:
        logger.warning(f"[AUTH] 알 수 없는 인증 유형 '{kind}', custom으로 처리합니다.")
    return Custom(params=params)
