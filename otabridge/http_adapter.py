"""
프로토콜 어댑터 공통 HTTP 처리.

각 어댑터는 요청 생성(_build_request)과 응답 해석(_parse_response)만 구현하고,
전송/예외 변환/로그는 이 모듈이 담당합니다. send()는 절대 예외를 밖으로 던지지 않습니다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from otabridge.codecs.base import CodecError, DecodeError, stable_json
from otabridge.results import AdapterResult, ErrorKind
from otabridge.settings import settings

logger = logging.getLogger(__name__)

_MASK_KEYS = frozenset(
    {"password", "secret", "secret_key", "apikey", "app_secret", "private_key", "sign", "token", "access_token"}
)


def _mask_value(value: object) -> str:
    s = str(value or "")
    if len(s) <= 2:
        return "*" * len(s)
    return f"{'*' * (len(s) - 2)}{s[-2:]}"


def mask_secrets(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).lower() in _MASK_KEYS:
                out[k] = _mask_value(v)
            else:
                out[k] = mask_secrets(v)
        return out
    if isinstance(value, list):
        return [mask_secrets(v) for v in value]
    return value


def truncate(text: str, limit: int | None = None) -> str:
    limit = limit or settings.log_body_limit
    if len(text) <= limit:
        return text
    return text[:limit] + f"...(+{len(text) - limit})"


@dataclass
class PreparedRequest:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None
    content: str | bytes | None = None
    log_payload: Any = None  # 로그용 평문 (암호화 전)


class HttpProtocolAdapter:
    """send(operation, payload) -> AdapterResult 계약의 공통 구현"""

    log_tag = "[HTTP]"

    def __init__(
        self,
        base_url: str,
        timeout: httpx.Timeout | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._timeout = timeout or httpx.Timeout(settings.http_timeout, connect=settings.http_connect_timeout)
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    def _build_request(self, operation: str, payload: dict[str, Any]) -> PreparedRequest:
        raise NotImplementedError

    def _parse_response(self, operation: str, response: httpx.Response) -> AdapterResult:
        raise NotImplementedError

    def _validate(self, operation: str, payload: dict[str, Any]) -> AdapterResult | None:
        """필수 파라미터 검증. 실패 시 AdapterResult를 반환하면 HTTP 호출을 생략합니다."""
        return None

    def _http(self, request: PreparedRequest) -> httpx.Response:
        kwargs: dict[str, Any] = {"headers": request.headers, "params": request.params}
        if request.json is not None:
            kwargs["json"] = request.json
        elif request.content is not None:
            kwargs["content"] = request.content
        if self._client is not None:
            return self._client.request(request.method, request.url, timeout=self._timeout, **kwargs)
        with httpx.Client(timeout=self._timeout) as client:
            return client.request(request.method, request.url, **kwargs)

    def send(self, operation: str, payload: dict[str, Any] | None = None) -> AdapterResult:
        payload = payload or {}

        invalid = self._validate(operation, payload)
        if invalid is not None:
            logger.warning(f"{self.log_tag} {operation} 파라미터 검증 실패: {invalid.message}")
            return invalid

        try:
            request = self._build_request(operation, payload)
        except CodecError as e:
            logger.error(f"{self.log_tag} {operation} 요청 생성 실패: {e}")
            return AdapterResult.err(ErrorKind.DECODE, f"요청 생성 실패: {e}")
        except Exception as e:
            logger.error(f"{self.log_tag} {operation} 요청 생성 중 예외: {e}")
            return AdapterResult.err(ErrorKind.BUSINESS, f"请求异常：{e}", code="5000")

        logger.info(
            f"{self.log_tag} → {operation} {request.url} "
            f"payload={truncate(stable_json(mask_secrets(request.log_payload if request.log_payload is not None else payload)))}"
        )

        try:
            response = self._http(request)
        except httpx.TimeoutException as e:
            logger.error(f"{self.log_tag} {operation} 타임아웃: {e}")
            return AdapterResult.err(ErrorKind.TRANSPORT, f"请求超时: {e}", code="timeout")
        except httpx.RequestError as e:
            logger.error(f"{self.log_tag} {operation} 네트워크 오류: {e}")
            return AdapterResult.err(ErrorKind.TRANSPORT, f"网络错误: {e}", code="network")
        except Exception as e:
            logger.error(f"{self.log_tag} {operation} 요청 중 예외: {e}")
            return AdapterResult.err(ErrorKind.BUSINESS, f"请求异常：{e}", code="5000")

        logger.info(f"{self.log_tag} ← {operation} HTTP {response.status_code} body={truncate(response.text)}")

        if response.status_code >= 400:
            kind = ErrorKind.TRANSPORT if response.status_code >= 500 or response.status_code == 429 else ErrorKind.BUSINESS
            return AdapterResult.err(
                kind,
                f"HTTP请求失败: {response.status_code}",
                code=str(response.status_code),
                data={"_raw_text": response.text[:500]},
            )

        try:
            return self._parse_response(operation, response)
        except DecodeError as e:
            logger.error(f"{self.log_tag} {operation} 응답 복호화/파싱 실패: {e}")
            return AdapterResult.err(
                ErrorKind.DECODE,
                f"响应解析失败: {e}",
                data={"_raw_text": response.text[:500]},
            )
        except Exception as e:
            logger.error(f"{self.log_tag} {operation} 응답 처리 중 예외: {e}")
            return AdapterResult.err(ErrorKind.BUSINESS, f"请求异常：{e}", code="5000")
