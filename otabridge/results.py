"""
연동 호출 결과 값 객체.

어댑터는 AdapterResult, 리소스 서비스는 ServiceResult를 반환합니다.
둘 다 불변이며 영속화하지 않습니다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSPORT = "transport"  # DNS/타임아웃/연결 오류 (재시도 가능)
    DECODE = "decode"  # 복호화/서명 불일치 (재시도 금지)
    BUSINESS = "business"  # 상대방이 거절한 응답
    ROUTING = "routing"  # 대상 설정/경로 없음


@dataclass(frozen=True)
class AdapterResult:
    success: bool
    code: str = ""
    message: str = ""
    data: Any = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: Any = None, code: str = "", message: str = "") -> "AdapterResult":
        return cls(success=True, code=str(code), message=message, data=data)

    @classmethod
    def err(
        cls,
        kind: ErrorKind,
        message: str,
        code: str = "",
        data: Any = None,
    ) -> "AdapterResult":
        return cls(success=False, code=str(code), message=message, data=data, error_kind=kind)

    @property
    def is_transport_error(self) -> bool:
        return self.error_kind == ErrorKind.TRANSPORT

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code,
            "message": self.message,
            "data": self.data,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(frozen=True)
class ServiceResult:
    success: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    need_manual: bool = False

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "ServiceResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, need_manual: bool = False, **data: Any) -> "ServiceResult":
        return cls(success=False, message=message, data=data, need_manual=need_manual)
