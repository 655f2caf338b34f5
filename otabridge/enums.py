from enum import Enum


class OrderStatus(str, Enum):
    PAID_PENDING = "paid_pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_REJECTED = "cancel_rejected"
    CANCEL_APPROVED = "cancel_approved"
    VERIFIED = "verified"


class ExceptionOrderType(str, Enum):
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    INVENTORY_MISMATCH = "inventory_mismatch"
    PRICE_MISMATCH = "price_mismatch"


class ExceptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RESOLVED = "resolved"


class ApiType(str, Enum):
    """리소스 제공자 API 유형 (SoftwareProvider.api_type)"""

    HENGDIAN = "hengdian"
    ZIWOYOU = "ziwoyou"
    FLIGGY_DISTRIBUTION = "fliggy_distribution"

    @classmethod
    def parse(cls, value: str | None) -> "ApiType | None":
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class OtaPlatformCode(str, Enum):
    CTRIP = "ctrip"
    FLIGGY = "fliggy"
    MEITUAN = "meituan"


class SyncKind(str, Enum):
    PRICE = "price"
    STOCK = "stock"


class SyncOperation(str, Enum):
    """라우팅 대상 작업 종류"""

    ORDER = "order"
    INVENTORY = "inventory"
