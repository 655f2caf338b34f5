from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from otabridge.auth_config import AuthConfig, SecretStore, parse_auth_config
from otabridge.enums import ExceptionStatus, OrderStatus


class Base(DeclarativeBase):
    pass


class SoftwareProvider(Base):
    """리소스 제공자 시스템 (Hengdian, Ziwoyou, Fliggy-Distribution 등)"""

    __tablename__ = "software_providers"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    api_type: Mapped[str | None] = mapped_column(Text, nullable=True)  # hengdian, ziwoyou, fliggy_distribution
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ScenicSpot(Base):
    __tablename__ = "scenic_spots"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    software_provider_id: Mapped[int | None] = mapped_column(ForeignKey("software_providers.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    software_provider: Mapped[SoftwareProvider | None] = relationship()
    hotels: Mapped[list["Hotel"]] = relationship(back_populates="scenic_spot")


class ResourceConfig(Base):
    """
    (소프트웨어 제공자, 관광지) 조합별 연동 설정.

    extra_config 예시:
        {
            "sync_mode": {"inventory": "push", "price": "push", "order": "auto"},
            "auth": {"type": "custom", "params": {"apikey": "...", "custId": "..."}},
            "credentials": {"ctrip": {"username": "...", "password": "..."}},
            "order_provider": "ziwoyou"
        }
    """

    __tablename__ = "resource_configs"
    __table_args__ = (
        UniqueConstraint("software_provider_id", "scenic_spot_id", name="uq_resource_configs_provider_scenic"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    software_provider_id: Mapped[int] = mapped_column(ForeignKey("software_providers.id"), nullable=False)
    scenic_spot_id: Mapped[int] = mapped_column(ForeignKey("scenic_spots.id"), nullable=False)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)
    password: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    environment: Mapped[str] = mapped_column(Text, nullable=False, default="production")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    extra_config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    software_provider: Mapped[SoftwareProvider] = relationship()
    scenic_spot: Mapped[ScenicSpot] = relationship()

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.extra_config or {}).get(key, default)

    def sync_mode(self, kind: str) -> str | None:
        mode = self.extra("sync_mode") or {}
        if not isinstance(mode, dict):
            return None
        return mode.get(kind)

    def auth_config(self, store: SecretStore | None = None) -> AuthConfig:
        return parse_auth_config(self.extra_config, self.username, self.password, store=store)


class Hotel(Base):
    __tablename__ = "hotels"

    id: Mapped[int] = mapped_column(primary_key=True)
    scenic_spot_id: Mapped[int] = mapped_column(ForeignKey("scenic_spots.id"), nullable=False)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_code: Mapped[str | None] = mapped_column(Text, nullable=True)  # 리소스 제공자 측 호텔 번호
    name: Mapped[str] = mapped_column(Text, nullable=False)

    scenic_spot: Mapped[ScenicSpot] = relationship(back_populates="hotels")
    room_types: Mapped[list["RoomType"]] = relationship(back_populates="hotel")


class RoomType(Base):
    __tablename__ = "room_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    hotel_id: Mapped[int] = mapped_column(ForeignKey("hotels.id"), nullable=False)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_code: Mapped[str | None] = mapped_column(Text, nullable=True)  # Hengdian은 방 타입 이름
    name: Mapped[str] = mapped_column(Text, nullable=False)

    hotel: Mapped[Hotel] = relationship(back_populates="room_types")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    scenic_spot_id: Mapped[int] = mapped_column(ForeignKey("scenic_spots.id"), nullable=False)
    software_provider_id: Mapped[int | None] = mapped_column(ForeignKey("software_providers.id"), nullable=True)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    scenic_spot: Mapped[ScenicSpot] = relationship()
    software_provider: Mapped[SoftwareProvider | None] = relationship()


class OtaPlatform(Base):
    __tablename__ = "ota_platforms"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)  # ctrip, fliggy, meituan
    name: Mapped[str] = mapped_column(Text, nullable=False)
    # 연동 자격 증명: account, secret_key, aes_key, aes_iv, api_url, app_key, app_secret, partner_id
    config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class OtaProduct(Base):
    """상품의 OTA 측 식별자 (예: Ctrip supplierOptionId)"""

    __tablename__ = "ota_products"
    __table_args__ = (
        UniqueConstraint("product_id", "ota_platform_id", name="uq_ota_products_product_platform"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    ota_platform_id: Mapped[int] = mapped_column(ForeignKey("ota_platforms.id"), nullable=False)
    ota_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    product: Mapped[Product] = relationship()
    ota_platform: Mapped[OtaPlatform] = relationship()


class ProductExternalMapping(Base):
    """내부 상품(+호텔/방 타입) → 리소스 제공자 상품 ID 매핑"""

    __tablename__ = "product_external_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    hotel_id: Mapped[int | None] = mapped_column(ForeignKey("hotels.id"), nullable=True)
    room_type_id: Mapped[int | None] = mapped_column(ForeignKey("room_types.id"), nullable=True)
    software_provider_id: Mapped[int] = mapped_column(ForeignKey("software_providers.id"), nullable=False)
    external_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DailyRate(Base):
    """일자별 판매가/정산가/재고 (가격·재고 원천)"""

    __tablename__ = "daily_rates"
    __table_args__ = (
        UniqueConstraint("product_id", "hotel_id", "room_type_id", "date", name="uq_daily_rates_combo_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    hotel_id: Mapped[int] = mapped_column(ForeignKey("hotels.id"), nullable=False)
    room_type_id: Mapped[int] = mapped_column(ForeignKey("room_types.id"), nullable=False)
    rate_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    sale_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    settlement_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False)


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_no: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    ota_order_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    ota_platform_id: Mapped[int | None] = mapped_column(ForeignKey("ota_platforms.id"), nullable=True)
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id"), nullable=True)
    hotel_id: Mapped[int | None] = mapped_column(ForeignKey("hotels.id"), nullable=True)
    room_type_id: Mapped[int | None] = mapped_column(ForeignKey("room_types.id"), nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=OrderStatus.PAID_PENDING.value)

    check_in_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    check_out_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    room_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    card_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    # [{"name": ..., "idCode": ..., "cardType": ...}, ...] 순서 유지
    guest_info: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    real_name_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credential_list: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    settlement_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    resource_order_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    # OTA 측 주문 항목 번호 (Ctrip itemId)
    ota_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    ota_platform: Mapped[OtaPlatform | None] = relationship()
    product: Mapped[Product | None] = relationship()
    hotel: Mapped[Hotel | None] = relationship()
    room_type: Mapped[RoomType | None] = relationship()
    exceptions: Mapped[list["ExceptionRecord"]] = relationship(back_populates="order")

    def assign_resource_order_no(self, value: str) -> None:
        """
        리소스 측 주문번호를 기록합니다.

        한 번 기록된 번호는 이후 모든 호출의 멱등 키이므로 다른 값으로 덮어쓸 수 없습니다.
        """
        value = str(value)
        if self.resource_order_no and self.resource_order_no != value:
            raise ValueError(
                f"resource_order_no는 변경할 수 없습니다: {self.resource_order_no} -> {value}"
            )
        self.resource_order_no = value


class ExceptionRecord(Base):
    """사람이 처리해야 하는 연동 실패 기록"""

    __tablename__ = "exception_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), nullable=True)
    exception_type: Mapped[str] = mapped_column(Text, nullable=False)
    exception_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    exception_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ExceptionStatus.PENDING.value)
    handled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    order: Mapped[Order | None] = relationship(back_populates="exceptions")


class SyncFingerprintRecord(Base):
    """(상품, 호텔, 방 타입, OTA) 조합별 마지막 푸시 내용 해시"""

    __tablename__ = "sync_fingerprint_records"
    __table_args__ = (
        UniqueConstraint(
            "product_id", "hotel_id", "room_type_id", "ota_platform_id",
            name="uq_sync_fingerprint_combo",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    hotel_id: Mapped[int] = mapped_column(Integer, nullable=False)
    room_type_id: Mapped[int] = mapped_column(Integer, nullable=False)
    ota_platform_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_price_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_stock_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_price_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_stock_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_price_data: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    last_stock_data: Mapped[list | None] = mapped_column(JSONB, nullable=True)
