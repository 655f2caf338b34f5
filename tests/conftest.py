"""Pytest configuration and fixtures."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from otabridge.models import (
    Base,
    DailyRate,
    Hotel,
    Order,
    OtaPlatform,
    OtaProduct,
    Product,
    ProductExternalMapping,
    ResourceConfig,
    RoomType,
    ScenicSpot,
    SoftwareProvider,
)


# 테스트용 메모리 SQLite 엔진 (워커 스레드도 같은 DB를 보도록 StaticPool)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False  # 테스트 로그 줄이기
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                # JSONB → JSON으로 변경 (SQLite 호환)
                column.type = JSON()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 새로운 메모리 DB 생성.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()  # 테스트 성공 시 commit
    except Exception:
        session.rollback()  # 실패 시 rollback
        raise
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """test_session alias."""
    yield test_session


@pytest.fixture
def no_sleep():
    """재시도 대기 시간을 기록만 하는 sleep 대체."""
    calls = []

    def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def world(db_session: Session):
    """
    관광지 1곳, 제공자 3종(Hengdian/Ziwoyou/Fliggy 분销), 호텔·방 타입·상품,
    OTA 플랫폼(Ctrip/Meituan)과 향후 3일 DailyRate 를 만듭니다.
    기본 ResourceConfig 는 Hengdian 입니다.
    """
    hengdian = SoftwareProvider(code="hengdian", name="横店", api_type="hengdian")
    ziwoyou = SoftwareProvider(code="ziwoyou", name="自我游", api_type="ziwoyou")
    fliggy = SoftwareProvider(code="fliggy_distribution", name="飞猪分销", api_type="fliggy_distribution")
    db_session.add_all([hengdian, ziwoyou, fliggy])
    db_session.flush()

    scenic = ScenicSpot(code="hdws", name="横店影视城", software_provider_id=hengdian.id)
    db_session.add(scenic)
    db_session.flush()

    config = ResourceConfig(
        software_provider_id=hengdian.id,
        scenic_spot_id=scenic.id,
        username="hd_user",
        password="hd_pass",
        api_url="https://hengdian.example.com/api",
        is_active=True,
        extra_config={
            "sync_mode": {"inventory": "push", "price": "push", "order": "auto"},
            "credentials": {"ctrip": {"username": "hd_ctrip", "password": "hd_ctrip_pass"}},
        },
    )
    db_session.add(config)

    hotel = Hotel(scenic_spot_id=scenic.id, code="H001", external_code="001", name="横店贵宾楼")
    db_session.add(hotel)
    db_session.flush()
    room_type = RoomType(hotel_id=hotel.id, code="STD", external_code="标准间", name="标准间")
    db_session.add(room_type)
    product = Product(scenic_spot_id=scenic.id, code="P001", external_code="EXT-P001", name="贵宾楼标准间")
    db_session.add(product)

    ctrip = OtaPlatform(
        code="ctrip",
        name="携程",
        config={
            "account": "acc001",
            "secret_key": "secret",
            "aes_key": "1234567890abcdef",
            "aes_iv": "fedcba0987654321",
            "api_url": "https://ctrip.example.com/api",
        },
    )
    meituan = OtaPlatform(
        code="meituan",
        name="美团",
        config={
            "partner_id": 9527,
            "app_key": "mt_key",
            "app_secret": "mt_secret",
            "aes_key": "0123456789abcdef",
            "api_url": "https://meituan.example.com",
        },
    )
    db_session.add_all([ctrip, meituan])
    db_session.flush()

    db_session.add(OtaProduct(product_id=product.id, ota_platform_id=ctrip.id, ota_product_id="CT-OPT-1"))
    db_session.add(
        ProductExternalMapping(
            product_id=product.id,
            software_provider_id=ziwoyou.id,
            external_product_id="8801",
        )
    )

    today = date.today()
    rates = []
    for offset in range(3):
        rate = DailyRate(
            product_id=product.id,
            hotel_id=hotel.id,
            room_type_id=room_type.id,
            rate_date=today + timedelta(days=offset),
            sale_price=Decimal("300.00"),
            settlement_price=Decimal("260.00"),
            available_quantity=10,
            is_closed=False,
        )
        rates.append(rate)
    db_session.add_all(rates)
    db_session.flush()

    return SimpleNamespace(
        hengdian=hengdian,
        ziwoyou=ziwoyou,
        fliggy=fliggy,
        scenic=scenic,
        config=config,
        hotel=hotel,
        room_type=room_type,
        product=product,
        ctrip=ctrip,
        meituan=meituan,
        rates=rates,
        today=today,
    )


@pytest.fixture
def make_order(db_session: Session, world):
    """기본값이 채워진 Order 를 만드는 factory fixture."""

    def _make(**overrides) -> Order:
        values = dict(
            order_no="ORD20260101001",
            ota_order_no="CT9001",
            ota_platform_id=world.ctrip.id,
            product_id=world.product.id,
            hotel_id=world.hotel.id,
            room_type_id=world.room_type.id,
            check_in_date=date(2026, 11, 1),
            check_out_date=date(2026, 11, 2),
            room_count=1,
            guest_count=2,
            contact_name="张 三",
            contact_phone="13800000000",
            card_no="110101199001011234",
            guest_info=[{"name": "张 三", "idCode": "110101199001011234", "cardType": "1"}],
            total_amount=Decimal("300.00"),
            settlement_amount=Decimal("260.00"),
            paid_at=datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc),
        )
        values.update(overrides)
        order = Order(**values)
        db_session.add(order)
        db_session.flush()
        return order

    return _make


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (SQLite DB 사용)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")


class ScriptedClient:
    """
    프로토콜 어댑터 대역.

    메서드별로 준비한 AdapterResult 를 순서대로 돌려주고 (마지막 값은 반복),
    호출 인자를 calls 에 기록합니다.
    """

    def __init__(self, **responses):
        self._responses = {name: list(values) if isinstance(values, list) else [values] for name, values in responses.items()}
        self.calls = []

    def __getattr__(self, name):
        if name.startswith("_") or name not in self._responses:
            raise AttributeError(name)

        def _call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            queue = self._responses[name]
            result = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(result, Exception):
                raise result
            return result

        return _call

    def count(self, name):
        return sum(1 for called, _, _ in self.calls if called == name)


@pytest.fixture
def scripted():
    """ScriptedClient 클래스를 돌려줍니다."""
    return ScriptedClient


@pytest.fixture
def session_factory():
    """JobQueue 에 넘길 세션 팩토리 (같은 메모리 DB)."""
    return TestSessionLocal
