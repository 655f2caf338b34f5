"""리소스 라우팅 / 웹훅 식별 통합 테스트"""

import pytest

from otabridge.models import ProductExternalMapping, ResourceConfig, SoftwareProvider
from otabridge.services.identification import IdentificationResolver
from otabridge.services.resource import HengdianService, ZiwoyouService
from otabridge.services.resource_router import ResourceServiceRouter


@pytest.fixture
def ziwoyou_config(db_session, world):
    config = ResourceConfig(
        software_provider_id=world.ziwoyou.id,
        scenic_spot_id=world.scenic.id,
        api_url="https://zwy.example.com",
        is_active=True,
        extra_config={"auth": {"type": "custom", "params": {"custId": "1001", "apikey": "key", "appkey": "zk"}}},
    )
    db_session.add(config)
    db_session.flush()
    return config


def _set_extra(config, **values):
    extra = dict(config.extra_config or {})
    extra.update(values)
    config.extra_config = extra


@pytest.mark.integration
class TestResourceServiceRouter:
    def test_order_routes_to_scenic_provider(self, db_session, world, make_order):
        service = ResourceServiceRouter(db_session).resolve(make_order())
        assert isinstance(service, HengdianService)
        assert service.config.id == world.config.id

    def test_inventory_push_mode(self, db_session, world, make_order):
        router = ResourceServiceRouter(db_session)
        order = make_order()
        assert router.resolve_config(order, "inventory").id == world.config.id

        _set_extra(world.config, sync_mode={"inventory": "manual", "order": "auto"})
        assert router.resolve_config(order, "inventory") is None
        assert router.is_system_connected(order, "inventory") is False

    def test_manual_order_mode_is_not_connected(self, db_session, world, make_order):
        _set_extra(world.config, sync_mode={"order": "manual"})
        router = ResourceServiceRouter(db_session)
        order = make_order()
        assert router.resolve(order) is None
        assert router.is_system_connected(order) is False

    def test_unknown_operation_raises(self, db_session, world, make_order):
        with pytest.raises(ValueError):
            ResourceServiceRouter(db_session).resolve_config(make_order(), "refund")

    def test_order_provider_redirects_order_delivery(self, db_session, world, ziwoyou_config, make_order):
        _set_extra(world.config, order_provider="ziwoyou")
        router = ResourceServiceRouter(db_session)
        order = make_order()

        service = router.resolve(order)
        assert isinstance(service, ZiwoyouService)
        # 재고는 계속 기존 제공자
        assert router.resolve_config(order, "inventory").id == world.config.id

    def test_order_provider_by_id(self, db_session, world, ziwoyou_config, make_order):
        _set_extra(world.config, order_provider=world.ziwoyou.id)
        assert ResourceServiceRouter(db_session).resolve_config(make_order()).id == ziwoyou_config.id

    def test_order_provider_without_api_url_keeps_primary(self, db_session, world, ziwoyou_config, make_order):
        ziwoyou_config.api_url = None
        _set_extra(world.config, order_provider="ziwoyou")
        assert ResourceServiceRouter(db_session).resolve_config(make_order()).id == world.config.id

    def test_ziwoyou_without_product_mapping_is_manual(self, db_session, world, ziwoyou_config, make_order):
        db_session.query(ProductExternalMapping).delete()
        _set_extra(world.config, order_provider="ziwoyou")
        assert ResourceServiceRouter(db_session).resolve(make_order()) is None

    def test_product_provider_takes_precedence(self, db_session, world, ziwoyou_config, make_order):
        _set_extra(ziwoyou_config, sync_mode={"order": "auto"})
        world.product.software_provider_id = world.ziwoyou.id
        db_session.flush()
        assert ResourceServiceRouter(db_session).resolve_config(make_order()).id == ziwoyou_config.id

    def test_scenic_provider_without_config(self, db_session, world, make_order):
        world.scenic.software_provider_id = world.fliggy.id
        db_session.flush()
        assert ResourceServiceRouter(db_session).resolve(make_order()) is None

    def test_inactive_config(self, db_session, world, make_order):
        world.config.is_active = False
        db_session.flush()
        assert ResourceServiceRouter(db_session).resolve(make_order()) is None

    def test_ticket_order_uses_product_scenic_spot(self, db_session, world, make_order):
        order = make_order(hotel_id=None, room_type_id=None)
        assert ResourceServiceRouter(db_session).resolve_config(order).id == world.config.id

    def test_unknown_api_type(self, db_session, world, make_order):
        legacy = SoftwareProvider(code="legacy", name="旧系统", api_type="legacy_soap")
        db_session.add(legacy)
        db_session.flush()
        world.config.software_provider_id = legacy.id
        world.scenic.software_provider_id = legacy.id
        db_session.flush()
        db_session.expire(world.config, ["software_provider"])

        router = ResourceServiceRouter(db_session)
        order = make_order()
        assert router.resolve_config(order) is not None
        assert router.resolve(order) is None

    def test_client_factory_is_injected(self, db_session, world, make_order):
        fake = object()
        service = ResourceServiceRouter(db_session, client_factory=lambda config: fake).resolve(make_order())
        assert service.get_client() is fake


@pytest.mark.integration
class TestIdentificationResolver:
    def test_hotel_no(self, db_session, world):
        result = IdentificationResolver(db_session).identify({"hotelNo": "001"})
        assert result.method == "hotelNo"
        assert result.scenic_spot.id == world.scenic.id
        assert result.config.id == world.config.id

    def test_hotel_no_restricted_to_provider(self, db_session, world):
        assert IdentificationResolver(db_session).identify({"hotelNo": "001"}, world.ziwoyou.id) is None

    def test_order_no(self, db_session, world, make_order):
        make_order(resource_order_no="HD-1")
        resolver = IdentificationResolver(db_session)
        assert resolver.identify({"orderNo": "HD-1"}).method == "orderNo"
        assert resolver.identify({"order_id": "CT9001"}).method == "orderNo"

    def test_ticket_order_without_hotel(self, db_session, world, make_order):
        make_order(hotel_id=None, room_type_id=None)
        result = IdentificationResolver(db_session).identify({"orderNo": "ORD20260101001"})
        assert result.scenic_spot.id == world.scenic.id

    def test_product_id(self, db_session, world):
        result = IdentificationResolver(db_session).identify({"productId": "EXT-P001"})
        assert result.method == "productId"

    def test_business_data_falls_through(self, db_session, world):
        result = IdentificationResolver(db_session).identify({"hotelNo": "999", "productId": "P001"})
        assert result.method == "productId"

    def test_username(self, db_session, world):
        result = IdentificationResolver(db_session).identify({"username": "hd_user"}, world.hengdian.id)
        assert result.method == "username"
        assert result.config.id == world.config.id

    def test_appkey_from_custom_params(self, db_session, world, ziwoyou_config):
        result = IdentificationResolver(db_session).identify({"appkey": "zk"}, world.ziwoyou.id)
        assert result.method == "appkey"
        assert result.config.id == ziwoyou_config.id

    def test_auth_params_require_provider(self, db_session, world):
        assert IdentificationResolver(db_session).identify({"username": "hd_user"}) is None

    def test_url_path(self, db_session, world, ziwoyou_config):
        result = IdentificationResolver(db_session).identify({}, world.ziwoyou.id, scenic_spot_code="hdws")
        assert result.method == "url_path"
        assert result.config.id == ziwoyou_config.id

    def test_no_match(self, db_session, world):
        assert IdentificationResolver(db_session).identify({"orderNo": "NOPE"}, world.hengdian.id, "unknown") is None
