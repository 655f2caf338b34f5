"""ResourceConfig 인증 정보 파싱 / SecretStore 단위 테스트."""

import pytest

from otabridge.auth_config import (
    AppKeySecret,
    Custom,
    SecretStore,
    SecretStoreError,
    Token,
    UsernamePassword,
    parse_auth_config,
)
from otabridge.enums import ApiType, OrderStatus
from otabridge.services.resource.status_maps import (
    describe_fliggy_state,
    map_fliggy_state,
    map_hengdian_state,
    map_ziwoyou_state,
)


@pytest.mark.unit
class TestParseAuthConfig:
    def test_columns_only_is_username_password(self):
        auth = parse_auth_config({}, username="hd_user", password="hd_pass")
        assert auth == UsernamePassword("hd_user", "hd_pass")
        assert auth.kind == "username_password"

    def test_app_key(self):
        auth = parse_auth_config({"auth": {"type": "app_key", "params": {"appkey": "k", "app_secret": "s"}}})
        assert auth == AppKeySecret("k", "s")

    def test_legacy_flat_token(self):
        auth = parse_auth_config({"auth": {"type": "token", "access_token": "t-1"}})
        assert auth == Token("t-1")

    def test_custom_keeps_params(self):
        auth = parse_auth_config({"auth": {"type": "custom", "params": {"custId": "1001", "apikey": "key"}}})
        assert isinstance(auth, Custom)
        assert auth.get("custId") == "1001"
        assert auth.get("missing", "x") == "x"

    def test_unknown_type_falls_back_to_custom(self):
        auth = parse_auth_config({"auth": {"type": "oauth2", "params": {"a": 1}}})
        assert auth == Custom(params={"a": 1})

    def test_nothing_configured_is_empty_custom(self):
        assert parse_auth_config(None) == Custom(params={})

    def test_encrypted_params_are_revealed(self):
        store = SecretStore(SecretStore.generate_key())
        extra = {
            "auth": {
                "type": "custom",
                "encrypted": True,
                "params": {"custId": "1001", "apikey": store.encrypt("real-key")},
            }
        }
        auth = parse_auth_config(extra, store=store)
        assert auth.params == {"custId": "1001", "apikey": "real-key"}

    def test_encrypted_password_column_is_revealed(self):
        store = SecretStore(SecretStore.generate_key())
        extra = {"auth": {"type": "username_password", "encrypted": True}}
        auth = parse_auth_config(extra, username="u", password=store.encrypt("pw"), store=store)
        assert auth == UsernamePassword("u", "pw")


@pytest.mark.unit
class TestSecretStore:
    def test_round_trip(self):
        store = SecretStore(SecretStore.generate_key())
        token = store.encrypt("秘密")
        assert token != "秘密"
        assert store.decrypt(token) == "秘密"

    def test_wrong_key_raises(self):
        token = SecretStore(SecretStore.generate_key()).encrypt("x")
        with pytest.raises(SecretStoreError):
            SecretStore(SecretStore.generate_key()).decrypt(token)

    def test_missing_key_raises(self):
        with pytest.raises(SecretStoreError):
            SecretStore("").encrypt("x")


@pytest.mark.unit
class TestStatusMaps:
    def test_ziwoyou(self):
        assert map_ziwoyou_state(0) == OrderStatus.CONFIRMING
        assert map_ziwoyou_state("2") == OrderStatus.CONFIRMED
        assert map_ziwoyou_state(3) == OrderStatus.CANCEL_APPROVED
        assert map_ziwoyou_state(4) == OrderStatus.VERIFIED
        assert map_ziwoyou_state("abc") is None

    def test_fliggy_ticket_failure_has_no_mapping(self):
        assert map_fliggy_state(1003) == OrderStatus.CONFIRMED
        assert map_fliggy_state(1004) is None
        assert describe_fliggy_state(1004) == "出票失败"
        assert describe_fliggy_state(9999) == "未知状态(9999)"

    def test_hengdian_is_case_insensitive(self):
        assert map_hengdian_state(" confirmed ") == OrderStatus.CONFIRMED
        assert map_hengdian_state("CHECKED_OUT") == OrderStatus.VERIFIED
        assert map_hengdian_state(None) is None
        assert map_hengdian_state("UNKNOWN") is None

    def test_api_type_parse(self):
        assert ApiType.parse(" Ziwoyou ") == ApiType.ZIWOYOU
        assert ApiType.parse("unknown") is None
        assert ApiType.parse(None) is None
