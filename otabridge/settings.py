from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./otabridge.db"

    # 외부 연동 HTTP 설정
    http_timeout: float = 30.0
    http_connect_timeout: float = 10.0
    log_body_limit: int = 500  # 로그에 남길 요청/응답 본문 최대 길이

    # 리소스 주문 생성 재시도 정책
    resource_retry_attempts: int = 3
    resource_retry_wait_seconds: float = 2.0

    # 워커 풀
    worker_pool_size: int = 8
    worker_queue_size: int = 1000

    # Fernet 키 (ResourceConfig 비밀값 암호화용)
    secret_store_key: str = ""

    hengdian_webhook_url: str = ""
    fliggy_distribution_base_url: str = "https://api.alitrip.alibaba.com"
    ziwoyou_validate_before_add: bool = False
    ctrip_version: str = "1.0"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("fliggy_distribution_base_url", "hengdian_webhook_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v

    @field_validator("http_timeout", "http_connect_timeout", "resource_retry_wait_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("resource_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("resource_retry_attempts는 1에서 10 사이여야 합니다.")
        return v

    @field_validator("worker_pool_size", "worker_queue_size", "log_body_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("값은 1 이상이어야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
