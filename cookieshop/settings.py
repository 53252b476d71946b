from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://postgres@localhost:5432/cookieshop"

    # Stripe
    stripe_secret_key: str = ""
    stripe_api_version: str | None = None
    stripe_webhook_secret: str = ""
    stripe_currency: str = "usd"
    stripe_timeout_seconds: float = 20.0  # 원격 호출 1건당 HTTP 타임아웃
    stripe_retry_count: int = 3  # tenacity 재시도 횟수 (연결 오류/429)

    # 상품 동기화 배치
    billing_sync_batch_size: int = 5
    billing_sync_batch_delay: float = 0.1  # 배치 간 대기 시간 (초)
    billing_sync_item_timeout: float = 60.0

    # Checkout
    public_base_url: str = "http://localhost:3000"
    checkout_allowed_countries: list[str] = ["US"]
    billing_metadata_source: str = "cats-and-cookies"

    # 분쟁 승소 시 주문 상태: "paid" (결제완료로 복귀) 또는 "dispute_won" (별도 종결 상태)
    dispute_won_status: str = "paid"

    subscription_plans: dict[str, dict[str, str]] = {
        "weekly": {
            "name": "Weekly Cookie Box",
            "price_id": "price_weekly_cookies",
            "interval": "week",
            "description": "Fresh cookies delivered every week",
        },
        "biweekly": {
            "name": "Bi-Weekly Cookie Box",
            "price_id": "price_biweekly_cookies",
            "interval": "2 weeks",
            "description": "Fresh cookies delivered every two weeks",
        },
        "monthly": {
            "name": "Monthly Cookie Box",
            "price_id": "price_monthly_cookies",
            "interval": "month",
            "description": "Fresh cookies delivered every month",
        },
    }

    # 상품 이미지 업로드 (Supabase Storage)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_bucket: str = "product-images"
    upload_max_bytes: int = 5 * 1024 * 1024

    log_level: str = "INFO"

    def get_subscription_plan(self, plan: str) -> dict[str, str] | None:
        """플랜 키로 구독 플랜 설정을 조회"""
        return self.subscription_plans.get((plan or "").strip().lower())

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("public_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v.rstrip("/")

    @field_validator("stripe_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("통화 코드는 3자리 영문이어야 합니다.")
        return v

    @field_validator("stripe_timeout_seconds", "billing_sync_item_timeout")
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("타임아웃은 0보다 커야 합니다.")
        return v

    @field_validator("billing_sync_batch_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("billing_sync_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError("billing_sync_batch_size는 1에서 50 사이여야 합니다.")
        return v

    @field_validator("stripe_retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("stripe_retry_count는 1에서 10 사이여야 합니다.")
        return v

    @field_validator("dispute_won_status")
    @classmethod
    def validate_dispute_won_status(cls, v: str) -> str:
        if v not in ("paid", "dispute_won"):
            raise ValueError("dispute_won_status는 'paid' 또는 'dispute_won'이어야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
