from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """全局配置"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env 当前环境
    ENVIRONMENT: Literal['dev', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'AutoScrollBackend'
    FASTAPI_DESCRIPTION: str = 'AutoScroll subscription lifecycle backend'
    FASTAPI_DOCS_URL: str | None = '/docs'
    FASTAPI_REDOC_URL: str | None = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env 数据库
    DATABASE_HOST: str = '127.0.0.1'
    DATABASE_PORT: int = 5432
    DATABASE_USER: str = 'postgres'
    DATABASE_PASSWORD: str = ''
    # Full SQLAlchemy URL, overrides the DATABASE_* parts when set
    DATABASE_URL: str | None = None

    # 数据库
    DATABASE_ECHO: bool | Literal['debug'] = False
    DATABASE_POOL_ECHO: bool | Literal['debug'] = False
    DATABASE_SCHEMA: str = 'autoscroll'
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = [  # 末尾不带斜杠
        'http://127.0.0.1:8000',
        'http://localhost:5173',
    ]
    CORS_EXPOSE_HEADERS: list[str] = [
        'X-Request-ID',
        'X-Session-Refreshed',
    ]
    MIDDLEWARE_CORS: bool = True

    # Trace ID
    TRACE_ID_REQUEST_HEADER_KEY: str = 'X-Request-ID'

    # 日志（控制台）
    LOG_STD_LEVEL: str = 'INFO'
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'

    ##################################################
    # [ Billing ] Razorpay
    ##################################################
    # .env
    RAZORPAY_KEY_ID: str = ''
    RAZORPAY_KEY_SECRET: str = ''
    RAZORPAY_WEBHOOK_SECRET: str = ''

    # Plans (ids must exist on the Razorpay dashboard)
    RAZORPAY_PLAN_ID_MONTHLY: str = 'plan_monthly_premium'
    RAZORPAY_PLAN_ID_YEARLY: str = 'plan_yearly_premium'
    RAZORPAY_MONTHLY_TOTAL_COUNT: int = 12
    RAZORPAY_YEARLY_TOTAL_COUNT: int = 10
    RAZORPAY_CURRENCY: str = 'INR'
    RAZORPAY_MONTHLY_AMOUNT: int = 900  # paise
    RAZORPAY_YEARLY_AMOUNT: int = 9 * 11 * 100  # 11 months for the price of 12

    # API client
    RAZORPAY_API_BASE_URL: str = 'https://api.razorpay.com/v1'
    RAZORPAY_TIMEOUT_SECONDS: float = 15.0
    RAZORPAY_RETRY_MAX_ATTEMPTS: int = 3
    RAZORPAY_RETRY_BASE_DELAY_SECONDS: float = 2.0
    RAZORPAY_CIRCUIT_FAILURE_THRESHOLD: int = 5
    RAZORPAY_CIRCUIT_RECOVERY_TIMEOUT: int = 60  # seconds

    ##################################################
    # [ Billing ] Subscription lifecycle
    ##################################################
    TRIAL_DAYS: int = 10
    SESSION_TTL_SECONDS: int = 60 * 60 * 24 * 10  # 10 天
    SESSION_REFRESH_WINDOW_SECONDS: int = 60 * 60 * 24 * 2  # 2 天
    PROCESSING_GRACE_SECONDS: int = 60 * 60 * 24  # 24 小时
    PAYMENT_PROCESSING_WINDOW_SECONDS: int = 60 * 10  # 10 分钟
    RECENT_CREATE_WINDOW_SECONDS: int = 60 * 10  # 10 分钟

    # Webhooks
    WEBHOOK_PROCESSING_STALE_SECONDS: int = 60 * 5
    WEBHOOK_EVENT_RETENTION_DAYS: int = 30
    DEAD_LETTER_AUTO_REPLAY: bool = False
    DEAD_LETTER_MAX_RETRIES: int = 5

    # Retention / cleanup
    USAGE_RETENTION_DAYS: int = 90
    SUBSCRIPTION_CLEANUP_ENABLED: bool = True
    SUBSCRIPTION_CLEANUP_AFTER_DAYS: int = 30

    # Operator routes (dead-letter replay, stats); disabled when empty
    OPERATOR_API_KEY: str = ''

    # Monitor
    MONITOR_ENABLED: bool = True
    SUBSCRIPTION_SYNC_BATCH_SIZE: int = 50
    SUBSCRIPTION_EXPIRY_WARNING_DAYS: int = 3

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """检查环境变量"""
        if values.get('ENVIRONMENT') == 'prod':
            # FastAPI
            values['FASTAPI_OPENAPI_URL'] = None
            values['FASTAPI_DOCS_URL'] = None
            values['FASTAPI_REDOC_URL'] = None

        return values

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)


@lru_cache
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings()


# 创建全局配置实例
settings = get_settings()
