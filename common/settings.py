import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "points")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    db_pool_timeout: float = float(os.getenv("DB_POOL_TIMEOUT", "5"))
    db_connect_timeout: int = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

    jwt_issuer: str = os.getenv("JWT_ISSUER", "points-service")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))
    internal_audience: str = os.getenv("INTERNAL_AUDIENCE", "points")

    ecpay_mode: str = os.getenv("ECPAY_MODE", "stage")
    ecpay_merchant_id: str = os.getenv("ECPAY_MERCHANT_ID", "")
    ecpay_hash_key: str = os.getenv("ECPAY_HASH_KEY", "")
    ecpay_hash_iv: str = os.getenv("ECPAY_HASH_IV", "")
    ecpay_base_url: str = os.getenv("ECPAY_BASE_URL", "")
    ecpay_return_url: str = os.getenv("ECPAY_RETURN_URL", "")
    ecpay_client_back_url: str = os.getenv("ECPAY_CLIENT_BACK_URL", "")
    ecpay_order_result_url: str = os.getenv("ECPAY_ORDER_RESULT_URL", "")
    ecpay_payment_info_url: str = os.getenv("ECPAY_PAYMENT_INFO_URL", "")
    ecpay_client_redirect_url: str = os.getenv("ECPAY_CLIENT_REDIRECT_URL", "")
    ecpay_payment_method: str = os.getenv("ECPAY_PAYMENT_METHOD", "Credit")
    ecpay_need_extra_paid_info: str = os.getenv("ECPAY_NEED_EXTRA_PAID_INFO", "Y")

    recharge_max_attempts: int = int(os.getenv("RECHARGE_MAX_ATTEMPTS", "6"))
    recharge_base_delay: float = float(os.getenv("RECHARGE_BASE_DELAY", "0.2"))
    recharge_max_delay: float = float(os.getenv("RECHARGE_MAX_DELAY", "5.0"))

    app_base_url: str = os.getenv("APP_BASE_URL", "http://localhost:3000")
    app_name: str = os.getenv("APP_NAME", "DataruApp")
    email_from: str = os.getenv("EMAIL_FROM", "")
    email_from_name: str = os.getenv("EMAIL_FROM_NAME", "")
    mailchannels_api_key: str = os.getenv("MAILCHANNELS_API_KEY", "")
    mailchannels_api_base: str = os.getenv("MAILCHANNELS_API_BASE", "https://api.mailchannels.net/tx/v1")
    email_verification_ttl_seconds: int = int(os.getenv("EMAIL_VERIFICATION_TTL_SECONDS", "3600"))
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "5"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

    @property
    def public_base_url(self) -> str:
        return (self.ecpay_base_url or self.app_base_url).rstrip("/")

settings = Settings()
