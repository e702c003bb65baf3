from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")
    cognito_artist_group: str = os.environ.get("COGNITO_ARTIST_GROUP", "artists")

    # DynamoDB tables
    ledger_table_name: str = os.environ.get("LEDGER_TABLE_NAME", "fan_billing")
    notifications_table_name: str = os.environ.get("NOTIFICATIONS_TABLE_NAME", "notifications")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    processed_event_ttl_days: int = int(os.environ.get("PROCESSED_EVENT_TTL_DAYS", "30"))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_default_currency: str = os.environ.get("STRIPE_DEFAULT_CURRENCY", "usd").lower()
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

    # Billing cycle
    platform_fee_bps: int = int(os.environ.get("PLATFORM_FEE_BPS", "500"))
    default_period_seconds: int = int(os.environ.get("DEFAULT_PERIOD_SECONDS", str(30 * 24 * 3600)))
    renewal_window_seconds: int = int(os.environ.get("BILLING_RENEWAL_WINDOW_SECONDS", str(24 * 3600)))
    upcoming_renewal_days: int = int(os.environ.get("UPCOMING_RENEWAL_DAYS", "7"))
    reminder_min_days: int = int(os.environ.get("BILLING_REMINDER_MIN_DAYS", "2"))
    reminder_max_days: int = int(os.environ.get("BILLING_REMINDER_MAX_DAYS", "3"))
    max_payment_attempts: int = int(os.environ.get("MAX_PAYMENT_ATTEMPTS", "3"))
    payment_retry_delay_seconds: int = int(os.environ.get("PAYMENT_RETRY_DELAY_SECONDS", str(24 * 3600)))

    # Cache
    redis_url: str = os.environ.get("REDIS_URL", "")
    stats_cache_ttl_seconds: int = int(os.environ.get("STATS_CACHE_TTL_SECONDS", "120"))
    batch_lock_ttl_seconds: int = int(os.environ.get("BATCH_LOCK_TTL_SECONDS", "900"))

    # SES
    ses_from_email: str = os.environ.get("SES_FROM_EMAIL", "")

    # Observability
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()


S = Settings()
