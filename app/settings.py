import os
from dataclasses import dataclass
from decimal import Decimal

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
payments_ms_url = os.environ.get("PAYMENTS_MS_URL", "http://localhost:8003")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
GENERATE_SCHEMAS = os.environ.get("GENERATE_SCHEMAS", "false").lower() == "true"

GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
NOTIFICATIONS_QUEUE = os.environ.get("NOTIFICATIONS_QUEUE", "notifications:outbound")
ADMIN_BASE_URL = os.environ.get("ADMIN_BASE_URL", "/admin/rentals/verifications")


@dataclass(frozen=True)
class SettlementConfig:
    """Tunables for the settlement engine. Injected, never read globally."""

    hold_hours: int = 24
    max_retries: int = 2
    approval_threshold: Decimal = Decimal("500.00")
    validation_charge_ceiling: Decimal = Decimal("1.00")
    lock_ttl_seconds: int = 120

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        return cls(
            hold_hours=int(os.environ.get("CHARGE_HOLD_HOURS", "24")),
            max_retries=int(os.environ.get("CHARGE_MAX_RETRIES", "2")),
            approval_threshold=Decimal(
                os.environ.get("CHARGE_APPROVAL_THRESHOLD", "500.00")
            ),
            validation_charge_ceiling=Decimal(
                os.environ.get("VALIDATION_CHARGE_CEILING", "1.00")
            ),
            lock_ttl_seconds=int(os.environ.get("CHARGE_LOCK_TTL_SECONDS", "120")),
        )
