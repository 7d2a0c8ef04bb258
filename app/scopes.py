from enum import StrEnum


class SettlementScope(StrEnum):
    # Guest scopes
    CANCEL = "bookings:cancel"  # cancel own booking
    LEDGER_READ = "ledger:read"  # view own wallet balances
    DISPUTE = "charges:dispute"  # dispute own post-trip charges

    # Trip operations (host app / trip-end service)
    CHARGES_WRITE = "charges:write"  # record post-trip charges

    # Admin scopes
    ADMIN = "admin:settlements"
    ADMIN_READ = "admin:settlements:read"
    ADMIN_PROCESS = "admin:settlements:process"
    ADMIN_CLEAR = "admin:settlements:clear"


SETTLEMENT_SCOPE_DESCRIPTIONS: dict[str, str] = {
    SettlementScope.CANCEL: "Cancel your own pending or confirmed booking.",
    SettlementScope.LEDGER_READ: "View your credit, bonus and deposit wallet balances.",
    SettlementScope.DISPUTE: "Dispute post-trip charges on your own booking.",
    SettlementScope.CHARGES_WRITE: "Record mileage, fuel, damage and other charges at trip end.",
    SettlementScope.ADMIN: "Full access to every settlement operation (admin).",
    SettlementScope.ADMIN_READ: "Read pending charges, refunds and any guest ledger (admin).",
    SettlementScope.ADMIN_PROCESS: (
        "Run charge batches and retry refunds or ledger adjustments (admin)."
    ),
    SettlementScope.ADMIN_CLEAR: (
        "Clear, waive or adjust pending charges and settle disputes (admin)."
    ),
}
