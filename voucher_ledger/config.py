"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings

if TYPE_CHECKING:
    from .tax import TaxPolicy


class LedgerConfig(BaseSettings):
    """Voucher ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///voucher_ledger.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Currency configuration
    local_currency: str = "GHS"
    reporting_currency: str = "USD"

    # Statutory rates (decimal fractions). WHT rates come from the rate table.
    vat_rate: str = "0.15"
    levy_rate: str = "0.01"
    momo_fee_rate: str = "0.01"
    levy_categories: str = "GOODS"  # comma separated procurement types
    vat_base: str = "net_of_wht"  # net_of_wht or levy_inclusive

    # Ledger policy
    overdraft_policy: str = "warn"  # warn or reject
    max_conflict_retries: int = 5

    # Finalization rules
    paid_tolerance: str = "0.01"
    default_cash_flow_category: str = "Other Outflow"
    default_actor: str = "system"

    # Performance configuration
    rate_cache_ttl_seconds: int = 600  # 10 minutes

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "VOUCHER_LEDGER_"
        env_file = ".env"
        case_sensitive = False

    def tax_policy(self) -> 'TaxPolicy':
        """Build the TaxCalculator policy from these settings"""
        from .tax import TaxPolicy, VatBase
        from .currency import Currency

        return TaxPolicy(
            local_currency=Currency.from_code(self.local_currency),
            reporting_currency=Currency.from_code(self.reporting_currency),
            vat_rate=Decimal(self.vat_rate),
            levy_rate=Decimal(self.levy_rate),
            momo_fee_rate=Decimal(self.momo_fee_rate),
            levy_categories=frozenset(
                c.strip().upper() for c in self.levy_categories.split(",") if c.strip()
            ),
            vat_base=VatBase(self.vat_base),
        )


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
