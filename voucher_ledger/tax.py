"""
Tax Calculation Module

Pure computation of withholding tax (WHT), levy, VAT and the mobile-money
fee for a single payment. Rates for WHT come from the caller (an external
rate table keyed by procurement type); statutory rates come from an
explicit TaxPolicy. Nothing here reads global state.

All intermediate arithmetic is unrounded Decimal. Amounts are rounded to
cents exactly once, when the breakdown is produced.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional
from enum import Enum

from .currency import Currency, convert_amount, round_amount, to_decimal
from .exceptions import ValidationError

HUNDRED = Decimal('100')
ZERO = Decimal('0')


class VatBase(Enum):
    """Which amount VAT is charged on"""
    NET_OF_WHT = "net_of_wht"          # pre-tax + levy - WHT
    LEVY_INCLUSIVE = "levy_inclusive"  # pre-tax + levy


def validate_rate(rate: Any, name: str = "rate") -> Decimal:
    """Rates are decimal fractions between 0 and 1 inclusive"""
    rate = to_decimal(rate, name)
    if rate < 0 or rate > 1:
        raise ValidationError(f"{name} must be between 0 and 1, got {rate}")
    return rate


@dataclass(frozen=True)
class TaxPolicy:
    """Statutory settings applied to every computation"""
    local_currency: Currency = Currency.GHS
    reporting_currency: Currency = Currency.USD
    vat_rate: Decimal = Decimal('0.15')
    levy_rate: Decimal = Decimal('0.01')
    momo_fee_rate: Decimal = Decimal('0.01')
    levy_categories: FrozenSet[str] = frozenset({"GOODS"})
    vat_base: VatBase = VatBase.NET_OF_WHT

    def __post_init__(self):
        for name in ("vat_rate", "levy_rate", "momo_fee_rate"):
            object.__setattr__(self, name, validate_rate(getattr(self, name), name))
        object.__setattr__(
            self, "levy_categories", frozenset(c.strip().upper() for c in self.levy_categories)
        )


@dataclass(frozen=True)
class TaxableTransaction:
    """The tax-relevant view of a staged payment"""
    pre_tax_amount: Decimal
    currency: Currency
    procurement_type: str = ""
    vat_decision: str = "NO"
    payment_mode: str = ""
    is_partial: bool = False
    payment_percentage: Optional[Decimal] = None

    @property
    def is_mobile_money(self) -> bool:
        return "MOMO" in (self.payment_mode or "").upper()

    @property
    def vat_requested(self) -> bool:
        return (self.vat_decision or "").strip().upper() == "YES"


@dataclass(frozen=True)
class TaxComponents:
    """Unrounded amounts; net_payable = pre_tax - wht + levy + vat + fee exactly"""
    pre_tax: Decimal
    wht: Decimal
    levy: Decimal
    vat: Decimal
    fee: Decimal
    net_payable: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    """Rounded computation result plus the unrounded components it came from"""
    pre_tax_amount: Decimal
    wht: Decimal
    vat: Decimal
    levy: Decimal
    fee: Decimal
    net_payable: Decimal
    wht_rate: Decimal
    vat_rate: Decimal
    levy_rate: Decimal
    fee_rate: Decimal
    payment_percentage: Decimal
    currency: Currency
    unrounded: TaxComponents = field(compare=False)

    @property
    def subtotal(self) -> Decimal:
        """Pre-tax less WHT plus levy, as reported in the master log"""
        return self.pre_tax_amount - self.wht + self.levy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pre_tax_amount": str(self.pre_tax_amount),
            "wht": str(self.wht),
            "vat": str(self.vat),
            "levy": str(self.levy),
            "fee": str(self.fee),
            "net_payable": str(self.net_payable),
            "wht_rate": str(self.wht_rate),
            "vat_rate": str(self.vat_rate),
            "levy_rate": str(self.levy_rate),
            "fee_rate": str(self.fee_rate),
            "payment_percentage": str(self.payment_percentage),
            "currency": self.currency.code,
        }


class TaxCalculator:
    """
    Computes WHT, levy, VAT and mobile-money fee for one transaction
    """

    def __init__(self, policy: Optional[TaxPolicy] = None):
        self.policy = policy or TaxPolicy()

    def is_local_currency(self, currency: Currency) -> bool:
        return currency == self.policy.local_currency

    def levy_applies(self, procurement_type: str) -> bool:
        return (procurement_type or "").strip().upper() in self.policy.levy_categories

    def compute_taxes(self, transaction: TaxableTransaction, effective_wht_rate: Any) -> TaxBreakdown:
        """
        Compute the tax breakdown for a transaction

        Args:
            transaction: Amount, currency and tax flags of the payment
            effective_wht_rate: WHT rate for the procurement type, as a fraction

        Returns:
            TaxBreakdown rounded to cents, with the unrounded components attached

        Raises:
            ValidationError: On a negative amount, bad percentage or out-of-range rate
        """
        pre_tax_full = to_decimal(transaction.pre_tax_amount, "pre_tax_amount")
        if pre_tax_full < 0:
            raise ValidationError("Pre-tax amount cannot be negative")
        wht_rate = validate_rate(effective_wht_rate, "effective_wht_rate")

        percentage = HUNDRED
        if transaction.is_partial:
            if transaction.payment_percentage is None:
                raise ValidationError("Partial payments require a payment percentage")
            percentage = to_decimal(transaction.payment_percentage, "payment_percentage")
            if percentage <= 0 or percentage > HUNDRED:
                raise ValidationError(
                    f"Payment percentage must be greater than 0 and at most 100, got {percentage}"
                )

        # Prorate first so every component is computed on the tranche
        pre_tax = pre_tax_full * percentage / HUNDRED

        applied_wht_rate = wht_rate if self.is_local_currency(transaction.currency) else ZERO
        wht = pre_tax * applied_wht_rate

        levy_rate = self.policy.levy_rate if self.levy_applies(transaction.procurement_type) else ZERO
        levy = pre_tax * levy_rate

        vat_rate = self.policy.vat_rate if transaction.vat_requested else ZERO
        if self.policy.vat_base == VatBase.NET_OF_WHT:
            vat_base = pre_tax + levy - wht
        else:
            vat_base = pre_tax + levy
        vat = vat_base * vat_rate

        fee_rate = self.policy.momo_fee_rate if transaction.is_mobile_money else ZERO
        fee = (pre_tax - wht + levy + vat) * fee_rate

        net_payable = pre_tax - wht + levy + vat + fee

        components = TaxComponents(
            pre_tax=pre_tax, wht=wht, levy=levy, vat=vat, fee=fee, net_payable=net_payable
        )
        return TaxBreakdown(
            pre_tax_amount=round_amount(pre_tax),
            wht=round_amount(wht),
            vat=round_amount(vat),
            levy=round_amount(levy),
            fee=round_amount(fee),
            net_payable=round_amount(net_payable),
            wht_rate=applied_wht_rate,
            vat_rate=vat_rate,
            levy_rate=levy_rate,
            fee_rate=fee_rate,
            payment_percentage=percentage,
            currency=transaction.currency,
            unrounded=components,
        )

    def budget_impact(self, amount: Decimal, currency: Currency, target: Currency,
                      fx_rate: Decimal) -> Decimal:
        """Convert a payment amount into an account's currency, rounded to cents"""
        try:
            converted = convert_amount(
                amount, currency, target, fx_rate, self.policy.reporting_currency
            )
        except ValueError as exc:
            raise ValidationError(str(exc))
        return round_amount(converted)
