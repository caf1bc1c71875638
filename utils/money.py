#!/usr/bin/env python3
"""
Ledger value types for monetary operations.

Amounts are integer minor units (cents/centavos). Conversions to and from
Decimal major units happen only at gateway boundaries.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union

from utils.exceptions import CurrencyMismatch, InvalidAmount, ValidationError

logger = logging.getLogger(__name__)

MINOR_UNITS_PER_MAJOR = 100
RATE_PRECISION = Decimal("0.01")
HUNDRED = Decimal("100")


def _normalize_currency(currency: str) -> str:
    if not currency or len(currency.strip()) != 3 or not currency.strip().isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")
    return currency.strip().upper()


@dataclass(frozen=True)
class Money:
    """Exact amount in minor units plus a 3-letter currency code"""

    amount: int
    currency: str

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidAmount(f"Money amount must be an integer number of minor units, got {self.amount!r}")
        if self.amount < 0:
            raise InvalidAmount(f"Money amount cannot be negative: {self.amount}")
        object.__setattr__(self, "currency", _normalize_currency(self.currency))

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_major(cls, value: Union[str, int, Decimal], currency: str) -> "Money":
        """Build from a major-unit value such as Decimal('105.50')"""
        try:
            decimal_value = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise InvalidAmount(f"Cannot parse amount {value!r}") from e
        minor = (decimal_value * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(int(minor), currency)

    def to_major(self) -> Decimal:
        return (Decimal(self.amount) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))

    def to_major_string(self) -> str:
        return f"{self.to_major():.2f}"

    def _check_currency(self, other: "Money"):
        if not isinstance(other, Money):
            raise ValidationError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        if other.amount > self.amount:
            raise InvalidAmount(
                f"Subtraction would go negative: {self.amount} - {other.amount} {self.currency}"
            )
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def percentage(self, rate: "CommissionRate") -> "Money":
        """Apply a percentage rate, rounding half-up to the minor unit"""
        raw = Decimal(self.amount) * rate.value / HUNDRED
        return Money(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)), self.currency)

    def __str__(self) -> str:
        return f"{self.to_major_string()} {self.currency}"


@dataclass(frozen=True)
class CommissionRate:
    """Percentage rate (5.00 means 5%) with two decimal places, bounded to [0, 100]"""

    value: Decimal

    def __post_init__(self):
        try:
            quantized = Decimal(str(self.value)).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid commission rate {self.value!r}") from e
        if quantized < 0 or quantized > HUNDRED:
            raise ValidationError(f"Commission rate must be between 0 and 100, got {quantized}")
        object.__setattr__(self, "value", quantized)

    @classmethod
    def of(cls, value: Union[str, int, Decimal, "CommissionRate", None]) -> Optional["CommissionRate"]:
        if value is None:
            return None
        if isinstance(value, CommissionRate):
            return value
        return cls(Decimal(str(value)))

    def __lt__(self, other: "CommissionRate") -> bool:
        return self.value < other.value

    def __le__(self, other: "CommissionRate") -> bool:
        return self.value <= other.value

    def __str__(self) -> str:
        return f"{self.value}%"


# ============================================================================
# Party references from gateway payloads
# ============================================================================

@dataclass(frozen=True)
class PartyId:
    """Bare identifier of a party"""

    id: str


@dataclass(frozen=True)
class EmbeddedParty:
    """Party delivered as an embedded object"""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None


PartyRef = Union[PartyId, EmbeddedParty]


def party_ref_from_payload(value) -> Optional[PartyRef]:
    """Resolve a payer/payee field that may be an id or an embedded object"""
    if value is None:
        return None
    if isinstance(value, (str, int)):
        return PartyId(id=str(value))
    if isinstance(value, dict):
        identifier = value.get("payer_id") or value.get("id")
        if identifier is None:
            raise ValidationError(f"Embedded party without an id: {value!r}")
        name = value.get("name")
        if isinstance(name, dict):
            name = " ".join(
                part for part in (name.get("given_name"), name.get("surname")) if part
            ) or None
        return EmbeddedParty(
            id=str(identifier),
            email=value.get("email_address") or value.get("email"),
            name=name,
        )
    raise ValidationError(f"Unsupported party reference type: {type(value).__name__}")


def party_id(ref: Optional[PartyRef]) -> Optional[str]:
    return ref.id if ref is not None else None


def party_email(ref: Optional[PartyRef]) -> Optional[str]:
    if isinstance(ref, EmbeddedParty):
        return ref.email
    return None
