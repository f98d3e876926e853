"""
Multi-Currency Support Module

Handles ISO 4217 currency codes, exchange rates, and proper Decimal precision
for financial calculations. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from enum import Enum
import threading

from .errors import ValidationError, ConversionUnavailableError
from .logging_config import get_logger, log_action

# Set global decimal context for financial precision
getcontext().prec = 28

logger = get_logger("banking_ledger.currency")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    CAD = ("CAD", 2)  # Canadian Dollar
    CHF = ("CHF", 2)  # Swiss Franc
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit
    PHP = ("PHP", 2)  # Philippine Peso
    INR = ("INR", 2)  # Indian Rupee

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: Union[str, 'Currency']) -> 'Currency':
        """Resolve a 3-letter code, raising ValidationError if unsupported"""
        if isinstance(code, Currency):
            return code
        if not isinstance(code, str) or len(code.strip()) != 3:
            raise ValidationError(f"Currency must be a 3-letter code, got {code!r}")
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency {code!r}")


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert a value to Decimal without passing through float.

    Raises:
        ValidationError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Monetary values must not be floats: {value!r}")
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Cannot convert {value!r} to Decimal")
    if not result.is_finite():
        raise ValidationError(f"Monetary values must be finite: {value!r}")
    return result


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """
    Round a Decimal to the currency's minor units.

    Raises:
        ValidationError: If the result needs more digits than the context holds
    """
    try:
        return value.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount {value} is too large for {currency.code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        object.__setattr__(self, 'amount', quantize(self.amount, self.currency))

    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount <= other.amount

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


@dataclass(frozen=True)
class RateQuote:
    """
    Exchange rate resolved for a currency pair.

    is_fallback is True when no rate was configured and the documented
    same-value fallback (rate 1) was substituted.
    """
    source: Currency
    target: Currency
    rate: Decimal
    is_fallback: bool = False
    quoted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


FALLBACK_POLICY = "fallback"
FAIL_CLOSED_POLICY = "fail_closed"

# Rates the platform ships with. Directions are configured independently.
DEFAULT_RATES: Dict[Tuple[str, str], str] = {
    ("USD", "EUR"): "0.85",
    ("USD", "GBP"): "0.73",
    ("USD", "CAD"): "1.32",
    ("USD", "PHP"): "56.80",
    ("USD", "INR"): "83.15",
    ("EUR", "USD"): "1.18",
    ("GBP", "USD"): "1.37",
    ("CAD", "USD"): "0.76",
}


class CurrencyConverter:
    """
    Resolves exchange rates between currency pairs.

    Unknown pairs fall back to rate 1 under the "fallback" policy. This
    silently changes settlement economics, so every fallback is flagged on
    the returned quote and logged; deployments that cannot accept it should
    run with the "fail_closed" policy, which raises ConversionUnavailableError.
    """

    def __init__(self, rates: Optional[Dict[Tuple[str, str], Union[str, Decimal]]] = None,
                 policy: str = FALLBACK_POLICY):
        if policy not in (FALLBACK_POLICY, FAIL_CLOSED_POLICY):
            raise ValueError(f"Unknown conversion policy {policy!r}")
        self.policy = policy
        self._rates: Dict[Tuple[Currency, Currency], Decimal] = {}
        self._lock = threading.RLock()
        for (source, target), rate in (DEFAULT_RATES if rates is None else rates).items():
            self.set_rate(source, target, rate)

    def set_rate(self, source: Union[str, Currency], target: Union[str, Currency],
                 rate: Union[str, Decimal], include_reverse: bool = False) -> None:
        """Set exchange rate for currency pair"""
        source = Currency.from_code(source)
        target = Currency.from_code(target)
        rate = to_decimal(rate)
        if rate <= Decimal('0'):
            raise ValidationError(f"Exchange rate must be positive, got {rate}")

        with self._lock:
            self._rates[(source, target)] = rate
            if include_reverse:
                self._rates[(target, source)] = Decimal('1') / rate

    def has_rate(self, source: Currency, target: Currency) -> bool:
        with self._lock:
            return source == target or (source, target) in self._rates

    def quote(self, source: Union[str, Currency], target: Union[str, Currency]) -> RateQuote:
        """
        Resolve the rate for a currency pair.

        Raises:
            ConversionUnavailableError: If the pair is unknown and the
                policy is fail_closed
        """
        source = Currency.from_code(source)
        target = Currency.from_code(target)

        if source == target:
            return RateQuote(source=source, target=target, rate=Decimal('1'))

        with self._lock:
            rate = self._rates.get((source, target))

        if rate is not None:
            return RateQuote(source=source, target=target, rate=rate)

        if self.policy == FAIL_CLOSED_POLICY:
            raise ConversionUnavailableError(
                f"No exchange rate available for {source.code} -> {target.code}",
                {"source": source.code, "target": target.code}
            )

        log_action(
            logger, "warning",
            f"No exchange rate for {source.code} -> {target.code}, using fallback rate 1",
            action="conversion_fallback",
            extra={"source": source.code, "target": target.code}
        )
        return RateQuote(source=source, target=target, rate=Decimal('1'), is_fallback=True)

    def rate(self, source: Union[str, Currency], target: Union[str, Currency]) -> Decimal:
        """Get the rate for a currency pair (see quote for fallback rules)"""
        return self.quote(source, target).rate

    def convert(self, money: Money, target: Union[str, Currency]) -> Money:
        """Convert money into another currency"""
        quote = self.quote(money.currency, target)
        return Money(money.amount * quote.rate, quote.target)
