"""
Fee Calculation Module

Computes the fee owed for a transaction from its type and amount. Fees are
informational until the ledger engine applies them to the source account.
"""

from decimal import Decimal
from typing import Dict, Optional, Union

from .config import get_config
from .currency import Currency, quantize, to_decimal


class FeeCalculator:
    """
    Fee schedule:

    - international: min(amount * international rate, international cap)
    - withdrawal: flat withdrawal fee
    - payment: flat payment fee
    - transfer, deposit: free
    """

    def __init__(
        self,
        international_rate: Optional[Union[str, Decimal]] = None,
        international_cap: Optional[Union[str, Decimal]] = None,
        flat_fees: Optional[Dict[str, Union[str, Decimal]]] = None
    ):
        cfg = get_config()
        self.international_rate = to_decimal(
            international_rate if international_rate is not None else cfg.international_fee_rate
        )
        self.international_cap = to_decimal(
            international_cap if international_cap is not None else cfg.international_fee_cap
        )
        if flat_fees is None:
            flat_fees = {
                "transfer": "0",
                "deposit": "0",
                "withdrawal": cfg.withdrawal_fee,
                "payment": cfg.payment_fee,
            }
        self.flat_fees = {name: to_decimal(value) for name, value in flat_fees.items()}

        if self.international_rate < 0 or self.international_cap < 0:
            raise ValueError("International fee parameters must be non-negative")
        if any(value < 0 for value in self.flat_fees.values()):
            raise ValueError("Flat fees must be non-negative")

    def fee(
        self,
        transaction_type: str,
        amount: Decimal,
        is_international: bool = False,
        currency: Currency = Currency.USD
    ) -> Decimal:
        """
        Compute the fee for a transaction.

        Args:
            transaction_type: Transaction type value (transfer, deposit, ...)
            amount: Transaction amount in major units
            is_international: Apply the international percentage schedule
            currency: Currency the fee is charged in (controls rounding)

        Returns:
            Non-negative fee rounded to the currency's minor units
        """
        transaction_type = getattr(transaction_type, "value", transaction_type)
        amount = to_decimal(amount)

        if is_international:
            fee = min(amount * self.international_rate, self.international_cap)
        else:
            fee = self.flat_fees.get(transaction_type, Decimal('0'))

        return max(quantize(fee, currency), Decimal('0'))
