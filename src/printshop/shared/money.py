"""Money value object: exact amounts in integer minor units with a currency tag."""

import re

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Integer, String

from printshop.domain import printshop
from printshop.shared.exceptions import InvalidOperation

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


def ensure_minor_units(value, field_name="amount"):
    """Reject anything that is not a plain integer amount of minor units."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError({field_name: [f"Amount must be an integer number of minor units, got {value!r}"]})
    return value


@printshop.value_object
class Money:
    """An amount of money in minor units (cents) in a single currency.

    Arithmetic never converts between currencies: adding or subtracting
    amounts in different currencies raises ``InvalidOperation``.
    """

    amount = Integer(required=True)
    currency = String(required=True, max_length=3)

    @invariant.post
    def currency_must_be_iso_code(self):
        if not self.currency or not _CURRENCY_CODE.match(self.currency):
            raise ValidationError({"currency": [f"Currency must be a 3-letter ISO code, got '{self.currency}'"]})

    @classmethod
    def of(cls, amount, currency):
        return cls(amount=ensure_minor_units(amount), currency=currency)

    @classmethod
    def zero(cls, currency):
        return cls(amount=0, currency=currency)

    def _assert_same_currency(self, other, operation):
        if not isinstance(other, Money):
            raise InvalidOperation({"amount": [f"Cannot {operation} {type(other).__name__} and Money"]})
        if other.currency != self.currency:
            raise InvalidOperation(
                {"currency": [f"Cannot {operation} {other.currency} and {self.currency} amounts"]}
            )

    def add(self, other):
        self._assert_same_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def subtract(self, other):
        self._assert_same_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def negate(self):
        return Money(amount=-self.amount, currency=self.currency)

    def is_non_negative(self):
        return self.amount >= 0

    def is_zero(self):
        return self.amount == 0

    def __str__(self):
        sign = "-" if self.amount < 0 else ""
        major, minor = divmod(abs(self.amount), 100)
        return f"{sign}{major}.{minor:02d} {self.currency}"
