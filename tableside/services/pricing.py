"""
Pricing Engine

Pure functions for customization cost and cart totals. All arithmetic is
done in integer cents; Decimal amounts only appear at the edges
(menu option prices coming in, API and ledger amounts going out).

Example:
    >>> size = RadioOption(id="size", name="Size", options=[
    ...     RadioChoice(id="medium", name="Medium", price=0),
    ...     RadioChoice(id="large", name="Large", price=15)])
    >>> extra = CheckboxOption(id="extra", name="Extra", price=10)
    >>> item_unit_price(10000, [size, extra], {"size": "large", "extra": True})
    12500
    >>> cart_totals([(2, 12500)])
    Totals(subtotal=25000, service_fee=2500, total=27500)
"""

import json
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Sequence, Tuple, Union

from tableside.core.exceptions import UnknownCustomization
from tableside.schemas import CheckboxOption, RadioOption

Option = Union[RadioOption, CheckboxOption]

DEFAULT_SERVICE_FEE_PERCENT = 10

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class Totals:
    """Cart or order totals in cents."""
    subtotal: int
    service_fee: int
    total: int

    def as_amounts(self) -> dict[str, Decimal]:
        return {
            "subtotal": from_cents(self.subtotal),
            "service_fee": from_cents(self.service_fee),
            "total": from_cents(self.total),
        }


# =============================================================================
# CONVERSION
# =============================================================================

def to_cents(amount: Union[Decimal, int, float, str, None]) -> int:
    """Convert a major-unit amount to integer cents, rounding half-up."""
    if amount is None:
        return 0
    value = Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


# =============================================================================
# CUSTOMIZATION COST
# =============================================================================

def option_cost(option: Option, selection: Any) -> int:
    """Price delta in cents contributed by one option for a selection."""
    if isinstance(option, RadioOption):
        if not selection:
            return 0
        for choice in option.choices:
            if choice.id == selection:
                return to_cents(choice.price)
        return 0
    if isinstance(option, CheckboxOption):
        return to_cents(option.price) if selection else 0
    raise TypeError(f"Unsupported customization option: {type(option).__name__}")


def customization_cost(options: Sequence[Option], customizations: Mapping[str, Any]) -> int:
    """Sum of option costs over every declared option; unknown keys are ignored."""
    return sum(option_cost(option, customizations.get(option.id)) for option in options)


def item_unit_price(
    base_price_cents: int,
    options: Sequence[Option],
    customizations: Mapping[str, Any],
) -> int:
    return base_price_cents + customization_cost(options, customizations)


# =============================================================================
# TOTALS
# =============================================================================

def service_fee(subtotal_cents: int, fee_percent: int = DEFAULT_SERVICE_FEE_PERCENT) -> int:
    """Fee on the subtotal, rounded half-up to the cent."""
    fee = Decimal(subtotal_cents) * Decimal(fee_percent) / Decimal(100)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cart_totals(
    lines: Iterable[Tuple[int, int]],
    fee_percent: int = DEFAULT_SERVICE_FEE_PERCENT,
) -> Totals:
    """
    Compute totals from (quantity, unit_price_cents) pairs.

    Args:
        lines: One pair per cart or order line
        fee_percent: Service fee percentage

    Returns:
        Totals in cents
    """
    subtotal = sum(quantity * unit_price for quantity, unit_price in lines)
    fee = service_fee(subtotal, fee_percent)
    return Totals(subtotal=subtotal, service_fee=fee, total=subtotal + fee)


# =============================================================================
# SELECTIONS
# =============================================================================

def validate_customizations(options: Sequence[Option], customizations: Mapping[str, Any]) -> None:
    """
    Check selections against the declared options.

    Raises:
        UnknownCustomization: Unknown option id, a radio choice that is not
            declared, or a checkbox value that is not a boolean
    """
    by_id = {option.id: option for option in options}

    for option_id, selection in customizations.items():
        option = by_id.get(option_id)
        if option is None:
            raise UnknownCustomization(
                f"Unknown customization option '{option_id}'",
                detail={"option_id": option_id},
            )
        if isinstance(option, RadioOption):
            if selection is None or selection == "":
                continue
            if not isinstance(selection, str) or selection not in {c.id for c in option.choices}:
                raise UnknownCustomization(
                    f"'{selection}' is not a valid choice for '{option.name}'",
                    detail={"option_id": option_id, "selection": selection},
                )
        elif isinstance(option, CheckboxOption):
            if not isinstance(selection, bool):
                raise UnknownCustomization(
                    f"'{option.name}' expects true or false",
                    detail={"option_id": option_id, "selection": selection},
                )
        else:
            raise TypeError(f"Unsupported customization option: {type(option).__name__}")


def normalize_customizations(customizations: Mapping[str, Any]) -> dict[str, Any]:
    """Drop unset radios and unchecked checkboxes; they carry no meaning."""
    return {
        key: value
        for key, value in customizations.items()
        if value is not None and value is not False and value != ""
    }


def customization_signature(customizations: Mapping[str, Any]) -> str:
    """Canonical serialization used to tell cart lines apart."""
    return json.dumps(
        normalize_customizations(customizations),
        sort_keys=True,
        separators=(",", ":"),
    )


def describe_customizations(options: Sequence[Option], customizations: Mapping[str, Any]) -> list[str]:
    """Human-readable labels, in menu order."""
    labels = []
    for option in options:
        selection = customizations.get(option.id)
        if isinstance(option, RadioOption):
            choice = next((c for c in option.choices if c.id == selection), None)
            if choice is not None:
                labels.append(f"{option.name}: {choice.name}")
        elif isinstance(option, CheckboxOption):
            if selection:
                labels.append(option.name)
        else:
            raise TypeError(f"Unsupported customization option: {type(option).__name__}")
    return labels


def default_customizations(options: Sequence[Option]) -> dict[str, Any]:
    """First choice of every radio, every checkbox unchecked."""
    defaults: dict[str, Any] = {}
    for option in options:
        if isinstance(option, RadioOption):
            if option.choices:
                defaults[option.id] = option.choices[0].id
        elif isinstance(option, CheckboxOption):
            defaults[option.id] = False
        else:
            raise TypeError(f"Unsupported customization option: {type(option).__name__}")
    return defaults
