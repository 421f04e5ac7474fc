from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from tableside.core.exceptions import UnknownCustomization
from tableside.schemas import CheckboxOption, RadioChoice, RadioOption, parse_customization_options
from tableside.services import pricing

from .conftest import PIZZA_OPTIONS


@pytest.fixture()
def options():
    return parse_customization_options(PIZZA_OPTIONS)


def test_parse_options_uses_type_tag(options):
    size, extra = options
    assert isinstance(size, RadioOption)
    assert [c.id for c in size.choices] == ["medium", "large"]
    assert isinstance(extra, CheckboxOption)
    assert extra.price == Decimal("10")


def test_large_pizza_with_extra(options):
    unit = pricing.item_unit_price(10000, options, {"size": "large", "extra": True})
    assert unit == 12500

    totals = pricing.cart_totals([(2, unit)])
    assert totals == pricing.Totals(subtotal=25000, service_fee=2500, total=27500)
    assert totals.as_amounts() == {
        "subtotal": Decimal("250.00"),
        "service_fee": Decimal("25.00"),
        "total": Decimal("275.00"),
    }


def test_option_cost_radio():
    size = RadioOption(
        id="size",
        name="Size",
        options=[RadioChoice(id="s", name="Small", price=0), RadioChoice(id="l", name="Large", price="2.25")],
    )
    assert pricing.option_cost(size, "l") == 225
    assert pricing.option_cost(size, "s") == 0
    assert pricing.option_cost(size, None) == 0
    assert pricing.option_cost(size, "xl") == 0


def test_option_cost_checkbox():
    extra = CheckboxOption(id="extra", name="Extra", price="0.75")
    assert pricing.option_cost(extra, True) == 75
    assert pricing.option_cost(extra, False) == 0
    assert pricing.option_cost(extra, None) == 0


def test_option_cost_rejects_unknown_option_type():
    with pytest.raises(TypeError):
        pricing.option_cost(object(), True)


@pytest.mark.parametrize(
    "raw",
    [
        [{"type": "checkbox", "id": "no_cheese", "name": "No cheese", "price": "-5"}],
        [
            {
                "type": "radio",
                "id": "size",
                "name": "Size",
                "options": [{"id": "small", "name": "Small", "price": "-2.50"}],
            }
        ],
    ],
)
def test_negative_option_price_rejected(raw):
    with pytest.raises(PydanticValidationError):
        parse_customization_options(raw)


@pytest.mark.parametrize("size", [None, "medium", "large"])
@pytest.mark.parametrize("extra", [None, False, True])
def test_unit_price_never_below_base(options, size, extra):
    selections = {"size": size, "extra": extra}
    unit = pricing.item_unit_price(10000, options, selections)
    assert unit >= 10000
    assert pricing.item_unit_price(10000, options, selections) == unit


def test_customization_cost_ignores_unknown_keys(options):
    assert pricing.customization_cost(options, {"extra": True, "nope": "x"}) == 1000


def test_service_fee_rounds_half_up():
    assert pricing.service_fee(1005) == 101
    assert pricing.service_fee(1004) == 100
    assert pricing.service_fee(999, fee_percent=0) == 0


def test_empty_cart_totals():
    assert pricing.cart_totals([]) == pricing.Totals(0, 0, 0)


def test_money_conversion():
    assert pricing.to_cents("12.345") == 1235
    assert pricing.to_cents(Decimal("0.10")) == 10
    assert pricing.to_cents(None) == 0
    assert pricing.from_cents(12345) == Decimal("123.45")


class TestSelections:

    def test_validate_accepts_declared_values(self, options):
        pricing.validate_customizations(options, {"size": "large", "extra": False})
        pricing.validate_customizations(options, {"size": None})
        pricing.validate_customizations(options, {})

    @pytest.mark.parametrize(
        "selections",
        [
            {"crust": "thin"},
            {"size": "huge"},
            {"extra": "yes"},
            {"size": True},
        ],
    )
    def test_validate_rejects(self, options, selections):
        with pytest.raises(UnknownCustomization):
            pricing.validate_customizations(options, selections)

    def test_signature_ignores_key_order_and_unset_values(self):
        a = pricing.customization_signature({"size": "large", "extra": True})
        b = pricing.customization_signature({"extra": True, "size": "large", "sauce": None})
        c = pricing.customization_signature({"size": "large", "extra": False})
        assert a == b
        assert a != c
        assert c == pricing.customization_signature({"size": "large"})

    def test_describe_in_menu_order(self, options):
        labels = pricing.describe_customizations(options, {"extra": True, "size": "large"})
        assert labels == ["Size: Large", "Extra cheese"]

    def test_defaults(self, options):
        assert pricing.default_customizations(options) == {"size": "medium", "extra": False}
