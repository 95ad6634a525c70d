"""Shared BDD fixtures and step definitions for printshop orders."""

import pytest
from printshop.catalogue.variant import ProductVariant
from printshop.customers.customer import register_customer
from printshop.imaging.crop import CropRegion
from printshop.order.intake import import_order
from printshop.order.order import Order
from printshop.order.workflow import OrderWorkflow
from printshop.shared.artwork import MappingSpec
from printshop.shared.exceptions import GuardFailed, InvalidTransition
from protean import current_domain
from protean.exceptions import ValidationError
from pytest_bdd import given, parsers, then, when


@pytest.fixture()
def workflow():
    return OrderWorkflow()


@pytest.fixture()
def error():
    """Container for the exception raised by the last When step."""
    return {"exc": None}


def _attempt(error, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except ValidationError as exc:
        error["exc"] = exc
        return None


def _load(order_id):
    return current_domain.repository_for(Order).get(order_id)


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse('a storefront variant "{external_id}" with a default template'))
def _(external_id):
    variant = ProductVariant.register(title="Framed print", store_id="store-1", external_variant_id=external_id)
    variant.add_template_mapping(MappingSpec(image_id="img-1", crop=CropRegion(x=0, y=0, width=3000, height=2000)))
    current_domain.repository_for(ProductVariant).add(variant)


@given(parsers.cfparse('user "{user_id}" has a customer in "{country_code}"'))
def _(user_id, country_code):
    register_customer(user_id, country_code)


@given(
    parsers.re(
        r'a shopify order for user "(?P<user_id>[^"]+)" in "(?P<country_code>[A-Z]{2})" '
        r'with (?P<quantity>\d+) units? of "(?P<external_id>[^"]+)"'
    ),
    target_fixture="order_id",
)
def _(user_id, country_code, quantity, external_id):
    return import_order(
        external_id="1001",
        store_id="store-1",
        platform="shopify",
        user_id=user_id,
        currency="USD",
        country_code=country_code,
        items=[{"title": "Framed print", "quantity": int(quantity), "external_variant_id": external_id}],
    )


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@given("the order is submitted")
@when("the order is submitted")
def _(workflow, order_id, error):
    _attempt(error, workflow.submit, order_id)


@when("the order is cancelled")
def _(workflow, order_id, error):
    _attempt(error, workflow.cancel, order_id)


@when("the order is reopened")
def _(workflow, order_id, error):
    _attempt(error, workflow.reopen, order_id)


@when(parsers.re(r"(?P<quantity>\d+) units? (?:is|are) shipped"))
def _(workflow, order_id, error, quantity):
    item_id = str(_load(order_id).items[0].id)
    _attempt(error, workflow.record_fulfillment, order_id, [{"order_item_id": item_id, "quantity": int(quantity)}])


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order is "{state}"'))
def _(order_id, state):
    assert _load(order_id).state == state


@then(parsers.cfparse('the order displays as "{state}"'))
def _(workflow, order_id, state):
    assert workflow.display_state(order_id) == state


@then(parsers.cfparse('the last activity is "{activity_type}"'))
def _(order_id, activity_type):
    assert _load(order_id).activity_log[-1].activity_type == activity_type


@then(parsers.cfparse('the transition fails on guard "{guard}"'))
def _(error, guard):
    assert isinstance(error["exc"], GuardFailed)
    assert error["exc"].guard == guard


@then("the transition is refused")
def _(error):
    assert isinstance(error["exc"], InvalidTransition)


@then("the shipment is rejected")
def _(error):
    assert error["exc"] is not None


@then(parsers.cfparse("the item shows {fulfilled:d} fulfilled and {unfulfilled:d} unfulfilled"))
def _(workflow, order_id, fulfilled, unfulfilled):
    item_id = _load(order_id).items[0].id
    snapshot = workflow.fulfillment_snapshot(order_id, item_id)
    assert (snapshot.fulfilled, snapshot.unfulfilled) == (fulfilled, unfulfilled)
