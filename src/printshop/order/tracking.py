"""Shipment progress of an order and its items."""

from enum import Enum

from protean.fields import Integer, String

from printshop.domain import printshop
from printshop.order.order import OrderState


class ShipmentState(Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"


@printshop.value_object
class FulfillmentSnapshot:
    fulfilled = Integer(required=True, min_value=0)
    unfulfilled = Integer(required=True, min_value=0)
    state = String(required=True, choices=ShipmentState)

    @classmethod
    def of(cls, fulfilled, quantity):
        if fulfilled >= quantity and quantity > 0:
            state = ShipmentState.FULFILLED
        elif fulfilled > 0:
            state = ShipmentState.PARTIALLY_FULFILLED
        else:
            state = ShipmentState.UNFULFILLED
        return cls(fulfilled=fulfilled, unfulfilled=max(quantity - fulfilled, 0), state=state.value)


class FulfillmentTracker:
    """Fulfilled and outstanding quantities computed from recorded shipments.

    ``eligibility`` decides which items count; items it reports as not
    fulfillable (and removed items) never hold an order back.
    """

    def __init__(self, order, eligibility):
        self.order = order
        self.eligibility = eligibility

    def fulfilled_quantity(self, item):
        return self.order.fulfilled_quantity(item.id)

    def unfulfilled_quantity(self, item):
        return item.quantity - self.fulfilled_quantity(item)

    def item_fully_fulfilled(self, item):
        return self.fulfilled_quantity(item) >= item.quantity

    def item_partially_fulfilled(self, item):
        return 0 < self.fulfilled_quantity(item) < item.quantity

    def tracked_items(self):
        return self.eligibility.fulfillable_items()

    def fully_fulfilled(self):
        return all(self.item_fully_fulfilled(i) for i in self.tracked_items())

    def display_state(self):
        if (
            self.order.state == OrderState.IN_PRODUCTION.value
            and self.order.has_fulfillments
            and not self.fully_fulfilled()
        ):
            return ShipmentState.PARTIALLY_FULFILLED.value
        return self.order.state

    def item_snapshot(self, item):
        return FulfillmentSnapshot.of(self.fulfilled_quantity(item), item.quantity)

    def snapshot(self):
        items = self.tracked_items()
        fulfilled = sum(min(self.fulfilled_quantity(i), i.quantity) for i in items)
        quantity = sum(i.quantity for i in items)
        return FulfillmentSnapshot.of(fulfilled, quantity)
