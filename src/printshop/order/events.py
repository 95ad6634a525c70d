"""Order domain events — immutable facts about order state changes.

All events are past tense, versioned, and carry the order id plus enough data
for downstream consumers (production dispatch, storefront sync, mailers).
"""

from protean.fields import DateTime, Identifier, Integer, String, Text

from printshop.domain import printshop


@printshop.event(part_of="Order")
class OrderCreated:
    """An order was imported from a storefront or entered manually."""

    __version__ = 1

    order_id = Identifier(required=True)
    uid = String(required=True)
    external_id = String(required=True)
    platform = String(required=True)
    store_id = Identifier()
    item_count = Integer(required=True)
    created_at = DateTime(required=True)


@printshop.event(part_of="Order")
class OrderStateChanged:
    """A lifecycle transition (submit, cancel, reopen, fulfill) succeeded."""

    __version__ = 1

    order_id = Identifier(required=True)
    event = String(required=True)
    from_state = String(required=True)
    to_state = String(required=True)
    actor = String()
    occurred_at = DateTime(required=True)


@printshop.event(part_of="Order")
class PaymentCaptured:
    """Payment for the order was captured."""

    __version__ = 1

    order_id = Identifier(required=True)
    paid_at = DateTime(required=True)


@printshop.event(part_of="Order")
class OrderItemMapped:
    """An artwork assignment was added to, replaced on, or removed from an item."""

    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    mapping_id = Identifier(required=True)
    change = String(required=True)
    slot_position = Integer()


@printshop.event(part_of="Order")
class BundleMappingsCopied:
    """Template mappings were snapshotted onto an order item."""

    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    product_variant_id = Identifier(required=True)
    mapping_ids = Text(required=True)  # JSON list of mapping ids
    bundle_slot_count = Integer(required=True)


@printshop.event(part_of="Order")
class OrderItemChanged:
    """An item was added, removed, restored or had its quantity changed."""

    __version__ = 1

    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    change = String(required=True)
    quantity = Integer()


@printshop.event(part_of="Order")
class FulfillmentRecorded:
    """A shipment covering some or all item quantities was recorded."""

    __version__ = 1

    order_id = Identifier(required=True)
    fulfillment_id = Identifier(required=True)
    lines = Text(required=True)  # JSON list of {order_item_id, quantity}
    tracking_number = String()
    fulfilled_at = DateTime(required=True)
