"""Order activity log — the append-only audit trail of an order.

Activities are children of the Order aggregate, so an entry is persisted in
the same write as the change it records. Entries are only ever appended.
"""

import json
from enum import Enum

from protean.fields import DateTime, Integer, String, Text

from printshop.domain import printshop


class ActivityType(Enum):
    # Lifecycle
    ORDER_CREATED = "order_created"
    ORDER_IMPORTED = "order_imported"
    ORDER_IN_PRODUCTION = "order_in_production"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_REOPENED = "order_reopened"
    ORDER_FULFILLED = "order_fulfilled"
    ORDER_DRAFT = "order_draft"
    PAYMENT_CAPTURED = "payment_captured"

    # Items and mappings
    ITEM_ADDED = "item_added"
    CUSTOM_ITEM_ADDED = "custom_item_added"
    ITEM_REMOVED = "item_removed"
    ITEM_RESTORED = "item_restored"
    ITEM_QUANTITY_UPDATED = "item_quantity_updated"
    ITEM_VARIANT_MAPPING_ADDED = "item_variant_mapping_added"
    ITEM_VARIANT_MAPPING_UPDATED = "item_variant_mapping_updated"
    ITEM_VARIANT_MAPPING_REPLACED = "item_variant_mapping_replaced"
    ITEM_VARIANT_MAPPING_REMOVED = "item_variant_mapping_removed"
    BUNDLE_MAPPINGS_COPIED = "bundle_mappings_copied"

    # Shipping
    FULFILLMENT_CREATED = "fulfillment_created"
    ITEM_FULFILLED = "item_fulfilled"

    # Manual
    NOTE_ADDED = "note_added"


@printshop.entity(part_of="Order")
class OrderActivity:
    """One entry in an order's audit trail."""

    activity_type = String(required=True, max_length=50, choices=ActivityType)
    title = String(required=True, max_length=255, sanitize=False)
    description = Text(sanitize=False)
    event = String(max_length=50)
    from_state = String(max_length=50)
    to_state = String(max_length=50)
    details = Text(sanitize=False)  # JSON object
    actor = String(max_length=255)
    occurred_at = DateTime(required=True)
    sequence = Integer(required=True, min_value=1)

    @property
    def details_dict(self):
        return json.loads(self.details) if self.details else {}

    @property
    def is_system_event(self):
        return not self.actor


def humanize(state):
    return state.replace("_", " ").lower()


def state_change_entry(event, from_state, to_state):
    """Activity type, title and description for a lifecycle transition."""
    if event == "reopen":
        activity_type = ActivityType.ORDER_REOPENED
        title = "Order reopened"
    else:
        activity_type = ActivityType(f"order_{to_state}")
        title = f"Order {humanize(to_state)}"
    description = f"Order state changed from {humanize(from_state)} to {humanize(to_state)}"
    return activity_type, title, description


def fulfillment_description(item_count, tracking_company=None, tracking_number=None):
    parts = [f"{item_count} {'item' if item_count == 1 else 'items'} fulfilled"]
    if tracking_company:
        parts.append(f"via {tracking_company}")
    if tracking_number:
        parts.append(f"({tracking_number})")
    return " ".join(parts)
