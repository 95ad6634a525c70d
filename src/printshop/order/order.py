"""Order aggregate — the core of the printshop domain.

An Order owns its line items, the artwork assignments (order mappings) placed
on those items, the shipments recorded against them and its own activity log.
Keeping all of these in one aggregate makes every guarded transition, and the
audit entry it writes, a single atomic save.

State Machine:
    DRAFT → IN_PRODUCTION → FULFILLED
    DRAFT → CANCELLED → DRAFT (reopen)

Guards are evaluated by collaborators that need data outside the aggregate
(storefront variants, customer identities); the aggregate only asks them.
"""

import json
from collections import defaultdict
from datetime import UTC, datetime
from enum import Enum

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    HasMany,
    Identifier,
    Integer,
    String,
    ValueObject,
)

from printshop.domain import logger, printshop
from printshop.order.activity import (
    ActivityType,
    OrderActivity,
    fulfillment_description,
    state_change_entry,
)
from printshop.order.events import (
    BundleMappingsCopied,
    FulfillmentRecorded,
    OrderCreated,
    OrderItemChanged,
    OrderItemMapped,
    OrderStateChanged,
    PaymentCaptured,
)
from printshop.shared.artwork import MappingSpec
from printshop.shared.countries import normalize_country_code
from printshop.shared.exceptions import GuardFailed, InvalidTransition, InvariantViolation
from printshop.shared.money import Money, ensure_minor_units

MAX_SLOTS = 10


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderState(Enum):
    DRAFT = "draft"
    IN_PRODUCTION = "in_production"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class OrderEvent(Enum):
    SUBMIT = "submit"
    CANCEL = "cancel"
    REOPEN = "reopen"
    FULFILL = "fulfill"


class Guard(Enum):
    ALL_ITEMS_HAVE_VARIANT_MAPPINGS = "all_items_have_variant_mappings"
    HAS_ELIGIBLE_CUSTOMER_FOR_COUNTRY = "has_eligible_customer_for_country"
    FULLY_FULFILLED = "fully_fulfilled"


class Platform(Enum):
    SHOPIFY = "shopify"
    SQUARESPACE = "squarespace"
    WIX = "wix"
    MANUAL = "manual"


class ItemStatus(Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"


class FulfillmentStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"
    FAILURE = "failure"


# Transition table: event -> (allowed source states, target state)
_TRANSITIONS = {
    OrderEvent.SUBMIT: ({OrderState.DRAFT}, OrderState.IN_PRODUCTION),
    OrderEvent.CANCEL: ({OrderState.DRAFT}, OrderState.CANCELLED),
    OrderEvent.REOPEN: ({OrderState.CANCELLED}, OrderState.DRAFT),
    OrderEvent.FULFILL: ({OrderState.IN_PRODUCTION}, OrderState.FULFILLED),
}

# States in which items and mappings may be edited
_EDITABLE_STATES = {OrderState.DRAFT}

# States in which shipments may be recorded
_SHIPPABLE_STATES = {OrderState.DRAFT, OrderState.IN_PRODUCTION}

_TOTAL_FIELDS = ("subtotal", "discounts", "shipping", "tax", "total")
_ITEM_MONEY_FIELDS = ("price", "total", "discount", "tax", "production_cost")


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@printshop.value_object(part_of="Order")
class ShippingAddress:
    """Where the order ships to, as captured from the storefront."""

    name = String(max_length=255)
    first_name = String(max_length=100)
    last_name = String(max_length=100)
    company = String(max_length=255)
    address1 = String(max_length=255)
    address2 = String(max_length=255)
    city = String(max_length=100)
    province = String(max_length=100)
    zip = String(max_length=20)
    country = String(max_length=100)
    country_code = String(max_length=2)
    phone = String(max_length=50)

    @property
    def full_name(self):
        return self.name or " ".join(p for p in (self.first_name, self.last_name) if p)


@printshop.value_object(part_of="Order")
class OrderTotals:
    """Monetary summary of an order in integer minor units of one currency."""

    subtotal = Integer(default=0, min_value=0)
    discounts = Integer(default=0, min_value=0)
    shipping = Integer(default=0, min_value=0)
    tax = Integer(default=0, min_value=0)
    total = Integer(default=0, min_value=0)
    currency = String(required=True, max_length=3)

    def money(self, field_name):
        return Money(amount=getattr(self, field_name), currency=self.currency)


def build_totals(data, currency):
    """Validate and build an ``OrderTotals`` from a dict of minor-unit amounts."""
    data = dict(data or {})
    currency = data.pop("currency", None) or currency
    unknown = set(data) - set(_TOTAL_FIELDS)
    if unknown:
        raise ValidationError({"totals": [f"Unknown total fields: {', '.join(sorted(unknown))}"]})
    amounts = {name: ensure_minor_units(data.get(name, 0), name) for name in _TOTAL_FIELDS}
    negative = [name for name, amount in amounts.items() if amount < 0]
    if negative:
        raise ValidationError({name: ["Amount cannot be negative"] for name in negative})
    # Same currency rules as Money
    Money(amount=0, currency=currency)
    return OrderTotals(currency=currency, **amounts)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@printshop.entity(part_of="Order")
class OrderItem:
    """A line of the order, optionally backed by a storefront variant.

    Custom items are added by hand, are always fulfillable and carry no
    money. ``bundle_slot_count`` is how many mappings the item needs.
    """

    product_variant_id = Identifier()
    external_line_id = String(max_length=255)
    title = String(required=True, max_length=255, sanitize=False)
    variant_title = String(max_length=255, sanitize=False)
    sku = String(max_length=100)
    quantity = Integer(required=True, min_value=1)
    price = Integer(default=0, min_value=0)
    total = Integer(default=0, min_value=0)
    discount = Integer(default=0, min_value=0)
    tax = Integer(default=0, min_value=0)
    production_cost = Integer(default=0, min_value=0)
    is_custom = Boolean(default=False)
    bundle_slot_count = Integer(default=1, min_value=1, max_value=MAX_SLOTS)
    status = String(choices=ItemStatus, default=ItemStatus.ACTIVE.value)
    deleted_at = DateTime()

    @property
    def is_active(self):
        return self.status == ItemStatus.ACTIVE.value

    @property
    def display_name(self):
        return f"{self.title} - {self.variant_title}" if self.variant_title else self.title


@printshop.entity(part_of="Order")
class OrderMapping:
    """A snapshot artwork assignment on one order item.

    ``slot_position`` is None for a single hand-assigned mapping and 1..N for
    mappings copied from (or placed into) a bundle slot.
    """

    order_item_id = Identifier(required=True)
    spec = ValueObject(MappingSpec, required=True)
    slot_position = Integer(min_value=1, max_value=MAX_SLOTS)
    country_code = String(max_length=2)
    source_template_id = Identifier()
    created_at = DateTime()


@printshop.entity(part_of="Order")
class Fulfillment:
    """A shipment of some or all of the order's items."""

    external_id = String(max_length=255)
    status = String(
        max_length=20,
        choices=FulfillmentStatus,
        default=FulfillmentStatus.SUCCESS.value,
    )
    tracking_company = String(max_length=255)
    tracking_number = String(max_length=255)
    tracking_url = String(max_length=1000)
    location_name = String(max_length=255)
    fulfilled_at = DateTime()


@printshop.entity(part_of="Order")
class FulfillmentLineItem:
    """How many units of one order item a fulfillment shipped."""

    fulfillment_id = Identifier(required=True)
    order_item_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@printshop.aggregate
class Order:
    external_id = String(required=True, max_length=255)
    uid = String(required=True, max_length=8)
    name = String(max_length=100)
    store_id = Identifier()
    platform = String(choices=Platform, default=Platform.MANUAL.value)
    user_id = Identifier()
    currency = String(required=True, max_length=3)
    country_code = String(max_length=2)
    totals = ValueObject(OrderTotals)
    production_totals = ValueObject(OrderTotals)
    state = String(choices=OrderState, default=OrderState.DRAFT.value)
    paid_at = DateTime()
    revision = Integer(default=0)
    items = HasMany(OrderItem)
    mappings = HasMany(OrderMapping)
    fulfillments = HasMany(Fulfillment)
    fulfillment_line_items = HasMany(FulfillmentLineItem)
    activities = HasMany(OrderActivity)
    shipping_address = ValueObject(ShippingAddress)
    created_at = DateTime()
    updated_at = DateTime()
    in_production_at = DateTime()
    cancelled_at = DateTime()
    fulfilled_at = DateTime()

    @invariant.post
    def shipments_cannot_exceed_item_quantity(self):
        for item in self.items or []:
            if self.fulfilled_quantity(item.id) > item.quantity:
                raise ValidationError(
                    {"fulfillment_line_items": [f"Item {item.id} is fulfilled beyond its quantity of {item.quantity}"]}
                )

    @invariant.post
    def mappings_must_match_order_country(self):
        if not self.country_code:
            return
        items = {str(i.id): i for i in (self.items or [])}
        for mapping in self.mappings or []:
            item = items.get(str(mapping.order_item_id))
            if item is None or item.is_custom or not mapping.country_code:
                continue
            if mapping.country_code != self.country_code:
                raise ValidationError(
                    {
                        "country_code": [
                            f"Mapping for {mapping.country_code} cannot be used on a {self.country_code} order"
                        ]
                    }
                )

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        external_id,
        uid,
        currency,
        items_data=(),
        store_id=None,
        platform=Platform.MANUAL.value,
        user_id=None,
        country_code=None,
        totals=None,
        production_totals=None,
        shipping_address=None,
        name=None,
        actor=None,
    ):
        """Create a draft order.

        Args:
            items_data: list of dicts with title, quantity and optionally
                product_variant_id, variant_title, sku, external_line_id,
                is_custom and minor-unit money fields (price, total,
                discount, tax, production_cost).
            totals: dict of minor-unit subtotal, discounts, shipping, tax,
                total in the order currency.
            production_totals: same shape; may carry its own ``currency``.
        """
        now = datetime.now(UTC)
        if platform not in {p.value for p in Platform}:
            raise ValidationError({"platform": [f"Unknown platform {platform!r}"]})

        order = cls(
            external_id=str(external_id),
            uid=uid,
            name=name,
            store_id=store_id,
            platform=platform,
            user_id=user_id,
            currency=currency,
            country_code=normalize_country_code(country_code),
            totals=build_totals(totals, currency),
            production_totals=build_totals(production_totals, currency) if production_totals else None,
            shipping_address=(
                ShippingAddress(**shipping_address) if isinstance(shipping_address, dict) else shipping_address
            ),
            state=OrderState.DRAFT.value,
            created_at=now,
            updated_at=now,
        )
        for item_data in items_data:
            order.add_items(_build_item(item_data))

        imported = platform != Platform.MANUAL.value
        order._log_activity(
            ActivityType.ORDER_IMPORTED if imported else ActivityType.ORDER_CREATED,
            "Order imported" if imported else "Order created",
            description=f"Order imported from {platform.capitalize()}" if imported else "Order entered manually",
            details={"external_id": str(external_id), "platform": platform},
            actor=actor,
            occurred_at=now,
        )
        order.raise_(
            OrderCreated(
                order_id=str(order.id),
                uid=uid,
                external_id=str(external_id),
                platform=platform,
                store_id=store_id,
                item_count=len(order.items),
                created_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def display_name(self):
        return self.name or f"#{self.external_id}"

    @property
    def active_items(self):
        return [i for i in (self.items or []) if i.is_active]

    @property
    def payment_captured(self):
        return self.paid_at is not None

    @property
    def has_fulfillments(self):
        return bool(self.fulfillments)

    @property
    def activity_log(self):
        return sorted(self.activities or [], key=lambda a: a.sequence)

    def can_fire(self, event):
        sources, _ = _TRANSITIONS[OrderEvent(event)]
        return OrderState(self.state) in sources

    def find_item(self, item_id):
        item = next((i for i in (self.items or []) if str(i.id) == str(item_id)), None)
        if item is None:
            raise ValidationError({"item_id": [f"Item {item_id} not found"]})
        return item

    def find_mapping(self, mapping_id):
        mapping = next((m for m in (self.mappings or []) if str(m.id) == str(mapping_id)), None)
        if mapping is None:
            raise ValidationError({"mapping_id": [f"Mapping {mapping_id} not found"]})
        return mapping

    def mappings_for(self, item_id):
        mappings = [m for m in (self.mappings or []) if str(m.order_item_id) == str(item_id)]
        return sorted(mappings, key=lambda m: (m.slot_position is not None, m.slot_position or 0))

    def fulfilled_quantity(self, item_id):
        return sum(
            line.quantity for line in (self.fulfillment_line_items or []) if str(line.order_item_id) == str(item_id)
        )

    def lines_for(self, fulfillment_id):
        return [line for line in (self.fulfillment_line_items or []) if str(line.fulfillment_id) == str(fulfillment_id)]

    def item_count_for(self, fulfillment_id):
        return sum(line.quantity for line in self.lines_for(fulfillment_id))

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------
    def _assert_can_fire(self, event):
        if not self.can_fire(event):
            raise InvalidTransition(event.value, self.state)

    def _transition(self, event, guards=(), actor=None):
        """Fire ``event`` if allowed and every guard holds.

        ``guards`` is a sequence of (Guard, callable) pairs evaluated in order;
        the first one returning False aborts the transition before anything
        is changed.
        """
        self._assert_can_fire(event)
        for guard, check in guards:
            if not check():
                logger.info(
                    "Order transition refused",
                    order_id=str(self.id),
                    transition=event.value,
                    guard=guard.value,
                )
                raise GuardFailed(guard.value, event.value, _GUARD_MESSAGES[guard])

        from_state = self.state
        to_state = _TRANSITIONS[event][1]
        now = datetime.now(UTC)
        activity_type, title, description = state_change_entry(event.value, from_state, to_state.value)

        with atomic_change(self):
            self.state = to_state.value
            self.updated_at = now
            if to_state == OrderState.IN_PRODUCTION:
                self.in_production_at = now
            elif to_state == OrderState.CANCELLED:
                self.cancelled_at = now
            elif to_state == OrderState.FULFILLED:
                self.fulfilled_at = now
            elif to_state == OrderState.DRAFT:
                self.cancelled_at = None

            self._log_activity(
                activity_type,
                title,
                description=description,
                event=event.value,
                from_state=from_state,
                to_state=to_state.value,
                details={"from_state": from_state, "to_state": to_state.value, "event": event.value},
                actor=actor,
                occurred_at=now,
            )

        self.raise_(
            OrderStateChanged(
                order_id=str(self.id),
                event=event.value,
                from_state=from_state,
                to_state=to_state.value,
                actor=actor,
                occurred_at=now,
            )
        )
        return to_state

    def submit(self, eligibility, actor=None):
        """Send the order to production.

        ``eligibility`` answers ``all_items_have_variant_mappings()`` and
        ``has_eligible_customer_for_country()``.
        """
        return self._transition(
            OrderEvent.SUBMIT,
            guards=(
                (Guard.ALL_ITEMS_HAVE_VARIANT_MAPPINGS, eligibility.all_items_have_variant_mappings),
                (Guard.HAS_ELIGIBLE_CUSTOMER_FOR_COUNTRY, eligibility.has_eligible_customer_for_country),
            ),
            actor=actor,
        )

    def cancel(self, actor=None):
        return self._transition(OrderEvent.CANCEL, actor=actor)

    def reopen(self, actor=None):
        return self._transition(OrderEvent.REOPEN, actor=actor)

    def fulfill(self, tracker, actor=None):
        """Close the order once ``tracker.fully_fulfilled()`` holds."""
        return self._transition(
            OrderEvent.FULFILL,
            guards=((Guard.FULLY_FULFILLED, tracker.fully_fulfilled),),
            actor=actor,
        )

    def mark_payment_captured(self, at=None, actor=None):
        """Record payment capture once. Returns False when already captured."""
        if self.paid_at is not None:
            return False

        at = at or datetime.now(UTC)
        with atomic_change(self):
            self.paid_at = at
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                ActivityType.PAYMENT_CAPTURED,
                "Payment captured",
                details={"paid_at": at.isoformat()},
                actor=actor,
                occurred_at=at,
            )
        self.raise_(PaymentCaptured(order_id=str(self.id), paid_at=at))
        return True

    # -------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------
    def _assert_editable(self, what):
        if OrderState(self.state) not in _EDITABLE_STATES:
            raise ValidationError({"state": [f"{what} can only be changed on draft orders"]})

    def add_item(self, actor=None, **item_data):
        """Add a storefront or custom item to a draft order."""
        self._assert_editable("Items")
        item = _build_item(item_data)
        with atomic_change(self):
            self.add_items(item)
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                ActivityType.CUSTOM_ITEM_ADDED if item.is_custom else ActivityType.ITEM_ADDED,
                "Custom item added" if item.is_custom else "Item added",
                description=f"{item.display_name} added to order",
                details={"order_item_id": str(item.id), "quantity": item.quantity, "is_custom": item.is_custom},
                actor=actor,
            )
        self.raise_(
            OrderItemChanged(order_id=str(self.id), item_id=str(item.id), change="added", quantity=item.quantity)
        )
        return item

    def remove_item(self, item_id, actor=None):
        """Soft-delete an item; it no longer takes part in any guard."""
        self._assert_editable("Items")
        item = self.find_item(item_id)
        if not item.is_active:
            raise ValidationError({"item_id": [f"Item {item_id} is already removed"]})
        self._set_item_status(item, ItemStatus.DELETED, ActivityType.ITEM_REMOVED, "removed", actor)

    def restore_item(self, item_id, actor=None):
        self._assert_editable("Items")
        item = self.find_item(item_id)
        if item.is_active:
            raise ValidationError({"item_id": [f"Item {item_id} is not removed"]})
        self._set_item_status(item, ItemStatus.ACTIVE, ActivityType.ITEM_RESTORED, "restored", actor)

    def _set_item_status(self, item, status, activity_type, change, actor):
        now = datetime.now(UTC)
        with atomic_change(self):
            item.status = status.value
            item.deleted_at = now if status == ItemStatus.DELETED else None
            self.updated_at = now
            self._log_activity(
                activity_type,
                f"Item {change}",
                description=f"{item.display_name} {change} {'from' if change == 'removed' else 'to'} order",
                details={"order_item_id": str(item.id), "quantity": item.quantity},
                actor=actor,
                occurred_at=now,
            )
        self.raise_(OrderItemChanged(order_id=str(self.id), item_id=str(item.id), change=change))

    def update_item_quantity(self, item_id, quantity, actor=None):
        self._assert_editable("Items")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be a positive integer"]})
        item = self.find_item(item_id)
        fulfilled = self.fulfilled_quantity(item.id)
        if quantity < fulfilled:
            raise InvariantViolation(
                {"quantity": [f"{fulfilled} unit(s) already shipped; quantity cannot drop to {quantity}"]}
            )

        previous = item.quantity
        with atomic_change(self):
            item.quantity = quantity
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                ActivityType.ITEM_QUANTITY_UPDATED,
                "Item quantity updated",
                description=f"{item.display_name} quantity changed from {previous} to {quantity}",
                details={"order_item_id": str(item.id), "previous_quantity": previous, "quantity": quantity},
                actor=actor,
            )
        self.raise_(
            OrderItemChanged(order_id=str(self.id), item_id=str(item.id), change="quantity_updated", quantity=quantity)
        )

    # -------------------------------------------------------------------
    # Mappings
    # -------------------------------------------------------------------
    def _assert_country_allowed(self, item, country_code):
        if item.is_custom or not country_code or not self.country_code:
            return
        if country_code != self.country_code:
            raise InvariantViolation(
                {"country_code": [f"Mapping for {country_code} cannot be used on a {self.country_code} order"]}
            )

    def assign_mapping(self, item_id, spec, slot_position=None, country_code=None, actor=None):
        """Hand-assign artwork to an item, either as its single mapping or into a slot."""
        self._assert_editable("Mappings")
        item = self.find_item(item_id)
        if not item.is_active:
            raise ValidationError({"item_id": [f"Item {item_id} is removed"]})

        country_code = normalize_country_code(country_code) or self.country_code
        self._assert_country_allowed(item, country_code)

        existing = self.mappings_for(item.id)
        if slot_position is None:
            if existing:
                raise ValidationError({"mapping": [f"Item {item_id} is already mapped; replace the mapping instead"]})
        else:
            if not 1 <= slot_position <= item.bundle_slot_count:
                raise ValidationError({"slot_position": [f"Slot must be between 1 and {item.bundle_slot_count}"]})
            if any(m.slot_position is None or m.slot_position == slot_position for m in existing):
                raise ValidationError({"slot_position": [f"Slot {slot_position} is already filled"]})

        mapping = OrderMapping(
            order_item_id=str(item.id),
            spec=spec,
            slot_position=slot_position,
            country_code=country_code,
            created_at=datetime.now(UTC),
        )
        with atomic_change(self):
            self.add_mappings(mapping)
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                ActivityType.ITEM_VARIANT_MAPPING_ADDED,
                "Product & image selected",
                description=f"{item.display_name} mapped to {spec.frame_sku_title or 'a product'}",
                details={"order_item_id": str(item.id), "variant_mapping_id": str(mapping.id), **spec.summary()},
                actor=actor,
            )
        self._raise_mapping_event(item, mapping, "added")
        return mapping

    def update_mapping(self, mapping_id, spec, actor=None):
        """Adjust an existing mapping (crop, size) keeping its slot."""
        return self._change_mapping(
            mapping_id,
            spec,
            ActivityType.ITEM_VARIANT_MAPPING_UPDATED,
            "Product & image updated",
            "updated",
            actor,
        )

    def replace_mapping(self, mapping_id, spec, replaced="product", actor=None):
        """Swap the artwork (``replaced="image"``) or the whole assignment."""
        if replaced not in ("image", "product"):
            raise ValidationError({"replaced": ["Replaced must be 'image' or 'product'"]})
        label = "Image" if replaced == "image" else "Product & image"
        return self._change_mapping(
            mapping_id,
            spec,
            ActivityType.ITEM_VARIANT_MAPPING_REPLACED,
            f"{label} replaced",
            "replaced",
            actor,
            extra={"replaced_type": replaced},
        )

    def _change_mapping(self, mapping_id, spec, activity_type, title, change, actor, extra=None):
        self._assert_editable("Mappings")
        mapping = self.find_mapping(mapping_id)
        item = self.find_item(mapping.order_item_id)
        with atomic_change(self):
            mapping.spec = spec
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                activity_type,
                title,
                description=f"{item.display_name} mapping {change}",
                details={
                    "order_item_id": str(item.id),
                    "variant_mapping_id": str(mapping.id),
                    **spec.summary(),
                    **(extra or {}),
                },
                actor=actor,
            )
        self._raise_mapping_event(item, mapping, change)
        return mapping

    def remove_mapping(self, mapping_id, actor=None):
        self._assert_editable("Mappings")
        mapping = self.find_mapping(mapping_id)
        item = self.find_item(mapping.order_item_id)
        with atomic_change(self):
            self.remove_mappings(mapping)
            self.updated_at = datetime.now(UTC)
            self._log_activity(
                ActivityType.ITEM_VARIANT_MAPPING_REMOVED,
                "Product & image removed",
                description=f"{item.display_name} mapping removed",
                details={"order_item_id": str(item.id), "variant_mapping_id": str(mapping.id)},
                actor=actor,
            )
        self._raise_mapping_event(item, mapping, "removed")

    def _raise_mapping_event(self, item, mapping, change):
        self.raise_(
            OrderItemMapped(
                order_id=str(self.id),
                item_id=str(item.id),
                mapping_id=str(mapping.id),
                change=change,
                slot_position=mapping.slot_position,
            )
        )

    def copy_templates_to_item(self, item_id, templates, actor=None):
        """Snapshot template mappings onto an item, at most once.

        When the item already has mappings nothing is copied and the existing
        mappings are returned. ``bundle_slot_count`` becomes the number of
        templates copied; with no templates the item is left untouched.
        """
        item = self.find_item(item_id)
        existing = self.mappings_for(item.id)
        if existing or not templates:
            return existing

        for template in templates:
            self._assert_country_allowed(item, template.country_code)

        now = datetime.now(UTC)
        copies = [
            OrderMapping(
                order_item_id=str(item.id),
                spec=template.spec,
                slot_position=template.slot_position or position,
                country_code=template.country_code or self.country_code,
                source_template_id=str(template.id),
                created_at=now,
            )
            for position, template in enumerate(templates, start=1)
        ]

        with atomic_change(self):
            item.bundle_slot_count = len(copies)
            for mapping in copies:
                self.add_mappings(mapping)
            self.updated_at = now
            self._log_activity(
                ActivityType.BUNDLE_MAPPINGS_COPIED,
                "Default mappings applied",
                description=f"{len(copies)} mapping(s) copied to {item.display_name}",
                details={
                    "order_item_id": str(item.id),
                    "product_variant_id": str(item.product_variant_id),
                    "bundle_slot_count": len(copies),
                },
                actor=actor,
                occurred_at=now,
            )

        self.raise_(
            BundleMappingsCopied(
                order_id=str(self.id),
                item_id=str(item.id),
                product_variant_id=str(item.product_variant_id),
                mapping_ids=json.dumps([str(m.id) for m in copies]),
                bundle_slot_count=len(copies),
            )
        )
        return copies

    # -------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------
    def record_fulfillment(
        self,
        lines,
        external_id=None,
        status=FulfillmentStatus.SUCCESS.value,
        tracking_company=None,
        tracking_number=None,
        tracking_url=None,
        location_name=None,
        fulfilled_at=None,
        actor=None,
    ):
        """Record a shipment of ``lines`` (dicts of order_item_id and quantity).

        Every line is checked before anything changes: a shipment that would
        push any item past its quantity raises ``InvariantViolation`` and
        leaves the order untouched.
        """
        if OrderState(self.state) not in _SHIPPABLE_STATES:
            raise ValidationError({"state": [f"Cannot record a fulfillment on a {self.state} order"]})
        if not lines:
            raise ValidationError({"lines": ["A fulfillment needs at least one line item"]})

        requested = defaultdict(int)
        for line in lines:
            quantity = line.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError({"quantity": ["Fulfilled quantity must be a positive integer"]})
            item = self.find_item(line.get("order_item_id"))
            if not item.is_active:
                raise ValidationError({"order_item_id": [f"Item {item.id} is removed"]})
            requested[str(item.id)] += quantity

        for item_id, quantity in requested.items():
            item = self.find_item(item_id)
            already = self.fulfilled_quantity(item_id)
            if already + quantity > item.quantity:
                raise InvariantViolation(
                    {
                        "quantity": [
                            f"Cannot fulfill {quantity} of {item.display_name}: "
                            f"{already} of {item.quantity} already fulfilled"
                        ]
                    }
                )

        now = datetime.now(UTC)
        fulfilled_at = fulfilled_at or now
        fulfillment = Fulfillment(
            external_id=external_id,
            status=FulfillmentStatus(status).value,
            tracking_company=tracking_company,
            tracking_number=tracking_number,
            tracking_url=tracking_url,
            location_name=location_name,
            fulfilled_at=fulfilled_at,
        )
        item_count = sum(requested.values())

        with atomic_change(self):
            self.add_fulfillments(fulfillment)
            for item_id, quantity in requested.items():
                self.add_fulfillment_line_items(
                    FulfillmentLineItem(
                        fulfillment_id=str(fulfillment.id),
                        order_item_id=item_id,
                        quantity=quantity,
                    )
                )
            self.updated_at = now
            self._log_activity(
                ActivityType.FULFILLMENT_CREATED,
                "Fulfillment created",
                description=fulfillment_description(item_count, tracking_company, tracking_number),
                details={
                    "fulfillment_id": str(fulfillment.id),
                    "external_id": external_id,
                    "tracking_number": tracking_number,
                    "tracking_company": tracking_company,
                    "item_count": item_count,
                    "location_name": location_name,
                },
                actor=actor,
                occurred_at=fulfilled_at,
            )
            for item_id in requested:
                item = self.find_item(item_id)
                if self.fulfilled_quantity(item_id) >= item.quantity:
                    self._log_activity(
                        ActivityType.ITEM_FULFILLED,
                        "Item fulfilled",
                        description=f"{item.display_name} has been fulfilled",
                        details={"order_item_id": item_id, "item_title": item.title, "quantity": item.quantity},
                        actor=actor,
                        occurred_at=fulfilled_at,
                    )

        self.raise_(
            FulfillmentRecorded(
                order_id=str(self.id),
                fulfillment_id=str(fulfillment.id),
                lines=json.dumps([{"order_item_id": k, "quantity": v} for k, v in requested.items()]),
                tracking_number=tracking_number,
                fulfilled_at=fulfilled_at,
            )
        )
        return fulfillment

    # -------------------------------------------------------------------
    # Notes & activity
    # -------------------------------------------------------------------
    def add_note(self, note, actor=None):
        if not note or not note.strip():
            raise ValidationError({"note": ["Note cannot be empty"]})
        self._log_activity(
            ActivityType.NOTE_ADDED,
            "Note added",
            description=note.strip(),
            details={"note_length": len(note.strip())},
            actor=actor,
        )

    def _log_activity(
        self,
        activity_type,
        title,
        description=None,
        details=None,
        actor=None,
        event=None,
        from_state=None,
        to_state=None,
        occurred_at=None,
    ):
        activity = OrderActivity(
            activity_type=activity_type.value,
            title=title,
            description=description,
            event=event,
            from_state=from_state,
            to_state=to_state,
            details=json.dumps(details or {}, default=str),
            actor=actor,
            occurred_at=occurred_at or datetime.now(UTC),
            sequence=len(self.activities or []) + 1,
        )
        self.add_activities(activity)
        logger.info(
            "Order activity logged",
            order_id=str(self.id),
            activity_type=activity_type.value,
            title=title,
        )
        return activity


_GUARD_MESSAGES = {
    Guard.ALL_ITEMS_HAVE_VARIANT_MAPPINGS: "Every fulfillable item needs a product and image in each of its slots",
    Guard.HAS_ELIGIBLE_CUSTOMER_FOR_COUNTRY: "No customer is registered for this order's country",
    Guard.FULLY_FULFILLED: "Not every fulfillable item has shipped in full",
}


def _build_item(data):
    data = dict(data)
    quantity = data.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError({"quantity": ["Quantity must be a positive integer"]})

    is_custom = bool(data.get("is_custom", False))
    for field_name in _ITEM_MONEY_FIELDS:
        if is_custom:
            data[field_name] = 0
        else:
            data[field_name] = ensure_minor_units(data.get(field_name, 0), field_name)

    data["is_custom"] = is_custom
    if is_custom:
        data["product_variant_id"] = None
    return OrderItem(**data)
