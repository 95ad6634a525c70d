"""Order workflow — the application service every order write goes through.

Each write runs under a per-order lock and an optimistic ``revision`` check:
the loaded order's revision must still match what is stored, otherwise the
write raises ``ConcurrentModification`` and nothing is saved. Guards and
invariants are checked before the aggregate changes, and the activity entry
for a change is saved in the same repository write.
"""

import threading
from contextlib import contextmanager

from protean.utils.globals import current_domain

from printshop.catalogue.variant import ProductVariant
from printshop.customers.customer import CustomerDirectory
from printshop.domain import logger
from printshop.order import bundles
from printshop.order.eligibility import FulfillmentEligibility
from printshop.order.order import Order, OrderEvent, OrderState
from printshop.order.tracking import FulfillmentTracker
from printshop.shared.exceptions import ConcurrentModification, InvalidTransition
from printshop.shared.settings import primary_platform
from printshop.utils.logging import order_context

_registry_lock = threading.Lock()
_order_locks: dict[str, threading.Lock] = {}


def _lock_for(order_id) -> threading.Lock:
    with _registry_lock:
        return _order_locks.setdefault(str(order_id), threading.Lock())


class OrderWorkflow:
    """Loads, guards, mutates and saves orders.

    Args:
        customers: customer directory used by the customer-country guard.
            Defaults to the repository-backed ``CustomerDirectory``.
        primary_platform: storefront platform that needs a customer identity
            per country. Defaults to the configured ``PRIMARY_PLATFORM``.
    """

    def __init__(self, customers=None, primary_platform=None):
        self.customers = customers or CustomerDirectory()
        self._primary_platform = primary_platform

    @property
    def primary_platform(self):
        return self._primary_platform or primary_platform()

    @property
    def orders(self):
        return current_domain.repository_for(Order)

    def load(self, order_id):
        return self.orders.get(order_id)

    # -------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------
    def eligibility_for(self, order):
        variants = current_domain.repository_for(ProductVariant).lookup(
            i.product_variant_id for i in order.items or [] if not i.is_custom
        )
        return FulfillmentEligibility(
            order,
            variants=variants,
            customers=self.customers,
            primary_platform=self.primary_platform,
        )

    def tracker_for(self, order, eligibility=None):
        return FulfillmentTracker(order, eligibility or self.eligibility_for(order))

    # -------------------------------------------------------------------
    # Serialized writes
    # -------------------------------------------------------------------
    @contextmanager
    def _guarded(self, order, event, actor=None, item_id=None):
        """Hold the order's lock and make sure ``order`` is not stale."""
        with order_context(order.id, change=event, item_id=item_id, actor=actor), _lock_for(order.id):
            stored = self.orders.get(order.id)
            if stored.revision != order.revision:
                logger.warning(
                    "Stale order write rejected",
                    loaded_revision=order.revision,
                    stored_revision=stored.revision,
                )
                raise ConcurrentModification(event, stored.state, str(order.id))
            yield order
            order.revision = (order.revision or 0) + 1
            self.orders.add(order)

    def _change(self, order_id, action, change, *args, **kwargs):
        """Load an order, call ``action(order, ...)`` and save it."""
        order = self.load(order_id)
        with self._guarded(order, change, actor=kwargs.get("actor")):
            result = action(order, *args, **kwargs)
        return result

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------
    def attempt_transition(self, order_id, event, actor=None):
        """Fire ``event`` on the order. Returns the new state."""
        return self.apply_transition(self.load(order_id), event, actor=actor)

    def apply_transition(self, order, event, actor=None):
        """Fire ``event`` on an order the caller already loaded."""
        try:
            event = OrderEvent(event)
        except ValueError:
            raise InvalidTransition(str(event), order.state, f"Unknown event {event!r}") from None

        with self._guarded(order, event.value, actor=actor):
            if event == OrderEvent.SUBMIT:
                new_state = order.submit(self.eligibility_for(order), actor=actor)
            elif event == OrderEvent.FULFILL:
                new_state = order.fulfill(self.tracker_for(order), actor=actor)
            elif event == OrderEvent.CANCEL:
                new_state = order.cancel(actor=actor)
            else:
                new_state = order.reopen(actor=actor)

        logger.info("Order transitioned", order_id=str(order.id), transition=event.value, state=new_state.value)
        return new_state

    def submit(self, order_id, actor=None):
        return self.attempt_transition(order_id, OrderEvent.SUBMIT, actor=actor)

    def cancel(self, order_id, actor=None):
        return self.attempt_transition(order_id, OrderEvent.CANCEL, actor=actor)

    def reopen(self, order_id, actor=None):
        return self.attempt_transition(order_id, OrderEvent.REOPEN, actor=actor)

    def fulfill(self, order_id, actor=None):
        return self.attempt_transition(order_id, OrderEvent.FULFILL, actor=actor)

    def mark_payment_captured(self, order_id, at=None, actor=None):
        order = self.load(order_id)
        if order.payment_captured:
            return False
        with self._guarded(order, "capture_payment", actor=actor):
            captured = order.mark_payment_captured(at=at, actor=actor)
        logger.info("Payment captured", order_id=str(order.id), paid_at=str(order.paid_at))
        return captured

    # -------------------------------------------------------------------
    # Mappings and items
    # -------------------------------------------------------------------
    def copy_bundle_for_order_item(self, order_id, item_id, actor=None):
        order = self.load(order_id)
        item = order.find_item(item_id)
        if order.mappings_for(item.id) or item.is_custom or not item.product_variant_id:
            return order.mappings_for(item.id)

        variant = current_domain.repository_for(ProductVariant).lookup([item.product_variant_id])
        with self._guarded(order, "copy_bundle", actor=actor, item_id=item.id):
            copies = bundles.copy_bundle_for_order_item(
                order, item.id, variant.get(str(item.product_variant_id)), actor=actor
            )
        return copies

    def add_item(self, order_id, actor=None, **item_data):
        return self._change(order_id, lambda o: o.add_item(actor=actor, **item_data), "add_item")

    def remove_item(self, order_id, item_id, actor=None):
        return self._change(order_id, Order.remove_item, "remove_item", item_id, actor=actor)

    def restore_item(self, order_id, item_id, actor=None):
        return self._change(order_id, Order.restore_item, "restore_item", item_id, actor=actor)

    def update_item_quantity(self, order_id, item_id, quantity, actor=None):
        return self._change(
            order_id, Order.update_item_quantity, "update_item_quantity", item_id, quantity, actor=actor
        )

    def assign_mapping(self, order_id, item_id, spec, slot_position=None, country_code=None, actor=None):
        return self._change(
            order_id,
            Order.assign_mapping,
            "assign_mapping",
            item_id,
            spec,
            slot_position=slot_position,
            country_code=country_code,
            actor=actor,
        )

    def update_mapping(self, order_id, mapping_id, spec, actor=None):
        return self._change(order_id, Order.update_mapping, "update_mapping", mapping_id, spec, actor=actor)

    def replace_mapping(self, order_id, mapping_id, spec, replaced="product", actor=None):
        return self._change(
            order_id, Order.replace_mapping, "replace_mapping", mapping_id, spec, replaced=replaced, actor=actor
        )

    def remove_mapping(self, order_id, mapping_id, actor=None):
        return self._change(order_id, Order.remove_mapping, "remove_mapping", mapping_id, actor=actor)

    def add_note(self, order_id, note, actor=None):
        return self._change(order_id, Order.add_note, "add_note", note, actor=actor)

    # -------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------
    def record_fulfillment(self, order_id, lines, actor=None, **tracking):
        """Record a shipment and close the order when it completes it."""
        order = self.load(order_id)
        with self._guarded(order, "record_fulfillment", actor=actor):
            fulfillment = order.record_fulfillment(lines, actor=actor, **tracking)
            logger.info(
                "Fulfillment recorded",
                order_id=str(order.id),
                fulfillment_id=str(fulfillment.id),
                item_count=order.item_count_for(fulfillment.id),
            )

            if order.state == OrderState.IN_PRODUCTION.value:
                tracker = self.tracker_for(order)
                if tracker.fully_fulfilled():
                    order.fulfill(tracker, actor=actor)
                    logger.info("Order fulfilled by shipment", order_id=str(order.id))
        return fulfillment

    def fulfillment_snapshot(self, order_id, item_id=None):
        order = self.load(order_id)
        tracker = self.tracker_for(order)
        if item_id is not None:
            return tracker.item_snapshot(order.find_item(item_id))
        return tracker.snapshot()

    def display_state(self, order_id):
        return self.tracker_for(self.load(order_id)).display_state()

    def eligibility_report(self, order_id):
        return self.eligibility_for(self.load(order_id)).report()
