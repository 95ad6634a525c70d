"""Application tests for OrderWorkflow — guarded transitions against stored orders."""

from datetime import UTC, datetime

import pytest
from printshop.catalogue.variant import ProductVariant
from printshop.customers.customer import register_customer
from printshop.imaging.crop import CropRegion
from printshop.order.activity import ActivityType
from printshop.order.intake import create_manual_order, import_order
from printshop.order.order import Order, OrderState
from printshop.order.workflow import OrderWorkflow
from printshop.shared.artwork import MappingSpec
from printshop.shared.exceptions import ConcurrentModification, GuardFailed, InvalidTransition, InvariantViolation
from protean import current_domain
from protean.exceptions import ObjectNotFoundError


def _spec(image_id="img-1"):
    return MappingSpec(image_id=image_id, crop=CropRegion(x=0, y=0, width=3000, height=2000))


def _variant(with_template=True, enabled=True):
    variant = ProductVariant.register(
        title="Framed print",
        store_id="store-1",
        external_variant_id="v-1",
        fulfillment_enabled=enabled,
    )
    if with_template:
        variant.add_template_mapping(_spec())
    current_domain.repository_for(ProductVariant).add(variant)
    return variant


def _shopify_order(quantity=1, country_code="US"):
    return import_order(
        external_id="1001",
        store_id="store-1",
        platform="shopify",
        user_id="user-1",
        currency="USD",
        country_code=country_code,
        items=[{"title": "Framed print", "quantity": quantity, "external_variant_id": "v-1"}],
    )


def _load(order_id):
    return current_domain.repository_for(Order).get(order_id)


@pytest.fixture
def workflow():
    return OrderWorkflow()


class TestSubmit:
    def test_submit_with_mappings_and_customer(self, workflow):
        _variant()
        register_customer("user-1", "US")
        order_id = _shopify_order()

        assert workflow.submit(order_id) == OrderState.IN_PRODUCTION
        order = _load(order_id)
        assert order.state == OrderState.IN_PRODUCTION.value
        assert order.revision == 1
        assert order.activity_log[-1].activity_type == ActivityType.ORDER_IN_PRODUCTION.value

    def test_submit_without_customer_names_the_guard(self, workflow):
        _variant()
        order_id = _shopify_order()

        with pytest.raises(GuardFailed) as exc:
            workflow.submit(order_id)

        assert exc.value.guard == "has_eligible_customer_for_country"
        order = _load(order_id)
        assert order.state == OrderState.DRAFT.value
        assert order.revision == 0

    def test_customer_in_other_country_does_not_help(self, workflow):
        _variant()
        register_customer("user-1", "GB")
        with pytest.raises(GuardFailed):
            workflow.submit(_shopify_order())

    def test_submit_without_mappings_names_the_guard(self, workflow):
        _variant(with_template=False)
        register_customer("user-1", "US")
        order_id = _shopify_order()

        with pytest.raises(GuardFailed) as exc:
            workflow.submit(order_id)
        assert exc.value.guard == "all_items_have_variant_mappings"

    def test_submit_after_assigning_mapping(self, workflow):
        _variant(with_template=False)
        register_customer("user-1", "US")
        order_id = _shopify_order()
        item_id = _load(order_id).items[0].id

        workflow.assign_mapping(order_id, item_id, _spec())

        assert workflow.submit(order_id) == OrderState.IN_PRODUCTION

    def test_disabled_variant_blocks_submit(self, workflow):
        _variant(enabled=False)
        register_customer("user-1", "US")
        with pytest.raises(GuardFailed) as exc:
            workflow.submit(_shopify_order())
        assert exc.value.guard == "all_items_have_variant_mappings"

    def test_manual_order_needs_no_customer(self, workflow):
        order_id = create_manual_order(
            external_id="M-1",
            currency="USD",
            items=[{"title": "Hand framing", "quantity": 1, "is_custom": True}],
        )
        workflow.assign_mapping(order_id, _load(order_id).items[0].id, _spec())
        assert workflow.submit(order_id) == OrderState.IN_PRODUCTION

    def test_non_primary_platform_needs_no_customer(self):
        _variant()
        order_id = _shopify_order()
        assert OrderWorkflow(primary_platform="wix").submit(order_id) == OrderState.IN_PRODUCTION


class TestOtherTransitions:
    def test_cancel_and_reopen(self, workflow):
        _variant()
        order_id = _shopify_order()
        workflow.cancel(order_id)
        assert _load(order_id).state == OrderState.CANCELLED.value

        workflow.reopen(order_id)
        assert _load(order_id).state == OrderState.DRAFT.value

    def test_cannot_submit_cancelled_order(self, workflow):
        _variant()
        register_customer("user-1", "US")
        order_id = _shopify_order()
        workflow.cancel(order_id)

        with pytest.raises(InvalidTransition):
            workflow.submit(order_id)

    def test_cannot_fulfill_draft(self, workflow):
        _variant()
        with pytest.raises(InvalidTransition):
            workflow.fulfill(_shopify_order())

    def test_unknown_event(self, workflow):
        _variant()
        with pytest.raises(InvalidTransition):
            workflow.attempt_transition(_shopify_order(), "ship")

    def test_unknown_order(self, workflow):
        with pytest.raises(ObjectNotFoundError):
            workflow.submit("missing")


class TestConcurrency:
    def test_stale_writer_loses(self, workflow):
        _variant()
        register_customer("user-1", "US")
        order_id = _shopify_order()

        first, second = _load(order_id), _load(order_id)
        workflow.apply_transition(first, "submit")

        with pytest.raises(ConcurrentModification) as exc:
            workflow.apply_transition(second, "submit")
        assert exc.value.from_state == OrderState.IN_PRODUCTION.value

        order = _load(order_id)
        transitions = [a for a in order.activity_log if a.activity_type == ActivityType.ORDER_IN_PRODUCTION.value]
        assert len(transitions) == 1
        assert order.revision == 1

    def test_stale_cancel_after_submit_is_rejected(self, workflow):
        _variant()
        register_customer("user-1", "US")
        order_id = _shopify_order()

        stale = _load(order_id)
        workflow.submit(order_id)

        with pytest.raises(InvalidTransition):
            workflow.apply_transition(stale, "cancel")
        assert _load(order_id).state == OrderState.IN_PRODUCTION.value


class TestFulfillment:
    def _in_production(self, workflow, quantity):
        _variant()
        register_customer("user-1", "US")
        order_id = _shopify_order(quantity=quantity)
        workflow.submit(order_id)
        return order_id, str(_load(order_id).items[0].id)

    def test_partial_shipment(self, workflow):
        order_id, item_id = self._in_production(workflow, 5)
        workflow.record_fulfillment(order_id, [{"order_item_id": item_id, "quantity": 2}])
        workflow.record_fulfillment(order_id, [{"order_item_id": item_id, "quantity": 2}])

        snapshot = workflow.fulfillment_snapshot(order_id, item_id)
        assert (snapshot.fulfilled, snapshot.unfulfilled, snapshot.state) == (4, 1, "partially_fulfilled")
        assert workflow.display_state(order_id) == "partially_fulfilled"
        assert _load(order_id).state == OrderState.IN_PRODUCTION.value

    def test_final_shipment_fulfills_order(self, workflow):
        order_id, item_id = self._in_production(workflow, 2)
        workflow.record_fulfillment(
            order_id,
            [{"order_item_id": item_id, "quantity": 2}],
            tracking_company="UPS",
            tracking_number="1Z999",
        )

        order = _load(order_id)
        assert order.state == OrderState.FULFILLED.value
        types = [a.activity_type for a in order.activity_log][-3:]
        assert types == [
            ActivityType.FULFILLMENT_CREATED.value,
            ActivityType.ITEM_FULFILLED.value,
            ActivityType.ORDER_FULFILLED.value,
        ]
        assert workflow.fulfillment_snapshot(order_id).state == "fulfilled"

    def test_over_fulfillment_writes_nothing(self, workflow):
        order_id, item_id = self._in_production(workflow, 2)
        before = _load(order_id)

        with pytest.raises(InvariantViolation):
            workflow.record_fulfillment(order_id, [{"order_item_id": item_id, "quantity": 3}])

        after = _load(order_id)
        assert after.revision == before.revision
        assert not after.fulfillments
        assert len(after.activities) == len(before.activities)

    def test_manual_fulfill_after_shipping_everything(self, workflow):
        order_id = create_manual_order(
            external_id="M-2",
            currency="USD",
            items=[{"title": "Hand framing", "quantity": 1, "is_custom": True}],
        )
        item_id = str(_load(order_id).items[0].id)
        workflow.record_fulfillment(order_id, [{"order_item_id": item_id, "quantity": 1}])
        workflow.assign_mapping(order_id, item_id, _spec())
        workflow.submit(order_id)

        assert workflow.fulfill(order_id) == OrderState.FULFILLED


class TestPayment:
    def test_payment_captured_once(self, workflow):
        _variant()
        order_id = _shopify_order()
        paid_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        assert workflow.mark_payment_captured(order_id, at=paid_at) is True
        assert workflow.mark_payment_captured(order_id) is False

        order = _load(order_id)
        assert order.paid_at == paid_at
        assert order.revision == 1


class TestBundleCopy:
    def test_copy_is_idempotent(self, workflow):
        variant = ProductVariant.register(title="Gallery wall", store_id="store-1", external_variant_id="v-1")
        current_domain.repository_for(ProductVariant).add(variant)
        order_id = _shopify_order()
        item_id = _load(order_id).items[0].id
        assert workflow.copy_bundle_for_order_item(order_id, item_id) == []

        variant = current_domain.repository_for(ProductVariant).get(variant.id)
        variant.configure_bundle(2)
        variant.add_bundle_template(1, _spec("a"), country_code="US")
        variant.add_bundle_template(2, _spec("b"), country_code="US")
        current_domain.repository_for(ProductVariant).add(variant)

        first = workflow.copy_bundle_for_order_item(order_id, item_id)
        second = workflow.copy_bundle_for_order_item(order_id, item_id)

        assert [m.id for m in first] == [m.id for m in second]
        order = _load(order_id)
        assert len(order.mappings_for(item_id)) == 2
        assert order.items[0].bundle_slot_count == 2


class TestItemEdits:
    def test_edits_bump_revision_and_log(self, workflow):
        _variant()
        order_id = _shopify_order()
        item_id = _load(order_id).items[0].id

        workflow.update_item_quantity(order_id, item_id, 3)
        workflow.add_note(order_id, "Rush order", actor="ops")

        order = _load(order_id)
        assert order.items[0].quantity == 3
        assert order.revision == 2
        assert order.activity_log[-1].activity_type == ActivityType.NOTE_ADDED.value

    def test_eligibility_report(self, workflow):
        _variant()
        order_id = _shopify_order()
        report = workflow.eligibility_report(order_id)
        assert report.all_items_have_variant_mappings
        assert not report.has_eligible_customer_for_country
