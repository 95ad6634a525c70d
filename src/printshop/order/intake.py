"""Storefront imports and manual order entry."""

import json

from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Identifier, String, Text
from protean.utils.globals import current_domain

from printshop.catalogue.variant import ProductVariant
from printshop.domain import logger, printshop
from printshop.order.bundles import copy_bundle_for_order_item
from printshop.order.order import Order, Platform


@printshop.command(part_of="Order")
class ImportOrder:
    external_id = String(required=True, max_length=255)
    store_id = Identifier(required=True)
    platform = String(required=True, max_length=20)
    user_id = Identifier()
    name = String(max_length=100)
    currency = String(required=True, max_length=3)
    country_code = String(max_length=2)
    items = Text(required=True, sanitize=False)  # JSON: list of item dicts
    totals = Text(sanitize=False)  # JSON: minor-unit totals dict
    production_totals = Text(sanitize=False)  # JSON: minor-unit totals dict, may carry "currency"
    shipping_address = Text(sanitize=False)  # JSON: address dict
    actor = String(max_length=255)


@printshop.command(part_of="Order")
class CreateManualOrder:
    external_id = String(required=True, max_length=255)
    store_id = Identifier()
    user_id = Identifier()
    name = String(max_length=100)
    currency = String(required=True, max_length=3)
    country_code = String(max_length=2)
    items = Text(sanitize=False)  # JSON: list of item dicts
    totals = Text(sanitize=False)
    production_totals = Text(sanitize=False)
    shipping_address = Text(sanitize=False)
    actor = String(max_length=255)


def _load_json(value, default=None):
    if value is None or value == "":
        return default
    return json.loads(value) if isinstance(value, str) else value


@printshop.command_handler(part_of=Order)
class OrderIntakeHandler:
    @handle(ImportOrder)
    def import_order(self, command):
        if command.platform == Platform.MANUAL.value:
            raise ValidationError({"platform": ["Imported orders must come from a storefront platform"]})
        return self._intake(command, command.platform)

    @handle(CreateManualOrder)
    def create_manual_order(self, command):
        return self._intake(command, Platform.MANUAL.value)

    def _intake(self, command, platform):
        repo = current_domain.repository_for(Order)
        if repo.find_by_external_id(command.store_id, command.external_id) is not None:
            raise ValidationError({"external_id": [f"Order {command.external_id} already exists"]})

        variant_repo = current_domain.repository_for(ProductVariant)
        items_data = [
            self._resolve_variant(variant_repo, command.store_id, dict(item))
            for item in _load_json(command.items, [])
        ]

        order = Order.create(
            external_id=command.external_id,
            uid=repo.next_uid(),
            currency=command.currency,
            items_data=items_data,
            store_id=command.store_id,
            platform=platform,
            user_id=command.user_id,
            country_code=command.country_code,
            totals=_load_json(command.totals, {}),
            production_totals=_load_json(command.production_totals),
            shipping_address=_load_json(command.shipping_address),
            name=command.name,
            actor=command.actor,
        )

        variants = variant_repo.lookup(i.product_variant_id for i in order.items if not i.is_custom)
        for item in order.items:
            if item.is_custom or not item.product_variant_id:
                continue
            copy_bundle_for_order_item(order, item.id, variants.get(str(item.product_variant_id)), actor=command.actor)

        repo.add(order)
        logger.info(
            "Order taken in",
            order_id=str(order.id),
            uid=order.uid,
            platform=platform,
            item_count=len(order.items),
        )
        return str(order.id)

    @staticmethod
    def _resolve_variant(variant_repo, store_id, item):
        """Swap a storefront variant id for the matching ProductVariant id."""
        external_variant_id = item.pop("external_variant_id", None)
        if item.get("product_variant_id") or external_variant_id is None or store_id is None:
            return item
        variant = variant_repo.find_by_external_id(store_id, external_variant_id)
        if variant is not None:
            item["product_variant_id"] = str(variant.id)
        return item


def _encode(kwargs):
    for key in ("items", "totals", "production_totals", "shipping_address"):
        if kwargs.get(key) is not None and not isinstance(kwargs[key], str):
            kwargs[key] = json.dumps(kwargs[key])
    return kwargs


def import_order(**kwargs):
    """Import a storefront order. Returns the new order id."""
    return current_domain.process(ImportOrder(**_encode(kwargs)), asynchronous=False)


def create_manual_order(**kwargs):
    """Enter an order by hand. Returns the new order id."""
    return current_domain.process(CreateManualOrder(**_encode(kwargs)), asynchronous=False)
