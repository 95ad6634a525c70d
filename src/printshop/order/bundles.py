"""Copying a variant's template mappings onto an order item."""

from printshop.domain import logger


def copy_bundle_for_order_item(order, item_id, variant, actor=None):
    """Snapshot the templates ``variant`` offers for the order's country onto an item.

    Bundled variants contribute their filled slots for that country in slot
    order; otherwise the lone default is used. An item that already carries
    mappings is left alone, so calling this twice copies once.

    Returns the item's mappings after the copy.
    """
    item = order.find_item(item_id)
    if item.is_custom or variant is None:
        return order.mappings_for(item.id)

    if order.mappings_for(item.id):
        logger.debug("Order item already mapped; skipping copy", order_id=str(order.id), item_id=str(item.id))
        return order.mappings_for(item.id)

    templates = variant.templates_for_country(order.country_code)
    if not templates:
        logger.info(
            "No templates to copy for order item",
            order_id=str(order.id),
            item_id=str(item.id),
            product_variant_id=str(variant.id),
            country_code=order.country_code,
        )
        return []

    copies = order.copy_templates_to_item(item.id, templates, actor=actor)
    if variant.bundle is not None and len(copies) < variant.bundle.slot_count:
        logger.warning(
            "Bundle only partially filled for country",
            order_id=str(order.id),
            item_id=str(item.id),
            filled=len(copies),
            slot_count=variant.bundle.slot_count,
            country_code=order.country_code,
        )
    logger.info("Bundle mappings copied", order_id=str(order.id), item_id=str(item.id), count=len(copies))
    return copies
