"""Catalogue domain events: facts about storefront variants and their templates."""

from protean.fields import Boolean, Identifier, Integer, String

from printshop.domain import printshop


@printshop.event(part_of="ProductVariant")
class ProductVariantRegistered:
    """A storefront variant became known to the print catalogue."""

    __version__ = 1

    product_variant_id = Identifier(required=True)
    store_id = Identifier()
    external_variant_id = String()
    title = String(required=True)


@printshop.event(part_of="ProductVariant")
class FulfillmentToggled:
    """Fulfillment was switched on or off for a variant."""

    __version__ = 1

    product_variant_id = Identifier(required=True)
    fulfillment_enabled = Boolean(required=True)


@printshop.event(part_of="ProductVariant")
class BundleConfigured:
    """A variant's bundle was created or resized."""

    __version__ = 1

    product_variant_id = Identifier(required=True)
    bundle_id = Identifier(required=True)
    slot_count = Integer(required=True)


@printshop.event(part_of="ProductVariant")
class TemplateMappingAdded:
    """A template mapping was attached to a variant (default or bundle slot)."""

    __version__ = 1

    product_variant_id = Identifier(required=True)
    mapping_id = Identifier(required=True)
    is_default = Boolean(required=True)
    slot_position = Integer()
    country_code = String()


@printshop.event(part_of="ProductVariant")
class TemplateMappingRemoved:
    """A template mapping was detached from a variant."""

    __version__ = 1

    product_variant_id = Identifier(required=True)
    mapping_id = Identifier(required=True)
    was_default = Boolean(required=True)
