"""Can this order go to production?

The evaluator works on an already-loaded Order plus the storefront variants
its items reference and a customer directory. It never touches a repository
itself, so the same evaluation can run inside a transition and in a report.
"""

from dataclasses import dataclass, field

from printshop.order.order import Platform


@dataclass
class ItemEligibility:
    item_id: str
    title: str
    fulfillable: bool
    all_slots_filled: bool
    country_matches: bool
    images_present: bool
    mapping_count: int
    bundle_slot_count: int


@dataclass
class EligibilityReport:
    all_items_have_variant_mappings: bool
    has_eligible_customer_for_country: bool
    items: list[ItemEligibility] = field(default_factory=list)

    @property
    def can_submit(self):
        return self.all_items_have_variant_mappings and self.has_eligible_customer_for_country


class FulfillmentEligibility:
    """Predicates over one order.

    Args:
        order: the Order aggregate.
        variants: dict of product variant id -> ProductVariant for the
            variants the order's items reference. Missing ids count as
            variants that cannot be fulfilled.
        customers: object answering ``has_customer_for(user_id, country_code)``.
        primary_platform: storefront platform that requires a customer
            identity per country.
    """

    def __init__(self, order, variants=None, customers=None, primary_platform="shopify"):
        self.order = order
        self.variants = {str(k): v for k, v in (variants or {}).items()}
        self.customers = customers
        self.primary_platform = primary_platform

    # Per item
    def fulfillable(self, item):
        if item.is_custom:
            return True
        if not item.product_variant_id:
            return False
        variant = self.variants.get(str(item.product_variant_id))
        return bool(variant is not None and variant.fulfillment_enabled)

    def all_slots_filled(self, item):
        mappings = self.order.mappings_for(item.id)
        if any(m.slot_position is None for m in mappings):
            return True
        slotted = [m for m in mappings if m.slot_position is not None]
        return len(slotted) > 0 and len(slotted) == item.bundle_slot_count

    def country_matches(self, item):
        if not self.order.country_code:
            return True
        return all(m.country_code == self.order.country_code for m in self.order.mappings_for(item.id))

    def images_present(self, item):
        return all(m.spec is not None and m.spec.has_image for m in self.order.mappings_for(item.id))

    def fulfillable_items(self):
        return [i for i in self.order.active_items if self.fulfillable(i)]

    # Per order
    def all_items_have_variant_mappings(self):
        items = self.fulfillable_items()
        if not items:
            return False
        return all(self.all_slots_filled(i) and self.images_present(i) for i in items)

    def has_eligible_customer_for_country(self):
        platform = self.order.platform
        if platform == Platform.MANUAL.value or platform != self.primary_platform:
            return True
        if not self.order.country_code or self.customers is None:
            return False
        return bool(self.customers.has_customer_for(self.order.user_id, self.order.country_code))

    def report(self):
        return EligibilityReport(
            all_items_have_variant_mappings=self.all_items_have_variant_mappings(),
            has_eligible_customer_for_country=self.has_eligible_customer_for_country(),
            items=[
                ItemEligibility(
                    item_id=str(item.id),
                    title=item.display_name,
                    fulfillable=self.fulfillable(item),
                    all_slots_filled=self.all_slots_filled(item),
                    country_matches=self.country_matches(item),
                    images_present=self.images_present(item),
                    mapping_count=len(self.order.mappings_for(item.id)),
                    bundle_slot_count=item.bundle_slot_count,
                )
                for item in self.order.active_items
            ],
        )
