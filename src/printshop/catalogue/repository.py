"""Repository for the ProductVariant aggregate."""

from protean.exceptions import ObjectNotFoundError

from printshop.catalogue.variant import ProductVariant
from printshop.domain import printshop


@printshop.repository(part_of=ProductVariant)
class ProductVariantRepository:
    def find_by_external_id(self, store_id, external_variant_id):
        """Variant of a store by its storefront id, or None."""
        results = (
            self._dao.query.filter(
                store_id=str(store_id),
                external_variant_id=str(external_variant_id),
            )
            .all()
            .items
        )
        return results[0] if results else None

    def lookup(self, variant_ids):
        """Load variants by id into a dict, skipping ids that no longer exist."""
        variants = {}
        for variant_id in {str(v) for v in variant_ids if v}:
            try:
                variants[variant_id] = self.get(variant_id)
            except ObjectNotFoundError:
                continue
        return variants
