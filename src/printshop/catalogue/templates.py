"""Template mapping maintenance on storefront variants."""

from protean.utils.globals import current_domain

from printshop.catalogue.variant import ProductVariant
from printshop.domain import logger


def create_template(product_variant_id, spec, country_code=None, is_default=None):
    """Attach a template mapping to a variant, auto-promoting the first one to default."""
    repo = current_domain.repository_for(ProductVariant)
    variant = repo.get(product_variant_id)
    mapping = variant.add_template_mapping(spec, country_code=country_code, is_default=is_default)
    repo.add(variant)
    logger.info(
        "Template mapping created",
        product_variant_id=str(variant.id),
        mapping_id=str(mapping.id),
        is_default=mapping.is_default,
    )
    return mapping


def fill_bundle_slot(product_variant_id, slot_position, spec, country_code=None):
    """Fill one slot of a variant's bundle for a country."""
    repo = current_domain.repository_for(ProductVariant)
    variant = repo.get(product_variant_id)
    mapping = variant.add_bundle_template(slot_position, spec, country_code=country_code)
    repo.add(variant)
    logger.info(
        "Bundle slot filled",
        product_variant_id=str(variant.id),
        slot_position=slot_position,
        country_code=mapping.country_code,
    )
    return mapping


def remove_template(product_variant_id, mapping_id):
    """Detach a template mapping; no other mapping is promoted to default."""
    repo = current_domain.repository_for(ProductVariant)
    variant = repo.get(product_variant_id)
    was_default = variant.default_mapping is not None and str(variant.default_mapping.id) == str(mapping_id)
    variant.remove_template_mapping(mapping_id)
    repo.add(variant)
    if was_default:
        logger.warning("Default template removed; variant has no default mapping", product_variant_id=str(variant.id))
    return variant
