"""ProductVariant aggregate — a storefront variant and its fulfillment templates.

A variant carries the *template* mappings that new orders copy from:

    * a lone default mapping (``is_default``), at most one per variant, or
    * a Bundle of ``slot_count`` slots, each filled per country by a
      template mapping tagged with ``slot_position``.

Deleting the default template never promotes another one; a variant without
a default is a valid state.
"""

from datetime import UTC, datetime

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, HasMany, HasOne, Identifier, Integer, String, ValueObject

from printshop.catalogue.events import (
    BundleConfigured,
    FulfillmentToggled,
    ProductVariantRegistered,
    TemplateMappingAdded,
    TemplateMappingRemoved,
)
from printshop.domain import printshop
from printshop.shared.artwork import MappingSpec
from printshop.shared.countries import normalize_country_code

MAX_BUNDLE_SLOTS = 10


@printshop.entity(part_of="ProductVariant")
class Bundle:
    """Multi-slot container: one storefront variant needs several mapped prints."""

    slot_count = Integer(required=True, min_value=1, max_value=MAX_BUNDLE_SLOTS, default=1)

    @property
    def multi_slot(self):
        return self.slot_count > 1


@printshop.entity(part_of="ProductVariant")
class TemplateMapping:
    """A reusable artwork assignment that order items copy on creation."""

    spec = ValueObject(MappingSpec, required=True)
    is_default = Boolean(default=False)
    bundle_id = Identifier()
    slot_position = Integer(min_value=1, max_value=MAX_BUNDLE_SLOTS)
    country_code = String(max_length=2)
    created_at = DateTime()


@printshop.aggregate
class ProductVariant:
    store_id = Identifier()
    external_variant_id = String(max_length=255)
    title = String(required=True, max_length=255)
    sku = String(max_length=100)
    fulfillment_enabled = Boolean(default=True)
    bundle = HasOne(Bundle)
    template_mappings = HasMany(TemplateMapping)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def at_most_one_default_template(self):
        defaults = [m for m in (self.template_mappings or []) if m.is_default]
        if len(defaults) > 1:
            raise ValidationError({"template_mappings": ["A variant can have at most one default mapping"]})

    @invariant.post
    def bundle_templates_fit_the_bundle(self):
        slotted = self.filled_slots
        if not slotted:
            return
        if self.bundle is None:
            raise ValidationError({"template_mappings": ["Bundle templates require a bundle"]})

        seen = set()
        for mapping in slotted:
            if mapping.slot_position is None or mapping.slot_position > self.bundle.slot_count:
                raise ValidationError(
                    {"slot_position": [f"Slot {mapping.slot_position} is outside 1..{self.bundle.slot_count}"]}
                )
            key = (mapping.country_code, mapping.slot_position)
            if key in seen:
                raise ValidationError(
                    {"slot_position": [f"Slot {mapping.slot_position} is already filled for {mapping.country_code}"]}
                )
            seen.add(key)

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def register(cls, title, store_id=None, external_variant_id=None, sku=None, fulfillment_enabled=True):
        now = datetime.now(UTC)
        variant = cls(
            store_id=store_id,
            external_variant_id=str(external_variant_id) if external_variant_id is not None else None,
            title=title,
            sku=sku,
            fulfillment_enabled=fulfillment_enabled,
            created_at=now,
            updated_at=now,
        )
        variant.raise_(
            ProductVariantRegistered(
                product_variant_id=str(variant.id),
                store_id=store_id,
                external_variant_id=variant.external_variant_id,
                title=title,
            )
        )
        return variant

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def default_mapping(self):
        return next((m for m in (self.template_mappings or []) if m.is_default), None)

    @property
    def filled_slots(self):
        """Bundle templates across every country."""
        return [m for m in (self.template_mappings or []) if m.bundle_id]

    def bundle_templates(self, country_code):
        """Bundle templates filled for exactly ``country_code``, in slot order.

        ``None`` selects the country-less slots only; countries never mix.
        """
        templates = [m for m in self.filled_slots if m.country_code == country_code]
        return sorted(templates, key=lambda m: m.slot_position)

    def templates_for_country(self, country_code):
        """Templates an order item in ``country_code`` should copy, in slot order.

        With a bundle, only that country's filled slots count. Without one,
        the lone default is used unless it is pinned to a different country.
        """
        country_code = normalize_country_code(country_code)
        if self.bundle is not None:
            return self.bundle_templates(country_code)

        default = self.default_mapping
        if default is None:
            return []
        if default.country_code and country_code and default.country_code != country_code:
            return []
        return [default]

    def _find_template(self, mapping_id):
        mapping = next((m for m in (self.template_mappings or []) if str(m.id) == str(mapping_id)), None)
        if mapping is None:
            raise ValidationError({"template_mappings": [f"Template mapping {mapping_id} not found"]})
        return mapping

    # -------------------------------------------------------------------
    # Fulfillment switch
    # -------------------------------------------------------------------
    def enable_fulfillment(self):
        self._set_fulfillment(True)

    def disable_fulfillment(self):
        self._set_fulfillment(False)

    def _set_fulfillment(self, enabled):
        if self.fulfillment_enabled == enabled:
            return
        self.fulfillment_enabled = enabled
        self.updated_at = datetime.now(UTC)
        self.raise_(
            FulfillmentToggled(
                product_variant_id=str(self.id),
                fulfillment_enabled=enabled,
            )
        )

    # -------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------
    def add_template_mapping(self, spec, country_code=None, is_default=None):
        """Attach a template mapping outside any bundle.

        The first one attached while the variant has no default becomes the
        default. Asking for a second default is rejected.
        """
        has_default = self.default_mapping is not None
        if is_default and has_default:
            raise ValidationError({"is_default": ["This variant already has a default mapping"]})
        if is_default is None:
            is_default = not has_default

        mapping = TemplateMapping(
            spec=spec,
            is_default=is_default,
            country_code=normalize_country_code(country_code),
            created_at=datetime.now(UTC),
        )
        self.add_template_mappings(mapping)
        self.updated_at = datetime.now(UTC)
        self.raise_(
            TemplateMappingAdded(
                product_variant_id=str(self.id),
                mapping_id=str(mapping.id),
                is_default=is_default,
                country_code=mapping.country_code,
            )
        )
        return mapping

    def configure_bundle(self, slot_count):
        """Create the variant's bundle or change its slot count."""
        if slot_count is None or slot_count < 1 or slot_count > MAX_BUNDLE_SLOTS:
            raise ValidationError({"slot_count": [f"Slot count must be between 1 and {MAX_BUNDLE_SLOTS}"]})

        occupied = [m.slot_position for m in self.filled_slots]
        if occupied and max(occupied) > slot_count:
            raise ValidationError(
                {"slot_count": [f"Slot {max(occupied)} is filled; empty it before shrinking the bundle"]}
            )

        if self.bundle is None:
            self.bundle = Bundle(slot_count=slot_count)
        else:
            self.bundle.slot_count = slot_count
        self.updated_at = datetime.now(UTC)
        self.raise_(
            BundleConfigured(
                product_variant_id=str(self.id),
                bundle_id=str(self.bundle.id),
                slot_count=slot_count,
            )
        )
        return self.bundle

    def add_bundle_template(self, slot_position, spec, country_code=None):
        """Fill a bundle slot for a country, replacing whatever filled it before."""
        if self.bundle is None:
            raise ValidationError({"bundle": ["Configure a bundle before filling its slots"]})
        if slot_position is None or not 1 <= slot_position <= self.bundle.slot_count:
            raise ValidationError({"slot_position": [f"Slot must be between 1 and {self.bundle.slot_count}"]})

        country_code = normalize_country_code(country_code)
        existing = next(
            (m for m in self.bundle_templates(country_code) if m.slot_position == slot_position),
            None,
        )

        with atomic_change(self):
            if existing is not None:
                self.remove_template_mappings(existing)
            mapping = TemplateMapping(
                spec=spec,
                is_default=False,
                bundle_id=str(self.bundle.id),
                slot_position=slot_position,
                country_code=country_code,
                created_at=datetime.now(UTC),
            )
            self.add_template_mappings(mapping)

        self.updated_at = datetime.now(UTC)
        self.raise_(
            TemplateMappingAdded(
                product_variant_id=str(self.id),
                mapping_id=str(mapping.id),
                is_default=False,
                slot_position=slot_position,
                country_code=country_code,
            )
        )
        return mapping

    def remove_template_mapping(self, mapping_id):
        """Detach a template. Removing the default leaves the variant without one."""
        mapping = self._find_template(mapping_id)
        was_default = bool(mapping.is_default)
        self.remove_template_mappings(mapping)
        self.updated_at = datetime.now(UTC)
        self.raise_(
            TemplateMappingRemoved(
                product_variant_id=str(self.id),
                mapping_id=str(mapping_id),
                was_default=was_default,
            )
        )
