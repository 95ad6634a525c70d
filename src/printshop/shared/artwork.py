"""Artwork assignment payload shared by template and order mappings."""

from protean.fields import String, ValueObject

from printshop.domain import printshop
from printshop.imaging.crop import CropRegion, PrintSize, classify_dpi, compute_dpi
from printshop.shared.money import Money


@printshop.value_object
class MappingSpec:
    """What gets printed: an image, cropped thus, on a frame SKU at a physical size.

    The same payload is carried by template mappings on a storefront variant
    and by the snapshot copies placed on order items, so copying a template is
    a plain value copy.
    """

    image_id = String(max_length=100)
    image_key = String(max_length=255)
    image_filename = String(max_length=255)
    crop = ValueObject(CropRegion, required=True)
    frame_sku_id = String(max_length=100)
    frame_sku_code = String(max_length=100)
    frame_sku_title = String(max_length=255)
    frame_sku_description = String(max_length=500)
    frame_cost = ValueObject(Money)
    print_size = ValueObject(PrintSize)
    preview_url = String(max_length=1000)

    @property
    def has_image(self):
        return bool(self.image_id)

    @property
    def has_valid_crop(self):
        return self.crop is not None and self.crop.is_valid

    def dpi(self, orientation=None):
        if not self.has_valid_crop:
            return None
        return compute_dpi(self.crop, self.print_size, orientation=orientation)

    def dpi_quality(self, orientation=None):
        return classify_dpi(self.dpi(orientation=orientation))

    def with_image(self, image_id, image_key=None, image_filename=None, crop=None):
        """Same frame and size, different artwork."""
        return MappingSpec(
            image_id=image_id,
            image_key=image_key,
            image_filename=image_filename,
            crop=crop or self.crop,
            frame_sku_id=self.frame_sku_id,
            frame_sku_code=self.frame_sku_code,
            frame_sku_title=self.frame_sku_title,
            frame_sku_description=self.frame_sku_description,
            frame_cost=self.frame_cost,
            print_size=self.print_size,
            preview_url=None,
        )

    def summary(self):
        return {
            "image_id": self.image_id,
            "image_filename": self.image_filename,
            "frame_sku_code": self.frame_sku_code,
            "frame_sku_title": self.frame_sku_title,
        }
