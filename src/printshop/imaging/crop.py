"""Crop geometry and print resolution (DPI) for mapped artwork.

A crop is a pixel rectangle on the source image; a print size is the physical
size it will be printed at. The effective resolution is limited by whichever
axis has fewer pixels per inch.
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Float, String

from printshop.domain import printshop

# Quality bands, in dots per inch
LOW_DPI_THRESHOLD = 125
HIGH_DPI_THRESHOLD = 200

_INCHES_PER_UNIT = {
    "mm": Decimal("25.4"),
    "cm": Decimal("2.54"),
    "in": Decimal("1"),
}

_MM_PER_UNIT = {
    "mm": Decimal("1"),
    "cm": Decimal("10"),
    "in": Decimal("25.4"),
}


class PrintUnit(Enum):
    MM = "mm"
    CM = "cm"
    IN = "in"


class Orientation(Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class DpiQuality(Enum):
    LOW = "low"
    ACCEPTABLE = "acceptable"
    HIGH = "high"


@printshop.value_object
class CropRegion:
    """Pixel rectangle selected on the source image."""

    x = Float(required=True, min_value=0.0)
    y = Float(required=True, min_value=0.0)
    width = Float(required=True, min_value=0.0)
    height = Float(required=True, min_value=0.0)

    @property
    def is_valid(self):
        return self.width > 0 and self.height > 0

    @property
    def aspect_ratio(self):
        if not self.is_valid:
            return None
        return self.width / self.height

    @property
    def orientation(self):
        return Orientation.LANDSCAPE if self.width >= self.height else Orientation.PORTRAIT


@printshop.value_object
class PrintSize:
    """Physical print dimensions in millimetres, centimetres or inches."""

    width = Float()
    height = Float()
    unit = String(max_length=2, choices=PrintUnit, default=PrintUnit.IN.value)

    @invariant.post
    def dimensions_cannot_be_negative(self):
        for name in ("width", "height"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError({name: ["Print dimensions cannot be negative"]})

    @property
    def long_side(self):
        return max(self.width or 0, self.height or 0)

    @property
    def short_side(self):
        return min(self.width or 0, self.height or 0)

    def in_millimetres(self):
        """Return (width_mm, height_mm), or None when a dimension is missing."""
        if self.width is None or self.height is None:
            return None
        factor = _MM_PER_UNIT[self.unit]
        return (
            float(Decimal(str(self.width)) * factor),
            float(Decimal(str(self.height)) * factor),
        )


def to_inches(value, unit):
    """Convert a physical length to inches."""
    if unit not in _INCHES_PER_UNIT:
        raise ValidationError({"unit": [f"Print unit must be one of mm, cm, in; got '{unit}'"]})
    return Decimal(str(value)) / _INCHES_PER_UNIT[unit]


def _round_half_up(value):
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def dpi_for(crop_width, crop_height, print_width, print_height, unit, orientation=None):
    """Limiting DPI of a crop printed at a physical size.

    ``orientation`` decides which physical side maps to the crop width:
    landscape puts the longer side across, portrait the shorter. When omitted
    it follows the crop's own shape. Returns None when any dimension is
    missing or not positive.
    """
    if None in (crop_width, crop_height, print_width, print_height):
        return None
    if crop_width <= 0 or crop_height <= 0:
        return None
    if print_width <= 0 or print_height <= 0:
        return None

    if orientation is None:
        orientation = Orientation.LANDSCAPE if crop_width >= crop_height else Orientation.PORTRAIT
    orientation = Orientation(orientation)

    long_side = max(print_width, print_height)
    short_side = min(print_width, print_height)
    if orientation == Orientation.LANDSCAPE:
        across, down = long_side, short_side
    else:
        across, down = short_side, long_side

    dpi_width = _round_half_up(Decimal(str(crop_width)) / to_inches(across, unit))
    dpi_height = _round_half_up(Decimal(str(crop_height)) / to_inches(down, unit))
    return min(dpi_width, dpi_height)


def compute_dpi(crop, print_size, orientation=None):
    """DPI for a ``CropRegion`` printed at a ``PrintSize``; None if either is missing."""
    if crop is None or print_size is None:
        return None
    return dpi_for(
        crop.width,
        crop.height,
        print_size.width,
        print_size.height,
        print_size.unit,
        orientation=orientation,
    )


def classify_dpi(dpi):
    """Map a DPI value to its quality band, or None for an undefined DPI."""
    if dpi is None:
        return None
    if dpi < LOW_DPI_THRESHOLD:
        return DpiQuality.LOW
    if dpi < HIGH_DPI_THRESHOLD:
        return DpiQuality.ACCEPTABLE
    return DpiQuality.HIGH
