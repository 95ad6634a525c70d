"""Tests for crop geometry and print DPI."""

import pytest
from printshop.imaging.crop import (
    CropRegion,
    DpiQuality,
    Orientation,
    PrintSize,
    classify_dpi,
    compute_dpi,
    dpi_for,
)
from printshop.shared.artwork import MappingSpec
from protean.exceptions import ValidationError


class TestDpiFor:
    def test_high_resolution_crop(self):
        assert dpi_for(3000, 2000, 10, 8, "in", Orientation.LANDSCAPE) == 250

    def test_low_resolution_crop(self):
        assert dpi_for(600, 400, 10, 8, "in", Orientation.LANDSCAPE) == 50

    def test_limiting_axis_wins(self):
        # 3000/10 = 300 across, 1000/8 = 125 down
        assert dpi_for(3000, 1000, 10, 8, "in", "landscape") == 125

    def test_orientation_defaults_to_crop_shape(self):
        assert dpi_for(2000, 3000, 10, 8, "in") == 250

    def test_portrait_puts_short_side_across(self):
        # 2000/8 = 250 across, 3000/10 = 300 down
        assert dpi_for(2000, 3000, 10, 8, "in", Orientation.PORTRAIT) == 250

    def test_millimetres(self):
        # 254 mm = 10 in
        assert dpi_for(3000, 2000, 254, 203.2, "mm") == 250

    def test_centimetres(self):
        assert dpi_for(3000, 2000, 25.4, 20.32, "cm") == 250

    def test_rounds_half_up(self):
        # 1005 / 2 = 502.5
        assert dpi_for(1005, 1005, 2, 2, "in") == 503

    @pytest.mark.parametrize(
        "dims",
        [
            (None, 2000, 10, 8),
            (3000, 2000, None, 8),
            (3000, 2000, 0, 8),
            (3000, 2000, 10, -1),
            (0, 2000, 10, 8),
        ],
    )
    def test_missing_or_non_positive_inputs_are_undefined(self, dims):
        assert dpi_for(*dims, "in") is None

    def test_unknown_unit_rejected(self):
        with pytest.raises(ValidationError) as exc:
            dpi_for(3000, 2000, 10, 8, "ft")
        assert "unit" in exc.value.messages


class TestClassifyDpi:
    @pytest.mark.parametrize(
        "dpi, quality",
        [
            (50, DpiQuality.LOW),
            (124, DpiQuality.LOW),
            (125, DpiQuality.ACCEPTABLE),
            (199, DpiQuality.ACCEPTABLE),
            (200, DpiQuality.HIGH),
            (250, DpiQuality.HIGH),
        ],
    )
    def test_bands(self, dpi, quality):
        assert classify_dpi(dpi) == quality

    def test_undefined_dpi_has_no_band(self):
        assert classify_dpi(None) is None


class TestCropValueObjects:
    def test_crop_with_zero_width_is_invalid(self):
        assert not CropRegion(x=0, y=0, width=0, height=100).is_valid

    def test_negative_crop_rejected(self):
        with pytest.raises(ValidationError):
            CropRegion(x=-1, y=0, width=10, height=10)

    def test_crop_orientation(self):
        assert CropRegion(x=0, y=0, width=300, height=200).orientation == Orientation.LANDSCAPE
        assert CropRegion(x=0, y=0, width=200, height=300).orientation == Orientation.PORTRAIT

    def test_print_size_unit_must_be_known(self):
        with pytest.raises(ValidationError):
            PrintSize(width=10, height=8, unit="ft")

    def test_print_size_in_millimetres(self):
        assert PrintSize(width=10, height=8, unit="in").in_millimetres() == (254.0, 203.2)

    def test_compute_dpi_without_print_size(self):
        assert compute_dpi(CropRegion(x=0, y=0, width=10, height=10), None) is None

    def test_mapping_spec_dpi_quality(self):
        spec = MappingSpec(
            image_id="img-1",
            crop=CropRegion(x=0, y=0, width=3000, height=2000),
            print_size=PrintSize(width=10, height=8, unit="in"),
        )
        assert spec.dpi() == 250
        assert spec.dpi_quality() == DpiQuality.HIGH

    def test_mapping_spec_without_valid_crop_has_no_dpi(self):
        spec = MappingSpec(
            image_id="img-1",
            crop=CropRegion(x=0, y=0, width=0, height=2000),
            print_size=PrintSize(width=10, height=8, unit="in"),
        )
        assert not spec.has_valid_crop
        assert spec.dpi() is None
        assert spec.dpi_quality() is None


class TestAspectRatio:
    def test_aspect_ratio_is_width_over_height(self):
        assert CropRegion(x=0, y=0, width=3000, height=2000).aspect_ratio == 1.5

    def test_invalid_crop_has_no_aspect_ratio(self):
        assert CropRegion(x=0, y=0, width=3000, height=0).aspect_ratio is None
