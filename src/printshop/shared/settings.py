"""Domain policy settings read from the ``[custom]`` table of ``domain.toml``."""

from protean.utils.globals import current_domain

DEFAULT_PRIMARY_PLATFORM = "shopify"


def _custom() -> dict:
    return current_domain.config.get("custom", {}) or {}


def primary_platform() -> str:
    """Storefront platform whose orders need a country-scoped customer identity."""
    return str(_custom().get("PRIMARY_PLATFORM", DEFAULT_PRIMARY_PLATFORM)).lower()
