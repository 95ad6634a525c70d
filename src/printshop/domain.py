"""Printshop bounded context — order fulfillment for printed and framed artwork.

Decides when a storefront order may go to production, composes the artwork
assignments (variant mappings and bundles) each line item needs, tracks
partial shipments and computes print resolution for crops.
"""

from protean.domain import Domain

from printshop.utils.logging import configure_logging, get_logger

configure_logging()

logger = get_logger(__name__)

printshop = Domain(name="printshop")
