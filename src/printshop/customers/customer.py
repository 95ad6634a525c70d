"""Storefront customer identities, scoped per merchant user and country.

A merchant selling on the primary storefront platform needs a registered
customer identity for an order's country before that order can go to
production; the order is billed through that identity.
"""

from datetime import UTC, datetime

from protean.exceptions import ValidationError
from protean.fields import DateTime, Identifier, String
from protean.utils.globals import current_domain

from printshop.domain import logger, printshop
from printshop.shared.countries import normalize_country_code


@printshop.event(part_of="StorefrontCustomer")
class StorefrontCustomerRegistered:
    """A merchant registered a customer identity for a country."""

    __version__ = 1

    customer_id = Identifier(required=True)
    user_id = Identifier(required=True)
    country_code = String(required=True)
    external_customer_id = String()


@printshop.aggregate
class StorefrontCustomer:
    user_id = Identifier(required=True)
    country_code = String(required=True, max_length=2)
    external_customer_id = String(max_length=255)
    registered_at = DateTime()

    @classmethod
    def register(cls, user_id, country_code, external_customer_id=None):
        country_code = normalize_country_code(country_code)
        if country_code is None:
            raise ValidationError({"country_code": ["Country code is required"]})

        now = datetime.now(UTC)
        customer = cls(
            user_id=str(user_id),
            country_code=country_code,
            external_customer_id=external_customer_id,
            registered_at=now,
        )
        customer.raise_(
            StorefrontCustomerRegistered(
                customer_id=str(customer.id),
                user_id=str(user_id),
                country_code=country_code,
                external_customer_id=external_customer_id,
            )
        )
        return customer


@printshop.repository(part_of=StorefrontCustomer)
class StorefrontCustomerRepository:
    def find_for(self, user_id, country_code):
        results = (
            self._dao.query.filter(
                user_id=str(user_id),
                country_code=normalize_country_code(country_code),
            )
            .all()
            .items
        )
        return results[0] if results else None


class CustomerDirectory:
    """Answers whether a merchant has a customer identity for a country."""

    def has_customer_for(self, user_id, country_code):
        if not user_id or not country_code:
            return False
        repo = current_domain.repository_for(StorefrontCustomer)
        return repo.find_for(user_id, country_code) is not None


def register_customer(user_id, country_code, external_customer_id=None):
    """Register a customer identity; one per (user, country)."""
    repo = current_domain.repository_for(StorefrontCustomer)
    if repo.find_for(user_id, country_code) is not None:
        raise ValidationError(
            {"country_code": [f"User {user_id} already has a customer for {normalize_country_code(country_code)}"]}
        )
    customer = StorefrontCustomer.register(user_id, country_code, external_customer_id)
    repo.add(customer)
    logger.info("Storefront customer registered", user_id=str(user_id), country_code=customer.country_code)
    return customer
