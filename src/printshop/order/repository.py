"""Repository for the Order aggregate."""

import random

from printshop.domain import printshop
from printshop.order.order import Order


@printshop.repository(part_of=Order)
class OrderRepository:
    def find_by_uid(self, uid):
        results = self._dao.query.filter(uid=str(uid)).all().items
        return results[0] if results else None

    def find_by_external_id(self, store_id, external_id):
        """Order with ``external_id`` in a store, or among storeless orders when ``store_id`` is None."""
        if store_id is None:
            candidates = self._dao.query.filter(external_id=str(external_id)).all().items
            results = [o for o in candidates if not o.store_id]
        else:
            results = self._dao.query.filter(store_id=str(store_id), external_id=str(external_id)).all().items
        return results[0] if results else None

    def next_uid(self, attempts=20):
        """A random 8-digit uid not yet taken by any order."""
        for _ in range(attempts):
            uid = f"{random.randint(10_000_000, 99_999_999)}"
            if self.find_by_uid(uid) is None:
                return uid
        raise RuntimeError("Could not generate a unique order uid")
