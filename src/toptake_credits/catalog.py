from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from .config import CatalogItemSettings
from .exceptions import ConfigurationError
from .models.credits import CreditType


@dataclass(frozen=True)
class CatalogItem:
    price_id: str
    credit_type: CreditType
    amount: int
    validity_days: Optional[int] = None

    def expires_at(self, purchased_at: datetime) -> Optional[datetime]:
        if self.validity_days is None:
            return None
        return purchased_at + timedelta(days=self.validity_days)


DEFAULT_PRICE_TABLE: Dict[str, tuple[CreditType, int]] = {
    "price_anonymous_1": (CreditType.ANONYMOUS, 1),
    "price_anonymous_5": (CreditType.ANONYMOUS, 5),
    "price_anonymous_10": (CreditType.ANONYMOUS, 10),
    "price_late_submit_1": (CreditType.LATE_SUBMIT, 1),
    "price_late_submit_3": (CreditType.LATE_SUBMIT, 3),
    "price_sneak_peek_1": (CreditType.SNEAK_PEEK, 1),
    "price_sneak_peek_5": (CreditType.SNEAK_PEEK, 5),
    "price_boost_1": (CreditType.BOOST, 1),
    "price_extra_takes_1": (CreditType.EXTRA_TAKES, 1),
    "price_delete_1": (CreditType.DELETE, 1),
}


class CreditCatalog:
    """
    Maps payment-provider price ids to the credits they buy.

    Unknown ids raise ConfigurationError; the catalog never falls back to a
    default product.
    """

    def __init__(self, items: Mapping[str, CatalogItem]) -> None:
        self._items = dict(items)

    @classmethod
    def default(cls) -> "CreditCatalog":
        return cls(
            {
                price_id: CatalogItem(price_id=price_id, credit_type=credit_type, amount=amount)
                for price_id, (credit_type, amount) in DEFAULT_PRICE_TABLE.items()
            }
        )

    @classmethod
    def from_settings(
        cls, table: Optional[Mapping[str, CatalogItemSettings]]
    ) -> "CreditCatalog":
        if not table:
            return cls.default()
        # Validate every configured type up front so a typo fails at startup
        return cls(
            {
                price_id: CatalogItem(
                    price_id=price_id,
                    credit_type=CreditType.parse(item.credit_type),
                    amount=item.amount,
                    validity_days=item.validity_days,
                )
                for price_id, item in table.items()
            }
        )

    def resolve(self, price_id: str) -> CatalogItem:
        try:
            return self._items[price_id]
        except KeyError:
            raise ConfigurationError(f"unknown price id: {price_id!r}") from None

    def __contains__(self, price_id: object) -> bool:
        return price_id in self._items

    def __len__(self) -> int:
        return len(self._items)
