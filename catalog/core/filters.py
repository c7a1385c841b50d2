"""
Listing filters for paginated reads.

    ListingFilter(kind='sale', zone='La Barra', minPrice=100000, maxPrice=250000)

Every criterion is optional; an empty filter selects the whole collection.
Filters are applied by the store, so a page's totalCount is the size of the
filtered set and page arithmetic stays exact.

A kind matches the canonical label and the legacy labels older clients wrote
('sale' also matches 'venta').

Property of Uncompromising Sensors LLC.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .errors import ValidationError
from .models import RecordKind


# Values a form sends for "no restriction"
_ANY = ('', 'all')


def _optionalPrice(name: str, value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be numeric', {name: f'{name} must be numeric'})
    if price < 0:
        raise ValidationError(f'{name} must be >= 0', {name: f'{name} must be >= 0'})
    return price


def _formatPrice(price: float) -> str:
    return str(int(price)) if price.is_integer() else repr(price)


@dataclass(frozen=True)
class ListingFilter:
    kind: Optional[RecordKind] = None
    zone: Optional[str] = None
    minPrice: Optional[float] = None
    maxPrice: Optional[float] = None

    def __post_init__(self):
        kind = self.kind
        if isinstance(kind, str) and kind.strip().lower() in _ANY:
            kind = None
        if kind is not None:
            try:
                kind = RecordKind.parse(kind)
            except ValueError:
                raise ValidationError(f'Unknown kind: {kind}', {'kind': 'must be sale or rental'})

        zone = (self.zone or '').strip()
        zone = None if zone.lower() in _ANY else zone

        minPrice = _optionalPrice('minPrice', self.minPrice)
        maxPrice = _optionalPrice('maxPrice', self.maxPrice)
        if minPrice is not None and maxPrice is not None and minPrice > maxPrice:
            raise ValidationError('minPrice is above maxPrice', {'minPrice': 'must not exceed maxPrice'})

        object.__setattr__(self, 'kind', kind)
        object.__setattr__(self, 'zone', zone)
        object.__setattr__(self, 'minPrice', minPrice)
        object.__setattr__(self, 'maxPrice', maxPrice)

    @property
    def isEmpty(self) -> bool:
        return self.kind is None and self.zone is None and self.minPrice is None and self.maxPrice is None

    def postgrestParams(self) -> List[Tuple[str, str]]:
        """Query parameters in the PostgREST dialect; repeated columns are ANDed"""
        params = []
        if self.kind is not None:
            params.append(('type', f"in.({','.join(self.kind.labels())})"))
        if self.zone is not None:
            params.append(('zone', f"eq.{self.zone}"))
        if self.minPrice is not None:
            params.append(('price', f"gte.{_formatPrice(self.minPrice)}"))
        if self.maxPrice is not None:
            params.append(('price', f"lte.{_formatPrice(self.maxPrice)}"))
        return params

    def sqlWhere(self) -> Tuple[str, tuple]:
        """('WHERE ...', args) for SQLite, or ('', ()) when empty"""
        clauses, args = [], []
        if self.kind is not None:
            labels = self.kind.labels()
            clauses.append(f"type IN ({', '.join('?' for _ in labels)})")
            args.extend(labels)
        if self.zone is not None:
            clauses.append("zone = ?")
            args.append(self.zone)
        if self.minPrice is not None:
            clauses.append("price >= ?")
            args.append(self.minPrice)
        if self.maxPrice is not None:
            clauses.append("price <= ?")
            args.append(self.maxPrice)
        if not clauses:
            return '', ()
        return 'WHERE ' + ' AND '.join(clauses), tuple(args)

    def describe(self) -> dict:
        return {'kind': self.kind.value if self.kind else None, 'zone': self.zone,
                'minPrice': self.minPrice, 'maxPrice': self.maxPrice}
