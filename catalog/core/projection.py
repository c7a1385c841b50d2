"""
Typed column projections for record reads.

Reads name the Record fields they need instead of passing column strings;
the projection maps them to store columns. `id` is always included.

    Projection.CARD                       # list views
    Projection.of('title', 'images')      # ad-hoc field set

Property of Uncompromising Sensors LLC.
"""

from typing import Iterable, Tuple

from .models import FIELD_COLUMNS


class Projection:
    """Immutable ordered set of Record field names"""

    __slots__ = ('_fields', '_name')

    def __init__(self, fields: Iterable[str], name: str = 'custom'):
        ordered = ['id']
        for fieldName in fields:
            if fieldName not in FIELD_COLUMNS:
                raise ValueError(f"Unknown record field: {fieldName}")
            if fieldName not in ordered:
                ordered.append(fieldName)
        self._fields: Tuple[str, ...] = tuple(ordered)
        self._name = name

    @classmethod
    def of(cls, *fields: str) -> 'Projection':
        return cls(fields)

    @classmethod
    def named(cls, name: str) -> 'Projection':
        """Look up a preset by name ('card', 'listing', 'full', 'images')"""
        preset = _PRESETS.get(name.lower())
        if preset is None:
            raise ValueError(f"Unknown projection preset: {name}. Available: {', '.join(_PRESETS)}")
        return preset

    @property
    def name(self) -> str:
        return self._name

    @property
    def fields(self) -> Tuple[str, ...]:
        return self._fields

    def columns(self) -> Tuple[str, ...]:
        return tuple(FIELD_COLUMNS[f] for f in self._fields)

    def plus(self, *fields: str) -> 'Projection':
        return Projection(self._fields + fields)

    def __contains__(self, fieldName: str) -> bool:
        return fieldName in self._fields

    def __eq__(self, other) -> bool:
        return isinstance(other, Projection) and self._fields == other._fields

    def __hash__(self) -> int:
        return hash(self._fields)

    def __repr__(self) -> str:
        return f"Projection({self._name}: {', '.join(self._fields)})"


Projection.CARD = Projection(('title', 'price', 'kind', 'zone', 'images'), name='card')
Projection.LISTING = Projection(('title', 'description', 'price', 'kind', 'zone', 'bedroomCount',
                                 'bathroomCount', 'area', 'latitude', 'longitude', 'address', 'images'), name='listing')
Projection.FULL = Projection(tuple(FIELD_COLUMNS), name='full')
Projection.IMAGES = Projection(('title', 'images', 'createdAt'), name='images')

_PRESETS = {
    'card': Projection.CARD,
    'listing': Projection.LISTING,
    'full': Projection.FULL,
    'images': Projection.IMAGES,
}
