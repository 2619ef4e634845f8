"""
Crystal Data Model for the Patterson Heavy-Atom Search.

Holds the immutable inputs of the pipeline: unit-cell geometry, the list
of measured reflections, and the optional space-group number. Parsing
from request mappings is deliberately lenient (missing or malformed
numbers become NaN); validation that must abort the search happens in
the map synthesis stage, which is the only stage allowed to fail.

Units:
    Cell lengths in Angstroms (Å)
    Cell angles in degrees (carried through, not used by the search)

Author: Patterson Heavy-Atom Search Project
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple


class PattersonInputError(ValueError):
    """Raised for input that makes the whole search impossible."""


def _as_float(value: Any) -> float:
    """Convert to float, mapping missing or malformed values to NaN."""
    if value is None or isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


@dataclass(frozen=True)
class UnitCell:
    """
    Unit-cell geometry.

    Only the axis lengths enter the search, through ``volume``.
    """
    a: float
    b: float
    c: float
    alpha: float = 90.0
    beta: float = 90.0
    gamma: float = 90.0

    @property
    def volume(self) -> float:
        """Cell volume used to scale the Patterson sum, a·b·c."""
        return self.a * self.b * self.c

    def has_valid_lengths(self) -> bool:
        """True if a, b and c are all finite and positive."""
        return all(
            math.isfinite(x) and x > 0.0 for x in (self.a, self.b, self.c)
        )

    @classmethod
    def from_dict(cls, cell: Optional[Mapping[str, Any]]) -> 'UnitCell':
        if not cell:
            return cls(math.nan, math.nan, math.nan)
        return cls(
            a=_as_float(cell.get('a')),
            b=_as_float(cell.get('b')),
            c=_as_float(cell.get('c')),
            alpha=_as_float(cell.get('alpha', 90.0)),
            beta=_as_float(cell.get('beta', 90.0)),
            gamma=_as_float(cell.get('gamma', 90.0)),
        )


@dataclass(frozen=True)
class Reflection:
    """One measured intensity indexed by Miller indices (h, k, l)."""
    h: float
    k: float
    l: float
    intensity: float

    def is_finite(self) -> bool:
        return all(math.isfinite(x) for x in (self.h, self.k, self.l, self.intensity))

    @classmethod
    def from_dict(cls, refl: Mapping[str, Any]) -> 'Reflection':
        return cls(
            h=_as_float(refl.get('h')),
            k=_as_float(refl.get('k')),
            l=_as_float(refl.get('l')),
            intensity=_as_float(refl.get('intensity')),
        )


@dataclass(frozen=True)
class CrystalData:
    """
    Complete input to the heavy-atom search.

    Attributes
    ----------
    cell : UnitCell
        Unit-cell geometry.
    reflections : tuple of Reflection
        Measured reflections, in input order.
    space_group : int, optional
        International Tables space-group number, or None if unknown.
    """
    cell: UnitCell
    reflections: Tuple[Reflection, ...]
    space_group: Optional[int] = None

    def __post_init__(self):
        # Accept any sequence but store a tuple
        object.__setattr__(self, 'reflections', tuple(self.reflections))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CrystalData':
        """
        Build from a request mapping of the form::

            {'cell': {'a': .., 'b': .., 'c': ..},
             'reflections': [{'h': .., 'k': .., 'l': .., 'intensity': ..}],
             'spaceGroup': {'number': ..}}
        """
        if data is None:
            raise PattersonInputError("No crystal data supplied.")

        reflections = [Reflection.from_dict(r) for r in (data.get('reflections') or [])]

        space_group = None
        sg = data.get('spaceGroup')
        if isinstance(sg, Mapping):
            sg = sg.get('number')
        if sg is not None and not isinstance(sg, bool):
            try:
                space_group = int(sg)
            except (TypeError, ValueError):
                space_group = None

        return cls(
            cell=UnitCell.from_dict(data.get('cell')),
            reflections=reflections,
            space_group=space_group,
        )
