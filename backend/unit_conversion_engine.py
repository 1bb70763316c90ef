# backend/unit_conversion_engine.py

"""
Unit Conversion Engine - Weighing Pipeline

This engine is responsible for:
- Unit normalization via alias mapping
- Mass normalization to milligrams (mg)
- Volume normalization to milliliters (mL)
- Inverse conversion (denormalization) for display
- Validation and error signaling

This engine MUST NOT:
- Modify stock
- Guess units
- Convert between mass and volume (no density handling)

GLOBAL INVARIANTS (ENFORCED):
1) All quantities MUST have an explicit unit
2) All units MUST be normalized via alias mapping
3) Unknown units → HARD ERROR (UnrecognizedUnitError)
4) Base units are mg (mass) and mL (volume)
5) Every factor is an exact power of ten
"""

import math
from enum import Enum
from typing import Dict, List, Optional

from weighing_errors import UnrecognizedUnitError, InvalidQuantityError

import logging

logger = logging.getLogger(__name__)

# ==================== ENUMS ====================

class Dimension(str, Enum):
    """Physical dimension of a unit"""
    MASS = "MASS"
    VOLUME = "VOLUME"


class MassUnit(str, Enum):
    """Canonical mass units"""
    UG = "µg"
    MG = "mg"
    G = "g"


class VolumeUnit(str, Enum):
    """Canonical volume units"""
    UL = "µL"
    ML = "mL"
    L = "L"


BASE_MASS_UNIT = MassUnit.MG
BASE_VOLUME_UNIT = VolumeUnit.ML

# ==================== UNIT ALIAS MAPPING ====================

# Keys are matched after strip() + lower(); "µ" is U+00B5, "μ" is U+03BC
UNIT_ALIASES: Dict[str, Enum] = {
    # Microgram aliases
    "µg": MassUnit.UG,
    "μg": MassUnit.UG,
    "ug": MassUnit.UG,
    "mcg": MassUnit.UG,

    # Milligram aliases
    "mg": MassUnit.MG,

    # Gram aliases
    "g": MassUnit.G,
    "gr": MassUnit.G,

    # Microliter aliases
    "µl": VolumeUnit.UL,
    "μl": VolumeUnit.UL,
    "ul": VolumeUnit.UL,

    # Milliliter aliases
    "ml": VolumeUnit.ML,

    # Liter aliases
    "l": VolumeUnit.L,
    "ltr": VolumeUnit.L,
}

# Power-of-ten exponent relative to the base unit of the dimension
UNIT_EXPONENTS: Dict[Enum, int] = {
    MassUnit.UG: -3,
    MassUnit.MG: 0,
    MassUnit.G: 3,
    VolumeUnit.UL: -3,
    VolumeUnit.ML: 0,
    VolumeUnit.L: 3,
}


def _scale(amount: float, exponent: int) -> float:
    # Divide for negative exponents: x / 1000 is correctly rounded, x * 0.001 is not
    if exponent >= 0:
        return amount * (10 ** exponent)
    return amount / (10 ** -exponent)


def dimension_of(unit: Enum) -> Dimension:
    return Dimension.MASS if isinstance(unit, MassUnit) else Dimension.VOLUME


def allowed_units(dimension: Optional[Dimension] = None) -> List[str]:
    if dimension == Dimension.MASS:
        return [u.value for u in MassUnit]
    if dimension == Dimension.VOLUME:
        return [u.value for u in VolumeUnit]
    return [u.value for u in MassUnit] + [u.value for u in VolumeUnit]


# ==================== UNIT CONVERSION ENGINE ====================

class UnitConversionEngine:
    """
    Stateless mass/volume conversion engine.

    Fails hard on unknown units and invalid amounts; never falls back to a
    default unit.
    """

    def normalize_unit(
        self,
        unit: str,
        dimension: Optional[Dimension] = None,
        field: Optional[str] = None
    ) -> Enum:
        """
        Normalize unit via alias mapping.

        Args:
            unit: Input unit string (may be alias)
            dimension: Required dimension, if any
            field: Request field the unit came from (for error context)

        Returns:
            MassUnit or VolumeUnit

        Raises:
            UnrecognizedUnitError: If unit not in alias map or of the wrong dimension
        """
        if not unit or not isinstance(unit, str):
            raise UnrecognizedUnitError(str(unit or ""), allowed_units(dimension), field=field)

        normalized = UNIT_ALIASES.get(unit.strip().lower())
        if normalized is None:
            raise UnrecognizedUnitError(unit, allowed_units(dimension), field=field)

        if dimension is not None and dimension_of(normalized) != dimension:
            raise UnrecognizedUnitError(unit, allowed_units(dimension), field=field)

        return normalized

    def validate_amount(self, amount, field: Optional[str] = None) -> float:
        """Reject negative, non-numeric and non-finite amounts."""
        if isinstance(amount, bool):
            raise InvalidQuantityError(amount, field=field)
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise InvalidQuantityError(amount, field=field)
        if not math.isfinite(value) or value < 0:
            raise InvalidQuantityError(amount, field=field)
        return value

    def normalize_mass(self, amount, unit: str, field: Optional[str] = None) -> float:
        """Convert a mass in any recognized unit to milligrams."""
        normalized_unit = self.normalize_unit(unit, Dimension.MASS, field=field)
        value = self.validate_amount(amount, field=field)
        return _scale(value, UNIT_EXPONENTS[normalized_unit])

    def normalize_volume(self, amount, unit: str, field: Optional[str] = None) -> float:
        """Convert a volume in any recognized unit to milliliters."""
        normalized_unit = self.normalize_unit(unit, Dimension.VOLUME, field=field)
        value = self.validate_amount(amount, field=field)
        return _scale(value, UNIT_EXPONENTS[normalized_unit])

    def denormalize(self, amount: float, target_unit: str, field: Optional[str] = None) -> float:
        """
        Inverse of normalize_mass/normalize_volume.

        The dimension follows from target_unit: a base-unit amount (mg or mL)
        is expressed in target_unit.
        """
        normalized_unit = self.normalize_unit(target_unit, field=field)
        value = float(amount)
        if not math.isfinite(value):
            raise InvalidQuantityError(amount, field=field)
        return _scale(value, -UNIT_EXPONENTS[normalized_unit])

    def convert(self, amount, from_unit: str, to_unit: str) -> float:
        """Convert between two units of the same dimension."""
        source = self.normalize_unit(from_unit)
        target = self.normalize_unit(to_unit, dimension_of(source))
        value = self.validate_amount(amount)
        return _scale(value, UNIT_EXPONENTS[source] - UNIT_EXPONENTS[target])
