# backend/concentration_calculator.py

"""
Concentration Calculator

concentration = mass (mg) / volume (mL), expressed in mg/mL unless another
mass/volume display unit is requested.

Inputs MUST already be normalized (mg, mL). The returned value is full
precision; rounding happens only in format_display, at the presentation
boundary.
"""

import math
from typing import Tuple

from unit_conversion_engine import UnitConversionEngine, Dimension, MassUnit, VolumeUnit
from weighing_errors import UnrecognizedUnitError, InvalidQuantityError, DivisionByZeroError
from number_format import format_fixed

DEFAULT_CONCENTRATION_UNIT = "mg/mL"
DISPLAY_DECIMALS = 3


class ConcentrationCalculator:
    """Mass/volume concentration arithmetic on normalized quantities"""

    def __init__(self, units: UnitConversionEngine = None):
        self.units = units or UnitConversionEngine()

    def parse_display_unit(self, display_unit: str) -> Tuple[MassUnit, VolumeUnit]:
        """Split 'mass/volume' (e.g. 'µg/mL') into its recognized components."""
        allowed = [f"{m.value}/{v.value}" for m in MassUnit for v in VolumeUnit]
        if not display_unit or "/" not in display_unit:
            raise UnrecognizedUnitError(str(display_unit or ""), allowed, field="concentration_unit")

        mass_part, volume_part = display_unit.split("/", 1)
        try:
            mass_unit = self.units.normalize_unit(mass_part, Dimension.MASS)
            volume_unit = self.units.normalize_unit(volume_part, Dimension.VOLUME)
        except UnrecognizedUnitError:
            raise UnrecognizedUnitError(display_unit, allowed, field="concentration_unit")
        return mass_unit, volume_unit

    def canonical_unit(self, display_unit: str) -> str:
        mass_unit, volume_unit = self.parse_display_unit(display_unit)
        return f"{mass_unit.value}/{volume_unit.value}"

    def compute(self, mass_mg: float, volume_ml: float, display_unit: str = DEFAULT_CONCENTRATION_UNIT) -> float:
        """
        Compute concentration from normalized mass and volume.

        Raises:
            InvalidQuantityError: non-numeric, negative or non-finite mass; non-numeric or negative volume
            DivisionByZeroError: zero or non-finite volume
            UnrecognizedUnitError: display unit is not mass/volume
        """
        mass_unit, volume_unit = self.parse_display_unit(display_unit)

        if not _is_number(mass_mg) or not math.isfinite(mass_mg) or mass_mg < 0:
            raise InvalidQuantityError(mass_mg, field="weighed_amount")
        if not _is_number(volume_ml) or volume_ml < 0:
            raise InvalidQuantityError(volume_ml, field="prepared_volume")
        if not math.isfinite(volume_ml) or volume_ml == 0:
            raise DivisionByZeroError(volume_ml)

        mg_per_ml = mass_mg / volume_ml

        if mass_unit == MassUnit.MG and volume_unit == VolumeUnit.ML:
            return mg_per_ml

        # mg/mL → target: rescale the mass numerator, then the volume denominator
        per_ml = self.units.denormalize(mg_per_ml, mass_unit.value)
        return per_ml * self.units.normalize_volume(1, volume_unit.value)

    def format_display(self, concentration: float, display_unit: str = DEFAULT_CONCENTRATION_UNIT) -> str:
        """'1.250 mg/mL' style display string, 3 decimals."""
        return f"{format_fixed(concentration, DISPLAY_DECIMALS)} {self.canonical_unit(display_unit)}"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
