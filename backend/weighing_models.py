# backend/weighing_models.py

"""
Weighing pipeline data models.

Compound documents are owned by the catalog; WeighingRecord ("usage"),
Label and StockMovement documents are handed to persistence fully formed
and never mutated afterwards.
"""

import base64
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, ConfigDict, field_validator

from number_format import parse_numeric


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==================== CATALOG ====================

class Compound(BaseModel):
    """Catalog read view of a compound"""
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    cas_number: str
    solvent: str = ""
    stock_value: float
    stock_unit: str = "mg"
    critical_value: float = 0.0
    critical_unit: str = "mg"
    ledger_version: int = 0


class StockLevel(BaseModel):
    compound_id: str
    stock_mg: float
    critical_mg: float
    below_critical: bool


# ==================== REQUEST ====================

class WeighingRequest(BaseModel):
    """Input contract of WeighingService.submit"""
    compound_id: str
    weighed_amount: float
    weighed_unit: str = "mg"
    prepared_volume: float
    volume_unit: str = "mL"
    solvent: Optional[str] = None
    concentration_unit: str = "mg/mL"
    prepared_by: Optional[str] = None

    @field_validator("weighed_amount", "prepared_volume", mode="before")
    @classmethod
    def accept_decimal_comma(cls, v):
        # Unparseable input becomes NaN and is rejected as INVALID_QUANTITY downstream
        return parse_numeric(v, default=math.nan)

    @field_validator("solvent", "prepared_by", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


# ==================== LEDGER ====================

class MovementType(str, Enum):
    WEIGHING = "weighing"
    WEIGHING_REVERSAL = "weighing_reversal"


class StockMovement(BaseModel):
    """One append-only ledger entry per stock mutation"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    compound_id: str
    compound_name: str = ""
    movement_type: MovementType
    quantity_mg: float  # signed delta
    previous_stock_mg: float
    new_stock_mg: float
    ledger_version: int
    reference_id: Optional[str] = None
    created_by: str = "system"
    created_at: str = Field(default_factory=_now_iso)


class DebitResult(BaseModel):
    compound_id: str
    previous_stock_mg: float
    remaining_mg: float
    remaining_stock: float
    remaining_stock_unit: str
    critical_mg: float
    below_critical: bool
    movement_id: str
    ledger_version: int


class LedgerAudit(BaseModel):
    compound_id: str
    is_consistent: bool
    current_stock_mg: float
    ledger_version: int
    movements_checked: int
    issues: List[str] = []


# ==================== RECORDS ====================

class WeighingRecord(BaseModel):
    """Usage record, one per committed weighing"""
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    compound_id: str
    compound_name: str
    cas_number: str
    weighed_amount: float
    weighed_unit: str
    weighed_mass_mg: float
    prepared_volume: float
    volume_unit: str
    prepared_volume_ml: float
    concentration: float
    concentration_unit: str
    remaining_stock: float
    remaining_stock_unit: str
    below_critical: bool = False
    solvent: str
    prepared_by: str
    label_code_used: Optional[str] = None
    created_at: str = Field(default_factory=_now_iso)


class Label(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    compound_id: str
    usage_id: str
    label_code: str
    compound_name: str
    cas_number: str
    concentration: str
    solvent: str = ""
    prepared_by: str
    date: str
    qr_data: str
    created_at: str = Field(default_factory=_now_iso)


class EncodedLabel(BaseModel):
    """Matrix (QR) and linear (Code 128) PNG images of a label"""
    matrix_image: bytes
    linear_image: bytes

    def to_base64(self) -> Dict[str, str]:
        return {
            "qr_code": base64.b64encode(self.matrix_image).decode(),
            "barcode": base64.b64encode(self.linear_image).decode()
        }


class WeighingResult(BaseModel):
    usage: WeighingRecord
    label: Label
    encoded: EncodedLabel
    below_critical: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            "usage": self.usage.model_dump(),
            "label": self.label.model_dump(),
            **self.encoded.to_base64()
        }
