# backend/weighing_service.py

"""
Weighing Service - orchestrates a weighing submission end to end.

Flow (one state per completed step):
    VALIDATED → NORMALIZED → COMPUTED → DEBITED → LABELED → COMPLETED
Any failure → REJECTED (terminal).

Side effects of a committed submission are exactly:
- one StockLedger debit
- one LabelCodeGenerator mint
- one `usages` document (WeighingRecord)
- one `labels` document (Label)

Debit, mint and both inserts form one saga. When a step after the debit
fails, completed steps are compensated in reverse order (documents deleted,
stock credited back) before TransactionAbortedError is raised. A minted code
that ends up unused is burned, never reissued.

The commit runs inside asyncio.shield: a caller that times out or is
cancelled does not interrupt the transaction half way.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

import pytz

from concentration_calculator import ConcentrationCalculator
from label_code_generator import LabelCodeGenerator
from label_encoder import MATRIX_ENCODING, LabelEncoder, build_matrix_payload
from stock_ledger import StockLedger
from unit_conversion_engine import UnitConversionEngine
from weighing_errors import InvalidQuantityError, PayloadTooLongError, TransactionAbortedError, WeighingError
from weighing_models import (
    EncodedLabel,
    Label,
    WeighingRecord,
    WeighingRequest,
    WeighingResult
)

import logging

logger = logging.getLogger(__name__)


class WeighingState(str, Enum):
    VALIDATED = "VALIDATED"
    NORMALIZED = "NORMALIZED"
    COMPUTED = "COMPUTED"
    DEBITED = "DEBITED"
    LABELED = "LABELED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class WeighingTransaction:
    """State trail and compensating actions of one submission"""

    def __init__(self, request: WeighingRequest):
        self.request = request
        self.state: Optional[WeighingState] = None
        self.history: List[WeighingState] = []
        self._compensations: List[Tuple[str, Callable[[], Awaitable]]] = []

    def advance(self, state: WeighingState):
        self.state = state
        self.history.append(state)
        logger.debug(f"Weighing for compound {self.request.compound_id}: {state.value}")

    def on_rollback(self, description: str, action: Callable[[], Awaitable]):
        self._compensations.append((description, action))

    async def rollback(self) -> List[str]:
        """Run compensations newest first; returns the ones that failed."""
        failed = []
        for description, action in reversed(self._compensations):
            try:
                await action()
            except Exception:
                logger.exception(f"Compensation failed: {description}")
                failed.append(description)
        self._compensations.clear()
        return failed


class WeighingService:
    def __init__(
        self,
        db,
        ledger: Optional[StockLedger] = None,
        code_generator: Optional[LabelCodeGenerator] = None,
        encoder: Optional[LabelEncoder] = None,
        calculator: Optional[ConcentrationCalculator] = None,
        units: Optional[UnitConversionEngine] = None,
        label_timezone=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.units = units or UnitConversionEngine()
        self.ledger = ledger or StockLedger(db, units=self.units)
        self.code_generator = code_generator or LabelCodeGenerator(db)
        self.encoder = encoder or LabelEncoder()
        self.calculator = calculator or ConcentrationCalculator(self.units)
        self.label_timezone = label_timezone or pytz.utc
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit(self, request: WeighingRequest, actor: Optional[str] = None) -> WeighingResult:
        """
        Validate, compute, debit, label and persist one weighing.

        Raises:
            UnrecognizedUnitError, InvalidQuantityError, DivisionByZeroError,
            CompoundNotFoundError, InsufficientStockError: rejected before any side effect
            TransactionAbortedError: failure after the debit, everything compensated
        """
        prepared_by = request.prepared_by or actor or "system"
        task = asyncio.ensure_future(self._run(request, prepared_by))
        task.add_done_callback(_log_detached_failure)
        return await asyncio.shield(task)

    async def _run(self, request: WeighingRequest, prepared_by: str) -> WeighingResult:
        tx = WeighingTransaction(request)
        try:
            return await self._execute(tx, request, prepared_by)
        except WeighingError as e:
            tx.advance(WeighingState.REJECTED)
            logger.info(f"Weighing rejected for compound {request.compound_id}: {e.error_code} - {e.message}")
            raise

    async def _execute(self, tx: WeighingTransaction, request: WeighingRequest, prepared_by: str) -> WeighingResult:
        # Validated: request fields, then catalog lookup
        weighed_amount = self.units.validate_amount(request.weighed_amount, field="weighed_amount")
        if weighed_amount == 0:
            raise InvalidQuantityError(request.weighed_amount, field="weighed_amount", reason="must be greater than zero")
        self.units.validate_amount(request.prepared_volume, field="prepared_volume")
        compound = await self.ledger.get_compound(request.compound_id)
        tx.advance(WeighingState.VALIDATED)

        mass_mg = self.units.normalize_mass(weighed_amount, request.weighed_unit, field="weighed_unit")
        volume_ml = self.units.normalize_volume(request.prepared_volume, request.volume_unit, field="volume_unit")
        tx.advance(WeighingState.NORMALIZED)

        concentration_unit = self.calculator.canonical_unit(request.concentration_unit)
        concentration = self.calculator.compute(mass_mg, volume_ml, concentration_unit)
        concentration_display = self.calculator.format_display(concentration, concentration_unit)
        tx.advance(WeighingState.COMPUTED)

        usage_id = str(uuid.uuid4())
        try:
            debit = await self.ledger.debit(request.compound_id, mass_mg, reference_id=usage_id, actor=prepared_by)
        except WeighingError:
            raise
        except Exception as e:
            raise TransactionAbortedError(
                f"Stock debit failed: {e}", compound_id=request.compound_id, cause=e
            ) from e
        tx.on_rollback(
            f"credit {mass_mg:g} mg back to compound {request.compound_id}",
            lambda: self.ledger.credit(request.compound_id, mass_mg, reference_id=usage_id, actor=prepared_by)
        )
        tx.advance(WeighingState.DEBITED)

        try:
            result = await self._label_and_persist(
                tx, request, compound, prepared_by, usage_id,
                weighed_amount, mass_mg, volume_ml, concentration, concentration_unit, concentration_display, debit
            )
        except Exception as e:
            failed = await tx.rollback()
            if failed:
                logger.critical(
                    f"Weighing rollback incomplete for compound {request.compound_id} "
                    f"(usage {usage_id}): {', '.join(failed)}"
                )
                message = f"Weighing failed and rollback was incomplete ({', '.join(failed)}): {e}"
            else:
                message = f"Weighing failed after stock debit and was rolled back: {e}"
            raise TransactionAbortedError(message, compound_id=request.compound_id, cause=e) from e

        tx.advance(WeighingState.COMPLETED)
        if debit.below_critical:
            logger.warning(
                f"Compound {compound['name']} ({request.compound_id}) is below critical level: "
                f"{debit.remaining_mg:g} mg < {debit.critical_mg:g} mg"
            )
        logger.info(f"Weighing committed: compound {request.compound_id}, label {result.label.label_code}")
        return result

    async def _label_and_persist(
        self, tx, request, compound, prepared_by, usage_id,
        weighed_amount, mass_mg, volume_ml, concentration, concentration_unit, concentration_display, debit
    ) -> WeighingResult:
        local_now = self.clock().astimezone(self.label_timezone)
        label_code = await self.code_generator.mint(request.compound_id, local_now)
        date_str = local_now.strftime("%Y-%m-%d")
        solvent = request.solvent or compound.get("solvent") or ""

        qr_data = build_matrix_payload(
            label_code,
            compound["name"],
            compound["cas_number"],
            concentration_display,
            date_str,
            prepared_by
        )
        try:
            encoded = self.encoder.encode(label_code, qr_data)
        except PayloadTooLongError as e:
            if e.encoding != MATRIX_ENCODING:
                raise
            # Descriptive payload does not fit the label; the QR carries the bare code
            logger.info(f"QR payload for {label_code} too long ({e.length} characters), encoding the label code only")
            qr_data = label_code
            encoded = self.encoder.encode(label_code)
        tx.advance(WeighingState.LABELED)

        usage = WeighingRecord(
            id=usage_id,
            compound_id=request.compound_id,
            compound_name=compound["name"],
            cas_number=compound["cas_number"],
            weighed_amount=weighed_amount,
            weighed_unit=self.units.normalize_unit(request.weighed_unit).value,
            weighed_mass_mg=mass_mg,
            prepared_volume=request.prepared_volume,
            volume_unit=self.units.normalize_unit(request.volume_unit).value,
            prepared_volume_ml=volume_ml,
            concentration=concentration,
            concentration_unit=concentration_unit,
            remaining_stock=debit.remaining_stock,
            remaining_stock_unit=debit.remaining_stock_unit,
            below_critical=debit.below_critical,
            solvent=solvent,
            prepared_by=prepared_by,
            label_code_used=label_code
        )
        label = Label(
            compound_id=request.compound_id,
            usage_id=usage.id,
            label_code=label_code,
            compound_name=compound["name"],
            cas_number=compound["cas_number"],
            concentration=concentration_display,
            solvent=solvent,
            prepared_by=prepared_by,
            date=date_str,
            qr_data=qr_data
        )

        # Compensation first: a failed insert may still have written the document
        tx.on_rollback(f"delete usage {usage.id}", lambda: self.db.usages.delete_one({"id": usage.id}))
        await self.db.usages.insert_one(usage.model_dump())
        tx.on_rollback(f"delete label {label.id}", lambda: self.db.labels.delete_one({"id": label.id}))
        await self.db.labels.insert_one(label.model_dump())

        return WeighingResult(usage=usage, label=label, encoded=encoded, below_critical=debit.below_critical)

    def encode_stored_label(self, label: dict) -> EncodedLabel:
        """Regenerate both images from a stored label document alone."""
        return self.encoder.encode(label["label_code"], label.get("qr_data"))


def _log_detached_failure(task: asyncio.Task):
    # Retrieves the outcome when the caller stopped waiting (shielded commit)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None and not isinstance(error, WeighingError):
        logger.error(f"Weighing transaction failed: {error}")
