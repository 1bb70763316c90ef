# backend/stock_ledger.py

"""
Stock Ledger - single authority for a compound's live stock.

Responsibilities:
- Atomic debit/credit of compound stock (all-or-nothing)
- Critical-level comparison on every debit (advisory only)
- Append-only movement trail in `stock_movements`
- Ledger audit (movement chain vs. current stock)

INVARIANTS (ENFORCED):
1) Stock never goes below zero (InsufficientStockError, nothing written)
2) Same-compound mutations are serialized: per-compound asyncio lock in this
   process, compare-and-swap on `ledger_version` across processes
3) Different compounds never wait on each other
4) Every committed mutation has exactly one movement with the new ledger_version
5) The ledger triggers no alerting; below_critical is reported, nothing more
6) An uncommitted movement never blocks a compound for good: once it is
   known to be an orphan it is removed and its version is claimed again
"""

import asyncio
import math
from datetime import datetime, timezone
from typing import Optional, Tuple

from pymongo.errors import DuplicateKeyError

from keyed_lock import KeyedLock
from unit_conversion_engine import UnitConversionEngine
from weighing_errors import (
    CompoundNotFoundError,
    InsufficientStockError,
    InvalidQuantityError,
    TransactionAbortedError,
    WeighingError
)
from weighing_models import DebitResult, LedgerAudit, MovementType, StockLevel, StockMovement

import logging

logger = logging.getLogger(__name__)

# Float residue tolerated when a debit empties the stock exactly
STOCK_TOLERANCE_MG = 1e-9

DEFAULT_MAX_RETRIES = 5

# Pause between attempts while another writer holds the next ledger version
RETRY_BACKOFF_SECONDS = 0.005

# An uncommitted movement older than this no longer belongs to a write in flight
DEFAULT_ORPHAN_GRACE_SECONDS = 5.0


class StockLedger:
    """Compound stock ledger backed by the `compounds` and `stock_movements` collections"""

    def __init__(
        self,
        db,
        units: Optional[UnitConversionEngine] = None,
        locks: Optional[KeyedLock] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        orphan_grace_seconds: float = DEFAULT_ORPHAN_GRACE_SECONDS
    ):
        self.db = db
        self.units = units or UnitConversionEngine()
        self.locks = locks or KeyedLock()
        self.max_retries = max_retries
        self.orphan_grace_seconds = orphan_grace_seconds
        # Movements this process failed to discard; known to be uncommitted
        self._abandoned = set()

    # ==================== READS ====================

    async def get_compound(self, compound_id: str) -> dict:
        compound = await self.db.compounds.find_one({"id": compound_id}, {"_id": 0})
        if not compound:
            raise CompoundNotFoundError(compound_id)
        return compound

    def stock_levels(self, compound: dict) -> Tuple[float, float]:
        """(stock_mg, critical_mg) of a compound document"""
        try:
            stock_mg = self.units.normalize_mass(
                compound.get("stock_value", 0), compound.get("stock_unit") or "mg", field="stock_unit"
            )
            critical_mg = self.units.normalize_mass(
                compound.get("critical_value", 0) or 0, compound.get("critical_unit") or "mg", field="critical_unit"
            )
        except WeighingError as e:
            e.compound_id = compound.get("id")
            raise
        return stock_mg, critical_mg

    async def get_stock_level(self, compound_id: str) -> StockLevel:
        compound = await self.get_compound(compound_id)
        stock_mg, critical_mg = self.stock_levels(compound)
        return StockLevel(
            compound_id=compound_id,
            stock_mg=stock_mg,
            critical_mg=critical_mg,
            below_critical=stock_mg < critical_mg
        )

    # ==================== MUTATIONS ====================

    async def debit(
        self,
        compound_id: str,
        amount_mg: float,
        reference_id: Optional[str] = None,
        actor: str = "system"
    ) -> DebitResult:
        """
        Subtract amount_mg from the compound's stock.

        Raises:
            InvalidQuantityError: amount is not a positive finite number
            CompoundNotFoundError: unknown compound id
            InsufficientStockError: stock would go below zero (stock unchanged)
            TransactionAbortedError: version conflicts exhausted the retries (stock unchanged)
        """
        self._validate_amount(amount_mg, compound_id)
        return await self._apply(compound_id, -amount_mg, MovementType.WEIGHING, reference_id, actor)

    async def credit(
        self,
        compound_id: str,
        amount_mg: float,
        reference_id: Optional[str] = None,
        actor: str = "system"
    ) -> DebitResult:
        """Return amount_mg to stock; used to compensate a committed debit."""
        self._validate_amount(amount_mg, compound_id)
        return await self._apply(compound_id, amount_mg, MovementType.WEIGHING_REVERSAL, reference_id, actor)

    def _validate_amount(self, amount_mg, compound_id: str):
        if (
            isinstance(amount_mg, bool)
            or not isinstance(amount_mg, (int, float))
            or not math.isfinite(amount_mg)
            or amount_mg <= 0
        ):
            error = InvalidQuantityError(amount_mg, field="weighed_amount", reason="must be a positive, finite number")
            error.compound_id = compound_id
            raise error

    @staticmethod
    def _version_filter(compound_id: str, version: int) -> dict:
        if version == 0:
            # Catalog documents may predate the ledger and carry no version yet
            return {"id": compound_id, "ledger_version": {"$in": [0, None]}}
        return {"id": compound_id, "ledger_version": version}

    async def _apply(
        self,
        compound_id: str,
        delta_mg: float,
        movement_type: MovementType,
        reference_id: Optional[str],
        actor: str
    ) -> DebitResult:
        async with self.locks.hold(compound_id):
            for attempt in range(1, self.max_retries + 1):
                compound = await self.get_compound(compound_id)
                stock_mg, critical_mg = self.stock_levels(compound)

                new_stock_mg = stock_mg + delta_mg
                if new_stock_mg < 0:
                    if new_stock_mg > -STOCK_TOLERANCE_MG:
                        new_stock_mg = 0.0
                    else:
                        raise InsufficientStockError(compound_id, -delta_mg, stock_mg)

                version = int(compound.get("ledger_version") or 0)
                stock_unit = compound.get("stock_unit") or "mg"
                new_stock_value = self.units.denormalize(new_stock_mg, stock_unit)

                movement = StockMovement(
                    compound_id=compound_id,
                    compound_name=compound.get("name", ""),
                    movement_type=movement_type,
                    quantity_mg=delta_mg,
                    previous_stock_mg=stock_mg,
                    new_stock_mg=new_stock_mg,
                    ledger_version=version + 1,
                    reference_id=reference_id,
                    created_by=actor or "system"
                )
                # Movement first: a crash before the stock update leaves an orphan the audit reports
                try:
                    await self.db.stock_movements.insert_one(movement.model_dump())
                except DuplicateKeyError:
                    # Version already taken (unique compound_id + ledger_version index)
                    if await self._clear_stale_movement(compound_id, version + 1):
                        continue
                    logger.warning(
                        f"Ledger version {version + 1} of compound {compound_id} already claimed "
                        f"(attempt {attempt}/{self.max_retries}), retrying"
                    )
                    await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
                    continue

                try:
                    result = await self.db.compounds.update_one(
                        self._version_filter(compound_id, version),
                        {
                            "$set": {
                                "stock_value": new_stock_value,
                                "updated_at": datetime.now(timezone.utc).isoformat()
                            },
                            "$inc": {"ledger_version": 1}
                        }
                    )
                except Exception:
                    await self._discard_movement(movement.id)
                    raise

                if result.modified_count == 1:
                    logger.info(
                        f"Stock {movement_type.value} on compound {compound_id}: "
                        f"{stock_mg:g} mg → {new_stock_mg:g} mg (version {version + 1})"
                    )
                    return DebitResult(
                        compound_id=compound_id,
                        previous_stock_mg=stock_mg,
                        remaining_mg=new_stock_mg,
                        remaining_stock=new_stock_value,
                        remaining_stock_unit=stock_unit,
                        critical_mg=critical_mg,
                        below_critical=new_stock_mg < critical_mg,
                        movement_id=movement.id,
                        ledger_version=version + 1
                    )

                await self._discard_movement(movement.id)
                logger.warning(
                    f"Ledger version conflict on compound {compound_id} "
                    f"(attempt {attempt}/{self.max_retries}), retrying"
                )

        raise TransactionAbortedError(
            f"Stock of compound '{compound_id}' is being updated concurrently; no change was applied",
            compound_id=compound_id
        )

    async def _discard_movement(self, movement_id: str):
        try:
            await self.db.stock_movements.delete_one({"id": movement_id})
        except Exception:
            self._abandoned.add(movement_id)
            logger.exception(f"Failed to discard uncommitted stock movement {movement_id}")

    async def _clear_stale_movement(self, compound_id: str, claimed_version: int) -> bool:
        """
        Remove the movement holding `claimed_version` when it was never committed.

        A movement ahead of the compound's ledger_version is either a write in
        flight in another process or an orphan left by a crash or a failed
        discard. Only orphans (abandoned here, or older than the grace period)
        are removed. Returns True when the version is free to claim again.
        """
        compound = await self.get_compound(compound_id)
        if int(compound.get("ledger_version") or 0) >= claimed_version:
            return False

        holder = await self.db.stock_movements.find_one(
            {"compound_id": compound_id, "ledger_version": claimed_version}, {"_id": 0}
        )
        if holder is None:
            return True
        if holder["id"] not in self._abandoned and not self._is_expired(holder.get("created_at")):
            return False

        await self.db.stock_movements.delete_one({"id": holder["id"], "ledger_version": claimed_version})
        self._abandoned.discard(holder["id"])
        logger.warning(
            f"Removed uncommitted stock movement {holder['id']} "
            f"(compound {compound_id}, version {claimed_version})"
        )
        return True

    def _is_expired(self, created_at) -> bool:
        try:
            created = datetime.fromisoformat(created_at)
        except (TypeError, ValueError):
            # Not written by this ledger; nothing in flight to wait for
            return True
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - created).total_seconds()
        return age > self.orphan_grace_seconds

    # ==================== AUDIT ====================

    async def list_movements(self, compound_id: str, limit: int = 1000) -> list:
        return await self.db.stock_movements.find(
            {"compound_id": compound_id}, {"_id": 0}
        ).sort("ledger_version", -1).to_list(limit)

    async def audit(self, compound_id: str) -> LedgerAudit:
        """
        Check the movement chain of a compound against its current stock.

        The chain is consistent when versions run 1..ledger_version without
        gaps, each movement starts where the previous one ended, each delta
        matches its endpoints and the last movement ends at the current stock.
        """
        compound = await self.get_compound(compound_id)
        stock_mg, _ = self.stock_levels(compound)
        version = int(compound.get("ledger_version") or 0)

        movements = await self.db.stock_movements.find(
            {"compound_id": compound_id}, {"_id": 0}
        ).sort("ledger_version", 1).to_list(None)

        issues = []
        committed = [m for m in movements if m["ledger_version"] <= version]
        for orphan in movements:
            if orphan["ledger_version"] > version:
                issues.append(
                    f"Movement {orphan['id']} has version {orphan['ledger_version']} "
                    f"ahead of compound version {version} (uncommitted)"
                )

        previous = None
        for movement in committed:
            expected_version = 1 if previous is None else previous["ledger_version"] + 1
            if movement["ledger_version"] != expected_version:
                issues.append(
                    f"Movement {movement['id']} has version {movement['ledger_version']}, expected {expected_version}"
                )
            if previous is not None and not _close(movement["previous_stock_mg"], previous["new_stock_mg"]):
                issues.append(
                    f"Movement {movement['id']} starts at {movement['previous_stock_mg']:g} mg "
                    f"but previous movement ended at {previous['new_stock_mg']:g} mg"
                )
            if not _close(movement["new_stock_mg"] - movement["previous_stock_mg"], movement["quantity_mg"]):
                issues.append(f"Movement {movement['id']} delta does not match its stock endpoints")
            previous = movement

        if previous is None:
            if version > 0:
                issues.append(f"No movements recorded for ledger version {version}")
        else:
            if previous["ledger_version"] != version:
                issues.append(
                    f"Last movement version {previous['ledger_version']} does not match compound version {version}"
                )
            if not _close(previous["new_stock_mg"], stock_mg):
                issues.append(
                    f"Current stock {stock_mg:g} mg differs from ledger balance {previous['new_stock_mg']:g} mg"
                )

        return LedgerAudit(
            compound_id=compound_id,
            is_consistent=not issues,
            current_stock_mg=stock_mg,
            ledger_version=version,
            movements_checked=len(committed),
            issues=issues
        )


def _close(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-6)
