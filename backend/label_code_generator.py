# backend/label_code_generator.py

"""
Label code generator.

Codes look like LB251018-000042: prefix, issue date (YYMMDD) and a global
sequence number. The sequence lives in the `counters` collection and is
advanced with an atomic $inc, so codes stay unique across restarts and
across processes. Codes are ASCII only.

Within one day codes sort in issuance order as long as the sequence fits
`sequence_width` digits (999999 labels with the default width of 6). Past
that, codes stay unique but grow a digit and lose lexicographic order;
raise LABEL_SEQUENCE_WIDTH before the counter gets there.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from keyed_lock import KeyedLock

import logging

logger = logging.getLogger(__name__)

LABEL_SEQUENCE_KEY = "label_codes"
DEFAULT_PREFIX = "LB"
SEQUENCE_WIDTH = 6
MAX_SEQUENCE_WIDTH = 12

_PREFIX_PATTERN = re.compile(r"^[A-Z0-9]{0,6}$")


class LabelCodeGenerator:
    def __init__(
        self,
        db,
        prefix: str = DEFAULT_PREFIX,
        locks: Optional[KeyedLock] = None,
        sequence_key: str = LABEL_SEQUENCE_KEY,
        sequence_width: int = SEQUENCE_WIDTH
    ):
        prefix = (prefix or "").strip().upper()
        if not _PREFIX_PATTERN.match(prefix):
            raise ValueError(f"Label code prefix must be up to 6 letters/digits, got '{prefix}'")
        if not SEQUENCE_WIDTH <= sequence_width <= MAX_SEQUENCE_WIDTH:
            raise ValueError(
                f"Label sequence width must be between {SEQUENCE_WIDTH} and {MAX_SEQUENCE_WIDTH}, got {sequence_width}"
            )
        self.db = db
        self.prefix = prefix
        self.locks = locks or KeyedLock()
        self.sequence_key = sequence_key
        self.sequence_width = sequence_width

    async def next_sequence(self) -> int:
        async with self.locks.hold(("sequence", self.sequence_key)):
            counter = await self.db.counters.find_one_and_update(
                {"collection": self.sequence_key},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        return int(counter.get("seq", 1))

    def format_code(self, timestamp: datetime, seq: int) -> str:
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        if seq >= 10 ** self.sequence_width:
            logger.warning(
                f"Label sequence {seq} exceeds {self.sequence_width} digits; "
                f"codes no longer sort in issuance order, raise LABEL_SEQUENCE_WIDTH"
            )
        return f"{self.prefix}{timestamp.strftime('%y%m%d')}-{str(seq).zfill(self.sequence_width)}"

    async def mint(self, compound_id: str, timestamp: Optional[datetime] = None) -> str:
        """Issue the next label code; no two calls ever return the same code."""
        seq = await self.next_sequence()
        code = self.format_code(timestamp or datetime.now(timezone.utc), seq)
        logger.info(f"Minted label code {code} for compound {compound_id}")
        return code
