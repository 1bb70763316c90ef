# backend/tests/test_label_code_generator.py

import asyncio
import logging
import re
from datetime import datetime, timezone

import pytest

from label_code_generator import LabelCodeGenerator

CODE_PATTERN = re.compile(r"^LB\d{6}-\d{6}$")


class TestMint:

    @pytest.mark.asyncio
    async def test_code_format(self, code_generator):
        code = await code_generator.mint("ATRAZINE_UUID", datetime(2025, 10, 18, 9, 30, tzinfo=timezone.utc))

        assert code == "LB251018-000001"
        assert CODE_PATTERN.match(code)

    @pytest.mark.asyncio
    async def test_sequential_codes_are_distinct_and_sorted(self, code_generator):
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)
        codes = [await code_generator.mint("ATRAZINE_UUID", ts) for _ in range(50)]

        assert len(set(codes)) == 50
        assert codes == sorted(codes)

    @pytest.mark.asyncio
    async def test_concurrent_codes_are_distinct(self, code_generator):
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)
        codes = await asyncio.gather(
            *(code_generator.mint(f"COMPOUND_{i % 3}", ts) for i in range(100))
        )

        assert len(set(codes)) == 100

    @pytest.mark.asyncio
    async def test_sequence_is_global_across_compounds(self, code_generator):
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)
        first = await code_generator.mint("A", ts)
        second = await code_generator.mint("B", ts)

        assert first.endswith("-000001")
        assert second.endswith("-000002")

    @pytest.mark.asyncio
    async def test_sequence_survives_new_generator(self, mock_db):
        """The counter is persisted, so a restarted process continues it"""
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)
        first = await LabelCodeGenerator(mock_db).mint("A", ts)
        second = await LabelCodeGenerator(mock_db).mint("A", ts)

        assert first != second
        assert mock_db.counters.docs[0]["seq"] == 2

    @pytest.mark.asyncio
    async def test_custom_prefix(self, mock_db):
        generator = LabelCodeGenerator(mock_db, prefix="pl")
        code = await generator.mint("A", datetime(2026, 1, 2, tzinfo=timezone.utc))

        assert code == "PL260102-000001"

    @pytest.mark.asyncio
    async def test_naive_timestamp_treated_as_utc(self, code_generator):
        code = await code_generator.mint("A", datetime(2025, 12, 31, 23, 59))

        assert code.startswith("LB251231-")

    @pytest.mark.asyncio
    async def test_wider_sequence(self, mock_db):
        generator = LabelCodeGenerator(mock_db, sequence_width=8)
        code = await generator.mint("A", datetime(2025, 10, 18, tzinfo=timezone.utc))

        assert code == "LB251018-00000001"

    def test_codes_sort_in_issuance_order_within_width(self, code_generator):
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)
        sequences = [1, 9, 10, 99999, 100000, 999999]
        codes = [code_generator.format_code(ts, seq) for seq in sequences]

        assert codes == sorted(codes)
        assert all(len(code) == len(codes[0]) for code in codes)

    def test_sequence_beyond_width_warns(self, code_generator, caplog):
        ts = datetime(2025, 10, 18, tzinfo=timezone.utc)

        with caplog.at_level(logging.WARNING, logger="label_code_generator"):
            code = code_generator.format_code(ts, 1_000_000)

        assert code == "LB251018-1000000"
        assert "LABEL_SEQUENCE_WIDTH" in caplog.text

    @pytest.mark.parametrize("width", [5, 13])
    def test_invalid_sequence_width_rejected(self, mock_db, width):
        with pytest.raises(ValueError):
            LabelCodeGenerator(mock_db, sequence_width=width)

    def test_invalid_prefix_rejected(self, mock_db):
        with pytest.raises(ValueError):
            LabelCodeGenerator(mock_db, prefix="TOO-LONG-PREFIX")
