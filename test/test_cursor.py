"""Unit tests for the Cursor class."""

import pytest

from message_relayer.cursor import Cursor


class TestCursor:
    """Test suite for Cursor."""

    def test_has_work_until_tip_is_passed(self):
        """Test that the cursor has work while it is at or below the tip."""
        cursor = Cursor(next_position=5, known_tip=5)
        assert cursor.has_work()

        cursor.advance(1)
        assert not cursor.has_work()

    def test_fresh_cursor_has_no_work(self):
        """Test that a cursor without a known tip reports no work."""
        assert not Cursor(next_position=1).has_work()

    def test_advance_by_zero_is_allowed(self):
        cursor = Cursor(next_position=3)
        cursor.advance(0)
        assert cursor.next_position == 3

    def test_advance_rejects_negative(self):
        """Test that the cursor never moves backwards."""
        cursor = Cursor(next_position=3)
        with pytest.raises(ValueError, match="only move forward"):
            cursor.advance(-1)
        assert cursor.next_position == 3

    def test_negative_position_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            Cursor(next_position=-1)

    @pytest.mark.asyncio
    async def test_refresh_tip(self, chain):
        """Test that refreshing replaces the known tip with the chain height."""
        chain.tip = 42
        cursor = Cursor(next_position=1)

        assert await cursor.refresh_tip(chain) == 42
        assert cursor.known_tip == 42
        assert cursor.has_work()
