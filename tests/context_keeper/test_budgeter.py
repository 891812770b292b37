"""Tests for priority-based budget packing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from context_keeper.budgeter import Budgeter
from context_keeper.config import BudgetConfig
from context_keeper.models import ContextComponent
from context_keeper.token_counter import estimate_tokens


def words(n: int, word: str = "word") -> str:
    return " ".join([word] * n)


@pytest.fixture
def budgeter():
    """70 tokens available."""
    return Budgeter(BudgetConfig(in_max=100, reserve_out=0.3))


class TestAvailable:
    def test_floor_of_reserved_share(self, budgeter):
        assert budgeter.available == 70

    def test_default_budget(self):
        assert Budgeter().available == 105_000

    def test_reserve_out_validated(self):
        with pytest.raises(ValidationError):
            BudgetConfig(reserve_out=1.0)
        with pytest.raises(ValidationError):
            BudgetConfig(reserve_out=-0.1)


class TestPack:
    def test_end_to_end_example(self, budgeter):
        high = ContextComponent(name="persona", content=words(6, "persona"), priority=100)
        low = ContextComponent(name="notes", content=words(4, "note"), priority=10)

        result = budgeter.pack_with_report([low, high])

        assert result.contents == [high.content, low.content]
        assert result.allocations == {"persona": 8, "notes": 6}
        assert result.used == 14
        assert result.available == 70

    def test_equal_priorities_keep_input_order(self, budgeter):
        first = ContextComponent(name="a", content="first block", priority=5)
        second = ContextComponent(name="b", content="second block", priority=5)
        assert budgeter.pack([first, second]) == ["first block", "second block"]

    def test_minimum_that_cannot_fit_is_skipped(self, budgeter):
        big = ContextComponent(name="big", content=words(50), priority=100)
        picky = ContextComponent(name="picky", content=words(10), priority=50, min_tokens=10)
        small = ContextComponent(name="small", content="tiny note", priority=10)

        result = budgeter.pack_with_report([big, picky, small])

        assert result.contents == [big.content, small.content]
        assert result.skipped == ["picky"]
        assert result.used == 65 + 3

    def test_oversized_component_truncated_to_remaining(self, budgeter):
        text = words(100)
        result = budgeter.pack_with_report([ContextComponent(name="t", content=text, priority=1)])

        packed = result.contents[0]
        assert packed.endswith("...")
        assert len(packed) < len(text)
        assert result.used == estimate_tokens(packed) <= 70

    def test_max_tokens_clamp(self, budgeter):
        component = ContextComponent(name="c", content=words(20), priority=1, max_tokens=10)
        result = budgeter.pack_with_report([component])
        assert result.allocations["c"] <= 10

    @pytest.mark.parametrize("clamp", [0, 1])
    def test_tiny_clamp_packs_nothing(self, budgeter, clamp):
        component = ContextComponent(
            name="c", content="alpha beta gamma delta epsilon", priority=1, max_tokens=clamp
        )
        result = budgeter.pack_with_report([component])

        assert result.contents == []
        assert result.allocations == {}
        assert result.skipped == ["c"]
        assert result.used == 0

    def test_packed_cost_respects_clamp(self, budgeter):
        components = [
            ContextComponent(name=f"c{n}", content=words(12), priority=n, max_tokens=n)
            for n in range(6)
        ]
        result = budgeter.pack_with_report(components)

        for name, cost in result.allocations.items():
            assert cost <= int(name[1:])
        assert all(c.strip(".") for c in result.contents)

    def test_allocation_below_minimum_is_skipped(self, budgeter):
        component = ContextComponent(name="c", content=words(20), priority=1, min_tokens=30)
        result = budgeter.pack_with_report([component])
        assert result.contents == []
        assert result.skipped == ["c"]

    def test_empty_components_skipped(self, budgeter):
        result = budgeter.pack_with_report(
            [ContextComponent(name="empty", content="   ", priority=9)]
        )
        assert result.contents == []
        assert result.skipped == ["empty"]

    def test_never_exceeds_available(self, budgeter):
        components = [
            ContextComponent(name=f"c{i}", content=words(5 + 7 * i), priority=i % 3)
            for i in range(8)
        ]
        result = budgeter.pack_with_report(components)

        assert result.used <= result.available
        assert result.used == sum(estimate_tokens(c) for c in result.contents)

    def test_stops_once_budget_reached(self, budgeter):
        filler = ContextComponent(name="filler", content=words(200), priority=10)
        late = ContextComponent(name="late", content="x", priority=1)

        result = budgeter.pack_with_report([filler, late])

        assert result.used <= 70
        assert result.contents[0].endswith("...")
