"""Priority-based packing of prompt components into a token budget."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from .config import BudgetConfig
from .models import ContextComponent
from .token_counter import TokenCounter


@dataclass
class PackResult:
    """Packed contents plus per-component accounting."""

    contents: list[str] = field(default_factory=list)
    allocations: dict[str, int] = field(default_factory=dict)
    used: int = 0
    available: int = 0
    skipped: list[str] = field(default_factory=list)


class Budgeter:
    """Greedy packer: highest priority first, truncating to what remains."""

    def __init__(self, config: BudgetConfig | None = None, counter: TokenCounter | None = None):
        self.config = config or BudgetConfig()
        self.counter = counter or TokenCounter()

    @property
    def available(self) -> int:
        """Input tokens left after reserving the output share."""
        # Rounding first keeps e.g. 100 * 0.7 from landing on 69.999...
        return math.floor(round(self.config.in_max * (1 - self.config.reserve_out), 6))

    def pack(self, components: Sequence[ContextComponent]) -> list[str]:
        """Return packed contents in priority order."""
        return self.pack_with_report(components).contents

    def pack_with_report(self, components: Sequence[ContextComponent]) -> PackResult:
        """Pack components and report what each one cost.

        The estimated cost of the packed contents never exceeds ``available``.
        """
        available = self.available
        result = PackResult(available=available)

        # sorted() is stable, so equal priorities keep input order
        ordered = sorted(components, key=lambda c: c.priority, reverse=True)

        for component in ordered:
            remaining = available - result.used
            natural = self.counter.count(component.content)
            min_tokens = component.min_tokens or 0

            if natural == 0:
                result.skipped.append(component.name)
                continue

            if min_tokens > remaining:
                logger.debug(f"Skipping {component.name}: minimum {min_tokens} > {remaining}")
                result.skipped.append(component.name)
                continue

            max_tokens = component.max_tokens if component.max_tokens is not None else natural
            allocation = min(natural, max_tokens, remaining)
            if allocation < min_tokens:
                logger.debug(f"Skipping {component.name}: allocation {allocation} < {min_tokens}")
                result.skipped.append(component.name)
                continue

            content = component.content
            cost = natural
            if allocation < natural:
                content = self.counter.truncate(content, allocation)
                # The truncated text is re-measured; the ratio is only a guess
                cost = self.counter.count(content)

            # allocation <= remaining, so this also bounds the running total
            if not content or cost > allocation:
                logger.debug(f"Skipping {component.name}: cost {cost} > {allocation}")
                result.skipped.append(component.name)
                continue

            result.contents.append(content)
            result.allocations[component.name] = cost
            result.used += cost
            logger.debug(f"Packed {component.name}: {cost} tokens ({result.used}/{available})")

            if result.used >= available:
                break

        logger.info(
            f"Packed {len(result.contents)}/{len(components)} components, "
            f"{result.used}/{available} tokens"
        )
        return result
