"""Token and cost accounting for backend calls."""

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, NamedTuple, Optional


class Price(NamedTuple):
    """USD per million tokens."""
    input: float
    output: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * self.input + output_tokens * self.output) / 1_000_000


FALLBACK_PRICE = Price(0.50, 1.50)

PRICES: Dict[str, Price] = {
    "qwen-max": Price(1.60, 6.40),
    "qwen-plus": Price(0.40, 1.20),
    "qwen-turbo": Price(0.05, 0.20),
    "qwen3-coder-plus": Price(1.00, 5.00),
    "gpt-4o": Price(2.50, 10.00),
    "gpt-4o-mini": Price(0.15, 0.60),
}


def resolve_price(model: str, table: Mapping[str, Price] = PRICES) -> Price:
    """Exact name, then case-insensitive name, then the longest key contained in ``model``."""
    if model in table:
        return table[model]
    lowered = {key.lower(): price for key, price in table.items()}
    name = model.lower()
    if name in lowered:
        return lowered[name]
    for key in sorted(lowered, key=len, reverse=True):
        if key in name:
            return lowered[key]
    return FALLBACK_PRICE


@dataclass
class CallRecord:
    model: str
    purpose: str  # chat | condense
    input_tokens: int
    output_tokens: int
    cost: float
    duration_ms: float = 0.0
    at: float = field(default_factory=time.time)


@dataclass
class CostSummary:
    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    by_purpose: Dict[str, float] = field(default_factory=dict)

    def format_human(self) -> str:
        lines = [
            f"{self.total_calls} backend call(s)",
            f"{self.total_input_tokens:,} tokens in, {self.total_output_tokens:,} out",
            f"${self.total_cost:.4f} total",
        ]
        if len(self.by_purpose) > 1:
            lines += [f"  {purpose}: ${cost:.4f}" for purpose, cost in sorted(self.by_purpose.items())]
        return "\n".join(lines)


class CostTracker:
    """Per-task ledger of backend calls, both chat turns and condense requests."""

    def __init__(self, prices: Optional[Mapping[str, Price]] = None):
        self.prices = PRICES if prices is None else prices
        self.calls: List[CallRecord] = []

    def __len__(self) -> int:
        return len(self.calls)

    def price_for(self, model: str) -> Price:
        return resolve_price(model, self.prices)

    def record_call(self, model: str, input_tokens: int, output_tokens: int,
                    duration_ms: float = 0.0, purpose: str = "chat") -> CallRecord:
        record = CallRecord(
            model=model,
            purpose=purpose,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self.price_for(model).cost(input_tokens, output_tokens),
            duration_ms=duration_ms,
        )
        self.calls.append(record)
        return record

    def get_summary(self) -> CostSummary:
        summary = CostSummary(total_calls=len(self.calls))
        for record in self.calls:
            summary.total_input_tokens += record.input_tokens
            summary.total_output_tokens += record.output_tokens
            summary.total_cost += record.cost
            summary.by_purpose[record.purpose] = summary.by_purpose.get(record.purpose, 0.0) + record.cost
        return summary

    def to_json(self) -> str:
        return json.dumps([asdict(record) for record in self.calls], indent=2)
