from dataclasses import dataclass, field
from datetime import datetime

# OpenAI cost line items read "<model>, <category>"
LINE_ITEM_SEPARATOR = ", "


def extract_model_from_line_item(line_item: "str") -> "str":
    """
    extracts the model name from a billing line item, e.g.
    "gpt-4o-2024-08-06, input" -> "gpt-4o-2024-08-06". A label
    without separator is the model name itself.
    """
    return line_item.split(LINE_ITEM_SEPARATOR, 1)[0]


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord represents the token usage of one model
    within one time bucket.
    """

    platform: "str"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    request_count: "int"
    # start of the time bucket (UTC)
    start_time: "datetime"
    # end of the time bucket (UTC)
    end_time: "datetime"

    def __post_init__(self) -> "None":
        for name in ("input_tokens", "output_tokens", "request_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @property
    def total_tokens(self) -> "int":
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class CostRecord:
    """
    CostRecord represents the cost of one billing line item
    within one time bucket.
    """

    platform: "str"
    model: "str"
    line_item: "str"
    amount: "float"
    currency: "str"
    start_time: "datetime"
    end_time: "datetime"

    def __post_init__(self) -> "None":
        if self.amount < 0:
            raise ValueError("amount must not be negative")


@dataclass
class ConsumptionSummary:
    """
    ConsumptionSummary accumulates usage records for one platform.
    An empty model means the summary spans every model; its
    by_model mapping then holds one child summary per model.
    """

    platform: "str"
    period: "str"
    start_time: "datetime"
    end_time: "datetime"
    model: "str" = ""
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    request_count: "int" = 0
    by_model: "dict[str, ConsumptionSummary]" = field(default_factory=dict)

    @property
    def total_tokens(self) -> "int":
        return self.input_tokens + self.output_tokens

    def add(self, record: "UsageRecord") -> "None":
        """
        folds a record into the running totals.
        """
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.request_count += record.request_count

        if self.model:
            return

        child = self.by_model.get(record.model)
        if child is None:
            child = ConsumptionSummary(
                platform=self.platform,
                period=self.period,
                start_time=self.start_time,
                end_time=self.end_time,
                model=record.model,
            )
            self.by_model[record.model] = child
        child.add(record)


@dataclass
class PricingSummary:
    """
    PricingSummary accumulates cost records for one platform,
    keeping the line items that make up each model's total.
    """

    platform: "str"
    period: "str"
    start_time: "datetime"
    end_time: "datetime"
    model: "str" = ""
    total_cost: "float" = 0.0
    currency: "str" = ""
    line_items: "list[CostRecord]" = field(default_factory=list)
    by_model: "dict[str, PricingSummary]" = field(default_factory=dict)

    def add(self, record: "CostRecord") -> "None":
        """
        folds a record into the running total. The currency is taken
        from the first record seen.
        """
        self.total_cost += record.amount
        if not self.currency:
            self.currency = record.currency
        self.line_items.append(record)

        if self.model:
            return

        child = self.by_model.get(record.model)
        if child is None:
            child = PricingSummary(
                platform=self.platform,
                period=self.period,
                start_time=self.start_time,
                end_time=self.end_time,
                model=record.model,
            )
            self.by_model[record.model] = child
        child.add(record)


def summarize_consumption(
    records: "list[UsageRecord]",
    platform: "str",
    period: "str",
    start_time: "datetime",
    end_time: "datetime",
) -> "ConsumptionSummary":
    summary = ConsumptionSummary(
        platform=platform,
        period=period,
        start_time=start_time,
        end_time=end_time,
    )
    for record in records:
        summary.add(record)
    return summary


def summarize_pricing(
    records: "list[CostRecord]",
    platform: "str",
    period: "str",
    start_time: "datetime",
    end_time: "datetime",
) -> "PricingSummary":
    summary = PricingSummary(
        platform=platform,
        period=period,
        start_time=start_time,
        end_time=end_time,
    )
    for record in records:
        summary.add(record)
    return summary


@dataclass(frozen=True, slots=True)
class ModelStats:
    """
    ModelStats joins one model's consumption and cost for display.
    """

    platform: "str"
    model: "str"
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    request_count: "int" = 0
    cost: "float" = 0.0

    @property
    def total_tokens(self) -> "int":
        return self.input_tokens + self.output_tokens

    @property
    def cost_per_1k_tokens(self) -> "float":
        if self.total_tokens <= 0 or self.cost <= 0:
            return 0.0
        return self.cost / self.total_tokens * 1000


def model_breakdown(
    consumption: "ConsumptionSummary",
    pricing: "PricingSummary | None" = None,
) -> "list[ModelStats]":
    """
    joins consumption and pricing by model, sorted by total tokens
    and then cost, both descending. Models with neither tokens nor
    cost are left out.
    """
    costs = (
        {model: child.total_cost for model, child in pricing.by_model.items()}
        if pricing is not None
        else {}
    )

    stats: "list[ModelStats]" = []
    for model in consumption.by_model.keys() | costs.keys():
        usage = consumption.by_model.get(model)
        entry = ModelStats(
            platform=consumption.platform,
            model=model,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            request_count=usage.request_count if usage else 0,
            cost=costs.get(model, 0.0),
        )
        if entry.total_tokens > 0 or entry.cost > 0:
            stats.append(entry)

    stats.sort(key=lambda s: (-s.total_tokens, -s.cost, s.model))
    return stats
