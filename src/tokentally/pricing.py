from dataclasses import dataclass

# tokens of a single event billed at the base rate before
# tiered prices apply
TIERED_THRESHOLD = 200_000

_PER_MILLION = 1_000_000


def calculate_tiered_cost(
    tokens: "int",
    base_price: "float",
    tiered_price: "float | None",
) -> "float":
    """
    bills the first TIERED_THRESHOLD tokens at base_price and the
    rest at tiered_price. Without a tiered price every token is
    billed at base_price. Prices are per million tokens.
    """
    if tiered_price is None or tokens <= TIERED_THRESHOLD:
        return tokens * base_price / _PER_MILLION

    base_cost = TIERED_THRESHOLD * base_price / _PER_MILLION
    tiered_cost = (tokens - TIERED_THRESHOLD) * tiered_price / _PER_MILLION
    return base_cost + tiered_cost


@dataclass(frozen=True, slots=True)
class PricingSchedule:
    """
    PricingSchedule holds per-million token prices for one model
    family. Tiered prices apply to input and output only; cache
    writes and reads are always billed flat.
    """

    input_price: "float"
    output_price: "float"
    cache_creation_price: "float"
    cache_read_price: "float"
    tiered_input_price: "float | None" = None
    tiered_output_price: "float | None" = None

    def calculate_cost(
        self,
        input_tokens: "int",
        output_tokens: "int",
        cache_creation_tokens: "int",
        cache_read_tokens: "int",
    ) -> "float":
        input_cost = calculate_tiered_cost(
            input_tokens, self.input_price, self.tiered_input_price
        )
        output_cost = calculate_tiered_cost(
            output_tokens, self.output_price, self.tiered_output_price
        )
        cache_creation_cost = (
            cache_creation_tokens * self.cache_creation_price / _PER_MILLION
        )
        cache_read_cost = cache_read_tokens * self.cache_read_price / _PER_MILLION

        return input_cost + output_cost + cache_creation_cost + cache_read_cost


CLAUDE_OPUS_45 = PricingSchedule(
    input_price=5.0,
    output_price=25.0,
    cache_creation_price=6.25,
    cache_read_price=0.50,
)
CLAUDE_OPUS_4 = PricingSchedule(
    input_price=15.0,
    output_price=75.0,
    cache_creation_price=18.75,
    cache_read_price=1.50,
)
CLAUDE_SONNET_45 = PricingSchedule(
    input_price=3.0,
    output_price=15.0,
    cache_creation_price=3.75,
    cache_read_price=0.30,
    tiered_input_price=6.0,
    tiered_output_price=22.5,
)
CLAUDE_SONNET_4 = PricingSchedule(
    input_price=3.0,
    output_price=15.0,
    cache_creation_price=3.75,
    cache_read_price=0.30,
    tiered_input_price=6.0,
    tiered_output_price=22.5,
)
CLAUDE_HAIKU_45 = PricingSchedule(
    input_price=1.0,
    output_price=5.0,
    cache_creation_price=1.25,
    cache_read_price=0.10,
)
CLAUDE_HAIKU_35 = PricingSchedule(
    input_price=0.80,
    output_price=4.0,
    cache_creation_price=1.0,
    cache_read_price=0.08,
)

DEFAULT_SCHEDULE = CLAUDE_SONNET_4

# each tuple is (substrings, schedule, display_name), checked in
# order so the 4.5 families win over their 4 counterparts
MODEL_FAMILIES: "list[tuple[tuple[str, ...], PricingSchedule, str]]" = [
    (("opus-4-5", "opus-45", "opus45"), CLAUDE_OPUS_45, "Claude Opus 4.5"),
    (("opus-4", "opus4"), CLAUDE_OPUS_4, "Claude Opus 4"),
    (("sonnet-4-5", "sonnet-45", "sonnet45"), CLAUDE_SONNET_45, "Claude Sonnet 4.5"),
    (("sonnet-4", "sonnet4"), CLAUDE_SONNET_4, "Claude Sonnet 4"),
    (("haiku-4-5", "haiku-45", "haiku45"), CLAUDE_HAIKU_45, "Claude Haiku 4.5"),
    (("haiku-3-5", "haiku-35"), CLAUDE_HAIKU_35, "Claude Haiku 3.5"),
    # any other haiku falls back to the 3.5 prices
    (("haiku",), CLAUDE_HAIKU_35, "Claude Haiku"),
]


def _match_family(
    model: "str",
) -> "tuple[tuple[str, ...], PricingSchedule, str] | None":
    lowered = model.lower()
    for family in MODEL_FAMILIES:
        if any(s in lowered for s in family[0]):
            return family
    return None


def resolve(model: "str") -> "PricingSchedule":
    """
    resolves a model identifier to its pricing schedule by
    case-insensitive substring match. Unknown models get
    DEFAULT_SCHEDULE.
    """
    family = _match_family(model)
    if family is None:
        return DEFAULT_SCHEDULE
    return family[1]


def display_name(model: "str") -> "str":
    family = _match_family(model)
    if family is None:
        return model
    return family[2]


def display_names(models: "set[str] | frozenset[str]") -> "str":
    if not models:
        return "Unknown"
    return ", ".join(sorted({display_name(m) for m in models}))
