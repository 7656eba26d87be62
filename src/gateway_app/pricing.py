from gateway_app.db_models import ModelConfig
from gateway_app.logging_config import log_anomaly
from gateway_app.stores import PricingStore
from gateway_app.token_usage import TokenUsage

TOKENS_PER_PRICE_UNIT = 1_000_000


def compute_cost(usage: TokenUsage, config: ModelConfig) -> float:
    """Prices are quoted per million tokens."""
    input_cost = (usage.prompt_tokens / TOKENS_PER_PRICE_UNIT) * float(config.input_price or 0)
    output_cost = (usage.completion_tokens / TOKENS_PER_PRICE_UNIT) * float(
        config.output_price or 0
    )
    return input_cost + output_cost


class PricingCalculator:
    def __init__(self, store: PricingStore):
        self._store = store

    async def calculate(self, model_id: str, usage: TokenUsage) -> float:
        config = await self._store.find_by_model_id(model_id)
        if config is None:
            # Unpriced models are served for free rather than rejected.
            if usage.total_tokens > 0:
                log_anomaly(
                    "pricing_missing",
                    model_id=model_id,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                )
            return 0.0
        return compute_cost(usage, config)
