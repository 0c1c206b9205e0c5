from src.core.insights.generator import (
    DEFAULT_PRODUCERS,
    InsightContext,
    SignalProducer,
    generate_insights,
)
from src.core.insights.models import Insight, InsightsRequest, InsightsResponse

__all__ = [
    "DEFAULT_PRODUCERS",
    "Insight",
    "InsightContext",
    "InsightsRequest",
    "InsightsResponse",
    "SignalProducer",
    "generate_insights",
]
