"""Services package for the gateway.

This package provides:
- Error classification (classify)
- Quota management (QuotaManager, OperationCostTable, usage ledger)
- Rate limiting with a priority queue (RateLimiter)
- Payload validation and normalization (TransformationPipeline)

The composed client lives in ``tubegateway.app.services.gateway`` and is
imported from there, since it depends on the provider package.
"""

from tubegateway.app.services.error_classifier import classify, classify_response
from tubegateway.app.services.operation_costs import DEFAULT_OPERATION_COSTS, OperationCostTable
from tubegateway.app.services.quota import (
    QuotaBudget,
    QuotaLevel,
    QuotaManager,
    QuotaResetScheduler,
    ReservationToken,
)
from tubegateway.app.services.rate_limiter import Permit, RateLimiter, RequestPriority
from tubegateway.app.services.records import (
    ChannelRecord,
    PlaylistItemRecord,
    PlaylistRecord,
    SearchResultRecord,
    Thumbnail,
    VideoRecord,
)
from tubegateway.app.services.transform import (
    BatchResult,
    ItemError,
    TransformationPipeline,
    TransformedPage,
    canonical_json,
    fingerprint,
)
from tubegateway.app.services.usage_ledger import (
    InMemoryUsageLedger,
    UsageLedger,
    UsageOutcome,
    UsageRecord,
)

__all__ = [
    # Errors
    "classify",
    "classify_response",
    # Quota
    "DEFAULT_OPERATION_COSTS",
    "OperationCostTable",
    "QuotaBudget",
    "QuotaLevel",
    "QuotaManager",
    "QuotaResetScheduler",
    "ReservationToken",
    "InMemoryUsageLedger",
    "UsageLedger",
    "UsageOutcome",
    "UsageRecord",
    # Rate limiting
    "Permit",
    "RateLimiter",
    "RequestPriority",
    # Transformation
    "BatchResult",
    "ItemError",
    "TransformationPipeline",
    "TransformedPage",
    "canonical_json",
    "fingerprint",
    "ChannelRecord",
    "PlaylistItemRecord",
    "PlaylistRecord",
    "SearchResultRecord",
    "Thumbnail",
    "VideoRecord",
]
