"""Prometheus metrics for document routing.

Exposes key metrics for monitoring:
- Routed documents by method and tier
- Template match scores
- Provider attempts by outcome
- Exhausted fallback chains by stage
- Template learning activity and failures

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, start_http_server

documents_routed_total = Counter(
    "documents_routed_total",
    "Total documents routed",
    ["method", "tier"],  # method: template, ai, ai-multimodal; tier: high, medium, low, none
)

template_match_score = Histogram(
    "template_match_score",
    "Best fingerprint score (after penalty) per routed document",
    buckets=(10, 25, 50, 75, 90, 95, 100),
)

provider_attempts_total = Counter(
    "provider_attempts_total",
    "Total OCR and AI provider attempts",
    ["provider", "model", "outcome"],  # outcome: success, failed, rejected, timeout
)

extraction_exhausted_total = Counter(
    "extraction_exhausted_total",
    "Documents for which a whole fallback chain failed",
    ["stage"],  # ocr, ai
)

template_learning_events_total = Counter(
    "template_learning_events_total",
    "Template learning actions",
    ["action"],  # created, backfilled, refined, variant, skipped, success, failure
)

learning_failures_total = Counter(
    "learning_failures_total",
    "Learning or store errors swallowed during routing",
)


def start_metrics_server(port: int | None) -> bool:
    """Serve the default registry over HTTP for Prometheus to scrape.

    Args:
        port: Listening port; None disables the exporter

    Returns:
        True if the exporter was started
    """
    if port is None:
        return False
    start_http_server(port)
    return True
