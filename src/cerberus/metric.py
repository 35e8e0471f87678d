import re

from prometheus_client import Counter, Gauge, Histogram

request_counter = Counter(
    "cerberus_num_req", "Total number of requests", labelnames=["path"]
)
webhook_counter = Counter(
    "cerberus_num_webhook", "Total number of webhooks", labelnames=["event"]
)
webhook_skipped_counter = Counter(
    "cerberus_num_webhook_skipped",
    "Total number of skipped webhooks",
    labelnames=["event", "reason"],
)
webhook_rejected_counter = Counter(
    "cerberus_num_webhook_rejected",
    "Total number of rejected webhooks",
    labelnames=["reason"],
)

error_counter = Counter(
    "cerberus_error_counter", "Total number of errors", labelnames=["context"]
)

api_call_count = Counter(
    "cerberus_num_api_calls",
    "Total number of GitHub API calls",
    labelnames=["endpoint"],
)

check_run_post = Counter(
    "cerberus_check_run_post",
    "Number of guard check run pushes",
    labelnames=["operation"],
)

token_exchange_counter = Counter(
    "cerberus_token_exchange_total",
    "Number of installation token exchanges",
    labelnames=["result"],
)

debounce_total = Counter(
    "cerberus_debounce_total",
    "Debounced guard refreshes",
    labelnames=["result"],
)

aggregate_entries = Gauge(
    "cerberus_aggregate_entries", "Number of commits tracked in memory"
)

webhook_processing_seconds = Histogram(
    "cerberus_webhook_processing_seconds",
    "Time spent verifying, decoding and queueing a webhook",
    labelnames=["event", "result"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

_REPO_ENDPOINT = re.compile(r"^/repos/[^/]+/[^/]+/(?P<rest>.*)$")


def _normalize_api_endpoint(endpoint: str) -> str:
    if endpoint.startswith("/app/installations/") and endpoint.endswith(
        "/access_tokens"
    ):
        return "installation_token"
    match = _REPO_ENDPOINT.match(endpoint)
    if match is None:
        return endpoint
    rest = match.group("rest")
    if rest.startswith("commits/") and rest.endswith("/check-runs"):
        return "commits/check-runs"
    return rest.split("/", 1)[0]


def record_api_call(*, endpoint: str) -> None:
    api_call_count.labels(endpoint=_normalize_api_endpoint(endpoint)).inc()


def observe_webhook_processing_latency(*, event: str, result: str, seconds: float) -> None:
    webhook_processing_seconds.labels(event=event, result=result).observe(
        max(0.0, seconds)
    )
