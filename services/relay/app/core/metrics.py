from prometheus_client import Counter

# Registered once per process; app instances share them via app.state.metrics
metrics = {
    "events_ingested_total": Counter(
        "relay_events_ingested_total",
        "Events durably stored by the ingestion pipeline",
        ["event_type"],
    ),
    "events_duplicate_total": Counter(
        "relay_events_duplicate_total",
        "Events skipped because their signature was already stored",
    ),
    "ingestion_parse_errors_total": Counter(
        "relay_ingestion_parse_errors_total",
        "Log batches that could not be parsed",
    ),
    "webhook_attempts_total": Counter(
        "relay_webhook_attempts_total",
        "Webhook delivery attempts by outcome",
        ["outcome"],
    ),
    "commands_total": Counter(
        "relay_commands_total",
        "Commands handled by the gateway by kind and outcome",
        ["kind", "outcome"],
    ),
}


def inc(name: str, **labels: str) -> None:
    counter = metrics.get(name)
    if counter is None:
        return
    if labels:
        counter.labels(**labels).inc()
    else:
        counter.inc()
