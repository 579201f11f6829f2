from starlette_exporter import PrometheusMiddleware, handle_metrics

from .metrics import metrics


def add_prometheus(app, app_name: str = "relay") -> None:
    app.add_middleware(
        PrometheusMiddleware,
        app_name=app_name,
        prefix=app_name,
        group_paths=True,
        skip_paths=["/metrics", "/events/stream"],
    )
    app.add_route("/metrics", handle_metrics)

    # Custom counters live in core.metrics; expose them to handlers
    app.state.metrics = metrics
