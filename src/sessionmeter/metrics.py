from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from sessionmeter.models import AggregateState, LifecycleState

PARSE_MODES: "tuple[str, ...]" = ("sequential", "workers", "fallback")


class MetricsUpdater:
    """
    MetricsUpdater exposes the pipeline's health as Prometheus metrics:
    refresh timing and cache efficiency, parse strategy and worker
    failures, the published totals, and the lifecycle state.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._refresh_duration: "Histogram" = Histogram(
            "sessionmeter_refresh_duration_seconds",
            "Duration of aggregation refreshes",
            registry=registry,
        )
        self._refreshes: "Counter" = Counter(
            "sessionmeter_refreshes_total",
            "Total number of completed aggregation refreshes",
            registry=registry,
        )
        self._refresh_errors: "Counter" = Counter(
            "sessionmeter_refresh_errors_total",
            "Total number of aggregation refreshes that raised",
            registry=registry,
        )
        self._last_refresh_success: "Gauge" = Gauge(
            "sessionmeter_last_refresh_success_timestamp_seconds",
            "Unix timestamp of the last successful refresh",
            registry=registry,
        )
        self._projects: "Gauge" = Gauge(
            "sessionmeter_projects",
            "Projects seen by the last refresh, by cache status",
            ["status"],
            registry=registry,
        )
        self._cache_hit_ratio: "Gauge" = Gauge(
            "sessionmeter_project_cache_hit_ratio",
            "Share of projects served from the project cache in the last refresh",
            registry=registry,
        )
        self._parse_runs: "Counter" = Counter(
            "sessionmeter_parse_runs_total",
            "Parse dispatches by strategy",
            ["mode"],
            registry=registry,
        )
        self._worker_failures: "Counter" = Counter(
            "sessionmeter_worker_failures_total",
            "Parse dispatches abandoned because a worker process failed",
            registry=registry,
        )
        self._files_processed: "Counter" = Counter(
            "sessionmeter_files_processed_total",
            "Session log files scanned",
            registry=registry,
        )
        self._estimated_cost: "Gauge" = Gauge(
            "sessionmeter_estimated_cost_usd",
            "Total estimated cost in USD across all projects",
            registry=registry,
        )
        self._tokens: "Gauge" = Gauge(
            "sessionmeter_tokens",
            "Total tokens across all projects, by category",
            ["category"],
            registry=registry,
        )
        self._lifecycle_state: "Gauge" = Gauge(
            "sessionmeter_lifecycle_state",
            "Current lifecycle state (1 for the active state)",
            ["state"],
            registry=registry,
        )
        self._active_sessions: "Gauge" = Gauge(
            "sessionmeter_active_sessions",
            "Sessions written to within the idle timeout",
            registry=registry,
        )
        self._subscribers: "Gauge" = Gauge(
            "sessionmeter_subscribers",
            "Connected change-notification subscribers",
            registry=registry,
        )

    def observe_refresh(self, duration_seconds: "float", timestamp: "float") -> "None":
        self._refresh_duration.observe(duration_seconds)
        self._refreshes.inc()
        self._last_refresh_success.set(timestamp)

    def inc_refresh_error(self) -> "None":
        self._refresh_errors.inc()

    def set_cache_status(self, total: "int", cached: "int", parsed: "int") -> "None":
        """
        records how the last refresh split projects between cache
        hits and re-parses.
        """
        self._projects.labels(status="total").set(total)
        self._projects.labels(status="cached").set(cached)
        self._projects.labels(status="parsed").set(parsed)
        self._cache_hit_ratio.set(cached / total if total else 0.0)

    def inc_parse_run(self, mode: "str") -> "None":
        self._parse_runs.labels(mode=mode).inc()

    def inc_worker_failure(self) -> "None":
        self._worker_failures.inc()

    def inc_files_processed(self, count: "int") -> "None":
        if count > 0:
            self._files_processed.inc(count)

    def set_aggregate(self, state: "AggregateState") -> "None":
        self._estimated_cost.set(state.total_estimated_cost)
        tokens = state.total_tokens
        self._tokens.labels(category="input").set(tokens.input)
        self._tokens.labels(category="output").set(tokens.output)
        self._tokens.labels(category="cache_read").set(tokens.cache_read)
        self._tokens.labels(category="cache_creation").set(tokens.cache_creation)

    def set_lifecycle_state(self, state: "LifecycleState") -> "None":
        for candidate in LifecycleState:
            self._lifecycle_state.labels(state=candidate.value).set(
                1 if candidate is state else 0
            )

    def set_active_sessions(self, count: "int") -> "None":
        self._active_sessions.set(count)

    def set_subscribers(self, count: "int") -> "None":
        self._subscribers.set(count)
