"""
Data Source Connectors — where analysis and snapshot jobs read from.

Each configured source (settings.yaml `sources:`) exposes two calls:
  - fetch_findings(job_type, brand_id)  → raw insights for an analysis job
  - fetch_metrics(brand_id)             → {metric_key: value} for snapshots

Sources are looked up by name; a job whose source is not configured skips
without output. Transport failures raise so the consumer retries the job.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import SourceConfig

logger = structlog.get_logger()

# Which source feeds which analysis job
JOB_SOURCES: dict[str, str] = {
    "gsc_daily_digest": "gsc",
    "trend_scan_industry": "trends",
    "analytics_insights": "analytics",
    "ads_performance_digest": "ads",
}


class SourceConnector(abc.ABC):
    """Abstract base for all data source connectors."""

    name: str = ""

    @abc.abstractmethod
    async def fetch_findings(self, job_type: str, brand_id: str) -> list[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def fetch_metrics(self, brand_id: str) -> dict[str, float]:
        ...

    async def close(self):
        pass


class RESTSourceConnector(SourceConnector):
    """
    REST data source. Endpoint names map to URL paths with {brand_id} and
    {job_type} placeholders:

        sources:
          gsc:
            base_url: https://gsc-proxy.internal
            auth_type: bearer
            auth_credentials: {token: ${GSC_PROXY_TOKEN}}
            endpoints:
              findings: /brands/{brand_id}/findings?job={job_type}
              metrics: /brands/{brand_id}/metrics
    """

    def __init__(self, name: str, config: SourceConfig):
        self.name = name
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def fetch_findings(self, job_type: str, brand_id: str) -> list[dict[str, Any]]:
        result = await self._request(
            "GET", "findings",
            path_params={"brand_id": brand_id, "job_type": job_type},
        )
        return result if isinstance(result, list) else result.get("data", result.get("results", []))

    async def fetch_metrics(self, brand_id: str) -> dict[str, float]:
        result = await self._request("GET", "metrics", path_params={"brand_id": brand_id})
        metrics = result.get("metrics", result) if isinstance(result, dict) else {}
        return {k: float(v) for k, v in metrics.items() if isinstance(v, (int, float))}

    async def close(self):
        if self.client:
            await self.client.aclose()


class StaticSourceConnector(SourceConnector):
    """
    Fixed data for development and testing.
    Findings are keyed by job type, metrics by brand id ("*" = every brand).
    """

    def __init__(self, name: str, findings: dict[str, list[dict[str, Any]]] = None,
                 metrics: dict[str, dict[str, float]] = None):
        self.name = name
        self._findings = findings or {}
        self._metrics = metrics or {}

    async def fetch_findings(self, job_type: str, brand_id: str) -> list[dict[str, Any]]:
        return list(self._findings.get(job_type, []))

    async def fetch_metrics(self, brand_id: str) -> dict[str, float]:
        return dict(self._metrics.get(brand_id, self._metrics.get("*", {})))


class SourceRegistry:
    """Named data sources available to handlers."""

    def __init__(self, sources: dict[str, SourceConnector] = None):
        self._sources: dict[str, SourceConnector] = dict(sources or {})

    def register(self, connector: SourceConnector) -> None:
        self._sources[connector.name] = connector

    def get(self, name: str) -> Optional[SourceConnector]:
        return self._sources.get(name)

    def for_job(self, job_type: str) -> Optional[SourceConnector]:
        name = JOB_SOURCES.get(job_type)
        return self._sources.get(name) if name else None

    def all(self) -> list[SourceConnector]:
        return list(self._sources.values())

    async def close(self):
        for connector in self._sources.values():
            await connector.close()


def create_source_registry(configs: dict[str, SourceConfig]) -> SourceRegistry:
    """Build connectors from settings. Unknown source types are skipped with a warning."""
    registry = SourceRegistry()
    for name, config in (configs or {}).items():
        if config.type == "rest":
            registry.register(RESTSourceConnector(name, config))
        else:
            logger.warning("source_type_unsupported", source=name, type=config.type)
    logger.info("sources_configured", sources=sorted(registry._sources))
    return registry
