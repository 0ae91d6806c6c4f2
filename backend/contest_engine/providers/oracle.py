import logging
from typing import Any

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError
from contest_engine.providers.base import OracleBaselineProvider
from contest_engine.providers.http_client import ResilientClient, decode_json

logger = logging.getLogger("contest_engine.oracle")


class HttpOracleBaselineProvider(OracleBaselineProvider):
    """REST client for Oracle baseline predictions."""

    def __init__(self, base_url: str | None = None, **client_kwargs):
        self._client = ResilientClient("oracle", base_url=base_url or settings.ORACLE_BASE_URL, **client_kwargs)

    async def get_baseline_choice(self, prediction_id: str) -> dict[str, Any] | None:
        resp = await self._client.get(f"/baselines/{prediction_id}")
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ExternalServiceError(
                f"oracle returned HTTP {resp.status_code} for prediction {prediction_id}",
                provider="oracle",
            )
        data = decode_json(resp, "oracle")
        if data.get("choice") is None:
            return None
        try:
            return {"choice": int(data["choice"]), "confidence": float(data.get("confidence") or 0.0)}
        except (TypeError, ValueError):
            raise ExternalServiceError(f"malformed baseline for {prediction_id}: {data!r}", provider="oracle")

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit.is_open

    async def aclose(self) -> None:
        await self._client.aclose()


oracle_provider: OracleBaselineProvider = HttpOracleBaselineProvider()
