"""Client for the host application's incident API."""

import re
from datetime import datetime
from time import perf_counter
from typing import Any, Dict, List, Mapping, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hsse_escalation.config import settings
from hsse_escalation.models.incident import IncidentSeverity, IncidentSnapshot, IncidentStatus
from hsse_escalation.utils.logging import get_logger, log_external_api_call

logger = get_logger(__name__)


def _field(data: Mapping[str, Any], name: str, alias: str) -> Any:
    value = data.get(name)
    return data.get(alias) if value is None else value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def snapshot_from_json(data: Mapping[str, Any]) -> IncidentSnapshot:
    """Build a snapshot from the incident API's JSON (snake_case or camelCase)."""
    created_at = _parse_datetime(_field(data, "created_at", "createdAt"))
    if created_at is None:
        raise ValueError("incident has no created_at")

    return IncidentSnapshot(
        id=int(data["id"]),
        severity=IncidentSeverity(str(data["severity"]).lower()),
        status=IncidentStatus(_normalise_status(data["status"])),
        created_at=created_at,
        department=data.get("department"),
        location=data.get("location"),
        last_response_at=_parse_datetime(_field(data, "last_response_at", "lastResponseAt")),
        title=data.get("title"),
        description=data.get("description"),
        reporter_name=_field(data, "reporter_name", "reporterName"),
    )


def _normalise_status(value: Any) -> str:
    # "InProgress", "IN_PROGRESS" and "in-progress" all map to "in_progress"
    text = str(value).strip()
    if not text.isupper():
        text = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", text)
    return text.lower().replace("-", "_").replace(" ", "_")


class IncidentApiClient:
    """Reads incident snapshots and applies escalate/assign/custom actions."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.INCIDENT_API_URL).rstrip("/")
        self.token = token if token is not None else settings.INCIDENT_API_TOKEN
        self.timeout = timeout
        self.transport = transport

    async def _make_request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Accept"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        started = perf_counter()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)

        log_external_api_call(
            logger,
            "incident_api",
            f"{method} {path}",
            response.is_success,
            (perf_counter() - started) * 1000,
            status_code=response.status_code
        )
        return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def get_open_incident_snapshots(self) -> List[IncidentSnapshot]:
        """List open incidents. Records that cannot be parsed are skipped."""
        response = await self._make_request("GET", "/incidents", params={"open": "true"})
        response.raise_for_status()

        data = response.json()
        items = data.get("items", []) if isinstance(data, dict) else data

        snapshots = []
        for item in items:
            try:
                snapshot = snapshot_from_json(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unparseable incident", incident=item.get("id"), error=str(e))
                continue
            if snapshot.is_open:
                snapshots.append(snapshot)

        logger.info("Retrieved open incidents", count=len(snapshots))
        return snapshots

    async def get_incident_snapshot(self, incident_id: int) -> Optional[IncidentSnapshot]:
        response = await self._make_request("GET", f"/incidents/{incident_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return snapshot_from_json(response.json())

    async def apply(
        self,
        incident: IncidentSnapshot,
        action_type: str,
        target: str,
        parameters: Mapping[str, str],
    ) -> Optional[str]:
        """Ask the host application to escalate, assign or run a custom action."""
        body: Dict[str, Any] = {
            "action_type": action_type,
            "target": target,
            "parameters": dict(parameters),
        }
        response = await self._make_request(
            "POST", f"/incidents/{incident.id}/escalation-actions", json=body
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            return None
        return data.get("details") if isinstance(data, dict) else None
