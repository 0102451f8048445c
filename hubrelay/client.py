"""Async HTTP client for the external AI service.

The service wraps every answer in a ``{code, msg, data}`` envelope where
``code == 0`` means success. It requires every scalar in a request body,
numeric ids included, to be sent as a string; serialize_job_spec takes care
of that so the rest of the code never has to.
"""

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from .errors import ApiError, NetworkError, OperationTimeoutError, ValidationError
from .models import Artifact, JobSpec, RemoteStatus

log = logger.bind(component="hub_client")

DEFAULT_REGION = "hongkong"

REGIONS: Dict[str, Dict[str, str]] = {
    "china": {"name": "Mainland China", "api_domain": "https://www.runninghub.cn"},
    "hongkong": {"name": "Hong Kong / Macau / Taiwan", "api_domain": "https://www.runninghub.ai"},
}

_STATUS_ALIASES = {
    "QUEUED": RemoteStatus.QUEUED,
    "PENDING": RemoteStatus.QUEUED,
    "RUNNING": RemoteStatus.RUNNING,
    "PROCESSING": RemoteStatus.RUNNING,
    "SUCCESS": RemoteStatus.SUCCESS,
    "COMPLETED": RemoteStatus.SUCCESS,
    "FAILED": RemoteStatus.FAILED,
    "ERROR": RemoteStatus.FAILED,
}


def region_url(region: str) -> str:
    """Base URL for a region; unknown regions fall back to the default."""
    config = REGIONS.get(region)
    if config is None:
        log.warning(f"Unknown region '{region}', using {DEFAULT_REGION}")
        config = REGIONS[DEFAULT_REGION]
    return config["api_domain"]


def stringify(value: Any) -> Any:
    """Turn every scalar inside value into a string, dropping None fields."""
    if isinstance(value, dict):
        return {key: stringify(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [stringify(item) for item in value if item is not None]
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def serialize_job_spec(spec: JobSpec, api_key: str) -> Dict[str, Any]:
    """Request body for the run endpoint."""
    body = {
        "apiKey": api_key,
        "webappId": spec.webapp_id,
        "nodeInfoList": [
            {"nodeId": node.node_id, "fieldName": node.field_name, "fieldValue": node.field_value}
            for node in spec.node_info_list
        ],
    }
    return stringify(body)


def parse_status(raw: Any) -> RemoteStatus:
    if isinstance(raw, dict):
        raw = raw.get("status")
    status = _STATUS_ALIASES.get(str(raw).upper()) if raw is not None else None
    if status is None:
        raise ValidationError(f"Unknown task status: {raw!r}")
    return status


class HubClient:
    """Talks to the external AI service over httpx.

    Transport problems surface as NetworkError or OperationTimeoutError,
    error statuses and non-zero envelope codes as ApiError, malformed
    payloads as ValidationError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept-Encoding": "gzip, deflate"},
        )

    @classmethod
    def for_region(cls, region: str = DEFAULT_REGION, **kwargs: Any) -> "HubClient":
        return cls(region_url(region), **kwargs)

    async def __aenter__(self) -> "HubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        try:
            response = await self._http.post(path, json=body)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(self._http.timeout.read or 0.0) from e
        except httpx.TransportError as e:
            raise NetworkError(f"NetworkError calling {path}: {e}") from e

        if response.status_code >= 400:
            raise ApiError(response.status_code, response.reason_phrase)

        try:
            envelope = response.json()
        except ValueError as e:
            raise ValidationError(f"Invalid JSON from {path}") from e
        if not isinstance(envelope, dict):
            raise ValidationError(f"Unexpected response from {path}: {envelope!r}")

        code = str(envelope.get("code"))
        if code != "0":
            status = int(code) if code.lstrip("-").isdigit() else 0
            raise ApiError(status, str(envelope.get("msg") or ""))
        return envelope.get("data")

    async def submit(self, spec: JobSpec) -> str:
        """Start a task and return its id."""
        data = await self._post("/task/openapi/ai-app/run", serialize_job_spec(spec, self._api_key))
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not task_id:
            raise ValidationError(f"Run response has no taskId: {data!r}")
        log.info(f"Started task {task_id} for webapp {spec.webapp_id}")
        return str(task_id)

    async def get_status(self, job_id: str) -> RemoteStatus:
        data = await self._post(
            "/task/openapi/status", stringify({"apiKey": self._api_key, "taskId": job_id})
        )
        return parse_status(data)

    async def get_result(self, job_id: str) -> List[Artifact]:
        data = await self._post(
            "/task/openapi/outputs", stringify({"apiKey": self._api_key, "taskId": job_id})
        )
        if not isinstance(data, list):
            raise ValidationError(f"Outputs for {job_id} are not a list: {data!r}")
        artifacts = []
        for item in data:
            if not isinstance(item, dict) or not item.get("fileUrl"):
                raise ValidationError(f"Malformed output for {job_id}: {item!r}")
            artifacts.append(
                Artifact(file_url=item["fileUrl"], file_type=item.get("fileType"), node_id=item.get("nodeId"))
            )
        return artifacts

    async def cancel(self, job_id: str) -> None:
        await self._post(
            "/task/openapi/cancel", stringify({"apiKey": self._api_key, "taskId": job_id})
        )

    async def ping(self) -> bool:
        """True if the service host answers at all."""
        try:
            await self._http.head("/")
        except httpx.HTTPError:
            return False
        return True
