"""HTTP client wrapper for the Tripo3D OpenAPI job queue."""

from __future__ import annotations

from typing import Dict, Mapping, Optional

import httpx
from loguru import logger

from amico.core.errors import StatusQueryError, TaskCreationError, TripoApiError, UploadError
from amico.core.models import Task, TaskKind, TaskStatus, parse_output

BASE_URL = "https://api.tripo3d.ai/v2/openapi"


def _snippet(text: str, limit: int = 200) -> str:
    return text.strip().replace("\n", " ")[:limit]


class TripoClient:
    """Encapsulates Tripo upload, task creation and status calls.

    No retries happen here; a failed call raises once and the caller decides.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        status_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.status_timeout = status_timeout or timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "TripoClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def _build_url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _parse_envelope(
        self,
        response: httpx.Response,
        error_type: type[TripoApiError],
        action: str,
    ) -> Dict[str, object]:
        """Check HTTP status and the ``{code, data, message}`` envelope."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400 or not isinstance(body, dict):
            detail = _snippet(response.text)
            logger.warning(f"Tripo {action} error {response.status_code}: {detail}")
            raise error_type(
                f"Tripo {action} failed with HTTP {response.status_code}",
                detail=detail,
                status_code=response.status_code,
            )
        code = body.get("code")
        if code != 0:
            detail = str(body.get("message") or _snippet(response.text))
            logger.warning(f"Tripo {action} rejected (code {code}): {detail}")
            raise error_type(
                f"Tripo {action} failed (code {code})",
                detail=detail,
                status_code=response.status_code,
                code=code if isinstance(code, int) else None,
            )
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def upload(self, data: bytes, mime_type: str) -> str:
        """Upload image bytes and return the file token for task input."""
        extension = mime_type.split("/", 1)[-1].replace("jpeg", "jpg")
        files = {"file": (f"image.{extension}", data, mime_type)}
        try:
            response = await self._client.post(
                self._build_url("/upload"),
                headers=self._headers(),
                files=files,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Tripo upload request failed: {exc}") from exc
        payload = self._parse_envelope(response, UploadError, "upload")
        token = payload.get("image_token")
        if not isinstance(token, str) or not token:
            raise UploadError(
                "Tripo upload response missing image_token",
                detail=_snippet(response.text),
                status_code=response.status_code,
            )
        logger.info(f"Uploaded {len(data) // 1024} KB image to Tripo")
        return token

    async def create_task(self, kind: TaskKind, params: Mapping[str, object]) -> str:
        """Submit a task descriptor and return the new task id."""
        body = {"type": kind.value, **params}
        try:
            response = await self._client.post(
                self._build_url("/task"),
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise TaskCreationError(f"Tripo task request failed: {exc}") from exc
        payload = self._parse_envelope(response, TaskCreationError, "task creation")
        task_id = payload.get("task_id")
        if not task_id:
            raise TaskCreationError(
                "Tripo task response missing task_id",
                detail=_snippet(response.text),
                status_code=response.status_code,
            )
        logger.info(f"Created Tripo {kind.value} task {task_id}")
        return str(task_id)

    async def get_status(self, task_id: str) -> Task:
        """Read the current status of a task."""
        try:
            response = await self._client.get(
                self._build_url(f"/task/{task_id}"),
                headers=self._headers(),
                timeout=self.status_timeout,
            )
        except httpx.HTTPError as exc:
            raise StatusQueryError(f"Tripo status request failed: {exc}") from exc
        payload = self._parse_envelope(response, StatusQueryError, "status query")
        try:
            progress = int(float(payload.get("progress") or 0))
        except (TypeError, ValueError):
            progress = 0
        status = TaskStatus.from_wire(payload.get("status"))
        kind = next((item for item in TaskKind if item.value == payload.get("type")), None)
        return Task(
            task_id=str(payload.get("task_id") or task_id),
            status=status,
            progress=max(0, min(progress, 100)),
            output=parse_output(payload.get("output")) if status == TaskStatus.SUCCESS else {},
            kind=kind,
            payload=payload,
        )
