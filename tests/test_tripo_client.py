import json

import httpx
import pytest

from amico.core.errors import StatusQueryError, TaskCreationError, UploadError
from amico.core.models import ObjectRef, StringRef, TaskKind, TaskStatus
from amico.core.tripo_client import TripoClient


def make_client(handler) -> TripoClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TripoClient("secret-key", "https://tripo.test/v2/openapi", http_client=http_client)


@pytest.mark.asyncio
async def test_upload_returns_image_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"code": 0, "data": {"image_token": "tok-123"}})

    client = make_client(handler)
    token = await client.upload(b"\x89PNG\r\n\x1a\nrest", "image/png")

    assert token == "tok-123"
    assert str(seen[0].url) == "https://tripo.test/v2/openapi/upload"
    assert seen[0].headers["Authorization"] == "Bearer secret-key"
    assert b'filename="image.png"' in seen[0].content


@pytest.mark.asyncio
async def test_upload_without_token_raises():
    client = make_client(lambda request: httpx.Response(200, json={"code": 0, "data": {}}))
    with pytest.raises(UploadError):
        await client.upload(b"data", "image/jpeg")


@pytest.mark.asyncio
async def test_create_task_sends_type_and_params():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 0, "data": {"task_id": "t-1"}})

    client = make_client(handler)
    task_id = await client.create_task(TaskKind.RIG, {"original_model_task_id": "m-1", "rig_type": "biped"})

    assert task_id == "t-1"
    assert bodies == [{"type": "animate_rig", "original_model_task_id": "m-1", "rig_type": "biped"}]


@pytest.mark.asyncio
async def test_create_task_envelope_error_carries_detail():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 2010, "message": "insufficient credit"})

    client = make_client(handler)
    with pytest.raises(TaskCreationError) as excinfo:
        await client.create_task(TaskKind.IMAGE_TO_MODEL, {})

    assert excinfo.value.code == 2010
    assert excinfo.value.detail == "insufficient credit"
    assert excinfo.value.classification == "task creation failed"


@pytest.mark.asyncio
async def test_create_task_network_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(TaskCreationError):
        await client.create_task(TaskKind.RETARGET, {})


@pytest.mark.asyncio
async def test_get_status_http_error_raises_status_query_error():
    client = make_client(lambda request: httpx.Response(500, text="upstream exploded"))
    with pytest.raises(StatusQueryError) as excinfo:
        await client.get_status("t-9")

    assert excinfo.value.status_code == 500
    assert "upstream exploded" in excinfo.value.detail


@pytest.mark.asyncio
async def test_get_status_parses_string_and_object_outputs():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/task/t-2")
        return httpx.Response(
            200,
            json={
                "code": 0,
                "data": {
                    "task_id": "t-2",
                    "type": "image_to_model",
                    "status": "success",
                    "progress": 100,
                    "output": {
                        "pbr_model": "https://cdn/pbr.glb",
                        "model": {"url": "https://cdn/model.glb", "type": "glb"},
                        "rendered_image": 7,
                    },
                },
            },
        )

    client = make_client(handler)
    task = await client.get_status("t-2")

    assert task.status == TaskStatus.SUCCESS
    assert task.kind == TaskKind.IMAGE_TO_MODEL
    assert task.output["pbr_model"] == StringRef("https://cdn/pbr.glb")
    assert task.output["model"] == ObjectRef("https://cdn/model.glb", {"type": "glb"})
    assert "rendered_image" not in task.output
    assert task.model_url() == "https://cdn/model.glb"


@pytest.mark.asyncio
async def test_get_status_running_task_has_no_output():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"code": 0, "data": {"status": "running", "progress": "140", "output": {"model": "x"}}},
        )

    client = make_client(handler)
    task = await client.get_status("t-3")

    assert task.task_id == "t-3"
    assert task.status == TaskStatus.RUNNING
    assert task.progress == 100
    assert task.output == {}


@pytest.mark.asyncio
async def test_unknown_status_maps_to_unknown():
    client = make_client(lambda request: httpx.Response(200, json={"code": 0, "data": {"status": "banned"}}))
    task = await client.get_status("t-4")
    assert task.status == TaskStatus.UNKNOWN
    assert not task.status.is_terminal
