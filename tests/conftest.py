"""
Shared fixtures for amico tests: fake clock, scripted Tripo client, stores.
"""
import asyncio
import base64
import json
import time
from itertools import count
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from amico.core.asset_cache import SignedAssetCache
from amico.core.models import CharacterMeta, ObjectRef, Task, TaskKind, TaskStatus
from amico.core.pipeline import PipelineConfig, PipelineOrchestrator
from amico.core.storage import GalleryStore, SessionStore
from amico.core.task_runner import TaskPoller

GLB_BYTES = b"glTF\x02\x00\x00\x00fake-mesh"
STYLED_DATA_URL = "data:image/png;base64,AAAA"


def make_signed_url(expiry: int, path: str = "/sign/model.glb", host: str = "https://vendor") -> str:
    """Build a CloudFront-style signed URL whose policy expires at ``expiry``."""
    policy = {
        "Statement": [
            {
                "Resource": f"{host}{path}",
                "Condition": {"DateLessThan": {"AWS:EpochTime": expiry}},
            }
        ]
    }
    encoded = base64.urlsafe_b64encode(json.dumps(policy).encode()).decode().rstrip("=")
    return f"{host}{path}?Key-Pair-Id=K2JCJMDEHXQW5F&Signature=abc&Policy={encoded}"


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeTripoClient:
    """Scripted stand-in for TripoClient.

    Every task succeeds on its first status read unless ``statuses`` or
    ``failures`` say otherwise. Task creation for a kind in ``gates`` waits
    until that event is set.
    """

    def __init__(self) -> None:
        self.uploads: List[Tuple[bytes, str]] = []
        self.created: List[Tuple[TaskKind, Dict[str, object]]] = []
        self.status_reads: List[str] = []
        self.kinds: Dict[str, TaskKind] = {}
        self.params: Dict[str, Dict[str, object]] = {}
        self.failures: Dict[TaskKind, Exception] = {}
        self.statuses: Dict[TaskKind, TaskStatus] = {}
        self.empty_output: set = set()
        self.gates: Dict[TaskKind, asyncio.Event] = {}
        self.expiry = int(time.time()) + 600
        self._ids = count(1)

    async def upload(self, data: bytes, mime_type: str) -> str:
        self.uploads.append((data, mime_type))
        return "file-token-1"

    async def create_task(self, kind: TaskKind, params: Dict[str, object]) -> str:
        if kind in self.gates:
            await self.gates[kind].wait()
        if kind in self.failures:
            raise self.failures[kind]
        task_id = f"{kind.value}-{next(self._ids)}"
        self.created.append((kind, dict(params)))
        self.kinds[task_id] = kind
        self.params[task_id] = dict(params)
        return task_id

    def url_for(self, task_id: str) -> str:
        return make_signed_url(self.expiry, path=f"/sign/{task_id}.glb")

    async def get_status(self, task_id: str) -> Task:
        self.status_reads.append(task_id)
        kind = self.kinds[task_id]
        status = self.statuses.get(kind, TaskStatus.SUCCESS)
        if status != TaskStatus.SUCCESS:
            return Task(task_id, status, progress=50, kind=kind)
        output = {} if kind in self.empty_output else {"model": ObjectRef(self.url_for(task_id))}
        return Task(task_id, TaskStatus.SUCCESS, progress=100, output=output, kind=kind)

    def created_kinds(self) -> List[TaskKind]:
        return [kind for kind, _ in self.created]


class FakeStyle:
    def __init__(self, result: str = STYLED_DATA_URL, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.image_calls: List[Tuple[bytes, str]] = []
        self.text_calls: List[CharacterMeta] = []

    async def convert_image(self, data: bytes, mime_type: str) -> str:
        self.image_calls.append((data, mime_type))
        if self.error:
            raise self.error
        return self.result

    async def generate_from_text(self, meta: CharacterMeta) -> str:
        self.text_calls.append(meta)
        if self.error:
            raise self.error
        return self.result


def glb_transport(fetched: List[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(str(request.url))
        return httpx.Response(200, content=GLB_BYTES, headers={"Content-Type": "model/gltf-binary"})

    return httpx.MockTransport(handler)


@pytest.fixture
def signed_url():
    return make_signed_url


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "amico.sqlite3"


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def tripo():
    return FakeTripoClient()


@pytest.fixture
def style():
    return FakeStyle()


@pytest.fixture
def fetched_urls():
    return []


@pytest.fixture
def glb_bytes():
    return GLB_BYTES


@pytest.fixture
def make_cache(db_path, tmp_path):
    """Build a SignedAssetCache whose downloads go through ``transport``."""

    def factory(transport: httpx.AsyncBaseTransport) -> SignedAssetCache:
        http_client = httpx.AsyncClient(transport=transport)
        return SignedAssetCache(db_path, tmp_path / "handles", http_client=http_client)

    return factory


@pytest.fixture
def asset_cache(make_cache, fetched_urls):
    return make_cache(glb_transport(fetched_urls))


@pytest.fixture
def session_store(db_path):
    return SessionStore(db_path)


@pytest.fixture
def gallery_store(db_path):
    return GalleryStore(db_path)


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        poll_interval_s=1.0,
        model_timeout_s=10.0,
        rig_timeout_s=10.0,
        animate_timeout_s=10.0,
        preset_timeout_s=10.0,
        expiry_leeway_s=60.0,
    )


@pytest.fixture
def orchestrator(tripo, style, session_store, gallery_store, asset_cache, pipeline_config, fake_clock):
    return PipelineOrchestrator(
        client=tripo,
        style=style,
        sessions=session_store,
        gallery=gallery_store,
        cache=asset_cache,
        config=pipeline_config,
        poller=TaskPoller(tripo, sleep=fake_clock.sleep, clock=fake_clock),
    )
