"""Shared dataclass models for Tripo tasks, pipeline sessions and gallery entries."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from amico.core.errors import NoModelUrlError

MODEL_OUTPUT_KEYS = ("model", "pbr_model", "base_model")


class TaskKind(str, Enum):
    """External task types, valued by their wire ``type``."""

    IMAGE_TO_MODEL = "image_to_model"
    RIG = "animate_rig"
    RETARGET = "animate_retarget"
    UPLOAD = "upload"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: object) -> "TaskStatus":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED}


@dataclass(frozen=True)
class StringRef:
    """Output slot given as a bare URL string."""

    url: str


@dataclass(frozen=True)
class ObjectRef:
    """Output slot given as an object with a ``url`` field."""

    url: str
    extra: Dict[str, object] = field(default_factory=dict)


OutputRef = Union[StringRef, ObjectRef]


def parse_output_ref(value: object) -> Optional[OutputRef]:
    """Resolve a raw output slot into a typed reference, or None if unusable."""
    if isinstance(value, str):
        return StringRef(value)
    if isinstance(value, Mapping):
        url = value.get("url")
        if isinstance(url, str):
            extra = {key: item for key, item in value.items() if key != "url"}
            return ObjectRef(url, extra)
    return None


def parse_output(raw: object) -> Dict[str, OutputRef]:
    if not isinstance(raw, Mapping):
        return {}
    output: Dict[str, OutputRef] = {}
    for key, value in raw.items():
        ref = parse_output_ref(value)
        if ref is not None:
            output[str(key)] = ref
    return output


def extract_model_url(output: Mapping[str, OutputRef]) -> str:
    """Return the first http(s) URL among model, pbr_model, base_model."""
    for key in MODEL_OUTPUT_KEYS:
        ref = output.get(key)
        if ref is not None and ref.url.startswith("http"):
            return ref.url
    raise NoModelUrlError({key: ref.url for key, ref in output.items()})


@dataclass
class Task:
    """Latest status snapshot of a Tripo task."""

    task_id: str
    status: TaskStatus
    progress: int = 0
    output: Dict[str, OutputRef] = field(default_factory=dict)
    kind: Optional[TaskKind] = None
    payload: Dict[str, object] = field(default_factory=dict)

    def model_url(self) -> str:
        return extract_model_url(self.output)


@dataclass
class CharacterMeta:
    """Free-form character notes collected from the user."""

    name: str = ""
    gender: str = "female"
    profile: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, object]]) -> "CharacterMeta":
        data = data or {}
        return cls(
            name=str(data.get("name") or ""),
            gender=str(data.get("gender") or "female"),
            profile=str(data.get("profile") or ""),
        )


@dataclass
class PipelineSession:
    """Checkpointed progress of the single in-flight creation."""

    uploaded_image: Optional[str] = None
    styled_image: Optional[str] = None
    model_task_id: Optional[str] = None
    model_url: Optional[str] = None
    rig_task_id: Optional[str] = None
    rigged_model_url: Optional[str] = None
    anim_urls: Dict[str, str] = field(default_factory=dict)
    character_meta: CharacterMeta = field(default_factory=CharacterMeta)
    gallery_id: Optional[str] = None
    saved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "PipelineSession":
        anim_urls = data.get("anim_urls") or {}
        return cls(
            uploaded_image=data.get("uploaded_image"),
            styled_image=data.get("styled_image"),
            model_task_id=data.get("model_task_id"),
            model_url=data.get("model_url"),
            rig_task_id=data.get("rig_task_id"),
            rigged_model_url=data.get("rigged_model_url"),
            anim_urls={str(key): str(value) for key, value in dict(anim_urls).items()},
            character_meta=CharacterMeta.from_dict(data.get("character_meta")),
            gallery_id=data.get("gallery_id"),
            saved_at=data.get("saved_at"),
        )


@dataclass
class GalleryEntity:
    """Durable record of one created character."""

    id: str
    name: str
    created_at: str
    thumbnail: str
    gender: Optional[str] = None
    profile: Optional[str] = None
    model_task_id: Optional[str] = None
    rig_task_id: Optional[str] = None
    last_model_url: Optional[str] = None


@dataclass
class CachedAsset:
    """Binary content stored locally for one (entity, variant) pair."""

    entity_id: str
    variant: str
    data: bytes
    content_type: str
    updated_at: str
