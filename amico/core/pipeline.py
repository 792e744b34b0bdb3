"""Drives one character through style -> model -> rig -> animate.

The orchestrator owns a single ``PipelineSession``. Every confirmed stage is
checkpointed to the session store before the stage reports success, so a
restarted process can ``resume()`` from the most advanced stage. A failed
stage rolls the state back to the last confirmed state before that stage (a
failed regeneration of stage N lands on stage N-1) and re-raises the original
error. Nothing is retried automatically because task creation on the vendor
side is billable and not idempotent.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Set

from loguru import logger

from amico.core.asset_cache import SignedAssetCache
from amico.core.errors import (
    EntityNotFoundError,
    GalleryPersistError,
    InvalidTransitionError,
    StageInFlightError,
)
from amico.core.image_codec import make_thumbnail, parse_data_url, to_data_url
from amico.core.models import CharacterMeta, GalleryEntity, PipelineSession, TaskKind
from amico.core.settings import Settings
from amico.core.storage import GalleryStore, SessionStore, generate_id, utc_now
from amico.core.style_client import StyleConverter
from amico.core.task_runner import ProgressCallback, TaskPoller
from amico.core.tripo_client import TripoClient

IDLE_PRESET = "idle"
DEFAULT_CHARACTER_NAME = "My Amico"

# Extra fields sent with each task type.
MODEL_TASK_OPTIONS: Dict[str, object] = {"texture_quality": "detailed", "model_seed": 42}
RIG_TASK_OPTIONS: Dict[str, object] = {"rig_type": "biped"}


class PipelineState(str, Enum):
    IDLE = "idle"
    STYLING = "styling"
    STYLED = "styled"
    MODELING = "modeling"
    MODELED = "modeled"
    RIGGING = "rigging"
    RIGGED = "rigged"
    ANIMATING = "animating"
    COMPLETE = "complete"


@dataclass
class StageFailure:
    """Last stage error, kept for display after the state was rolled back."""

    stage: PipelineState
    error: BaseException

    @property
    def classification(self) -> str:
        return getattr(self.error, "classification", "error")

    @property
    def detail(self) -> str:
        return getattr(self.error, "detail", None) or str(self.error)


@dataclass
class PipelineConfig:
    poll_interval_s: float = 4.0
    model_timeout_s: float = 180.0
    rig_timeout_s: float = 180.0
    animate_timeout_s: float = 180.0
    preset_timeout_s: float = 120.0
    expiry_leeway_s: float = 60.0

    @classmethod
    def from_settings(cls, config: Settings) -> "PipelineConfig":
        return cls(
            poll_interval_s=config.poll_interval_s,
            model_timeout_s=config.model_timeout_s,
            rig_timeout_s=config.rig_timeout_s,
            animate_timeout_s=config.animate_timeout_s,
            preset_timeout_s=config.preset_timeout_s,
            expiry_leeway_s=config.expiry_leeway_s,
        )


def animation_key(preset: str) -> str:
    """``idle`` -> ``preset:idle``, ``biped:agree`` -> ``preset:biped:agree``."""
    return f"preset:{preset}"


class PipelineOrchestrator:
    """State machine for a single in-flight character creation."""

    def __init__(
        self,
        client: TripoClient,
        style: StyleConverter,
        sessions: SessionStore,
        gallery: GalleryStore,
        cache: SignedAssetCache,
        config: Optional[PipelineConfig] = None,
        poller: Optional[TaskPoller] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.client = client
        self.style = style
        self.sessions = sessions
        self.gallery = gallery
        self.cache = cache
        self.config = config or PipelineConfig()
        self.poller = poller or TaskPoller(client)
        self.on_progress = on_progress

        self.state = PipelineState.IDLE
        self.session = PipelineSession()
        self.failure: Optional[StageFailure] = None
        self.active_preset = IDLE_PRESET
        self.pending_preset: Optional[str] = None

        self._in_flight = False
        self._preset_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    # ── state helpers ───────────────────────────────────────────────────

    @property
    def busy(self) -> bool:
        return self._in_flight or self.pending_preset is not None

    @property
    def current_asset(self) -> Optional[str]:
        """Asset reference for the active animation preset, if any."""
        return self.session.anim_urls.get(self.active_preset)

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        if self.busy:
            raise StageInFlightError("Another pipeline stage is still running")
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    @asynccontextmanager
    async def _stage(
        self,
        running: PipelineState,
        allowed: Set[PipelineState],
        rollback: PipelineState,
    ) -> AsyncIterator[None]:
        if self.busy:
            raise StageInFlightError("Another pipeline stage is still running")
        if self.state not in allowed:
            expected = ", ".join(sorted(state.value for state in allowed))
            raise InvalidTransitionError(
                f"Cannot start {running.value} from {self.state.value} (expected {expected})"
            )
        async with self._exclusive():
            self.state = running
            self.failure = None
            logger.info(f"Pipeline stage {running.value} started")
            try:
                yield
            except BaseException as exc:
                self.state = rollback
                if isinstance(exc, Exception):
                    self.failure = StageFailure(running, exc)
                    logger.warning(
                        f"Pipeline stage {running.value} failed "
                        f"({self.failure.classification}): {exc}"
                    )
                raise
        logger.info(f"Pipeline stage {running.value} finished -> {self.state.value}")

    def _checkpoint(self, session: PipelineSession) -> None:
        """Persist the session; the in-memory copy changes only after the write."""
        self.session = self.sessions.save(session.to_dict())

    async def _run_task(self, kind: TaskKind, params: Dict[str, object], timeout_s: float, label: str):
        task_id = await self.client.create_task(kind, params)
        task = await self.poller.poll(
            task_id,
            self.config.poll_interval_s,
            timeout_s,
            on_progress=self.on_progress,
            label=label,
        )
        return task_id, task.model_url()

    async def _retarget(self, rig_task_id: str, preset: str, timeout_s: float) -> str:
        _, url = await self._run_task(
            TaskKind.RETARGET,
            {"original_model_task_id": rig_task_id, "animation": animation_key(preset)},
            timeout_s,
            label=f"animate_retarget[{preset}]",
        )
        return url

    # ── stage 0: style ──────────────────────────────────────────────────

    async def submit_image(self, data: bytes, mime_type: str, meta: Optional[CharacterMeta] = None) -> str:
        """Style an uploaded photo and start a new session."""
        async with self._stage(PipelineState.STYLING, {PipelineState.IDLE}, PipelineState.IDLE):
            styled = await self.style.convert_image(data, mime_type)
            self._checkpoint(
                PipelineSession(
                    uploaded_image=to_data_url(data, mime_type),
                    styled_image=styled,
                    character_meta=meta or CharacterMeta(),
                )
            )
            self.state = PipelineState.STYLED
        return styled

    async def submit_description(self, meta: CharacterMeta) -> str:
        """Generate a styled character from text notes and start a new session."""
        async with self._stage(PipelineState.STYLING, {PipelineState.IDLE}, PipelineState.IDLE):
            styled = await self.style.generate_from_text(meta)
            self._checkpoint(PipelineSession(styled_image=styled, character_meta=meta))
            self.state = PipelineState.STYLED
        return styled

    async def regenerate_style(self) -> str:
        """Re-run the style call with the same photo or the same character notes."""
        async with self._stage(PipelineState.STYLING, {PipelineState.STYLED}, PipelineState.IDLE):
            if self.session.uploaded_image:
                source = parse_data_url(self.session.uploaded_image)
                styled = await self.style.convert_image(source.data, source.mime_type)
            else:
                styled = await self.style.generate_from_text(self.session.character_meta)
            self._checkpoint(replace(self.session, styled_image=styled))
            self.state = PipelineState.STYLED
        return styled

    # ── stage 1: model ──────────────────────────────────────────────────

    async def generate_model(self) -> str:
        return await self._model_stage(PipelineState.STYLED)

    async def regenerate_model(self) -> str:
        return await self._model_stage(PipelineState.MODELED)

    async def _model_stage(self, allowed: PipelineState) -> str:
        if not self.session.styled_image:
            raise InvalidTransitionError("No styled image to build a model from")
        async with self._stage(PipelineState.MODELING, {allowed}, PipelineState.STYLED):
            image = parse_data_url(self.session.styled_image)
            token = await self.client.upload(image.data, image.mime_type)
            task_id, url = await self._run_task(
                TaskKind.IMAGE_TO_MODEL,
                {"file": {"type": image.file_type, "file_token": token}, **MODEL_TASK_OPTIONS},
                self.config.model_timeout_s,
                label="image_to_model",
            )
            self._checkpoint(replace(self.session, model_task_id=task_id, model_url=url))
            self.state = PipelineState.MODELED
        return url

    # ── stage 2: rig ────────────────────────────────────────────────────

    async def rig(self) -> str:
        return await self._rig_stage(PipelineState.MODELED)

    async def regenerate_rig(self) -> str:
        return await self._rig_stage(PipelineState.RIGGED)

    async def _rig_stage(self, allowed: PipelineState) -> str:
        model_task_id = self.session.model_task_id
        if not model_task_id:
            raise InvalidTransitionError("No model task to rig")
        async with self._stage(PipelineState.RIGGING, {allowed}, PipelineState.MODELED):
            task_id, url = await self._run_task(
                TaskKind.RIG,
                {"original_model_task_id": model_task_id, **RIG_TASK_OPTIONS},
                self.config.rig_timeout_s,
                label="animate_rig",
            )
            self._checkpoint(replace(self.session, rig_task_id=task_id, rigged_model_url=url))
            self.state = PipelineState.RIGGED
        return url

    # ── stage 3: animate ────────────────────────────────────────────────

    async def animate(self) -> GalleryEntity:
        """Retarget the idle preset, cache it and save the character to the gallery.

        The gallery write is best-effort: once the idle animation is checkpointed
        the stage completes even if the gallery cannot be updated.
        """
        rig_task_id = self.session.rig_task_id
        if not rig_task_id:
            raise InvalidTransitionError("No rig task to animate")
        async with self._stage(PipelineState.ANIMATING, {PipelineState.RIGGED}, PipelineState.RIGGED):
            url = await self._retarget(rig_task_id, IDLE_PRESET, self.config.animate_timeout_s)
            gallery_id = self.session.gallery_id or generate_id()
            self._checkpoint(replace(self.session, anim_urls={IDLE_PRESET: url}, gallery_id=gallery_id))
            await self.cache.cache_from_url(gallery_id, IDLE_PRESET, url)
            entity = self._save_to_gallery(gallery_id, url)
            self.active_preset = IDLE_PRESET
            self.state = PipelineState.COMPLETE
        return entity

    def _save_to_gallery(self, gallery_id: str, idle_url: str) -> GalleryEntity:
        meta = self.session.character_meta
        thumbnail = make_thumbnail(self.session.styled_image) if self.session.styled_image else ""
        try:
            existing = self.gallery.get(gallery_id)
        except GalleryPersistError as exc:
            logger.warning(f"Could not look up {gallery_id} in the gallery: {exc}")
            existing = None
        entity = GalleryEntity(
            id=gallery_id,
            name=meta.name or DEFAULT_CHARACTER_NAME,
            gender=meta.gender,
            profile=meta.profile or None,
            created_at=existing.created_at if existing else utc_now(),
            thumbnail=thumbnail,
            model_task_id=self.session.model_task_id,
            rig_task_id=self.session.rig_task_id,
            last_model_url=idle_url,
        )
        try:
            self.gallery.upsert(entity)
        except GalleryPersistError as exc:
            logger.error(f"Character {entity.id} completed but was not saved to the gallery: {exc}")
            return entity
        logger.info(f"Saved character {entity.name} ({entity.id}) to gallery")
        return entity

    async def request_animation(self, preset: str) -> str:
        """Fetch an extra animation preset once; later calls return the stored reference.

        Requests are serialized. While one is pending the orchestrator counts as
        busy, so the session cannot be reset, resumed or swapped underneath it.
        """
        cached = self.session.anim_urls.get(preset)
        if cached:
            self.active_preset = preset
            return cached
        self._require_animatable()
        owner = (self.session.gallery_id, self.session.rig_task_id)
        async with self._preset_lock:
            cached = self.session.anim_urls.get(preset)
            if cached:
                self.active_preset = preset
                return cached
            self._require_animatable()
            if (self.session.gallery_id, self.session.rig_task_id) != owner:
                raise InvalidTransitionError(f"Character changed before {preset} was requested")
            session = self.session
            self.pending_preset = preset
            try:
                url = await self._retarget(session.rig_task_id, preset, self.config.preset_timeout_s)
            finally:
                self.pending_preset = None
            if self.session is not session:
                raise InvalidTransitionError(f"Character changed while {preset} was generating")
            self._checkpoint(replace(session, anim_urls={**session.anim_urls, preset: url}))
            if session.gallery_id:
                await self.cache.cache_from_url(session.gallery_id, preset, url)
        self.active_preset = preset
        return url

    def _require_animatable(self) -> None:
        if self._in_flight:
            raise StageInFlightError("Another pipeline stage is still running")
        if self.state != PipelineState.COMPLETE:
            raise InvalidTransitionError(f"Animations can be added only when complete (now {self.state.value})")
        if not self.session.rig_task_id:
            raise InvalidTransitionError("No rig task to animate")

    # ── session lifecycle ───────────────────────────────────────────────

    def has_saved_session(self) -> bool:
        session = self.sessions.load()
        return bool(session and session.styled_image)

    def resume(self) -> PipelineState:
        """Restore the most advanced checkpointed stage."""
        if self.busy:
            raise StageInFlightError("Cannot resume while a stage is running")
        session = self.sessions.load()
        self.failure = None
        self.active_preset = IDLE_PRESET
        if session is None:
            state = PipelineState.IDLE
            session = PipelineSession()
        elif session.anim_urls:
            state = PipelineState.COMPLETE
            self.active_preset = next(iter(session.anim_urls))
        elif session.rigged_model_url:
            state = PipelineState.RIGGED
        elif session.model_url:
            state = PipelineState.MODELED
        elif session.styled_image:
            state = PipelineState.STYLED
        else:
            self.sessions.clear()
            state = PipelineState.IDLE
            session = PipelineSession()
        self.session = session
        self.state = state
        logger.info(f"Resumed pipeline at {state.value}")
        return state

    def reset(self) -> None:
        """Abandon the current creation and clear the checkpoint."""
        if self.busy:
            raise StageInFlightError("Cannot reset while a stage is running")
        self.sessions.clear()
        self.session = PipelineSession()
        self.state = PipelineState.IDLE
        self.failure = None
        self.active_preset = IDLE_PRESET

    # ── gallery entities ────────────────────────────────────────────────

    async def materialize_entity(self, entity: GalleryEntity) -> Optional[str]:
        """Best displayable reference for an entity's idle animation.

        Order: cached local file, unexpired remote URL (and fill the cache in
        the background), a freshly retargeted URL when the rig task is known,
        then the last known URL even if it may have expired.
        """
        handle = self.cache.get_cached_handle(entity.id, IDLE_PRESET)
        if handle is not None:
            return handle.uri
        url = entity.last_model_url
        if url and not self.cache.is_expired(url, self.config.expiry_leeway_s):
            self._fill_cache_later(entity.id, IDLE_PRESET, url)
            return url
        if entity.rig_task_id:
            logger.info(f"Idle animation for {entity.id} expired, retargeting again")
            fresh = await self._retarget(entity.rig_task_id, IDLE_PRESET, self.config.animate_timeout_s)
            self.gallery.update_last_model_url(entity.id, fresh)
            self._fill_cache_later(entity.id, IDLE_PRESET, fresh)
            return fresh
        return url

    async def open_entity(self, entity_id: str) -> Optional[str]:
        """Load a gallery character back into the orchestrator."""
        entity = self.gallery.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        async with self._exclusive():
            reference = await self.materialize_entity(entity)
        self.session = PipelineSession(
            styled_image=entity.thumbnail or None,
            model_task_id=entity.model_task_id,
            rig_task_id=entity.rig_task_id,
            anim_urls={IDLE_PRESET: reference} if reference else {},
            character_meta=CharacterMeta(
                name=entity.name,
                gender=entity.gender or "female",
                profile=entity.profile or "",
            ),
            gallery_id=entity.id,
        )
        self.active_preset = IDLE_PRESET
        self.failure = None
        self.state = PipelineState.COMPLETE if reference else PipelineState.STYLED
        return reference

    def delete_entity(self, entity_id: str) -> int:
        """Delete a character and evict its cached assets."""
        self.gallery.delete(entity_id)
        return self.cache.remove_for_entity(entity_id)

    # ── background work ─────────────────────────────────────────────────

    def _fill_cache_later(self, entity_id: str, variant: str, url: str) -> None:
        task = asyncio.get_running_loop().create_task(self.cache.cache_from_url(entity_id, variant, url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending background cache fills."""
        if self._background:
            await asyncio.gather(*list(self._background))
