import re
import sqlite3

import pytest

from amico.core.errors import GalleryPersistError, SessionPersistError
from amico.core.models import GalleryEntity
from amico.core.storage import SESSION_KEY, _SqliteStore, generate_id


def make_entity(entity_id: str, name: str = "Mochi", **overrides) -> GalleryEntity:
    values = dict(
        id=entity_id,
        name=name,
        created_at="2025-01-01T00:00:00+00:00",
        thumbnail="data:image/jpeg;base64,AAAA",
        gender="female",
        rig_task_id="rig-1",
        last_model_url="https://cdn/idle.glb",
    )
    values.update(overrides)
    return GalleryEntity(**values)


def test_load_returns_none_when_empty(session_store):
    assert session_store.load() is None


def test_save_merges_patch_into_stored_session(session_store):
    session_store.save({"styled_image": "data:image/png;base64,AAAA"})
    session = session_store.save({"model_task_id": "m-1", "model_url": "https://cdn/m.glb"})

    assert session.styled_image == "data:image/png;base64,AAAA"
    assert session.model_task_id == "m-1"
    assert session.saved_at

    loaded = session_store.load()
    assert loaded.styled_image == "data:image/png;base64,AAAA"
    assert loaded.model_url == "https://cdn/m.glb"


def test_clear_removes_session(session_store):
    session_store.save({"styled_image": "x"})
    session_store.clear()
    assert session_store.load() is None


def test_unreadable_session_is_discarded(session_store, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("INSERT INTO settings (key, value) VALUES (?, ?)", (SESSION_KEY, "{not json"))
    assert session_store.load() is None


def test_unserializable_patch_raises_persist_error(session_store):
    with pytest.raises(SessionPersistError):
        session_store.save({"styled_image": object()})


def test_upsert_same_id_keeps_one_entity(gallery_store):
    gallery_store.upsert(make_entity("a", name="First"))
    gallery_store.upsert(make_entity("a", name="Second"))

    entities = gallery_store.list_all()
    assert len(entities) == 1
    assert entities[0].name == "Second"


def test_list_all_is_newest_first_and_updates_keep_position(gallery_store):
    gallery_store.upsert(make_entity("a"))
    gallery_store.upsert(make_entity("b"))
    gallery_store.upsert(make_entity("c"))
    gallery_store.upsert(make_entity("a", name="Renamed"))

    assert [entity.id for entity in gallery_store.list_all()] == ["c", "b", "a"]


def test_get_and_delete(gallery_store):
    gallery_store.upsert(make_entity("a", profile="likes tea"))
    assert gallery_store.get("a").profile == "likes tea"

    gallery_store.delete("a")
    assert gallery_store.get("a") is None
    assert gallery_store.list_all() == []


def test_update_last_model_url(gallery_store):
    gallery_store.upsert(make_entity("a"))

    assert gallery_store.update_last_model_url("a", "https://cdn/fresh.glb") is True
    assert gallery_store.get("a").last_model_url == "https://cdn/fresh.glb"
    assert gallery_store.update_last_model_url("missing", "https://cdn/x.glb") is False


def test_generate_id_format():
    first, second = generate_id(), generate_id()
    assert re.fullmatch(r"amico_\d+_[a-z0-9]{6}", first)
    assert first != second


def test_gallery_database_errors_raise_persist_error(gallery_store, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("DROP TABLE gallery")

    with pytest.raises(GalleryPersistError) as excinfo:
        gallery_store.upsert(make_entity("amico_1"))
    assert excinfo.value.classification == "gallery write failed"
    with pytest.raises(GalleryPersistError):
        gallery_store.get("amico_1")


def test_store_base_requires_initialize(db_path):
    with pytest.raises(TypeError):
        _SqliteStore(db_path)
