import pytest

from makersai.storage import DesignStore, SavedDesign


@pytest.fixture
def store():
    design_store = DesignStore(":memory:")
    try:
        yield design_store
    finally:
        design_store.close()


def make_design(name="Pen holder", **extra):
    values = {
        "name": name,
        "prompt": "a pen holder",
        "scad_code": "cylinder(h=80, r=30);",
        "image_url": "data:image/png;base64,AAA",
        "svg_code": None,
        "tags": ["desk"],
    }
    values.update(extra)
    return SavedDesign(**values)


def test_save_and_get_design(store):
    saved = store.save_design(make_design())

    assert saved.id is not None
    assert saved.created_at == saved.updated_at

    loaded = store.get_design(saved.id)
    assert loaded.name == "Pen holder"
    assert loaded.tags == ["desk"]
    assert loaded.is_favorite is False


def test_list_designs_newest_first_and_favorites(store):
    first = store.save_design(make_design("First"))
    second = store.save_design(make_design("Second"))
    store.set_favorite(first.id, True)

    assert [d.name for d in store.list_designs()] == ["Second", "First"]
    assert [d.name for d in store.list_designs(favorites_only=True)] == ["First"]
    assert len(store.list_designs(limit=1)) == 1
    assert second.id != first.id


def test_missing_designs(store):
    assert store.get_design(999) is None
    assert store.set_favorite(999, True) is None
    assert store.delete_design(999) is False


def test_delete_design(store):
    saved = store.save_design(make_design())
    assert store.delete_design(saved.id) is True
    assert store.get_design(saved.id) is None


def test_usage_tracking(store):
    store.record_usage("generate_model", {"prompt": "a cup", "color_count": 2})
    store.record_usage("generate_model")
    store.record_usage("generate_construction_plan", {"part_count": 3})

    assert store.usage_counts() == {"generate_model": 2, "generate_construction_plan": 1}


def test_usage_tracking_never_raises_after_close(store):
    store.close()
    store.record_usage("generate_model", {"prompt": "a cup"})


def test_file_database_is_created(tmp_path):
    db_path = tmp_path / "nested" / "makersai.db"
    design_store = DesignStore(str(db_path))
    try:
        design_store.save_design(make_design())
    finally:
        design_store.close()
    assert db_path.exists()

    reopened = DesignStore(str(db_path))
    try:
        assert len(reopened.list_designs()) == 1
    finally:
        reopened.close()


def test_design_validation():
    with pytest.raises(ValueError):
        make_design(name="")
