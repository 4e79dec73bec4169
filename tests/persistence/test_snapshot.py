import math

from emberorm.core import FloatField, ForeignKey, Model, StringField
from emberorm.persistence import SnapshotStore
from emberorm.persistence.snapshot import values_equal


class Shelf(Model):
    label = StringField()


class Box(Model):
    label = StringField()
    weight = FloatField()
    shelf = ForeignKey(Shelf)


def test_capture_stores_reference_keys_only():
    shelf = Shelf(id=4, label="top")
    box = Box(id=1, label="b", weight=1.5, shelf=shelf)

    snapshot = SnapshotStore.capture(box)

    assert dict(snapshot.values) == {"id": 1, "label": "b", "weight": 1.5, "shelf": 4}


def test_diff_reports_changed_fields():
    box = Box(id=1, label="b", weight=1.5)
    snapshot = SnapshotStore.capture(box)
    assert SnapshotStore.diff(box, snapshot) == set()

    box.label = "c"
    box.shelf = Shelf(id=2)
    assert SnapshotStore.diff(box, snapshot) == {"label", "shelf"}
    assert SnapshotStore.is_dirty(box, snapshot)


def test_float_comparison_is_bit_exact():
    assert not values_equal(0.0, -0.0)
    assert values_equal(math.nan, math.nan)
    assert values_equal(1.25, 1.25)
    assert not values_equal(1, 1.0)


def test_store_remembers_per_instance():
    store = SnapshotStore()
    box = Box(id=1, label="b")
    store.remember(box)
    assert box in store
    box.label = "changed"
    assert store.get(box).values["label"] == "b"

    store.forget(box)
    assert store.get(box) is None
    store.remember(box)
    store.clear()
    assert box not in store
