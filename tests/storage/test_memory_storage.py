import pytest

from emberorm.core import ForeignKey, IntegerField, Model, StringField
from emberorm.query import Attr, Q
from emberorm.storage import InMemoryStorage, IntegrityError, RowNotFound, StorageError


class Owner(Model):
    name = StringField()


class Pet(Model):
    name = StringField()
    age = IntegerField()
    owner = ForeignKey(Owner)


def test_insert_generates_sequential_keys_and_copies_rows():
    storage = InMemoryStorage()
    fields = {"name": "a"}
    assert storage.insert(Owner, fields) == 1
    assert storage.insert(Owner, {"name": "b"}) == 2
    assert "id" not in fields

    row = storage.read_by_id(Owner, 1)
    row["name"] = "mutated"
    assert storage.read_by_id(Owner, 1)["name"] == "a"


def test_explicit_keys_advance_the_sequence_and_duplicates_fail():
    storage = InMemoryStorage()
    storage.insert(Owner, {"id": 10, "name": "x"})
    assert storage.insert(Owner, {"name": "y"}) == 11
    with pytest.raises(IntegrityError):
        storage.insert(Owner, {"id": 10, "name": "z"})


def test_foreign_keys_are_enforced_on_write_and_delete():
    storage = InMemoryStorage()
    with pytest.raises(IntegrityError):
        storage.insert(Pet, {"name": "rex", "owner": 1})

    storage.insert(Owner, {"name": "a"})
    storage.insert(Pet, {"name": "rex", "owner": 1})
    with pytest.raises(IntegrityError):
        storage.update(Pet, 1, {"owner": 5})
    with pytest.raises(IntegrityError):
        storage.delete(Owner, 1)

    relaxed = InMemoryStorage(enforce_foreign_keys=False)
    relaxed.insert(Pet, {"name": "ghost", "owner": 99})
    assert relaxed.read_by_id(Pet, 1)["owner"] == 99


def test_rejected_insert_does_not_consume_a_key():
    storage = InMemoryStorage()
    with pytest.raises(IntegrityError):
        storage.insert(Pet, {"name": "stray", "owner": 3})
    with pytest.raises(IntegrityError):
        storage.insert(Pet, {"id": 40, "name": "stray", "owner": 3})

    storage.insert(Owner, {"name": "a"})
    assert storage.insert(Pet, {"name": "rex", "owner": 1}) == 1
    assert storage.rows(Pet) == [{"name": "rex", "owner": 1, "id": 1}]


def test_update_and_delete_of_missing_rows_raise():
    storage = InMemoryStorage()
    with pytest.raises(RowNotFound):
        storage.update(Owner, 1, {"name": "x"})
    with pytest.raises(RowNotFound):
        storage.delete(Owner, 1)


def test_read_many_filters_orders_and_windows():
    storage = InMemoryStorage(enforce_foreign_keys=False)
    for name, age in [("c", 3), ("a", None), ("b", 7), ("d", 1)]:
        storage.insert(Pet, {"name": name, "age": age})

    rows, total = storage.read_many(Pet, Attr("age") > 2, order_by=("-age",))
    assert [row["name"] for row in rows] == ["b", "c"]
    assert total == 2

    rows, total = storage.read_many(Pet, None, offset=1, limit=2, order_by=("age", "name"))
    assert [row["name"] for row in rows] == ["d", "c"]
    assert total == 4

    rows, total = storage.read_many(Pet, ~Q(name="a"), limit=0)
    assert rows == []
    assert total == 3


def test_read_many_can_skip_the_total():
    storage = InMemoryStorage()
    for name in "abc":
        storage.insert(Owner, {"name": name})

    rows, total = storage.read_many(Owner, None, offset=1, limit=5, with_total=False)
    assert [row["name"] for row in rows] == ["b", "c"]
    assert total is None


def test_bulk_update_rewrites_matching_rows():
    storage = InMemoryStorage()
    storage.insert(Owner, {"name": "a"})
    for name, age in [("rex", 3), ("fido", 8), ("tom", 12)]:
        storage.insert(Pet, {"name": name, "age": age, "owner": 1})

    assert storage.bulk_update(Pet, Attr("age") > 5, {"age": 0}) == 2
    assert [row["age"] for row in storage.rows(Pet)] == [3, 0, 0]
    assert storage.bulk_update(Pet, None, {}) == 0
    with pytest.raises(IntegrityError):
        storage.bulk_update(Pet, None, {"owner": 7})
    assert [row["owner"] for row in storage.rows(Pet)] == [1, 1, 1]


def test_transactions_and_savepoints_restore_state():
    storage = InMemoryStorage()
    storage.begin()
    storage.insert(Owner, {"name": "kept"})
    storage.savepoint("sp")
    storage.insert(Owner, {"name": "dropped"})
    storage.rollback_to_savepoint("sp")
    storage.release_savepoint("sp")
    storage.commit()

    assert [row["name"] for row in storage.rows(Owner)] == ["kept"]

    storage.begin()
    storage.insert(Owner, {"name": "temp"})
    storage.rollback()
    assert [row["name"] for row in storage.rows(Owner)] == ["kept"]
    assert storage.insert(Owner, {"name": "next"}) == 2


def test_transaction_misuse_raises():
    storage = InMemoryStorage()
    with pytest.raises(StorageError):
        storage.commit()
    with pytest.raises(StorageError):
        storage.savepoint("sp")
    storage.begin()
    with pytest.raises(StorageError):
        storage.begin()
    with pytest.raises(StorageError):
        storage.release_savepoint("unknown")
