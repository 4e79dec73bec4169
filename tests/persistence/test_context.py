import pytest

from emberorm.config import ContextConfig, FlushMode
from emberorm.core import FloatField, ForeignKey, IntegerField, Model, StringField
from emberorm.errors import (
    ContextClosed,
    ContextStateError,
    DuplicateIdentity,
    EntityStateError,
    FlushFailure,
)
from emberorm.persistence import ContextState, PersistenceContext
from emberorm.query import Attr, PageRequest, Q
from emberorm.storage import InMemoryStorage, IntegrityError


class Team(Model):
    name = StringField(nullable=False)


class Member(Model):
    username = StringField(nullable=False)
    age = IntegerField(default=0)
    rating = FloatField()
    team = ForeignKey(Team, related_name="members")


def make_context(storage=None, **config):
    return PersistenceContext(storage or InMemoryStorage(), config=ContextConfig(**config))


def read_count(context, label):
    for entry in context.query_stats():
        if entry["label"] == label:
            return entry["count"]
    return 0


def test_saved_entity_is_the_identity_map_entry_after_flush():
    context = make_context()
    member = context.save(Member(username="winter", age=10))
    assert member.pk is None

    operations = context.flush()

    assert [op.kind for op in operations] == ["insert"]
    assert member.pk == 1
    assert context.identity_map.lookup(Member, member.pk) is member
    assert context.find_by_id(Member, member.pk) is member
    assert read_count(context, "read_by_id:Member") == 0


def test_find_by_id_twice_returns_same_instance_with_one_read():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "age": 10})
    context = make_context(storage)

    first = context.find_by_id(Member, 1)
    second = context.find_by_id(Member, 1)

    assert first is second
    assert first.username == "m1"
    assert read_count(context, "read_by_id:Member") == 1


def test_find_by_id_missing_row_is_none():
    context = make_context()
    assert context.find_by_id(Member, 42) is None
    assert context.find_by_id(Member, None) is None


def test_second_flush_without_mutation_emits_nothing():
    context = make_context()
    context.save(Member(username="m1"))
    assert len(context.flush()) == 1
    assert context.flush() == []
    assert context.state is ContextState.FLUSHED


def test_update_names_only_the_changed_field():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "age": 10})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    member.username = "m2"
    operations = context.flush()

    assert [(op.kind, op.fields) for op in operations] == [("update", {"username": "m2"})]
    assert storage.read_by_id(Member, 1)["username"] == "m2"
    assert context.flush() == []


def test_assigning_an_equal_value_is_not_dirty():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "age": 10})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    member.age = 10
    assert not context.is_dirty(member)
    assert context.flush() == []


def test_float_dirty_check_is_bit_exact():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "rating": 0.0})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    member.rating = -0.0
    operations = context.flush()
    assert [op.fields for op in operations] == [{"rating": -0.0}]


def test_inserts_follow_save_order_and_parents_get_keys_first():
    context = make_context()
    team = Team(name="teamA")
    member = Member(username="m1", team=team)
    context.save(team)
    context.save(member)

    operations = context.flush()

    assert [(op.kind, op.model) for op in operations] == [("insert", Team), ("insert", Member)]
    assert operations[1].fields["team"] == team.pk
    assert member.team is team


def test_deletes_run_in_reverse_managed_order():
    storage = InMemoryStorage()
    context = make_context(storage)
    team = context.save(Team(name="teamA"))
    member = context.save(Member(username="m1", team=team))
    context.flush()

    context.remove(team)
    context.remove(member)
    operations = context.flush()

    assert [(op.kind, op.model) for op in operations] == [("delete", Member), ("delete", Team)]
    assert storage.rows(Team) == []
    assert storage.rows(Member) == []


def test_remove_evicts_immediately_and_flush_deletes():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    context.remove(member)
    assert context.identity_map.lookup(Member, 1) is None
    assert context.find_by_id(Member, 1) is None
    assert storage.read_by_id(Member, 1) is not None

    context.flush()
    assert storage.read_by_id(Member, 1) is None
    reads = read_count(context, "read_by_id:Member")
    assert context.find_by_id(Member, 1) is None
    assert read_count(context, "read_by_id:Member") == reads + 1
    assert member._context is None

    storage.insert(Member, {"id": 1, "username": "again"})
    reloaded = context.find_by_id(Member, 1)
    assert reloaded is not member
    assert reloaded.username == "again"


def test_removing_pending_insert_cancels_it():
    context = make_context()
    member = context.save(Member(username="m1"))
    context.remove(member)

    assert context.flush() == []
    assert not context.contains(member)


def test_saving_removed_entity_cancels_deletion():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    context.remove(member)
    context.save(member)

    assert context.flush() == []
    assert context.find_by_id(Member, 1) is member


def test_cancelled_removal_keeps_edits_made_before_remove():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "age": 10})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    member.age = 99
    context.remove(member)
    context.save(member)

    assert context.is_dirty(member)
    operations = context.flush()
    assert [(op.kind, op.fields) for op in operations] == [("update", {"age": 99})]
    assert storage.read_by_id(Member, 1)["age"] == 99


def test_remove_of_unknown_entity_raises():
    context = make_context()
    with pytest.raises(EntityStateError):
        context.remove(Member(username="stranger"))


def test_distinct_instance_under_bound_key_raises_duplicate_identity():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    context = make_context(storage)
    context.find_by_id(Member, 1)

    with pytest.raises(DuplicateIdentity) as excinfo:
        context.save(Member(id=1, username="copy"))
    assert excinfo.value.model is Member
    assert excinfo.value.key == 1


def test_preassigned_key_is_used_for_insert():
    storage = InMemoryStorage()
    context = make_context(storage)
    member = context.save(Member(id=10, username="m10"))

    assert context.find_by_id(Member, 10) is member
    context.flush()
    assert storage.read_by_id(Member, 10)["username"] == "m10"


def test_flush_failure_aborts_remaining_writes_and_blocks_mutation():
    storage = InMemoryStorage()
    context = make_context(storage)
    context.save(Team(name="teamA"))
    broken = context.save(Member(username="broken", team=999))
    context.save(Member(username="never"))

    with pytest.raises(FlushFailure) as excinfo:
        context.flush()

    failure = excinfo.value
    assert failure.operation == "insert"
    assert failure.model is Member
    assert failure.instance is broken
    assert isinstance(failure.__cause__, IntegrityError)
    assert context.state is ContextState.FAILED
    assert [row["name"] for row in storage.rows(Team)] == ["teamA"]
    assert storage.rows(Member) == []

    with pytest.raises(ContextStateError):
        context.save(Member(username="later"))
    with pytest.raises(ContextStateError):
        context.flush()

    context.clear()
    assert context.state is ContextState.OPEN
    assert context.flush() == []


def test_changing_primary_key_of_managed_entity_fails_flush():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)

    member.id = 2
    with pytest.raises(FlushFailure) as excinfo:
        context.flush()
    assert isinstance(excinfo.value.__cause__, EntityStateError)


def test_reference_to_unsaved_parent_fails_flush():
    context = make_context()
    context.save(Member(username="orphan", team=Team(name="transient")))

    with pytest.raises(FlushFailure) as excinfo:
        context.flush()
    assert isinstance(excinfo.value.__cause__, EntityStateError)


def test_closed_context_rejects_operations():
    context = make_context()
    member = context.save(Member(username="m1"))
    context.close()
    context.close()

    assert context.closed
    assert member._context is None
    with pytest.raises(ContextClosed):
        context.find_by_id(Member, 1)
    with pytest.raises(ContextClosed):
        context.save(Member(username="m2"))
    with pytest.raises(ContextClosed):
        context.flush()


def test_clear_detaches_without_flushing():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    context = make_context(storage)
    member = context.find_by_id(Member, 1)
    member.username = "changed"
    pending = context.save(Member(username="pending"))

    context.clear()

    assert not context.contains(member)
    assert pending._context is None
    assert context.flush() == []
    reloaded = context.find_by_id(Member, 1)
    assert reloaded is not member
    assert reloaded.username == "m1"


def test_detach_discards_pending_changes_for_one_entity():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    storage.insert(Member, {"username": "m2"})
    context = make_context(storage)
    first = context.find_by_id(Member, 1)
    second = context.find_by_id(Member, 2)
    first.username = "x"
    second.username = "y"

    context.detach(first)
    operations = context.flush()

    assert [op.key for op in operations] == [2]
    assert storage.read_by_id(Member, 1)["username"] == "m1"


def test_merge_copies_detached_state_onto_managed_instance():
    storage = InMemoryStorage()
    first = make_context(storage)
    team = first.save(Team(name="teamA"))
    member = first.save(Member(username="m1", age=10, team=team))
    first.flush()
    first.close()

    member.age = 11
    second = make_context(storage)
    managed = second.merge(member)

    assert managed is not member
    assert managed.age == 11
    assert second.merge(managed) is managed
    operations = second.flush()
    assert [(op.kind, op.fields) for op in operations] == [("update", {"age": 11})]
    assert managed.team.name == "teamA"


def test_merge_of_transient_entity_saves_it():
    context = make_context()
    member = Member(username="new")
    assert context.merge(member) is member
    assert context.contains(member)


def test_find_all_paging_windows():
    storage = InMemoryStorage()
    for index in range(5):
        storage.insert(Member, {"username": f"member{index + 1}", "age": 10})
    context = make_context(storage)

    first = context.find_all(Member, Q(age=10), page=PageRequest(offset=0, limit=3, order_by=("-username",)))
    assert [member.username for member in first] == ["member5", "member4", "member3"]
    assert first.total == 5
    assert first.has_next is True
    assert first.total_pages == 2
    assert first.is_first

    second = context.find_all(Member, Q(age=10), page=PageRequest(offset=3, limit=3, order_by=("-username",)))
    assert len(second) == 2
    assert second.has_next is False
    assert second.number == 1


def test_find_all_with_attribute_predicate():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "AAA", "age": 10})
    storage.insert(Member, {"username": "BBB", "age": 20})
    context = make_context(storage)

    result = context.find_all(Member, Attr("age") > 15)

    assert [member.username for member in result] == ["BBB"]
    assert context.count(Member) == 2
    assert context.count(Member, Attr("age") >= 10) == 2


def test_find_all_returns_managed_instance_unchanged():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1", "age": 10})
    context = make_context(storage, flush_mode=FlushMode.COMMIT)
    member = context.find_by_id(Member, 1)
    member.username = "local"

    rows = context.find_all(Member)

    assert rows == [member]
    assert rows[0].username == "local"


def test_find_all_skips_entities_pending_removal():
    storage = InMemoryStorage()
    storage.insert(Member, {"username": "m1"})
    storage.insert(Member, {"username": "m2"})
    context = make_context(storage, flush_mode=FlushMode.COMMIT)
    context.remove(context.find_by_id(Member, 1))

    assert [member.username for member in context.find_all(Member)] == ["m2"]


def test_auto_flush_mode_flushes_before_queries():
    storage = InMemoryStorage()
    context = make_context(storage)
    context.save(Member(username="m1", age=30))

    assert [member.username for member in context.find_all(Member, Attr("age") > 15)] == ["m1"]
    assert len(storage.rows(Member)) == 1


def test_commit_flush_mode_defers_writes():
    storage = InMemoryStorage()
    context = make_context(storage, flush_mode=FlushMode.COMMIT)
    context.save(Member(username="m1"))

    assert context.find_all(Member) == []
    assert storage.rows(Member) == []
    context.commit()
    assert len(storage.rows(Member)) == 1


def test_query_set_chaining():
    storage = InMemoryStorage()
    for username, age in [("AAA", 10), ("BBB", 20), ("CCC", 30)]:
        storage.insert(Member, {"username": username, "age": age})
    context = make_context(storage)

    query = context.query(Member).where(Attr("age") >= 20).order_by("-age")
    assert [member.username for member in query.all()] == ["CCC", "BBB"]
    assert query.count() == 2
    assert query.first().username == "CCC"
    assert query.exclude(username="CCC").exists()
    assert not context.query(Member).filter(username="ZZZ").exists()
    assert query.page(1, 1).content[0].username == "BBB"

    with pytest.raises(KeyError):
        context.query(Member).order_by("missing")


class RecordingStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.totals_requested = []

    def read_many(self, model, predicate, offset=0, limit=None, order_by=(), *, with_total=True):
        self.totals_requested.append(with_total)
        return super().read_many(model, predicate, offset, limit, order_by, with_total=with_total)


def seed_teams(storage):
    storage.insert(Team, {"name": "teamA"})
    storage.insert(Team, {"name": "teamB"})
    for username, age, team in [("m1", 10, 1), ("m2", 20, 1), ("m3", 30, 2), ("m4", 40, None)]:
        storage.insert(Member, {"username": username, "age": age, "team": team})


def test_read_only_loads_are_never_written():
    storage = InMemoryStorage()
    seed_teams(storage)
    context = make_context(storage)

    member = context.find_by_id(Member, 1, read_only=True)
    others = context.query(Member).filter(team=1).read_only().all()
    member.username = "changed"
    others[1].age = 99

    assert others[0] is member
    assert not context.is_dirty(member)
    assert context.flush() == []
    assert storage.read_by_id(Member, 1)["username"] == "m1"
    assert storage.read_by_id(Member, 2)["age"] == 20

    tracked = context.find_by_id(Member, 3)
    tracked.age = 31
    assert [op.key for op in context.flush()] == [3]


def test_fetch_loads_references_in_one_read():
    storage = InMemoryStorage()
    seed_teams(storage)
    context = make_context(storage)
    known = context.find_by_id(Team, 2)

    members = context.find_all(Member, order_by=("id",), fetch=("team",))

    assert read_count(context, "fetch:Team") == 1
    assert [member.team.name if member.team else None for member in members] == [
        "teamA",
        "teamA",
        "teamB",
        None,
    ]
    assert members[0].team is members[1].team
    assert members[2].team is known
    assert read_count(context, "read_by_id:Team") == 1
    assert context.flush() == []


def test_select_related_on_query_set():
    storage = InMemoryStorage()
    seed_teams(storage)
    context = make_context(storage)

    query = context.query(Member).select_related("team").select_related("team")
    page = query.order_by("-age").page(0, 2)

    assert [member.team.name for member in page if member.team] == ["teamB"]
    assert read_count(context, "fetch:Team") == 1
    assert read_count(context, "read_by_id:Team") == 0
    with pytest.raises(ValueError):
        context.query(Member).select_related("username")
    with pytest.raises(KeyError):
        context.find_all(Member, fetch=("missing",))


def test_bulk_update_bypasses_managed_instances_until_cleared():
    storage = InMemoryStorage()
    seed_teams(storage)
    context = make_context(storage)
    member = context.find_by_id(Member, 3)
    pending = context.save(Member(username="m5", age=50))

    affected = context.bulk_update(Member, Attr("age") >= 20, {"age": 41})

    assert affected == 4
    assert storage.read_by_id(Member, pending.pk)["age"] == 41
    assert member.age == 30
    assert context.flush() == []

    context.clear()
    assert context.find_by_id(Member, 3).age == 41


def test_bulk_update_can_clear_and_rejects_key_changes():
    storage = InMemoryStorage()
    seed_teams(storage)
    context = make_context(storage)
    team = context.find_by_id(Team, 2)
    member = context.find_by_id(Member, 1)

    assert context.bulk_update(Member, Q(username="m1"), {"team": team}, clear=True) == 1
    assert not context.contains(member)
    assert context.find_by_id(Member, 1).team.name == "teamB"
    assert context.bulk_update(Member, Q(), {"age": "7"}) == 4
    assert [row["age"] for row in storage.rows(Member)] == [7, 7, 7, 7]

    with pytest.raises(EntityStateError):
        context.bulk_update(Member, None, {"id": 10})
    with pytest.raises(ValueError):
        context.bulk_update(Member, None, {"username": None})


def test_find_slice_reads_one_extra_row_and_no_total():
    storage = RecordingStorage()
    for index in range(5):
        storage.insert(Member, {"username": f"member{index + 1}", "age": 10})
    context = make_context(storage)

    request = PageRequest.of(0, 3, "-username")
    first = context.find_slice(Member, Q(age=10), request)
    assert [member.username for member in first] == ["member5", "member4", "member3"]
    assert first.has_next
    assert first.is_first
    assert first.next_request() == PageRequest.of(1, 3, "-username")

    second = context.find_slice(Member, Q(age=10), first.next_request())
    assert [member.username for member in second] == ["member2", "member1"]
    assert not second.has_next
    assert second.number == 1
    assert second.next_request() is None

    assert storage.totals_requested == [False, False]
    assert context.query(Member).order_by("username").slice(4, 2).content[0].username == "member5"
