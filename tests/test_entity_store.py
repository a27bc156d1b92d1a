import itertools

from test_helpers import make_conversation, make_message, ts

from chatsync.repositories.entity_store import EntityStore, StoreChange


def test_messages_ordered_by_creation_then_id(store: EntityStore):
    messages = [
        make_message("m-b", created_at=ts(1)),
        make_message("m-a", created_at=ts(1)),
        make_message("m-c", created_at=ts(0)),
    ]
    store.replace_messages("c1", messages)

    assert [m.id for m in store.get_messages("c1")] == ["m-c", "m-a", "m-b"]


def test_upsert_order_is_stable_under_permutations():
    messages = [
        make_message("m1", created_at=ts(0)),
        make_message("m2", created_at=ts(5)),
        make_message("m3", created_at=ts(5)),
        make_message("m4", created_at=ts(2)),
    ]
    orders = set()
    for permutation in itertools.permutations(messages):
        store = EntityStore()
        store.replace_messages("c1", [])
        for message in permutation:
            store.upsert_message(message)
        orders.add(tuple(m.id for m in store.get_messages("c1")))

    assert orders == {("m1", "m4", "m2", "m3")}


def test_upsert_message_is_idempotent(store: EntityStore):
    changes: list[StoreChange] = []
    store.subscribe(changes.append)
    message = make_message()

    assert store.upsert_message(message) is True
    assert store.upsert_message(message.model_copy()) is False

    assert len(store.get_messages("c1")) == 1
    assert changes == [StoreChange("messages", "c1")]


def test_tombstone_is_sticky_and_keeps_position(store: EntityStore):
    store.replace_messages(
        "c1",
        [
            make_message("m1", created_at=ts(0)),
            make_message("m2", created_at=ts(1)),
            make_message("m3", created_at=ts(2)),
        ],
    )
    assert store.tombstone_message("m2") is True

    # A stale page or a replayed create must not resurrect the message.
    store.replace_messages(
        "c1",
        [
            make_message("m1", created_at=ts(0)),
            make_message("m2", created_at=ts(1)),
            make_message("m3", created_at=ts(2)),
        ],
    )
    store.upsert_message(make_message("m2", created_at=ts(1)))

    messages = store.get_messages("c1")
    assert [m.id for m in messages] == ["m1", "m2", "m3"]
    assert messages[1].is_tombstoned
    assert messages[1].preview_text == "This message was deleted"
    assert store.tombstone_message("m2") is False


def test_patch_message_is_monotonic(store: EntityStore):
    store.replace_messages("c1", [make_message("m1", content="v0")])

    assert store.patch_message("m1", "v2", ts(20)) is True
    assert store.patch_message("m1", "v1", ts(10)) is False
    assert store.get_message("m1").content == "v2"

    # Older copy arriving in a page keeps the newer edit.
    store.replace_messages("c1", [make_message("m1", content="v1", edited_at=ts(10))])
    assert store.get_message("m1").content == "v2"
    assert store.get_message("m1").edited_at == ts(20)


def test_patch_unknown_message_is_a_no_op(store: EntityStore):
    assert store.patch_message("missing", "text", ts(1)) is False


def test_replace_conversations_keeps_identity_and_evicts_missing(store: EntityStore):
    store.replace_conversations([make_conversation("c1"), make_conversation("c2")])
    store.replace_messages("c2", [make_message("m9", conversation_id="c2")])
    original = store.get_conversation("c1")

    evicted = store.replace_conversations([make_conversation("c1", name="Renamed")])

    assert evicted == ["c2"]
    assert store.get_conversation("c1") is original
    assert original.display_name == "Renamed"
    assert store.get_conversation("c2") is None
    assert not store.has_message_log("c2")
    assert store.get_message("m9") is None


def test_conversations_ordered_by_recent_activity(store: EntityStore):
    store.replace_conversations(
        [
            make_conversation("c-old", updated_at=ts(0)),
            make_conversation("c-new", updated_at=ts(30)),
            make_conversation("c-mid-b", updated_at=ts(10)),
            make_conversation("c-mid-a", updated_at=ts(10)),
        ]
    )

    assert [c.id for c in store.get_conversations()] == ["c-new", "c-mid-a", "c-mid-b", "c-old"]


def test_upsert_conversation_patches_only_given_fields(store: EntityStore):
    store.upsert_conversation(make_conversation("c1", preview="latest"))
    patch = make_conversation("c1", participant_ids=(), name="Team")

    current = store.upsert_conversation(patch, ["display_name"])

    assert current.display_name == "Team"
    assert current.last_message_preview == "latest"
    assert len(current.participants) == 2


def test_replace_message_swaps_placeholder(store: EntityStore):
    store.replace_messages("c1", [make_message("pending-1", sender_id="u-self", content="hey")])

    store.replace_message("pending-1", make_message("m-real", sender_id="u-self", content="hey"))

    assert [m.id for m in store.get_messages("c1")] == ["m-real"]
    assert store.get_message("pending-1") is None


def test_failing_listener_does_not_break_mutation(store: EntityStore):
    seen = []

    def broken(change):
        raise RuntimeError("boom")

    store.subscribe(broken)
    unsubscribe = store.subscribe(seen.append)

    store.upsert_conversation(make_conversation())
    unsubscribe()
    store.evict_conversation("c1")

    assert seen == [StoreChange("conversations", "c1")]
    assert store.get_conversation("c1") is None
