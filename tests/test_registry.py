import random

import pytest

from ftchat.registry import AdmitResult, Registry

from conftest import FakeMember


async def admit_all(registry, *members):
    for m in members:
        assert await registry.admit(m) is AdmitResult.OK


# -----------------------------
# Admission
# -----------------------------
@pytest.mark.asyncio
async def test_first_client_becomes_coordinator(registry, make_member):
    alice = make_member("Alice")
    await admit_all(registry, alice)

    assert registry.coordinator == "Alice"
    assert alice.sent == [
        "SYSTEM You are the first client and the coordinator.",
        "COORDINATOR_INFO Alice",
    ]


@pytest.mark.asyncio
async def test_second_client_gets_coordinator_info(registry, make_member):
    alice, bob = make_member("Alice"), make_member("Bob")
    await admit_all(registry, alice, bob)

    assert registry.coordinator == "Alice"
    assert bob.sent == ["COORDINATOR_INFO Alice"]
    assert alice.sent[-1] == "SYSTEM Bob joined the chat."


@pytest.mark.asyncio
async def test_duplicate_identity_rejected(registry, make_member):
    first, second = make_member("Alice"), make_member("Alice")
    await admit_all(registry, first)

    assert await registry.admit(second) is AdmitResult.DUPLICATE
    assert registry.get("Alice") is first
    assert second.sent == []


@pytest.mark.asyncio
async def test_not_accepting(registry, make_member):
    registry.stop_accepting()
    alice = make_member("Alice")
    assert await registry.admit(alice) is AdmitResult.NOT_ACCEPTING
    assert len(registry) == 0
    assert registry.coordinator is None


@pytest.mark.asyncio
async def test_inactive_member_not_admitted(registry, make_member):
    alice = make_member("Alice")
    alice.active = False
    assert await registry.admit(alice) is AdmitResult.INACTIVE
    assert "Alice" not in registry


@pytest.mark.asyncio
async def test_is_name_in_use_is_case_sensitive(registry, make_member):
    await admit_all(registry, make_member("Alice"))
    assert registry.is_name_in_use("Alice")
    assert not registry.is_name_in_use("alice")
    assert not registry.is_name_in_use("Bob")


# -----------------------------
# Removal and re-election
# -----------------------------
@pytest.mark.asyncio
async def test_coordinator_leaves(registry, make_member):
    alice, bob, charlie = make_member("Alice"), make_member("Bob"), make_member("Charlie")
    await admit_all(registry, alice, bob, charlie)
    bob.sent.clear()
    charlie.sent.clear()

    assert await registry.remove("Alice", "test_remove") is True

    assert registry.coordinator == "Bob"
    assert bob.sent == [
        "SYSTEM Alice left the chat (test_remove).",
        "SYSTEM You are now the coordinator.",
        "COORDINATOR_INFO Bob",
    ]
    assert charlie.sent == [
        "SYSTEM Alice left the chat (test_remove).",
        "COORDINATOR_INFO Bob",
    ]


@pytest.mark.asyncio
async def test_non_coordinator_leaves(registry, make_member):
    alice, bob = make_member("Alice"), make_member("Bob")
    await admit_all(registry, alice, bob)

    await registry.remove("Bob", "test_remove")

    assert registry.coordinator == "Alice"
    assert registry.identities() == ["Alice"]
    assert alice.sent[-1] == "SYSTEM Bob left the chat (test_remove)."
    assert not any(line.startswith("COORDINATOR_INFO Bob") for line in alice.sent)


@pytest.mark.asyncio
async def test_last_client_leaves(registry, make_member):
    await admit_all(registry, make_member("Alice"))
    await registry.remove("Alice", "test_remove")
    assert len(registry) == 0
    assert registry.coordinator is None


@pytest.mark.asyncio
async def test_remove_is_at_most_once(registry, make_member):
    alice, bob = make_member("Alice"), make_member("Bob")
    await admit_all(registry, alice, bob)
    bob.sent.clear()

    assert await registry.remove("Alice", "quit") is True
    assert await registry.remove("Alice", "timeout") is False

    assert bob.sent.count("SYSTEM You are now the coordinator.") == 1
    assert [line for line in bob.sent if "left the chat" in line] == ["SYSTEM Alice left the chat (quit)."]


@pytest.mark.asyncio
async def test_remove_ignores_other_member_with_same_identity(registry, make_member):
    winner, loser = make_member("Alice"), make_member("Alice")
    await admit_all(registry, winner)

    assert await registry.remove("Alice", "duplicate_id", member=loser) is False
    assert registry.get("Alice") is winner


@pytest.mark.asyncio
async def test_name_is_reusable_after_removal(registry, make_member):
    await admit_all(registry, make_member("Alice"))
    await registry.remove("Alice", "quit")
    again = make_member("Alice")
    assert await registry.admit(again) is AdmitResult.OK
    assert registry.coordinator == "Alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(8))
async def test_random_admits_and_removes_keep_invariants(seed):
    rng = random.Random(seed)
    registry = Registry()
    names = ["Ann", "Ben", "Cid", "Dot", "Eve", "Fay"]
    members = {}

    for _ in range(60):
        name = rng.choice(names)
        if name in members and rng.random() < 0.6:
            await registry.remove(name, "random")
            del members[name]
        else:
            m = FakeMember(name, registry)
            result = await registry.admit(m)
            if name in members:
                assert result is AdmitResult.DUPLICATE
            else:
                assert result is AdmitResult.OK
                members[name] = m

        assert registry.identities() == sorted(members)
        if members:
            assert registry.coordinator in members
        else:
            assert registry.coordinator is None


# -----------------------------
# Routing
# -----------------------------
@pytest.mark.asyncio
async def test_broadcast_excludes_sender(registry, make_member):
    alice, bob, charlie = make_member("Alice"), make_member("Bob"), make_member("Charlie")
    await admit_all(registry, alice, bob, charlie)

    delivered = await registry.broadcast_send("Alice", "Hello everyone!")

    assert delivered == 2
    assert bob.sent[-1] == "MESSAGE Alice: Hello everyone!"
    assert charlie.sent[-1] == "MESSAGE Alice: Hello everyone!"
    assert "MESSAGE Alice: Hello everyone!" not in alice.sent


@pytest.mark.asyncio
async def test_broadcast_skips_inactive_members(registry, make_member):
    alice, bob, charlie = make_member("Alice"), make_member("Bob"), make_member("Charlie")
    await admit_all(registry, alice, bob, charlie)
    charlie.active = False

    assert await registry.broadcast_send("Alice", "hi") == 1
    assert bob.sent[-1] == "MESSAGE Alice: hi"
    assert "MESSAGE Alice: hi" not in charlie.sent


@pytest.mark.asyncio
async def test_private_message_success(registry, make_member):
    alice, bob = make_member("Alice"), make_member("Bob")
    await admit_all(registry, alice, bob)

    assert await registry.private_send("Alice", "Bob", "Hi Bob!") is True
    assert bob.sent[-1] == "PRIVATE from Alice: Hi Bob!"
    assert alice.sent[-1] == "INFO Private message sent to Bob."


@pytest.mark.asyncio
async def test_private_message_user_not_found(registry, make_member):
    alice = make_member("Alice")
    await admit_all(registry, alice)
    before = len(alice.sent)

    assert await registry.private_send("Alice", "Ghost", "Hello") is False
    assert alice.sent[before:] == ["ERROR User 'Ghost' not found."]


@pytest.mark.asyncio
async def test_private_message_recipient_offline(registry, make_member):
    alice, bob = make_member("Alice"), make_member("Bob")
    await admit_all(registry, alice, bob)
    bob.active = False
    before = len(alice.sent)

    assert await registry.private_send("Alice", "Bob", "Hello") is False
    assert alice.sent[before:] == ["ERROR User 'Bob' is offline."]


@pytest.mark.asyncio
async def test_private_message_to_self_is_allowed(registry, make_member):
    alice = make_member("Alice")
    await admit_all(registry, alice)

    assert await registry.private_send("Alice", "Alice", "Hi me!") is True
    assert alice.sent[-2:] == ["PRIVATE from Alice: Hi me!", "INFO Private message sent to Alice."]


@pytest.mark.asyncio
async def test_client_list_sorted_with_coordinator_flag(registry, make_member):
    charlie = make_member("Charlie", host="10.0.0.3")
    alice = make_member("Alice", host="10.0.0.1")
    bob = make_member("Bob", host="10.0.0.2")
    await admit_all(registry, charlie, alice, bob)
    alice.sent.clear()

    await registry.list_members("Alice")

    assert alice.sent == [
        "CLIENTLIST_START",
        "- ID: Alice (Host: 10.0.0.1)",
        "- ID: Bob (Host: 10.0.0.2)",
        "- ID: Charlie (Host: 10.0.0.3) [Coordinator]",
        "CLIENTLIST_END",
    ]


@pytest.mark.asyncio
async def test_client_list_to_unreachable_requester(registry, make_member):
    alice = make_member("Alice")
    await admit_all(registry, alice)
    alice.active = False
    await registry.list_members("Alice")
    await registry.list_members("Nobody")
    assert "CLIENTLIST_START" not in alice.sent


@pytest.mark.asyncio
async def test_history_replay_hides_other_peoples_private_messages(registry, make_member):
    alice, bob, carol = make_member("Alice"), make_member("Bob"), make_member("Carol")
    await admit_all(registry, alice, bob, carol)
    await registry.broadcast_send("Alice", "hi all")
    await registry.private_send("Alice", "Bob", "secret")
    carol.sent.clear()
    bob.sent.clear()

    await registry.send_history("Carol")
    await registry.send_history("Bob")

    assert carol.sent[0] == "HISTORY_START"
    assert carol.sent[-1] == "HISTORY_END"
    assert any(line.endswith("| BROADCAST | Alice: hi all") for line in carol.sent)
    assert not any("secret" in line for line in carol.sent)
    assert any(line.endswith("| PRIVATE | Alice -> Bob: secret") for line in bob.sent)
    assert all(line.startswith("HISTORY_ENTRY ") for line in bob.sent[1:-1])


@pytest.mark.asyncio
async def test_history_is_bounded():
    registry = Registry(history_length=2)
    alice = FakeMember("Alice", registry)
    await registry.admit(alice)
    for i in range(5):
        await registry.broadcast_send("Alice", f"m{i}")
    assert [r.text for r in registry.history.records()] == ["m3", "m4"]
