"""Tests for the MembershipManager."""
import asyncio

import pytest
import pytest_asyncio

from chatrelay.conversations.schemas import Conversation, ConversationKind
from chatrelay.errors import Conflict, Forbidden, InvalidPayload, NotFound
from chatrelay.membership.service import plan_remove
from chatrelay.realtime.presence import conversation_group
from chatrelay.realtime.router import _dispatch


@pytest_asyncio.fixture
async def group(services):
    return await services.store.create_group("alice", ["bob", "carol"], "Team")


class TestPlans:

    def test_remove_sole_admin_conflicts(self):
        conversation = Conversation(
            kind=ConversationKind.GROUP,
            title="T",
            participant_ids=["alice", "bob"],
            admin_ids=["alice"],
        )
        with pytest.raises(Conflict):
            plan_remove(conversation, {}, "alice", "alice")

    def test_non_admin_cannot_remove(self):
        conversation = Conversation(
            kind=ConversationKind.GROUP,
            title="T",
            participant_ids=["alice", "bob", "carol"],
            admin_ids=["alice"],
        )
        with pytest.raises(Forbidden):
            plan_remove(conversation, {}, "bob", "carol")


class TestAddMembers:

    @pytest.mark.asyncio
    async def test_add_members_fans_out(self, services, connect):
        group = await services.store.create_group("alice", ["bob"], "Team")
        bob = await connect("bob")
        dave = await connect("dave")
        await services.presence.join(bob.connection, conversation_group(group.id))

        change = await services.membership.add_members(group.id, "alice", ["dave", "dave", "bob"])

        assert change.added_ids == ["dave"]
        assert change.conversation.participant_ids == ["alice", "bob", "dave"]
        assert change.system_message.is_system is True
        assert change.system_message.body == "Alice added Dave."

        assert dave.of_type("conversationCreated")[0]["conversation"]["id"] == group.id
        assert dave.of_type("conversationUpdated") == []
        assert bob.of_type("conversationUpdated")[0]["conversation"]["participantIds"] == [
            "alice", "bob", "dave",
        ]
        system = bob.of_type("messageReceived")[0]["message"]
        assert system["isSystem"] is True

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, services, group):
        with pytest.raises(Forbidden):
            await services.membership.add_members(group.id, "bob", ["dave"])

    @pytest.mark.asyncio
    async def test_unknown_user(self, services, group):
        with pytest.raises(NotFound):
            await services.membership.add_members(group.id, "alice", ["ghost"])

    @pytest.mark.asyncio
    async def test_nobody_new(self, services, group):
        with pytest.raises(InvalidPayload):
            await services.membership.add_members(group.id, "alice", ["bob"])

    @pytest.mark.asyncio
    async def test_direct_conversation_rejected(self, services):
        conversation, _ = await services.store.create_direct("alice", "bob")
        with pytest.raises(InvalidPayload):
            await services.membership.add_members(conversation.id, "alice", ["carol"])


class TestRemoveMember:

    @pytest.mark.asyncio
    async def test_removal_scenario(self, services, connect, group):
        """Removed member stops receiving traffic and can no longer send."""
        bob = await connect("bob")
        carol = await connect("carol")
        for recorder in (bob, carol):
            await services.presence.join(recorder.connection, conversation_group(group.id))

        change = await services.membership.remove_member(group.id, "alice", "bob")

        assert change.conversation.participant_ids == ["alice", "carol"]
        assert change.system_message.body == "Alice removed Bob."
        assert bob.of_type("conversationRemoved") == [{
            "type": "conversationRemoved",
            "conversationId": group.id,
            "deleted": False,
        }]
        assert bob.of_type("messageReceived") == []
        assert conversation_group(group.id) not in bob.connection.groups
        assert carol.of_type("conversationUpdated")[0]["conversation"]["participantIds"] == [
            "alice", "carol",
        ]

        with pytest.raises(Forbidden):
            await services.pipeline.send("bob", group.id, "still here?")

        before = len(bob.events)
        await services.pipeline.send("alice", group.id, "after bob")
        assert len(bob.events) == before
        assert carol.of_type("messageReceived")[-1]["message"]["body"] == "after bob"

    @pytest.mark.asyncio
    async def test_sole_admin_conflict(self, services, group):
        with pytest.raises(Conflict):
            await services.membership.remove_member(group.id, "alice", "alice")

    @pytest.mark.asyncio
    async def test_target_not_participant(self, services, group):
        with pytest.raises(NotFound):
            await services.membership.remove_member(group.id, "alice", "dave")

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, services, group):
        with pytest.raises(Forbidden):
            await services.membership.remove_member(group.id, "bob", "carol")


class TestLeave:

    @pytest.mark.asyncio
    async def test_last_admin_leaving_promotes_earliest_joined(self, services, connect, group):
        bob = await connect("bob")

        change = await services.membership.leave(group.id, "alice")

        assert change.promoted_ids == ["bob"]
        assert change.conversation.admin_ids == ["bob"]
        assert change.conversation.participant_ids == ["bob", "carol"]
        assert change.system_message.body == "Alice left the group. Bob is now an admin."
        assert bob.of_type("conversationUpdated")[0]["conversation"]["adminIds"] == ["bob"]

    @pytest.mark.asyncio
    async def test_non_admin_leave_never_promotes(self, services, group):
        change = await services.membership.leave(group.id, "bob")

        assert change.promoted_ids == []
        assert change.conversation.admin_ids == ["alice"]
        assert change.system_message.body == "Bob left the group."

    @pytest.mark.asyncio
    async def test_leaver_gets_conversation_removed(self, services, connect, group):
        carol = await connect("carol")
        await services.presence.join(carol.connection, conversation_group(group.id))

        await services.membership.leave(group.id, "carol")

        assert carol.of_type("conversationRemoved")[0]["conversationId"] == group.id
        assert carol.connection.groups == {"user:carol"}
        assert group.id not in [v.conversation.id for v in await services.store.list_for_user("carol")]

    @pytest.mark.asyncio
    async def test_direct_leave_is_one_sided(self, services, connect):
        conversation, _ = await services.store.create_direct("alice", "bob")
        alice = await connect("alice")
        bob = await connect("bob")

        change = await services.membership.leave(conversation.id, "alice")

        assert change.deleted is False
        assert alice.of_type("conversationRemoved")[0]["conversationId"] == conversation.id
        assert alice.of_type("conversationUpdated") == []
        assert bob.of_type("conversationRemoved") == []


class TestListMembers:

    @pytest.mark.asyncio
    async def test_members_with_admin_flags(self, services, group):
        members = await services.membership.list_members(group.id, "bob")
        assert [(m["id"], m["isAdmin"]) for m in members] == [
            ("alice", True), ("bob", False), ("carol", False),
        ]
        assert members[0]["username"] == "Alice"

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, services, group):
        with pytest.raises(Forbidden):
            await services.membership.list_members(group.id, "dave")


class TestJoinDuringRemoval:

    @pytest.mark.asyncio
    async def test_removed_member_cannot_rejoin_mid_removal(
        self, services, connect, group, monkeypatch
    ):
        store = services.store
        bob = await connect("bob")
        carol = await connect("carol")
        await services.presence.join(carol.connection, conversation_group(group.id))

        real_check = store.get_for_participant

        async def slow_check(conversation_id, user_id):
            conversation = await real_check(conversation_id, user_id)
            await asyncio.sleep(0.05)
            return conversation

        monkeypatch.setattr(store, "get_for_participant", slow_check)

        await asyncio.gather(
            _dispatch(
                services, bob.connection, "joinConversation", {"conversationId": group.id}
            ),
            services.membership.remove_member(group.id, "alice", "bob"),
            return_exceptions=True,
        )
        await services.pipeline.send("alice", group.id, "after removal")

        assert bob.connection not in services.presence.members(conversation_group(group.id))
        assert bob.of_type("messageReceived") == []
        assert [e["message"]["body"] for e in carol.of_type("messageReceived")][-1] == (
            "after removal"
        )

    @pytest.mark.asyncio
    async def test_user_who_left_direct_cannot_join(self, services, connect):
        conversation, _ = await services.store.create_direct("alice", "bob")
        await services.membership.leave(conversation.id, "alice")
        alice = await connect("alice")

        with pytest.raises(Forbidden):
            await _dispatch(
                services, alice.connection, "joinConversation",
                {"conversationId": conversation.id},
            )
        assert alice.connection.groups == {"user:alice"}
