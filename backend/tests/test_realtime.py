"""Tests for the /ws/collaboration live presence socket.

Frames are ``{"event": ..., "data": ...}`` in both directions.
"""
from conftest import ALICE, BOB, OWNER, auth_headers

ANA = {"email": ALICE, "name": "Alice"}
BEN = {"email": BOB, "name": "Bob"}
OWN = {"email": OWNER, "name": "Owner"}


def send(ws, event, data):
    ws.send_json({"event": event, "data": data})


def expect(ws, event):
    frame = ws.receive_json()
    assert frame["event"] == event, frame
    return frame["data"]


def join(ws, chat_id, user):
    send(ws, "join-chat", {"chatId": chat_id, "user": user})
    return expect(ws, "active-users")


def test_join_sends_roster_to_joiner(client):
    with client.websocket_connect("/ws/collaboration") as ws:
        roster = join(ws, "chat-1", ANA)
        assert [u["email"] for u in roster] == [ALICE]
        assert roster[0]["cursor"]["color"].startswith("hsl(")


def test_join_broadcast_scenario(client):
    with client.websocket_connect("/ws/collaboration") as a, \
         client.websocket_connect("/ws/collaboration") as b:
        join(a, "chat-1", ANA)
        roster = join(b, "chat-1", BEN)

        joined = expect(a, "user-joined")
        assert joined["user"] == BEN
        assert sorted(u["email"] for u in roster) == [ALICE, BOB]

        # The joiner never receives its own user-joined: its next frame is the message
        send(b, "send-message", {"chatId": "chat-1", "message": "hi", "user": BEN})
        assert expect(b, "new-message")["text"] == "hi"
        msg = expect(a, "new-message")
        assert msg["sender"] == BEN
        assert msg["chatId"] == "chat-1"


def test_join_is_idempotent(client):
    with client.websocket_connect("/ws/collaboration") as ws:
        join(ws, "chat-1", ANA)
        roster = join(ws, "chat-1", ANA)
        assert len(roster) == 1
        assert len(client.app.state.hub.registry.members_of("chat-1")) == 1


def test_typing_excludes_sender(client):
    with client.websocket_connect("/ws/collaboration") as a, \
         client.websocket_connect("/ws/collaboration") as b:
        join(a, "chat-1", ANA)
        join(b, "chat-1", BEN)
        expect(a, "user-joined")

        send(a, "typing", {"chatId": "chat-1", "user": ANA})
        assert expect(b, "user-typing")["user"] == ANA
        send(a, "stop-typing", {"chatId": "chat-1", "user": ANA})
        assert expect(b, "user-stop-typing")["user"] == ANA

        send(a, "send-message", {"chatId": "chat-1", "message": "done", "user": ANA})
        assert expect(a, "new-message")["text"] == "done"


def test_presence_update_persists_and_notifies_others(client):
    with client.websocket_connect("/ws/collaboration") as a, \
         client.websocket_connect("/ws/collaboration") as b:
        join(a, "chat-1", ANA)
        join(b, "chat-1", BEN)
        expect(a, "user-joined")

        cursor = {"position": 12, "color": "teal"}
        send(a, "presence-update", {"chatId": "chat-1", "user": ANA, "cursor": cursor})
        changed = expect(b, "presence-changed")
        assert changed["cursor"] == cursor

        users = client.get(
            "/collaboration/chat-1/active-users", headers=auth_headers(OWNER)
        ).json()["activeUsers"]
        by_email = {u["email"]: u for u in users}
        assert by_email[ALICE]["cursor"] == cursor
        assert len(users) == 2


def test_leave_chat(client):
    with client.websocket_connect("/ws/collaboration") as a, \
         client.websocket_connect("/ws/collaboration") as b:
        join(a, "chat-1", ANA)
        join(b, "chat-1", BEN)
        expect(a, "user-joined")

        send(b, "leave-chat", {"chatId": "chat-1", "user": BEN})
        assert expect(a, "user-left")["user"] == BEN

        users = client.get(
            "/collaboration/chat-1/active-users", headers=auth_headers(ALICE)
        ).json()["activeUsers"]
        assert [u["email"] for u in users] == [ALICE]


def test_disconnect_cleans_up_every_room(client):
    hub = client.app.state.hub
    with client.websocket_connect("/ws/collaboration") as watcher1, \
         client.websocket_connect("/ws/collaboration") as watcher2:
        join(watcher1, "room-1", BEN)
        join(watcher2, "room-2", OWN)

        with client.websocket_connect("/ws/collaboration") as leaver:
            send(leaver, "identify", ANA)
            join(leaver, "room-1", ANA)
            join(leaver, "room-2", ANA)
            expect(watcher1, "user-joined")
            expect(watcher2, "user-joined")
            assert hub.identities.is_online(ALICE)

        assert expect(watcher1, "user-left")["user"] == ANA
        assert expect(watcher2, "user-left")["user"] == ANA

        assert not hub.identities.is_online(ALICE)
        for room in ("room-1", "room-2"):
            assert all(c.email != ALICE for c in hub.registry.members_of(room))
            users = client.get(
                f"/collaboration/{room}/active-users", headers=auth_headers(BOB)
            ).json()["activeUsers"]
            assert ALICE not in [u["email"] for u in users]


def test_second_tab_keeps_roster_entry(client):
    with client.websocket_connect("/ws/collaboration") as tab1:
        join(tab1, "chat-1", ANA)
        with client.websocket_connect("/ws/collaboration") as tab2:
            join(tab2, "chat-1", ANA)
            expect(tab1, "user-joined")
        expect(tab1, "user-left")

        users = client.get(
            "/collaboration/chat-1/active-users", headers=auth_headers(ALICE)
        ).json()["activeUsers"]
        assert [u["email"] for u in users] == [ALICE]


def test_online_endpoint(client):
    with client.websocket_connect("/ws/collaboration") as ws:
        join(ws, "chat-1", ANA)
        resp = client.get("/collaboration/chat-1/online", headers=auth_headers(BOB))
        assert resp.json()["users"] == [ANA]


def test_invite_notifies_online_invitee(client):
    with client.websocket_connect("/ws/collaboration") as invitee:
        send(invitee, "identify", BEN)
        join(invitee, "lobby", BEN)
        resp = client.post(
            "/collaboration/chat-1/invite",
            json={"email": BOB, "role": "editor", "chatTitle": "Plan"},
            headers=auth_headers(OWNER, "Owner"),
        )
        assert resp.json()["notifiedOnline"] is True

        data = expect(invitee, "invitation-received")
        assert data["chatId"] == "chat-1"
        assert data["role"] == "editor"
        assert data["invitedBy"]["email"] == OWNER


def test_accepting_invitation_broadcasts_collaborator_joined(client):
    token = client.post(
        "/collaboration/chat-1/invite", json={"email": BOB}, headers=auth_headers(OWNER)
    ).json()["shareLink"]

    with client.websocket_connect("/ws/collaboration") as owner_ws:
        join(owner_ws, "chat-1", OWN)
        client.post(
            f"/collaboration/invitation/{token}/respond",
            json={"accept": True},
            headers=auth_headers(BOB, "Bob"),
        )
        assert expect(owner_ws, "collaborator-joined")["user"]["email"] == BOB


def test_invitation_accepted_event(client):
    client.post("/collaboration/chat-1/invite", json={"email": BOB}, headers=auth_headers(OWNER))

    with client.websocket_connect("/ws/collaboration") as ws:
        join(ws, "chat-1", OWN)
        send(ws, "invitation-accepted", {"chatId": "chat-1", "user": BEN})
        assert expect(ws, "collaborator-joined")["user"] == BEN

    doc = client.get("/collaboration/chat-1", headers=auth_headers(OWNER)).json()["collaboration"]
    bob = next(c for c in doc["collaborators"] if c["email"] == BOB)
    assert bob["status"] == "accepted"


def test_dual_path_convergence(client):
    with client.websocket_connect("/ws/collaboration") as ws:
        join(ws, "chat-1", ANA)
        client.post(
            "/collaboration/chat-1/active-users",
            json={"cursor": {"position": 7, "color": "red"}},
            headers=auth_headers(ALICE, "Alice"),
        )
        client.post("/collaboration/chat-1/active-users", headers=auth_headers(BOB, "Bob"))
        send(ws, "presence-update", {"chatId": "chat-1", "user": ANA, "cursor": {"position": 9, "color": "red"}})
        send(ws, "send-message", {"chatId": "chat-1", "message": "sync", "user": ANA})
        expect(ws, "new-message")

        users = client.get(
            "/collaboration/chat-1/active-users", headers=auth_headers(BOB)
        ).json()["activeUsers"]
        by_email = {u["email"]: u for u in users}
        assert sorted(by_email) == [ALICE, BOB]
        assert by_email[ALICE]["cursor"]["position"] == 9


def test_messages_are_kept_in_history(client):
    with client.websocket_connect("/ws/collaboration") as ws:
        join(ws, "chat-1", ANA)
        for text in ("one", "two"):
            send(ws, "send-message", {"chatId": "chat-1", "message": text, "user": ANA})
            expect(ws, "new-message")

    history = client.get("/collaboration/chat-1/messages", headers=auth_headers(ALICE)).json()
    assert [m["text"] for m in history["messages"]] == ["one", "two"]


class TestErrors:
    def test_malformed_json(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            ws.send_text("{not json")
            assert "Malformed" in expect(ws, "error")["message"]

    def test_missing_event_name(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            ws.send_json({"data": {}})
            assert "missing event" in expect(ws, "error")["message"]

    def test_unknown_event(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            send(ws, "teleport", {})
            assert expect(ws, "error")["message"] == "Unknown event: teleport"

    def test_invalid_payload(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            send(ws, "join-chat", {"chatId": "chat-1", "user": {"email": "not-an-email"}})
            error = expect(ws, "error")
            assert error["message"] == "Invalid payload for join-chat"
            assert error["errors"][0]["field"] == "user.email"

    def test_connection_survives_errors(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            send(ws, "teleport", {})
            expect(ws, "error")
            assert [u["email"] for u in join(ws, "chat-1", ANA)] == [ALICE]

    def test_join_store_failure_sends_error(self, client):
        async def broken(*args, **kwargs):
            from citruslab.collaboration.errors import StoreError
            raise StoreError("down")

        client.app.state.service.upsert_presence = broken
        with client.websocket_connect("/ws/collaboration") as ws:
            send(ws, "join-chat", {"chatId": "chat-1", "user": ANA})
            assert expect(ws, "error")["message"] == "Failed to join chat"

    def test_join_retry_after_store_failure_announces_joiner(self, client):
        service = client.app.state.service
        real_upsert = service.upsert_presence
        failures = []

        async def fail_first_bob_join(chat_id, user, cursor=None):
            if user.email == BOB and not failures:
                from citruslab.collaboration.errors import StoreError
                failures.append(chat_id)
                raise StoreError("down")
            return await real_upsert(chat_id, user, cursor)

        service.upsert_presence = fail_first_bob_join
        with client.websocket_connect("/ws/collaboration") as a, \
             client.websocket_connect("/ws/collaboration") as b:
            join(a, "chat-1", ANA)

            send(b, "join-chat", {"chatId": "chat-1", "user": BEN})
            assert expect(b, "error")["message"] == "Failed to join chat"
            assert all(c.email != BOB for c in client.app.state.hub.registry.members_of("chat-1"))

            join(b, "chat-1", BEN)
            assert expect(a, "user-joined")["user"] == BEN

    def test_binary_frame_is_rejected_without_closing(self, client):
        with client.websocket_connect("/ws/collaboration") as ws:
            ws.send_bytes(b"\x00\x01")
            assert expect(ws, "error")["message"] == "Binary frames are not supported"
            assert [u["email"] for u in join(ws, "chat-1", ANA)] == [ALICE]


def test_reidentify_releases_previous_email(client):
    hub = client.app.state.hub
    with client.websocket_connect("/ws/collaboration") as ws:
        send(ws, "identify", ANA)
        send(ws, "identify", BEN)
        join(ws, "lobby", BEN)

        assert hub.identities.resolve(ALICE) is None
        assert hub.identities.resolve(BOB).email == BOB

        resp = client.post(
            "/collaboration/chat-1/invite", json={"email": ALICE}, headers=auth_headers(OWNER)
        )
        assert resp.json()["notifiedOnline"] is False
