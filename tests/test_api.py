import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeBlobStore
from estate_messaging.database.memory import InMemoryStoreGateway
from estate_messaging.main import create_app

ALICE = {"X-User-Id": "u1", "X-User-Email": "u1@estate.io"}
BOB = {"X-User-Id": "u2", "X-User-Email": "u2@estate.io"}
CAROL = {"X-User-Id": "u3", "X-User-Email": "u3@estate.io"}


@pytest.fixture
def client():
    app = create_app(gateway=InMemoryStoreGateway(), blob_store=FakeBlobStore())
    with TestClient(app) as c:
        yield c


def _start(client, **body):
    payload = {"other_user_id": "u2", "subject": "Inquiry", "property_id": "p1"}
    payload.update(body)
    response = client.post("/conversations", json=payload, headers=ALICE)
    assert response.status_code == 200, response.text
    return response.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Messaging service is running"}


def test_inquiry_flow(client):
    convo = _start(client, initial_message="Is this available?")
    assert convo["property_id"] == "p1"
    assert sorted(convo["participants"]) == ["u1", "u2"]

    # starting again for the same property reuses the thread
    assert _start(client)["id"] == convo["id"]

    listed = client.get("/conversations", headers=BOB).json()["items"]
    assert [c["id"] for c in listed] == [convo["id"]]
    assert listed[0]["unread_count"] == 1

    messages = client.get(f"/conversations/{convo['id']}/messages", headers=BOB).json()["items"]
    assert [m["content"] for m in messages] == ["Is this available?"]
    assert messages[0]["sender_id"] == "u1"

    listed = client.get("/conversations", headers=BOB).json()["items"]
    assert listed[0]["unread_count"] == 0


def test_requests_need_identity(client):
    assert client.get("/conversations").status_code == 401
    assert client.get("/conversations", headers={"X-User-Id": "u1"}).status_code == 401


def test_start_with_self_is_rejected(client):
    response = client.post("/conversations", json={"other_user_id": "u1"}, headers=ALICE)
    assert response.status_code == 400


def test_send_errors_are_mapped(client):
    convo = _start(client)

    empty = client.post(f"/conversations/{convo['id']}/messages", data={"content": "  "}, headers=ALICE)
    assert empty.status_code == 422

    outsider = client.post(f"/conversations/{convo['id']}/messages", data={"content": "hi"}, headers=CAROL)
    assert outsider.status_code == 403

    missing = client.post("/conversations/nope/messages", data={"content": "hi"}, headers=ALICE)
    assert missing.status_code == 404


def test_send_with_attachment(client):
    convo = _start(client)

    response = client.post(
        f"/conversations/{convo['id']}/messages",
        data={"content": "floor plan attached"},
        files=[("files", ("plan.pdf", b"%PDF-1.4", "application/pdf"))],
        headers=ALICE,
    )

    assert response.status_code == 200, response.text
    message = response.json()
    assert message["content"] == "floor plan attached"
    assert message["attachments"] == ["https://files.estate.io/plan.pdf"]
    assert message["receiver_id"] == "u2"


def test_delete_conversation(client):
    convo = _start(client, initial_message="hello")

    assert client.delete(f"/conversations/{convo['id']}", headers=CAROL).status_code == 403
    response = client.delete(f"/conversations/{convo['id']}", headers=BOB)

    assert response.json() == {"deleted": convo["id"]}
    assert client.get("/conversations", headers=ALICE).json()["items"] == []
    assert client.get(f"/conversations/{convo['id']}/messages", headers=ALICE).status_code == 404


def test_websocket_sends_initial_snapshot(client):
    convo = _start(client, initial_message="Is this available?")

    with client.websocket_connect("/conversations/ws", headers=BOB) as ws:
        payload = ws.receive_json()

    assert payload["type"] == "snapshot"
    conversations = payload["data"]["conversations"]
    assert [c["id"] for c in conversations] == [convo["id"]]
    assert conversations[0]["unread_count"] == 1
    assert payload["data"]["current_conversation"] is None


def test_websocket_requires_identity(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/conversations/ws") as ws:
            ws.receive_json()
