from localchat.core.config import settings

STREAM_HEADER = settings["stream"]["header"]
MESSAGE_HEADER = settings["stream"]["message_header"]


def create_chat(client, title=None):
    response = client.post("/chat", json={"title": title} if title else {})
    assert response.status_code == 201
    return response.json()["data"]


# ============================================================================
# CRUD
# ============================================================================

def test_create_chat_without_title_uses_default(client):
    data = create_chat(client)

    assert data["title"] == "New Chat"
    assert data["id"]
    assert "createdAt" in data and "updatedAt" in data


def test_create_chat_without_body(client):
    response = client.post("/chat")
    assert response.status_code == 201
    assert response.json()["data"]["title"] == "New Chat"


def test_rename_is_reflected_in_chat_list(client):
    chat = create_chat(client)

    response = client.put(f"/chats/{chat['id']}", json={"title": "Trip plans"})
    assert response.status_code == 200
    assert response.json()["data"]["title"] == "Trip plans"

    chats = client.get("/chats").json()["data"]
    assert [(c["id"], c["title"]) for c in chats] == [(chat["id"], "Trip plans")]
    assert chats[0]["timestamp"] == "Now"
    assert "messages" not in chats[0]


def test_rename_with_empty_title_is_rejected(client):
    chat = create_chat(client)
    response = client.put(f"/chats/{chat['id']}", json={"title": ""})

    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_get_chat_includes_ordered_messages(client):
    chat = create_chat(client, "Greeting")
    client.post(f"/chat/{chat['id']}/message", json={"content": "hi", "role": "user"})

    data = client.get(f"/chats/{chat['id']}").json()["data"]

    assert data["title"] == "Greeting"
    assert [(m["role"], m["content"]) for m in data["messages"]] == [
        ("user", "hi"),
        ("assistant", "Hello world"),
    ]


def test_unknown_chat_is_404(client):
    for response in (
        client.get("/chats/missing"),
        client.put("/chats/missing", json={"title": "x"}),
        client.delete("/chats/missing"),
        client.post("/chat/missing/message", json={"content": "hi", "role": "user"}),
    ):
        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error"] == "CHAT_NOT_FOUND"


def test_delete_chat(client):
    chat = create_chat(client)

    response = client.delete(f"/chats/{chat['id']}")
    assert response.status_code == 200
    assert response.json()["data"] == {"id": chat["id"]}
    assert client.get(f"/chats/{chat['id']}").status_code == 404


# ============================================================================
# Streaming
# ============================================================================

def test_send_message_streams_reply_with_stream_id_header(client, store):
    chat = create_chat(client)

    response = client.post(f"/chat/{chat['id']}/message", json={"content": "hello", "role": "user"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers[STREAM_HEADER].startswith(f"{chat['id']}-")
    assert response.text == "Hello world"

    user_id = int(response.headers[MESSAGE_HEADER])
    assert store.get_message(user_id).content == "hello"


def test_first_message_sets_title(client):
    chat = create_chat(client)
    client.post(f"/chat/{chat['id']}/message", json={"content": "What should I cook for dinner tonight?"})

    title = client.get(f"/chats/{chat['id']}").json()["data"]["title"]
    assert title == "What should I cook for dinner ..."


def test_custom_title_is_kept(client):
    chat = create_chat(client, "Recipes")
    client.post(f"/chat/{chat['id']}/message", json={"content": "hello"})

    assert client.get(f"/chats/{chat['id']}").json()["data"]["title"] == "Recipes"


def test_history_is_sent_to_backend(client, backend):
    chat = create_chat(client)
    client.post(f"/chat/{chat['id']}/message", json={"content": "first"})
    client.post(f"/chat/{chat['id']}/message", json={"content": "second"})

    assert backend.calls[-1] == [
        ("user", "first"),
        ("assistant", "Hello world"),
        ("user", "second"),
    ]


def test_message_role_must_be_user(client):
    chat = create_chat(client)
    response = client.post(f"/chat/{chat['id']}/message", json={"content": "hi", "role": "assistant"})
    assert response.status_code == 422


def test_backend_failure_returns_structured_error_and_flags_message(client, backend):
    backend.fail_before_first = True
    chat = create_chat(client)

    response = client.post(f"/chat/{chat['id']}/message", json={"content": "hello"})

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "BACKEND_ERROR"
    assert STREAM_HEADER not in response.headers

    messages = client.get(f"/chats/{chat['id']}").json()["data"]["messages"]
    assert len(messages) == 1
    assert messages[0]["id"] == body["messageId"]
    assert messages[0]["failed"] is True


def test_retry_clears_failed_flag_without_duplicate(client, backend):
    backend.fail_before_first = True
    chat = create_chat(client)
    failed = client.post(f"/chat/{chat['id']}/message", json={"content": "hello"}).json()

    backend.fail_before_first = False
    response = client.post(
        f"/chat/{chat['id']}/message",
        json={"content": "hello", "role": "user", "retryMessageId": failed["messageId"]},
    )
    assert response.status_code == 200
    assert response.text == "Hello world"

    messages = client.get(f"/chats/{chat['id']}").json()["data"]["messages"]
    assert [(m["role"], m["content"], m["failed"]) for m in messages] == [
        ("user", "hello", False),
        ("assistant", "Hello world", False),
    ]


def test_retry_of_healthy_message_is_rejected(client):
    chat = create_chat(client)
    ok = client.post(f"/chat/{chat['id']}/message", json={"content": "hello"})

    response = client.post(
        f"/chat/{chat['id']}/message",
        json={"content": "hello", "retryMessageId": int(ok.headers[MESSAGE_HEADER])},
    )
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_RETRY"


def test_stream_is_deregistered_after_completion(client, registry):
    chat = create_chat(client)
    response = client.post(f"/chat/{chat['id']}/message", json={"content": "hello"})

    assert response.text == "Hello world"
    assert registry.active_streams() == []


def test_stop_unknown_stream_returns_zero(client):
    chat = create_chat(client)

    response = client.post(f"/chat/{chat['id']}/stop", json={"streamId": "does-not-exist"})
    assert response.status_code == 200
    assert response.json()["stoppedCount"] == 0


def test_stop_finished_stream_returns_zero(client):
    chat = create_chat(client)
    sent = client.post(f"/chat/{chat['id']}/message", json={"content": "hello"})

    response = client.post(f"/chat/{chat['id']}/stop", json={"streamId": sent.headers[STREAM_HEADER]})
    assert response.json()["stoppedCount"] == 0


def test_stop_without_stream_id_cancels_every_stream_of_chat(client, registry):
    from localchat.streaming.cancellation import CancellationToken

    chat = create_chat(client)
    other = create_chat(client)
    tokens = [CancellationToken() for _ in range(3)]
    registry.register("a", chat["id"], tokens[0])
    registry.register("b", chat["id"], tokens[1])
    registry.register("c", other["id"], tokens[2])

    response = client.post(f"/chat/{chat['id']}/stop", json={})

    assert response.json()["stoppedCount"] == 2
    assert [t.cancelled for t in tokens] == [True, True, False]
    assert registry.active_streams() == ["c"]


def test_stop_with_stream_of_another_chat_is_ignored(client, registry):
    from localchat.streaming.cancellation import CancellationToken

    chat = create_chat(client)
    other = create_chat(client)
    token = CancellationToken()
    registry.register("other-stream", other["id"], token)

    response = client.post(f"/chat/{chat['id']}/stop", json={"streamId": "other-stream"})

    assert response.json()["stoppedCount"] == 0
    assert token.cancelled is False
