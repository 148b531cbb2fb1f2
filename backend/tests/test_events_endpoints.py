from conftest import USER_HEADERS


def test_since_and_history(client, runtime):
    for i in range(3):
        runtime.events.broadcast("tick", {"n": i})

    body = client.get("/events/since?cursor=1", headers=USER_HEADERS).json()
    assert [event["data"]["n"] for event in body["events"]] == [1, 2]
    assert body["next_cursor"] == 3

    history = client.get("/events/history?limit=2", headers=USER_HEADERS).json()["events"]
    assert [event["id"] for event in history] == [2, 3]

    stats = client.get("/events/stats", headers=USER_HEADERS).json()
    assert stats["last_id"] == 3
    assert stats["connected"] == []


def test_websocket_receives_connected_then_broadcasts(client, runtime):
    with client.websocket_connect("/events") as websocket:
        hello = websocket.receive_json()
        assert hello["event"] == "connected"
        assert hello["data"]["clientId"]

        runtime.events.broadcast("job-completed", {"jobId": "j1"})
        message = websocket.receive_json()
        assert message["event"] == "job-completed"
        assert message["data"] == {"jobId": "j1"}
        assert message["id"] > hello["id"]
