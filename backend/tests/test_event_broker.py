import threading

from lightbox.core.websockets import EventBroker


def test_ids_are_monotonic_and_since_replays_after_cursor():
    broker = EventBroker(history_size=10)
    first = broker.broadcast("a", {"n": 1})
    second = broker.broadcast("b", {"n": 2})
    third = broker.broadcast("c", {"n": 3})

    assert first.id < second.id < third.id
    records, cursor = broker.since(first.id)
    assert [r.id for r in records] == [second.id, third.id]
    assert cursor == third.id

    records, cursor = broker.since(third.id)
    assert records == []
    assert cursor == third.id


def test_since_respects_limit():
    broker = EventBroker()
    for i in range(5):
        broker.broadcast("tick", i)

    records, cursor = broker.since(0, limit=2)
    assert [r.data for r in records] == [0, 1]
    records, cursor = broker.since(cursor, limit=10)
    assert [r.data for r in records] == [2, 3, 4]


def test_history_is_bounded():
    broker = EventBroker(history_size=3)
    for i in range(5):
        broker.broadcast("tick", i)

    assert [r.data for r in broker.get_recent(10)] == [2, 3, 4]
    assert [r.data for r in broker.get_recent(2)] == [3, 4]
    assert broker.stats()["last_id"] == 5
    assert broker.stats()["history_size"] == 3


def test_full_client_buffer_drops_for_that_client_only():
    broker = EventBroker(client_buffer=2)
    slow = broker.register()
    for i in range(3):
        broker.broadcast("tick", i)

    assert slow.queue.qsize() == 2
    assert slow.dropped == 1
    # History still has everything
    assert len(broker.get_recent(10)) == 3


def test_send_to_targets_one_client_and_unregister_closes():
    broker = EventBroker()
    one = broker.register()
    two = broker.register()

    assert broker.send_to(one.id, "hello", {"x": 1}) is True
    assert one.queue.qsize() == 1 and two.queue.qsize() == 0
    assert {c["id"] for c in broker.clients()} == {one.id, two.id}

    broker.unregister(one.id)
    assert one.closed
    assert broker.send_to(one.id, "hello") is False
    assert [c["id"] for c in broker.clients()] == [two.id]


def test_concurrent_broadcasts_reach_clients_in_id_order():
    broker = EventBroker(history_size=1000, client_buffer=1000)
    client = broker.register()
    start = threading.Barrier(4)

    def publish(name):
        start.wait()
        for i in range(100):
            broker.broadcast(name, i)

    threads = [threading.Thread(target=publish, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    received = []
    while not client.queue.empty():
        received.append(client.queue.get_nowait()["id"])
    assert len(received) == 400
    assert received == sorted(received)
