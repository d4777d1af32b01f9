from datetime import datetime, timedelta

import pytest

from conftest import make_doctors
from queue_sync import QueueSyncClient, parse_timestamp


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise AssertionError(f"unexpected HTTP {self.status_code}")


class FakeHttp:
    def __init__(self):
        self.gets = []
        self.posts = []
        self.get_body = {}
        self.post_status = 200

    def get(self, url, headers=None, timeout=None):
        self.gets.append(url)
        return FakeResponse(body=self.get_body)

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append((url, json, headers))
        return FakeResponse(self.post_status, {"success": True, "queueStatus": json})


class Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def tick(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 10, 19, 8, 0, 0))


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def client(http, clock):
    return QueueSyncClient(
        "http://queue.local/",
        "token-123",
        user_id="runner-1",
        http=http,
        debounce=60,
        clock=clock,
    )


def running_state(index=0, last_updated="2026-10-19T07:59:59.000Z"):
    doctors = make_doctors(4)
    return {
        "isRunning": True,
        "currentQueueIndex": index,
        "doctors": doctors,
        "currentDoctor": doctors[index],
        "runnerId": "runner-1",
        "runnerName": "R",
        "lastUpdated": last_updated,
    }


def test_parse_timestamp_handles_z_suffix():
    assert parse_timestamp("2026-10-19T08:00:00.500Z") == datetime(2026, 10, 19, 8, 0, 0, 500000)
    assert parse_timestamp("garbage") is None
    assert parse_timestamp(None) is None


def test_poll_applies_remote_state_and_detects_runner(client, http):
    http.get_body = running_state(index=2)
    received = []
    client.on_state = received.append

    assert client.poll_once() is True

    assert client.state["currentQueueIndex"] == 2
    assert client.is_runner is True
    assert received == [http.get_body]
    assert http.gets == ["http://queue.local/api/queue/status"]


def test_spectator_is_not_runner(http, clock):
    spectator = QueueSyncClient("http://queue.local", "t", user_id="someone-else", http=http, clock=clock)
    http.get_body = running_state()
    spectator.poll_once()
    assert spectator.is_runner is False


def test_stale_echo_is_ignored_inside_grace_window(client, http, clock):
    client.state = running_state(index=0)
    client.next()
    client.flush()
    assert client.state["currentQueueIndex"] == 1

    clock.tick(0.5)
    http.get_body = running_state(index=0, last_updated="2026-10-19T07:59:59.000Z")
    assert client.poll_once() is False
    assert client.state["currentQueueIndex"] == 1


def test_newer_remote_state_applies_inside_grace_window(client, http, clock):
    client.state = running_state(index=0)
    client.next()
    client.flush()

    clock.tick(0.2)
    http.get_body = running_state(index=3, last_updated="2026-10-19T08:00:00.100Z")
    assert client.poll_once() is True
    assert client.state["currentQueueIndex"] == 3


def test_remote_state_applies_after_grace_window(client, http, clock):
    client.state = running_state(index=0)
    client.next()
    client.flush()

    clock.tick(1.5)
    http.get_body = running_state(index=0)
    assert client.poll_once() is True
    assert client.state["currentQueueIndex"] == 0


def test_rapid_moves_coalesce_into_one_write(client, http):
    client.state = running_state(index=0)
    client.next()
    client.next()
    client.next()

    assert http.posts == []
    client.flush()

    assert len(http.posts) == 1
    url, payload, headers = http.posts[0]
    assert url == "http://queue.local/api/queue/status"
    assert payload["currentQueueIndex"] == 3
    assert payload["isRunning"] is True
    assert headers == {"Authorization": "Bearer token-123"}
    assert client.flush() is None


def test_previous_wraps_locally(client):
    client.state = running_state(index=0)
    assert client.previous() is True
    assert client.state["currentQueueIndex"] == 3
    client.flush()


def test_moves_are_ignored_when_not_running(client, http):
    assert client.next() is False
    assert client.flush() is None
    assert http.posts == []


def test_forbidden_write_drops_ownership(client, http):
    lost = []
    client.on_ownership_lost = lambda: lost.append(True)
    client.is_runner = True
    client.state = running_state(index=0)
    http.post_status = 403

    client.next()
    assert client.flush() is None

    assert client.is_runner is False
    assert lost == [True]


def test_start_and_stop(client, http):
    result = client.start(make_doctors(4), "R")
    assert result["success"] is True
    assert client.is_runner is True
    assert http.posts[-1][0] == "http://queue.local/api/queue/start"

    client.stop()
    assert http.posts[-1][0] == "http://queue.local/api/queue/stop"
    assert client.state["isRunning"] is False
    assert client.is_runner is False


def test_poll_swaps_state_under_the_client_lock(client, http):
    held = []
    should_apply = client.should_apply

    def checking(remote):
        held.append(client._lock.locked())
        return should_apply(remote)

    client.should_apply = checking
    http.get_body = running_state(index=1)

    assert client.poll_once() is True
    assert held == [True]


def test_move_during_poll_is_not_overwritten(client, http, clock):
    client.state = running_state(index=0)
    stale = running_state(index=0)

    class MovingHttp(FakeHttp):
        def get(self, url, headers=None, timeout=None):
            # the runner clicks "next" while the poll is in flight
            client.next()
            client.flush()
            return FakeResponse(body=stale)

    client._http = MovingHttp()

    assert client.poll_once() is False
    assert client.state["currentQueueIndex"] == 1
    assert client.state["currentDoctor"]["name"] == "D2"


def test_state_callback_can_move_without_deadlock(client, http):
    http.get_body = running_state(index=0)
    client.on_state = lambda state: client.next()

    assert client.poll_once() is True

    assert client.state["currentQueueIndex"] == 1
    client.flush()
    assert http.posts[-1][1]["currentQueueIndex"] == 1
