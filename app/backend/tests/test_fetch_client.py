import logging

import pytest
import requests

from errors import AuthError, FetchExhaustedError, TransientError, UpstreamStatusError
from fetch_client import FetchClient, backoff_seconds


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def build_client(outcomes, **kwargs):
    sleeps = []
    session = FakeSession(outcomes)
    client = FetchClient(session=session, sleep=sleeps.append, logger=logging.getLogger("test.fetch"), **kwargs)
    return client, session, sleeps


def test_backoff_doubles_from_one_second():
    assert [backoff_seconds(attempt) for attempt in range(6)] == [0, 1, 2, 4, 8, 16]


def test_successful_request_does_not_sleep():
    ok = FakeResponse(200)
    client, session, sleeps = build_client([ok])

    assert client.get("https://example.test/prices", params={"lang": "fi"}) is ok
    assert sleeps == []
    method, url, kwargs = session.calls[0]
    assert method == "get"
    assert kwargs["params"] == {"lang": "fi"}
    assert kwargs["timeout"] == client.timeout


def test_five_gateway_timeouts_exhaust_budget():
    client, session, sleeps = build_client([FakeResponse(504) for _ in range(6)])

    with pytest.raises(FetchExhaustedError) as exc_info:
        client.get("https://example.test/prices")

    assert len(session.calls) == 5
    assert sleeps == [1, 2, 4, 8]
    assert sum(sleeps) == 15
    assert exc_info.value.attempts == 5
    assert isinstance(exc_info.value.last_error, TransientError)
    assert exc_info.value.last_error.status_code == 504


def test_network_failures_are_retried_until_success():
    ok = FakeResponse(200)
    client, session, sleeps = build_client(
        [requests.ConnectionError("reset"), requests.Timeout("slow"), ok]
    )

    assert client.post("https://example.test/auth", json={"a": 1}) is ok
    assert len(session.calls) == 3
    assert sleeps == [1, 2]


def test_exhausted_network_failures_carry_last_error():
    last = requests.ConnectionError("still down")
    client, session, sleeps = build_client(
        [requests.ConnectionError("down"), requests.ConnectionError("down"), last], max_retries=3
    )

    with pytest.raises(FetchExhaustedError) as exc_info:
        client.get("https://example.test/prices")

    assert exc_info.value.last_error is last
    assert sleeps == [1, 2]


@pytest.mark.parametrize(
    "error",
    [requests.exceptions.MissingSchema("no scheme"), requests.exceptions.InvalidURL("bad url"), requests.exceptions.InvalidHeader("bad header")],
)
def test_request_setup_errors_are_not_retried(error):
    client, session, sleeps = build_client([error, FakeResponse(200)])

    with pytest.raises(type(error)):
        client.get("prices")

    assert len(session.calls) == 1
    assert sleeps == []


def test_broken_chunked_response_is_retried():
    ok = FakeResponse(200)
    client, session, sleeps = build_client([requests.exceptions.ChunkedEncodingError("cut off"), ok])

    assert client.get("https://example.test/prices") is ok
    assert sleeps == [1]


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_are_not_retried(status):
    client, session, sleeps = build_client([FakeResponse(status), FakeResponse(200)])

    with pytest.raises(AuthError) as exc_info:
        client.get("https://example.test/customer")

    assert exc_info.value.status_code == status
    assert len(session.calls) == 1
    assert sleeps == []


def test_other_error_statuses_fail_immediately():
    client, session, sleeps = build_client([FakeResponse(500, text="boom"), FakeResponse(200)])

    with pytest.raises(UpstreamStatusError) as exc_info:
        client.get("https://example.test/prices")

    assert exc_info.value.status_code == 500
    assert exc_info.value.body == "boom"
    assert len(session.calls) == 1
    assert sleeps == []


def test_gateway_timeout_then_success():
    ok = FakeResponse(200)
    timeout_response = FakeResponse(504)
    client, session, sleeps = build_client([timeout_response, ok])

    assert client.get("https://example.test/prices") is ok
    assert timeout_response.closed is True
    assert sleeps == [1]


def test_max_retries_must_be_positive():
    with pytest.raises(ValueError):
        FetchClient(max_retries=0, session=FakeSession([]))
