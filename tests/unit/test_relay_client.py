import pytest
import requests

from KaleRig.clients import relay_client
from KaleRig.clients.relay_client import RelayClient
from KaleRig.errors import ContractError, ContractRejection, TransportError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttp:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append((url, data, headers))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(relay_client.time, "sleep", lambda seconds: None)


def _client(session, responses):
    client = RelayClient("https://relay.example/submit", "tok", session=session)
    client._http = FakeHttp(responses)
    return client


def test_submit_posts_envelope_and_records_credits(session):
    client = _client(session, [FakeResponse(payload={"status": "SUCCESS", "hash": "abc"}, headers={"X-Credits-Remaining": "41"})])
    assert client.submit("AAAA") == {"status": "SUCCESS", "hash": "abc"}
    url, data, headers = client._http.posts[0]
    assert data == {"xdr": "AAAA"}
    assert headers["Authorization"] == "Bearer tok"
    assert session.relay_credits == 41


def test_server_errors_are_retried(session):
    client = _client(session, [
        FakeResponse(status_code=502, text="bad gateway"),
        requests.ConnectionError("reset"),
        FakeResponse(payload={"status": "SUCCESS"}),
    ])
    assert client.submit("AAAA") == {"status": "SUCCESS"}
    assert len(client._http.posts) == 3


def test_retries_exhausted(session):
    client = _client(session, [requests.Timeout("slow")] * 3)
    with pytest.raises(TransportError):
        client.submit("AAAA")


def test_contract_rejection_is_final(session):
    client = _client(session, [FakeResponse(status_code=400, text="HostError: Error(Contract, #4)")])
    with pytest.raises(ContractRejection) as info:
        client.submit("AAAA")
    assert info.value.kind is ContractError.AlreadyHasPail
    assert len(client._http.posts) == 1


def test_other_client_errors(session):
    client = _client(session, [FakeResponse(status_code=401, text="unauthorized")])
    with pytest.raises(TransportError):
        client.submit("AAAA")
