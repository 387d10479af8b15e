import pytest
import requests

import discovery
from conftest import FakeResponse
from discovery import ConsulRegistrar


@pytest.fixture
def puts(monkeypatch):
    calls = []

    def fake_put(url, json=None, verify=True, timeout=None):
        calls.append((url, json))
        return FakeResponse({})

    monkeypatch.setattr(discovery.requests, "put", fake_put)
    return calls


def test_register_then_deregister(puts):
    reg = ConsulRegistrar("https", "consul", 8501)
    service_id = reg.register("https", "enroller.local", 8085)

    url, payload = puts[0]
    assert url == "https://consul:8501/v1/agent/service/register"
    assert payload["Name"] == "enroller"
    assert payload["Port"] == 8085
    assert payload["Check"]["HTTP"] == "https://enroller.local:8085/v1/health"

    reg.deregister()
    assert puts[1][0] == f"https://consul:8501/v1/agent/service/deregister/{service_id}"
    reg.deregister()
    assert len(puts) == 2


def test_registration_failure_propagates(monkeypatch):
    monkeypatch.setattr(discovery.requests, "put", lambda *a, **k: FakeResponse({}, status_code=500))
    with pytest.raises(requests.HTTPError):
        ConsulRegistrar("http", "consul", 8500).register("http", "enroller", 8085)
