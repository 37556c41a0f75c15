import pytest
import requests

from storefront.errors import StorefrontError, UpstreamTimeout, UpstreamUnavailable
from storefront.services.model_client import DesignerSettings, OpenRouterClient

from .conftest import FakeHttp, FakeResponse


def _ok(content='{"type": "text", "message": "hi"}'):
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


def _client(*responses, **settings):
    opts = {"api_key": "k", "max_retries": 3, **settings}
    http = FakeHttp(*responses)
    sleeps = []
    return OpenRouterClient(DesignerSettings(**opts), session=http, sleep=sleeps.append), http, sleeps


def test_request_shape():
    client, http, _ = _client(_ok())
    completion = client.complete("system", [{"role": "user", "content": "hello"}])

    assert completion.content == '{"type": "text", "message": "hi"}'
    assert completion.model == "moonshotai/kimi-k2"
    body = http.calls[0]["json"]
    assert body["messages"][0] == {"role": "system", "content": "system"}
    assert body["messages"][1] == {"role": "user", "content": "hello"}
    assert body["response_format"] == {"type": "json_object"}
    assert body["model"] == "moonshotai/kimi-k2"
    assert http.calls[0]["timeout"] == 45
    assert http.calls[0]["headers"]["Authorization"] == "Bearer k"


def test_server_errors_are_retried_with_backoff():
    client, http, sleeps = _client(FakeResponse(502), FakeResponse(503), _ok())
    assert client.complete("s", []).content
    assert len(http.calls) == 3
    assert sleeps == [1, 2]


def test_connection_errors_are_retried():
    client, http, _ = _client(requests.ConnectionError("reset"), _ok())
    assert client.complete("s", []).content
    assert len(http.calls) == 2


def test_timeout_is_not_retried():
    client, http, _ = _client(requests.Timeout("slow"), _ok())
    with pytest.raises(UpstreamTimeout):
        client.complete("s", [])
    assert len(http.calls) == 1


def test_fallback_model_after_primary_exhausted():
    client, http, _ = _client(
        FakeResponse(500), FakeResponse(500), FakeResponse(500), _ok(),
        fallback_model="backup/model",
    )
    completion = client.complete("s", [])
    assert completion.model == "backup/model"
    assert http.calls[-1]["json"]["model"] == "backup/model"


def test_all_models_failing():
    client, _, _ = _client(FakeResponse(500), max_retries=1)
    with pytest.raises(UpstreamUnavailable):
        client.complete("s", [])


def test_client_error_is_not_retried():
    client, http, _ = _client(FakeResponse(401, text="bad key"))
    with pytest.raises(UpstreamUnavailable):
        client.complete("s", [])
    assert len(http.calls) == 1


def test_missing_api_key():
    client, _, _ = _client(api_key="")
    with pytest.raises(StorefrontError) as exc:
        client.complete("s", [])
    assert exc.value.status_code == 503


def test_settings_from_config():
    s = DesignerSettings.from_config({
        "OPENROUTER_API_KEY": "abc", "OPENROUTER_MODEL": "m1",
        "OPENROUTER_FALLBACK_MODEL": "m1", "AI_REQUEST_TIMEOUT": 30, "AI_MAX_RETRIES": 0,
    })
    assert s.models == ["m1"]
    assert s.timeout == 30
    assert s.max_retries == 1
