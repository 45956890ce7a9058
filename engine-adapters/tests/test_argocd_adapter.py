import httpx
import pytest

from engine_adapters.argocd import ArgoCDAdapter
from engine_adapters.errors import ArgoCDApiError, ConfigurationError
from engine_adapters.retry_policy import api_call_schedule


pytestmark = pytest.mark.anyio


async def _no_sleep(delay: float) -> None:
    return None


def _adapter(handler, server: str = "argocd.example.com", token: str = "argo-token") -> ArgoCDAdapter:
    return ArgoCDAdapter(
        server,
        token,
        retry=api_call_schedule(sleep=_no_sleep),
        transport=httpx.MockTransport(handler),
    )


async def test_images_are_flattened_and_deduplicated():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "nodes": [
                    {"kind": "Pod", "images": ["registry/web:1.0.0", "registry/sidecar:2.0.0"]},
                    {"kind": "Service"},
                    {"kind": "Pod", "images": ["registry/web:1.0.0", "registry/worker:3.0.0"]},
                ]
            },
        )

    adapter = _adapter(handler)
    images = await adapter.get_images("myapp", "dev")
    await adapter.aclose()

    assert images == ["registry/web:1.0.0", "registry/sidecar:2.0.0", "registry/worker:3.0.0"]
    request = requests[0]
    assert str(request.url).startswith("https://argocd.example.com/api/v1/applications/myapp/resource-tree")
    assert request.url.params["appNamespace"] == "dev"
    assert request.headers["Authorization"] == "Bearer argo-token"


async def test_explicit_scheme_is_kept():
    urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200, json={"nodes": []})

    adapter = _adapter(handler, server="http://argocd.local:8080/")
    assert await adapter.get_images("myapp", "dev") == []
    await adapter.aclose()
    assert urls[0].startswith("http://argocd.local:8080/api/v1/applications/myapp/")


async def test_http_errors_are_retried_then_raised():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    adapter = _adapter(handler)
    with pytest.raises(ArgoCDApiError) as excinfo:
        await adapter.get_images("myapp", "dev")
    await adapter.aclose()

    assert excinfo.value.status_code == 502
    assert len(calls) == 2


async def test_connection_errors_become_api_errors(caplog):
    caplog.set_level("INFO")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = _adapter(handler)
    with pytest.raises(ArgoCDApiError):
        await adapter.get_images("myapp", "dev")
    await adapter.aclose()
    assert "event=argocd_call_failed" in caplog.text


async def test_missing_configuration_is_terminal():
    adapter = _adapter(lambda request: httpx.Response(200, json={}), server="", token="")
    with pytest.raises(ConfigurationError):
        await adapter.get_images("myapp", "dev")
    await adapter.aclose()


async def test_application_name_is_percent_encoded():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"nodes": []})

    adapter = _adapter(handler)
    await adapter.get_images("my app/x?y", "dev")
    await adapter.aclose()

    assert requests[0].url.raw_path.startswith(b"/api/v1/applications/my%20app%2Fx%3Fy/resource-tree")
    assert requests[0].url.params["appNamespace"] == "dev"
