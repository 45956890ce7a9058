import logging
import time
from typing import Callable, List, Optional
from urllib.parse import quote

import httpx

from engine_adapters.errors import ArgoCDApiError, ConfigurationError
from engine_adapters.redaction import redact_text, redact_url
from engine_adapters.retry_policy import RetrySchedule, api_call_schedule


class ArgoCDAdapter:
    def __init__(
        self,
        server: str = "",
        token: str = "",
        insecure: bool = True,
        retry: Optional[RetrySchedule] = None,
        request_timeout_seconds: Optional[float] = None,
        request_id_provider: Optional[Callable[[], str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.server = server
        self.token = token
        self.insecure = insecure
        self.retry = retry or api_call_schedule()
        self.request_id_provider = request_id_provider
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=request_timeout_seconds,
            verify=not insecure,
        )
        self._logger = logging.getLogger("octoargosync.argocd")
        self._obs_logger = logging.getLogger("octoargosync.obs")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_images(self, application: str, namespace: str) -> List[str]:
        """Return the container images in the application's resource tree, first-seen order."""
        tree = await self.get_resource_tree(application, namespace)
        images: List[str] = []
        seen = set()
        for node in tree.get("nodes") or []:
            for image in node.get("images") or []:
                if image not in seen:
                    seen.add(image)
                    images.append(image)
        return images

    async def get_resource_tree(self, application: str, namespace: str) -> dict:
        name = quote(application, safe="")
        url = f"{self._base_url()}/api/v1/applications/{name}/resource-tree"
        params = {"appNamespace": namespace} if namespace else None
        return await self.retry.call(self._request_json, url, params, "get_resource_tree")

    def _base_url(self) -> str:
        if not self.server:
            raise ConfigurationError("ARGOCD_SERVER must be defined")
        if not self.token:
            raise ConfigurationError("ARGOCD_TOKEN must be defined")
        server = self.server.rstrip("/")
        if "://" not in server:
            server = f"https://{server}"
        return server

    async def _request_json(self, url: str, params: Optional[dict], operation: str) -> dict:
        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        start = time.monotonic()
        self._log_call("argocd_call_started", request_id, operation, url, start)
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            message = redact_text(f"Argo CD connection failed: {exc}")
            self._log_call("argocd_call_failed", request_id, operation, url, start, error=message)
            raise ArgoCDApiError(message) from exc
        if response.status_code >= 400:
            message = redact_text(f"Argo CD HTTP {response.status_code}: {response.text[:240]}".strip())
            self._log_call(
                "argocd_call_failed",
                request_id,
                operation,
                url,
                start,
                error=message,
                status_code=response.status_code,
            )
            self._logger.warning(
                "argocd.request url=%s status=%s error=%s", redact_url(url), response.status_code, message
            )
            raise ArgoCDApiError(message, status_code=response.status_code)
        self._log_call("argocd_call_succeeded", request_id, operation, url, start, status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ArgoCDApiError("Argo CD returned a response that was not JSON") from exc
        return payload if isinstance(payload, dict) else {}

    def _log_call(
        self,
        event: str,
        request_id: str,
        operation: str,
        url: str,
        start: float,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "engine": "argocd",
            "operation": operation,
            "target": redact_url(url),
        }
        if event != "argocd_call_started":
            fields["outcome"] = "FAILED" if error else "SUCCESS"
            fields["duration_ms"] = round((time.monotonic() - start) * 1000, 1)
        if status_code is not None:
            fields["status_code"] = status_code
        if error:
            fields["error"] = error
        parts = [f"{key}={fields[key]}" for key in sorted(fields.keys())]
        self._obs_logger.info(" ".join(parts))
