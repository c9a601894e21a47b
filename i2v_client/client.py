"""Async HTTP client for the image-to-video service.

Handles task submission, status queries, task listing and result
downloads. Endpoint paths, the Authorization scheme and how submission
success is judged all come from ``ApiSettings``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console

from i2v_client.config import ApiSettings
from i2v_client.credentials import redact
from i2v_client.decoders import ResponseDecoder, get_decoder, parse_task_id, parse_task_list
from i2v_client.errors import (
    BODY_PREFIX,
    MalformedResponseError,
    ServiceError,
    TransportError,
)
from i2v_client.models import GenerationRequest, GenerationTask

logger = logging.getLogger(__name__)
_console = Console()

_DOWNLOAD_TIMEOUT = 300.0


@dataclass
class SubmitResult:
    """Outcome of a successful submission call."""
    task_id: str | None
    task: GenerationTask | None
    data: dict = field(default_factory=dict, repr=False)


def _error_message(data: dict) -> str | None:
    for key in ("message", "msg", "error"):
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("message")
        if value:
            return str(value)
    return None


class I2VClient:
    """Async client for the image-to-video API.

    The access token is passed per call so a single client can follow a
    credential store whose value changes over time.

    Usage::

        async with I2VClient(ApiSettings()) as client:
            result = await client.submit(request, api_key="...")
            task = await client.fetch_task(result.task_id, api_key="...")
    """

    def __init__(
        self,
        api: ApiSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        verbose: bool = False,
    ) -> None:
        self.api = api or ApiSettings()
        self.base_url = self.api.base_url.rstrip("/")
        self.verbose = verbose
        self.decoder: ResponseDecoder = get_decoder(self.api)
        self._transport = transport
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(self.api.timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> I2VClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        if self.api.auth_scheme == "raw":
            return {"Authorization": api_key}
        return {"Authorization": f"Bearer {api_key}"}

    def _echo(self, method: str, url: str, api_key: str, body: dict | None) -> None:
        _console.print(f"[cyan bold]── {method} {self.base_url}{url}[/cyan bold]")
        _console.print(f"[dim]Authorization: {self.api.auth_scheme} {redact(api_key)}[/dim]")
        if body is not None:
            _console.print_json(json.dumps(body, ensure_ascii=False))
        _console.print()

    async def _request(
        self,
        method: str,
        url: str,
        api_key: str,
        json_body: dict | None = None,
    ) -> tuple[httpx.Response, Any]:
        """Send a request and return the response with its decoded JSON body.

        Raises:
            TransportError: On network failure, or a non-2xx response whose
                body is not JSON.
            MalformedResponseError: On a 2xx response whose body is not JSON.
        """
        if self.verbose:
            self._echo(method, url, api_key, json_body)
        try:
            response = await self._client.request(
                method, url, json=json_body, headers=self._auth_headers(api_key),
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Network error: {exc}") from exc

        text = response.text
        try:
            data = json.loads(text)
        except ValueError as exc:
            if not response.is_success:
                raise TransportError(
                    f"HTTP {response.status_code}: {text[:BODY_PREFIX]}",
                    status_code=response.status_code,
                    body=text,
                ) from exc
            raise MalformedResponseError(
                f"Server returned non-JSON response: {text[:BODY_PREFIX]}",
                status_code=response.status_code,
                body=text,
            ) from exc

        if self.verbose:
            _console.print(f"[cyan]Response {response.status_code}[/cyan]")
            _console.print_json(json.dumps(data, ensure_ascii=False))
        return response, data

    def _raise_for_failure(self, response: httpx.Response, data: Any, check: str) -> None:
        """Raise if the response signals failure under the given success check."""
        body = data if isinstance(data, dict) else {}
        code = body.get("code")
        http_ok = response.is_success
        code_ok = code == 0
        if check == "status":
            ok = http_ok
        elif check == "code":
            ok = code_ok
        else:
            ok = http_ok and code_ok
        if ok:
            return

        message = _error_message(body)
        if message:
            raise ServiceError(message, status_code=response.status_code, body=data)
        if not http_ok:
            raise TransportError(
                f"HTTP {response.status_code}: request failed",
                status_code=response.status_code,
                body=data,
            )
        raise ServiceError(
            f"Unknown error (code={code})", status_code=response.status_code, body=data,
        )

    def _check_status_response(self, response: httpx.Response, data: Any) -> None:
        # status endpoints may omit the embedded code entirely
        body = data if isinstance(data, dict) else {}
        check = "status" if body.get("code") is None else "both"
        self._raise_for_failure(response, data, check)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, request: GenerationRequest, api_key: str) -> SubmitResult:
        """Submit a generation request. Never retried.

        Returns:
            SubmitResult carrying the task id (if the service returned one).

        Raises:
            GenerationError: On any submission failure.
        """
        body = request.to_payload()
        logger.info(
            "Submitting %s: image=%s, variant=%s",
            request.name, request.source_image_url, request.model_variant.value,
        )
        response, data = await self._request("POST", self.api.submit_path, api_key, body)
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Unexpected submission response: {str(data)[:BODY_PREFIX]}",
                status_code=response.status_code,
                body=data,
            )
        self._raise_for_failure(response, data, self.api.success_check)

        task_id = parse_task_id(data)
        logger.info("Generation submitted: task=%s", task_id or "(no id)")
        return SubmitResult(task_id, self.decoder.decode_submission(data), data)

    async def fetch_task(self, task_id: str | None, api_key: str) -> GenerationTask:
        """Query the current status of a task via the configured endpoint."""
        path = self.decoder.status_path(task_id)
        response, data = await self._request("GET", path, api_key)
        self._check_status_response(response, data)
        return self.decoder.decode_status(data, task_id)

    async def list_tasks(self, api_key: str) -> list[GenerationTask]:
        """Return every task known to the service for this account."""
        response, data = await self._request("GET", self.api.status_all_path, api_key)
        self._check_status_response(response, data)
        return parse_task_list(data)

    async def download_file(self, url: str, output_path: str | Path) -> Path:
        """Download a file from a URL to a local path.

        Raises:
            TransportError: On download errors.
        """
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading %s -> %s", url, output)
        try:
            async with httpx.AsyncClient(
                timeout=_DOWNLOAD_TIMEOUT,
                transport=self._transport,
                follow_redirects=True,
            ) as dl_client:
                async with dl_client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(output, "wb") as f:
                        async for chunk in response.aiter_bytes(chunk_size=8192):
                            f.write(chunk)
        except httpx.HTTPError as exc:
            raise TransportError(f"Download failed for {url}: {exc}") from exc

        logger.info("Downloaded: %s (%.1f KB)", output, output.stat().st_size / 1024)
        return output
