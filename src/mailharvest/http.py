"""Summary: Outbound HTTP helpers shared by OAuth, mailbox, and LLM clients.

Importance: One place converts urllib failures into the mailharvest error taxonomy and enforces deadlines.
Alternatives: Use requests or httpx with per-call timeout handling.
"""

from __future__ import annotations

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from mailharvest.errors import DeadlineExceededError, HttpStatusError, MalformedResponseError, UpstreamError


@dataclass(frozen=True)
class Deadline:
    """Summary: Absolute expiry for a unit of work, measured on the monotonic clock.

    Importance: Lets a request's timeout bound every outbound call it triggers.
    Alternatives: Pass a fixed timeout to each call independently.
    """

    expires_at: float

    @staticmethod
    def after(seconds: float) -> "Deadline":
        return Deadline(expires_at=time.monotonic() + seconds)

    def remaining(self) -> float:
        """Return seconds left, raising once the deadline has passed."""

        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise DeadlineExceededError("Deadline exceeded")
        return left

    def check(self) -> None:
        self.remaining()


class HttpClient:
    """Summary: Minimal JSON-over-HTTP client built on urllib.

    Importance: Avoids new dependencies while giving every caller the same error mapping.
    Alternatives: Use a third-party HTTP client or provider SDKs.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    def get_json(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        deadline: Deadline | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Summary: Send a GET request and parse the JSON body.

        Importance: Backs provider profile and mailbox listing calls.
        Alternatives: Inline urllib calls in each provider class.
        """

        request = urllib.request.Request(url, headers=headers or {}, method="GET")
        return self._send(request, deadline, timeout)

    def post_form(
        self,
        url: str,
        payload: dict[str, str],
        deadline: Deadline | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Summary: Send a form-encoded POST request and parse JSON.

        Importance: OAuth token endpoints only accept form bodies.
        Alternatives: Use a provider SDK for token exchange.
        """

        data = urllib.parse.urlencode(payload).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            method="POST",
        )
        return self._send(request, deadline, timeout)

    def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        deadline: Deadline | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a JSON POST request and parse the JSON response."""

        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        return self._send(request, deadline, timeout)

    def _send(
        self,
        request: urllib.request.Request,
        deadline: Deadline | None,
        timeout: float | None,
    ) -> dict[str, Any]:
        effective = timeout if timeout is not None else self._timeout
        if deadline is not None:
            effective = min(effective, deadline.remaining())
        try:
            with urllib.request.urlopen(request, timeout=effective) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            raise HttpStatusError(request.full_url, exc.code, error_body or str(exc.reason)) from exc
        except TimeoutError as exc:
            if deadline is not None:
                deadline.check()
            raise UpstreamError(f"Request to {request.full_url} timed out") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, TimeoutError) and deadline is not None:
                deadline.check()
            raise UpstreamError(f"Request to {request.full_url} failed: {exc.reason}") from exc
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Invalid JSON from {request.full_url}") from exc
        if not isinstance(decoded, dict):
            raise MalformedResponseError(f"Expected a JSON object from {request.full_url}")
        return decoded
