"""HTTP binding of the sync backend contract."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from ..errors import ConflictError, NetworkError, ValidationError
from ..store.entities import format_timestamp
from .protocol import PushAck, PushRequest, RemoteRecord, SyncBackend
from .queue import OperationKind

logger = logging.getLogger("studiosync.sync.remote")

API_PREFIX = "/api/v1/sync"


@dataclass
class RemoteSettings:
    """Settings for the remote sync endpoint."""

    base_url: str = ""
    timeout: float = 30.0
    auth_token: str = ""

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RemoteSettings":
        raw = config.get("remote", {}) if config else {}
        return cls(
            base_url=str(raw.get("base_url") or ""),
            timeout=float(raw.get("timeout", 30.0)),
            auth_token=str(raw.get("auth_token") or ""),
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)


class HttpSyncBackend(SyncBackend):
    """JSON-over-HTTP backend.

    ``POST {base}/api/v1/sync/{type}/push`` and
    ``GET {base}/api/v1/sync/{type}?since=...``. A 409 is a conflict, any
    other 4xx a permanent rejection, and 5xx or transport failures are
    transient.
    """

    def __init__(self, settings: RemoteSettings):
        self.settings = settings

    def push(
        self,
        entity_type: str,
        entity_id: str,
        kind: OperationKind,
        payload: Dict[str, Any],
        client_version: int,
    ) -> PushAck:
        body = PushRequest(
            entity_id=entity_id,
            kind=kind,
            payload=payload,
            client_version=client_version,
        ).to_dict()
        data = self._request(
            "POST",
            self._endpoint(entity_type, "push"),
            body,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        try:
            return PushAck.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkError(
                f"Malformed push acknowledgement: {exc!r}",
                entity_type=entity_type,
                entity_id=entity_id,
            ) from exc

    def pull(self, entity_type: str, since: Optional[datetime] = None) -> List[RemoteRecord]:
        url = self._endpoint(entity_type)
        if since is not None:
            url = f"{url}?{urlencode({'since': format_timestamp(since)})}"
        data = self._request("GET", url, entity_type=entity_type)
        records = data.get("records", []) if isinstance(data, dict) else data
        return [RemoteRecord.from_dict(item) for item in records or []]

    def _endpoint(self, entity_type: str, action: str = "") -> str:
        base = self.settings.base_url.rstrip("/")
        url = f"{base}{API_PREFIX}/{quote(entity_type)}"
        return f"{url}/{action}" if action else url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.settings.auth_token:
            headers["Authorization"] = f"Bearer {self.settings.auth_token}"
        return headers

    def _request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> Any:
        if not self.settings.base_url:
            raise NetworkError("No remote base_url configured", entity_type=entity_type)

        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(url, data=data, headers=self._headers(), method=method)
        logger.debug("%s %s", method, url)
        try:
            with urlopen(req, timeout=self.settings.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise self._http_error(exc, entity_type, entity_id) from exc
        except (URLError, socket.timeout, ConnectionError) as exc:
            reason = getattr(exc, "reason", exc)
            raise NetworkError(
                f"Remote unreachable: {reason}",
                entity_type=entity_type,
                entity_id=entity_id,
            ) from exc

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise NetworkError(
                f"Malformed response from remote: {exc}",
                entity_type=entity_type,
                entity_id=entity_id,
            ) from exc

    @staticmethod
    def _http_error(
        exc: HTTPError,
        entity_type: Optional[str],
        entity_id: Optional[str],
    ) -> Exception:
        try:
            detail = json.loads(exc.read().decode("utf-8") or "{}")
        except (ValueError, OSError):
            detail = {}
        if not isinstance(detail, dict):
            detail = {}

        if exc.code == 409:
            remote = detail.get("remote") or detail
            record = RemoteRecord.from_dict(remote) if remote.get("id") else None
            return ConflictError(
                "Remote holds a newer version",
                remote=record,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        if 400 <= exc.code < 500:
            return ValidationError(
                str(detail.get("message") or f"Remote rejected the change (HTTP {exc.code})"),
                status=exc.code,
                details=detail,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        return NetworkError(
            f"Remote error (HTTP {exc.code})",
            status=exc.code,
            entity_type=entity_type,
            entity_id=entity_id,
        )


__all__ = ["API_PREFIX", "HttpSyncBackend", "RemoteSettings"]
