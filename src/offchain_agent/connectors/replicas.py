"""
HTTP-адаптер платформы реплик.

Назначение:
- GET  {REPLICA_REGISTRY_URL}/replicas?kind=<kind>          - список реплик
- POST {REPLICA_REGISTRY_URL}/replicas/<id>/snapshot         - снапшот (байты в теле ответа)

Классификация ошибок:
- таймаут / сеть / 5xx / 429 -> TransientError
- прочие 4xx                 -> PermanentError
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import requests

from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, PermanentError, TransientError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.connectors.base import Replica
from offchain_agent.domain.enums import ReplicaKind

log = get_project_logger()


class _HttpBase:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        s = get_settings()
        self.base_url = (base_url or s.replica_registry_url or "").rstrip("/")
        self.api_token = (api_token if api_token is not None else s.replica_api_token or "").strip()
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(self, method: str, path: str, *, timeout: float, code: str, **kwargs: Any) -> requests.Response:
        if not self.base_url:
            raise PermanentError(ErrCode.CONFIG_ERROR, "REPLICA_REGISTRY_URL не настроен")
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientError(ErrCode.TIMEOUT, "Таймаут обращения к платформе реплик", {"path": path}) from e
        except requests.RequestException as e:
            raise TransientError(code, "Ошибка обращения к платформе реплик", {"err": str(e)[:200]}) from e
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(code, "Платформа реплик вернула ошибку", {"status": resp.status_code, "path": path})
        if resp.status_code >= 400:
            raise PermanentError(code, "Платформа реплик отклонила запрос", {"status": resp.status_code, "path": path})
        return resp


class HttpReplicaRegistry(_HttpBase):
    def __init__(self, *, timeout_sec: int = 30, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.timeout_sec = timeout_sec

    def list_replicas(self, kind: ReplicaKind) -> list[Replica]:
        resp = self._request(
            "GET",
            "/replicas",
            params={"kind": kind.value},
            timeout=self.timeout_sec,
            code=ErrCode.REGISTRY_ERROR,
        )
        try:
            items = resp.json().get("replicas") or []
        except (ValueError, AttributeError) as e:
            raise TransientError(ErrCode.REGISTRY_ERROR, "Реестр вернул невалидный JSON") from e
        replicas = [Replica(replica_id=str(i["id"] if isinstance(i, dict) else i), kind=kind) for i in items]
        log.info("replica_registry_listed", extra={"payload": {"kind": kind.value, "count": len(replicas)}})
        return replicas


class HttpReplicaClient(_HttpBase):
    def request_snapshot(self, replica: Replica, *, timeout_sec: float) -> bytes:
        resp = self._request(
            "POST",
            f"/replicas/{quote(replica.replica_id, safe='')}/snapshot",
            timeout=timeout_sec,
            code=ErrCode.SNAPSHOT_ERROR,
        )
        if not resp.content:
            raise TransientError(ErrCode.SNAPSHOT_ERROR, "Пустой снапшот", {"replica_id": replica.replica_id})
        return resp.content
