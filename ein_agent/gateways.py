from __future__ import annotations

"""
gateways.py

External collaborators, consumed only through two small interfaces:

- ArtifactStore: upload captured documents / structured logs / text logs.
  Implementations raise PersistenceFailure; callers treat it as non-fatal.
- Notifier (CRM-style): success / failure / artifact-available events.
  Best-effort: implementations log transport errors and never raise.

Concrete adapters:
- LocalArtifactStore     filesystem, for development and tests
- AzureBlobArtifactStore azure-storage-blob, with HiddenFromClient tags
- HttpNotifier           JSON POST via requests, bearer token
- LoggingNotifier        no transport, log lines only
"""

import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests
from azure.core.exceptions import AzureError, HttpResponseError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .errors import InfrastructureError, PersistenceFailure
from .normalize import clean_file_token
from .settings import Settings, setup_logger

logger = setup_logger("ein_agent.gateways")

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain"


def storage_tags(visible: bool, external_ids: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    tags = {"HiddenFromClient": "false" if visible else "true"}
    for k, v in (external_ids or {}).items():
        if v:
            tags[k] = str(v)
    return tags


def structured_log_name(record_id: str, entity_name: str = "") -> str:
    clean = clean_file_token(entity_name) or "Entity"
    return f"EntityProcess/{record_id}/{clean}-ID-JsonPayload.json"


def diagnostic_log_name(record_id: str) -> str:
    return f"logs/{record_id}/automation_{int(time.time())}.log"


# -----------------------------------------------------------------------------
# Interfaces
# -----------------------------------------------------------------------------
class ArtifactStore(ABC):
    @abstractmethod
    def upload_artifact(
        self,
        payload: bytes,
        logical_name: str,
        content_type: str,
        visible: bool,
        external_ids: Optional[Dict[str, str]] = None,
    ) -> str:
        ...

    @abstractmethod
    def upload_structured_log(self, record_id: str, entries: Dict[str, Any], *, entity_name: str = "") -> bool:
        ...

    @abstractmethod
    def upload_diagnostic_log(self, record_id: str, text: bytes) -> Optional[str]:
        ...


class Notifier(ABC):
    @abstractmethod
    def notify_success(self, record_id: str, completion_number: str) -> None:
        ...

    @abstractmethod
    def notify_failure(self, record_id: str, code: str, status: str = "fail", diagnostic_context: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    def notify_artifact_available(self, record_id: str, url: str, visibility_metadata: Optional[Dict[str, Any]] = None) -> None:
        ...


# -----------------------------------------------------------------------------
# Storage adapters
# -----------------------------------------------------------------------------
class LocalArtifactStore(ArtifactStore):
    """Writes under `root`; tags go to a sidecar '<name>.tags.json'."""

    def __init__(self, root: str = "artifacts"):
        self.root = Path(root)

    def _write(self, name: str, data: bytes, tags: Optional[Dict[str, str]] = None) -> str:
        path = (self.root / name).resolve()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            if tags is not None:
                path.with_name(path.name + ".tags.json").write_text(json.dumps(tags, indent=2), encoding="utf-8")
        except OSError as e:
            raise PersistenceFailure(f"local write failed for {name}: {e}") from e
        logger.info("[store] wrote %s (%d bytes)", path, len(data))
        return path.as_uri()

    def upload_artifact(self, payload, logical_name, content_type, visible, external_ids=None) -> str:
        return self._write(logical_name, payload, storage_tags(visible, external_ids))

    def upload_structured_log(self, record_id, entries, *, entity_name: str = "") -> bool:
        body = json.dumps(entries, indent=2, default=str).encode("utf-8")
        self._write(structured_log_name(record_id, entity_name), body, storage_tags(False))
        return True

    def upload_diagnostic_log(self, record_id, text) -> Optional[str]:
        return self._write(diagnostic_log_name(record_id), text, storage_tags(False))


class AzureBlobArtifactStore(ArtifactStore):
    def __init__(self, connection_string: str, container: str):
        if not connection_string or not container:
            raise InfrastructureError("azure storage backend needs a connection string and a container name")
        self.container = container
        self._service = BlobServiceClient.from_connection_string(connection_string)
        self._container = self._service.get_container_client(container)

    def _upload(self, name: str, data: bytes, content_type: str, tags: Dict[str, str]) -> str:
        try:
            blob = self._container.get_blob_client(name)
            blob.upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))
        except AzureError as e:
            raise PersistenceFailure(f"blob upload failed for {name}: {e}") from e

        try:
            blob.set_blob_tags(tags)
        except HttpResponseError as e:
            if e.status_code == 403:
                logger.warning("[store] tag permission denied for %s; blob uploaded without tags", name)
            else:
                logger.warning("[store] setting tags on %s failed: %s", name, e)
        logger.info("[store] uploaded %s (%d bytes) hidden=%s", name, len(data), tags.get("HiddenFromClient"))
        return blob.url

    def upload_artifact(self, payload, logical_name, content_type, visible, external_ids=None) -> str:
        return self._upload(logical_name, payload, content_type, storage_tags(visible, external_ids))

    def upload_structured_log(self, record_id, entries, *, entity_name: str = "") -> bool:
        body = json.dumps(entries, indent=2, default=str).encode("utf-8")
        self._upload(structured_log_name(record_id, entity_name), body, JSON_CONTENT_TYPE, storage_tags(False))
        return True

    def upload_diagnostic_log(self, record_id, text) -> Optional[str]:
        return self._upload(diagnostic_log_name(record_id), text, TEXT_CONTENT_TYPE, storage_tags(False))


# -----------------------------------------------------------------------------
# Notification adapters
# -----------------------------------------------------------------------------
class LoggingNotifier(Notifier):
    def notify_success(self, record_id, completion_number) -> None:
        logger.info("[notify] success record=%s completion=%s", record_id, completion_number)

    def notify_failure(self, record_id, code, status="fail", diagnostic_context=None) -> None:
        logger.info("[notify] failure record=%s code=%s status=%s ctx=%s", record_id, code, status, diagnostic_context or {})

    def notify_artifact_available(self, record_id, url, visibility_metadata=None) -> None:
        logger.info("[notify] artifact record=%s url=%s meta=%s", record_id, url, visibility_metadata or {})


class HttpNotifier(Notifier):
    def __init__(self, url: str, *, token: str = "", timeout_s: float = 15.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = float(timeout_s)
        self._http = session or requests.Session()
        self._http.headers.update({"Content-Type": JSON_CONTENT_TYPE})
        if token:
            self._http.headers.update({"Authorization": f"Bearer {token}"})

    def _post(self, event: str, body: Dict[str, Any]) -> None:
        payload = {"event": event, **body}
        try:
            resp = self._http.post(self.url, data=json.dumps(payload, default=str), timeout=self.timeout_s)
            resp.raise_for_status()
            logger.info("[notify] %s record=%s -> %s", event, body.get("recordId"), resp.status_code)
        except requests.RequestException as e:
            logger.warning("[notify] %s record=%s failed: %s", event, body.get("recordId"), e)

    def notify_success(self, record_id, completion_number) -> None:
        self._post("success", {"recordId": record_id, "completionNumber": completion_number})

    def notify_failure(self, record_id, code, status="fail", diagnostic_context=None) -> None:
        self._post(
            "failure",
            {"recordId": record_id, "errorCode": code, "status": status, "context": diagnostic_context or {}},
        )

    def notify_artifact_available(self, record_id, url, visibility_metadata=None) -> None:
        self._post("artifact", {"recordId": record_id, "url": url, "metadata": visibility_metadata or {}})


def build_gateways(settings: Settings) -> Tuple[ArtifactStore, Notifier]:
    backend = (settings.storage_backend or "local").lower()
    if backend == "azure":
        store: ArtifactStore = AzureBlobArtifactStore(settings.azure_connection_string, settings.azure_container)
    elif backend == "local":
        store = LocalArtifactStore(settings.local_artifact_dir)
    else:
        raise InfrastructureError(f"unknown storage backend: {settings.storage_backend}")

    if settings.notify_url:
        notifier: Notifier = HttpNotifier(settings.notify_url, token=settings.notify_token, timeout_s=settings.notify_timeout_s)
    else:
        notifier = LoggingNotifier()
    return store, notifier
