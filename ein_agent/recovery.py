from __future__ import annotations

"""
recovery.py

Audit / recovery channel. Every captured document is written here in full
(base64) before any persistence call, so an operator can rebuild it from the
logs alone:

    <LABEL>_BASE64_BACKUP_START run=... record=... entity=... size=N bytes
    <LABEL>_BASE64_CONTENT <base64>
    <LABEL>_BASE64_BACKUP_END run=... record=...

The same records are appended as JSON lines to an optional file sink. The
file sink is best-effort; nothing here assumes it survives the host.
"""

import base64
import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import psutil

from .settings import setup_logger

logger = setup_logger("ein_agent.recovery")
# document backups must reach the log stream whatever EIN_LOG_LEVEL says
backup_logger = setup_logger("ein_agent.recovery.backup", level=logging.INFO)
backup_logger.propagate = False


def decode_document(content: str) -> bytes:
    return base64.b64decode(content.encode("ascii"))


class RecoveryLog:
    def __init__(self, path: Optional[str] = None):
        self.path = path or None
        self._lock = threading.Lock()
        if self.path:
            parent = os.path.dirname(os.path.abspath(self.path))
            try:
                os.makedirs(parent, exist_ok=True)
            except OSError as e:
                logger.warning("[recovery] cannot create %s: %s", parent, e)

    def _append(self, obj: Dict[str, Any]) -> None:
        if not self.path:
            return
        line = json.dumps(obj, ensure_ascii=False)
        try:
            with self._lock, open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning("[recovery] file sink write failed (%s); log stream still holds the record", e)

    def write_document(
        self,
        *,
        run_id: str,
        record_id: str,
        entity_name: str,
        label: str,
        strategy: str,
        payload: bytes,
    ) -> str:
        content = base64.b64encode(payload).decode("ascii")
        tag = label.upper()
        backup_logger.info(
            "[recovery] %s_BASE64_BACKUP_START run=%s record=%s entity=%s size=%d bytes strategy=%s",
            tag, run_id, record_id, entity_name, len(payload), strategy,
        )
        backup_logger.info("[recovery] %s_BASE64_CONTENT %s", tag, content)
        backup_logger.info("[recovery] %s_BASE64_BACKUP_END run=%s record=%s", tag, run_id, record_id)
        self._append(
            {
                "kind": "document",
                "ts": time.time(),
                "run_id": run_id,
                "record_id": record_id,
                "entity_name": entity_name,
                "label": label,
                "strategy": strategy,
                "size": len(payload),
                "content_b64": content,
            }
        )
        return content

    def write_record(self, *, run_id: str, record_id: str, kind: str, data: Dict[str, Any]) -> None:
        logger.info("[recovery] %s run=%s record=%s %s", kind, run_id, record_id, json.dumps(data, default=str))
        self._append({"kind": kind, "ts": time.time(), "run_id": run_id, "record_id": record_id, "data": data})


def system_snapshot() -> Dict[str, Any]:
    """Process / host resource usage at a point in time."""
    try:
        proc = psutil.Process(os.getpid())
        vm = psutil.virtual_memory()
        return {
            "process_rss_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
            "system_memory_percent": vm.percent,
            "system_available_mb": round(vm.available / (1024 * 1024), 1),
            "cpu_percent": psutil.cpu_percent(interval=None),
        }
    except (psutil.Error, OSError) as e:
        logger.debug("[recovery] resource snapshot failed: %s", e)
        return {}
