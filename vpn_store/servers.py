"""VPN server configuration stored as one JSON file per server."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .validation import is_valid_server_id

LOGGER = logging.getLogger(__name__)


class ServerNotFoundError(LookupError):
    """Raised when a server id has no configuration file."""


class ServerStore:
    """Reads and writes ``<servers_dir>/<id>.json`` files.

    The server id is the file name and never changes once created.
    """

    def __init__(self, servers_dir: str) -> None:
        self.servers_dir = Path(servers_dir)
        self.servers_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, server_id: str) -> Path:
        if not is_valid_server_id(server_id):
            raise ServerNotFoundError(server_id)
        return self.servers_dir / f"{server_id}.json"

    def exists(self, server_id: str) -> bool:
        try:
            return self._path(server_id).exists()
        except ServerNotFoundError:
            return False

    def get(self, server_id: str) -> Optional[Dict[str, Any]]:
        try:
            path = self._path(server_id)
        except ServerNotFoundError:
            return None
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.error("failed to read server file %s: %s", path.name, exc)
            return None
        data["id"] = server_id
        data.setdefault("protocols", {})
        return data

    def list_all(self) -> List[Dict[str, Any]]:
        servers = []
        for path in sorted(self.servers_dir.glob("*.json")):
            server = self.get(path.stem)
            if server is not None:
                servers.append(server)
        return servers

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for server in self.list_all():
            if server.get("name") == name:
                return server
        return None

    def save(self, server_id: str, data: Dict[str, Any]) -> None:
        path = self._path(server_id)
        payload = dict(data)
        payload["id"] = server_id
        payload.setdefault("protocols", {})
        with self._lock:
            tmp_path = path.with_suffix(".json.tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
            tmp_path.replace(path)
        LOGGER.info("server %s saved", server_id)

    def delete(self, server_id: str) -> None:
        path = self._path(server_id)
        with self._lock:
            if not path.exists():
                raise ServerNotFoundError(server_id)
            path.unlink()
        LOGGER.info("server %s deleted", server_id)
