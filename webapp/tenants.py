"""Tenant configuration registry.

Each tenant has a JSON file ``<client_id>.json`` in the tenant config
directory (written by the admin dashboard). Files are validated on first use
and cached; ``reload`` drops the cache after the dashboard changes a file.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Mapping, Optional, Union

from schemas.errors import UnknownTenant
from schemas.settings import TenantConfig, load_tenant_config

logger = logging.getLogger(__name__)

_CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class TenantRegistry:
    def __init__(
        self,
        config_dir: Optional[Union[str, Path]] = None,
        tenants: Optional[Mapping[str, Union[TenantConfig, Mapping]]] = None,
    ):
        self.config_dir = Path(config_dir) if config_dir else None
        self._lock = threading.Lock()
        self._cache: dict[str, TenantConfig] = {}
        self._static: dict[str, TenantConfig] = {}
        for client_id, cfg in (tenants or {}).items():
            if not isinstance(cfg, TenantConfig):
                cfg = load_tenant_config(cfg, client_id=client_id)
            self._static[client_id] = cfg

    def get(self, client_id: str) -> TenantConfig:
        """Return the tenant's config; unknown tenants raise UnknownTenant."""
        if client_id in self._static:
            return self._static[client_id]
        with self._lock:
            cached = self._cache.get(client_id)
            if cached is not None:
                return cached
            config = self._load(client_id)
            self._cache[client_id] = config
            return config

    def known(self) -> list[str]:
        ids = set(self._static)
        if self.config_dir and self.config_dir.is_dir():
            ids.update(p.stem for p in self.config_dir.glob("*.json"))
        return sorted(ids)

    def reload(self):
        with self._lock:
            self._cache.clear()

    def _load(self, client_id: str) -> TenantConfig:
        # client_id becomes a file name; refuse anything that could leave the directory
        if not client_id or not _CLIENT_ID_RE.match(client_id):
            raise UnknownTenant(f"Invalid client_id: {client_id!r}")
        if self.config_dir is None:
            raise UnknownTenant(f"Unknown tenant: {client_id}")
        path = self.config_dir / f"{client_id}.json"
        if not path.is_file():
            raise UnknownTenant(f"Unknown tenant: {client_id}")
        config = load_tenant_config(path, client_id=client_id)
        logger.info("[%s] Loaded tenant config from %s", client_id, path)
        return config
