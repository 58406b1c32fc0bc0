"""Object store used for uploaded and generated assets."""

import asyncio
import hashlib
import logging
import re
from pathlib import Path
from typing import Protocol

from atelier.services.id_generator import generate_id

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def tenant_segment(tenant_id: str) -> str:
    """Directory name under which a tenant's assets are stored."""
    return _UNSAFE_CHARS.sub("_", tenant_id)


class ObjectStore(Protocol):
    async def store(self, data: bytes, tenant_id: str, file_name: str | None = None) -> str:
        """Persist ``data`` for ``tenant_id`` and return a retrievable URL."""
        ...

    async def fetch(self, url: str) -> bytes:
        ...


class LocalObjectStore:
    """Filesystem-backed store: ``<root>/<tenant_id>/<asset>`` served under ``base_url``."""

    def __init__(self, root: str | Path, base_url: str = "/uploads"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def store(self, data: bytes, tenant_id: str, file_name: str | None = None) -> str:
        name = _UNSAFE_CHARS.sub("_", file_name or "asset.bin")
        asset_name = f"{generate_id('ast_')}_{name}"
        path = self.root / tenant_segment(tenant_id) / asset_name
        await asyncio.to_thread(self._write, path, data)
        logger.info("Stored asset %s (%d bytes, tenant=%s)", asset_name, len(data), tenant_id)
        return f"{self.base_url}/{path.parent.name}/{asset_name}"

    async def fetch(self, url: str) -> bytes:
        path = self._path_for(url)
        return await asyncio.to_thread(path.read_bytes)

    def _path_for(self, url: str) -> Path:
        if not url.startswith(self.base_url + "/"):
            raise FileNotFoundError(url)
        relative = url[len(self.base_url) + 1:]
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFoundError(url)
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
