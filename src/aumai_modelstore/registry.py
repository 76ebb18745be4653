"""Registry access: model name resolution, manifest and blob downloads."""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx
from pydantic import ValidationError

from .errors import NetworkError, RegistryError
from .models import (
    DEFAULT_REGISTRY,
    DEFAULT_REPOSITORY,
    DEFAULT_VERSION,
    Manifest,
    ModelReference,
)

__all__ = [
    "ManifestClient",
    "format_size",
    "parse_model_name",
]

logger = logging.getLogger(__name__)

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")


def parse_model_name(
    model_name: str, default_registry: str = DEFAULT_REGISTRY
) -> ModelReference:
    """
    Parse ``[[registry/]repository/]name[:version]``.

    Segments are taken from the right: the last is ``name[:version]``, the
    one before it the repository, the one before that the registry.
    """
    parts = model_name.split("/")
    repository = parts[-2] if len(parts) > 1 else DEFAULT_REPOSITORY
    registry = parts[-3] if len(parts) > 2 else default_registry
    name, _, version = parts[-1].partition(":")
    return ModelReference(
        registry=registry,
        repository=repository,
        name=name,
        version=version or DEFAULT_VERSION,
    )


def format_size(num_bytes: int) -> str:
    """Render *num_bytes* in powers of 1000, e.g. ``4.7 GB``."""
    if num_bytes <= 0:
        return "unknown size"
    value = float(num_bytes)
    power = 0
    while value >= 1000 and power < len(SIZE_UNITS) - 1:
        value /= 1000
        power += 1
    return f"{value:.1f} {SIZE_UNITS[power]}"


def _registry_message(body: Any) -> str | None:
    if not isinstance(body, dict) or not body.get("errors"):
        return None
    first = body["errors"][0]
    if not isinstance(first, dict):
        return str(first)
    return str(first.get("message") or first.get("code") or "")


class ManifestClient:
    """
    Thin HTTP client for a model registry.

    Pass an ``httpx.Client`` to control transport and timeouts; otherwise
    one is created and closed with this object.
    """

    CHUNK_SIZE = 1024 * 1024

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(30.0, read=None), follow_redirects=True
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ManifestClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def fetch_manifest(self, url: str) -> Manifest:
        """Download and validate the manifest at *url*."""
        logger.info("Downloading %s", url)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise NetworkError(f"failed to download {url}: {exc}") from exc

        if not response.is_success:
            try:
                detail = _registry_message(response.json())
            except ValueError:
                detail = None
            raise NetworkError(
                f"failed to download {url}: "
                f"{detail or f'{response.status_code} {response.reason_phrase}'}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise RegistryError(f"failed to download {url}: invalid JSON") from exc

        message = _registry_message(body)
        if message is not None:
            raise RegistryError(f"failed to download {url}: {message}")

        try:
            return Manifest.model_validate(body)
        except ValidationError as exc:
            raise RegistryError(
                f"failed to download {url}: invalid manifest "
                f"({exc.error_count()} validation errors)"
            ) from exc

    def fetch_blob_to_file(self, url: str, dest: str | Path) -> int:
        """
        Stream the blob at *url* into a fresh file at *dest*.

        Any existing file or symlink at *dest* is removed first, so a
        symlinked user file is never written through. On failure a partial
        file may remain. Returns the number of bytes written.
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.unlink(missing_ok=True)

        written = 0
        try:
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise NetworkError(
                        f"failed to download {url}: "
                        f"{response.status_code} {response.reason_phrase}"
                    )
                declared = int(response.headers.get("content-length") or 0)
                logger.info("Downloading %s (%s)", url, format_size(declared))
                with open(dest, "wb") as fh:
                    for chunk in response.iter_bytes(self.CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as exc:
            raise NetworkError(f"failed to download {url}: {exc}") from exc
        except OSError as exc:
            raise NetworkError(f"failed to write {dest}: {exc}") from exc
        return written
