"""Pydantic models for aumai-modelstore."""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "CreateConfig",
    "CreateResult",
    "DEFAULT_REGISTRY",
    "DEFAULT_REPOSITORY",
    "DEFAULT_VERSION",
    "DIGEST_ALGORITHM",
    "Digest",
    "LocalFileOverrides",
    "MEDIA_TYPE_PREFIX",
    "Manifest",
    "ManifestLayer",
    "ModelReference",
    "ROLES",
    "role_of",
]

DEFAULT_REGISTRY = "registry.ollama.ai"
DEFAULT_REPOSITORY = "library"
DEFAULT_VERSION = "latest"
DIGEST_ALGORITHM = "sha256"
MEDIA_TYPE_PREFIX = "application/vnd.ollama.image."

# Layer roles a user may override, in the order they are offered on the CLI.
ROLES = (
    "model",
    "adapter",
    "projector",
    "template",
    "system",
    "params",
    "messages",
    "license",
)

_ROLE_PATTERN = re.compile(r".*[.+]")


def role_of(media_type: str) -> str:
    """Return the role tag of *media_type*, i.e. its last ``.``/``+`` segment."""
    return _ROLE_PATTERN.sub("", media_type)


class Digest(BaseModel):
    """Algorithm-tagged content hash, serialized as ``algorithm:hex``."""

    model_config = ConfigDict(frozen=True)

    algorithm: str
    hex: str

    @classmethod
    def parse(cls, value: str) -> Digest:
        algorithm, sep, hex_digest = value.partition(":")
        if not sep or not algorithm or not hex_digest:
            raise ValueError(f"invalid digest {value!r}")
        return cls(algorithm=algorithm, hex=hex_digest)

    @property
    def filename(self) -> str:
        """Blob store key: the colon is not safe on every filesystem."""
        return f"{self.algorithm}-{self.hex}"

    @property
    def short(self) -> str:
        return self.hex[:12]

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


class ManifestLayer(BaseModel):
    """A single blob referenced by a manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    media_type: str = Field(alias="mediaType")
    digest: str            # sha256:<hex>
    size: int = Field(ge=0)

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        Digest.parse(value)
        return value

    @property
    def role(self) -> str:
        return role_of(self.media_type)

    @property
    def parsed_digest(self) -> Digest:
        return Digest.parse(self.digest)


class Manifest(BaseModel):
    """
    Registry image manifest.

    Unknown top-level fields (``schemaVersion``, ``mediaType`` and any
    registry extensions) are preserved and re-emitted on save.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    config: ManifestLayer
    layers: list[ManifestLayer] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ModelReference(BaseModel):
    """A parsed ``[[registry/]repository/]name[:version]`` identifier."""

    model_config = ConfigDict(frozen=True)

    registry: str = DEFAULT_REGISTRY
    repository: str = DEFAULT_REPOSITORY
    name: str
    version: str = DEFAULT_VERSION

    @property
    def base_url(self) -> str:
        return f"https://{self.registry}/v2/{self.repository}/{self.name}"

    @property
    def manifest_url(self) -> str:
        return f"{self.base_url}/manifests/{self.version}"

    @property
    def blobs_url(self) -> str:
        return f"{self.base_url}/blobs"

    def manifest_path(self, store_root: Path) -> Path:
        return (
            Path(store_root)
            / "manifests"
            / self.registry
            / self.repository
            / self.name
            / self.version
        )

    def blobs_path(self, store_root: Path) -> Path:
        return Path(store_root) / "blobs"

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}/{self.name}:{self.version}"


class LocalFileOverrides(BaseModel):
    """
    User-supplied local files, keyed by layer role.

    A role listed in ``excluded`` suppresses every layer of that role.
    """

    candidates: dict[str, list[Path]] = Field(default_factory=dict)
    excluded: set[str] = Field(default_factory=set)

    def is_excluded(self, role: str) -> bool:
        return role in self.excluded

    def files_for(self, role: str) -> list[Path]:
        return list(self.candidates.get(role, []))

    @property
    def model_file(self) -> Path | None:
        files = self.candidates.get("model")
        return files[0] if files else None

    def without(self, role: str) -> LocalFileOverrides:
        """Return a copy with every candidate of *role* removed."""
        remaining = {k: list(v) for k, v in self.candidates.items() if k != role}
        return LocalFileOverrides(candidates=remaining, excluded=set(self.excluded))


class CreateConfig(BaseModel):
    """Everything needed to create or update one model in the store."""

    store_root: Path
    registry: str = DEFAULT_REGISTRY
    name: str | None = None
    base: str | None = None
    out_dir: Path | None = None
    force: bool = False
    overrides: LocalFileOverrides = Field(default_factory=LocalFileOverrides)


class CreateResult(BaseModel):
    """Outcome of a create/update run."""

    name: str
    base: str
    manifest_path: Path
    updated: bool
    manifest: Manifest
