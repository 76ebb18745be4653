"""Shared test fixtures for aumai-modelstore."""

from __future__ import annotations

import hashlib
import struct
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from aumai_modelstore.core import BlobStore
from aumai_modelstore.models import MEDIA_TYPE_PREFIX, ModelReference
from aumai_modelstore.registry import ManifestClient

# ---------------------------------------------------------------------------
# GGUF builder
# ---------------------------------------------------------------------------

_SCALAR_CODES = {
    0: "B",
    1: "b",
    2: "H",
    3: "h",
    4: "I",
    5: "i",
    6: "f",
    7: "?",
    10: "Q",
    11: "q",
    12: "d",
}


def _encode_length(n: int, version: int, order: str) -> bytes:
    return struct.pack(order + ("I" if version == 1 else "Q"), n)


def _encode_string(text: str, version: int, order: str) -> bytes:
    data = text.encode("utf-8")
    return _encode_length(len(data), version, order) + data


def encode_value(tag: int, value: Any, version: int = 3, order: str = "<") -> bytes:
    """Encode a typed value; arrays are given as ``(element_tag, items)``."""
    if tag == 8:
        return _encode_string(value, version, order)
    if tag == 9:
        element_tag, items = value
        out = struct.pack(order + "I", element_tag)
        out += _encode_length(len(items), version, order)
        for item in items:
            out += encode_value(element_tag, item, version, order)
        return out
    return struct.pack(order + _SCALAR_CODES[tag], value)


def build_gguf(
    entries: list[tuple[str, int, Any]],
    version: int = 3,
    little_endian: bool = True,
    tensor_count: int = 0,
) -> bytes:
    order = "<" if little_endian else ">"
    out = b"GGUF" + struct.pack(order + "I", version)
    out += _encode_length(tensor_count, version, order)
    out += _encode_length(len(entries), version, order)
    for key, tag, value in entries:
        out += _encode_string(key, version, order)
        out += struct.pack(order + "I", tag)
        out += encode_value(tag, value, version, order)
    return out


GENERAL_ENTRIES: list[tuple[str, int, Any]] = [
    ("general.architecture", 8, "llama"),
    ("general.basename", 8, "Tiny Llama"),
    ("general.size_label", 8, "1B"),
    ("general.finetune", 8, "chat"),
    ("general.version", 8, "v1"),
    ("llama.context_length", 4, 2048),
    ("tokenizer.ggml.tokens", 9, (8, ["<s>", "</s>", "hello"])),
    ("tokenizer.ggml.scores", 9, (6, [0.0, 0.5, 1.0])),
    ("llama.block_count", 4, 22),
]


@pytest.fixture()
def gguf_bytes() -> Callable[..., bytes]:
    return build_gguf


@pytest.fixture()
def value_bytes() -> Callable[..., bytes]:
    return encode_value


@pytest.fixture()
def write_gguf(tmp_path: Path) -> Callable[..., Path]:
    """Return a function writing a GGUF file built from entries."""

    def _write(
        entries: list[tuple[str, int, Any]] | None = None,
        name: str = "model.gguf",
        **kwargs: Any,
    ) -> Path:
        path = tmp_path / name
        path.write_bytes(build_gguf(GENERAL_ENTRIES if entries is None else entries, **kwargs))
        return path

    return _write


# ---------------------------------------------------------------------------
# Fake registry
# ---------------------------------------------------------------------------


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class FakeRegistry:
    """In-memory registry served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.manifests: dict[str, tuple[int, dict[str, Any]]] = {}
        self.blobs: dict[str, bytes] = {}
        self.requests: list[str] = []

    def add_model(
        self,
        ref: ModelReference,
        layers: list[tuple[str, bytes]],
        config: bytes = b'{"model_format":"gguf"}',
    ) -> dict[str, Any]:
        """Publish *layers* as ``(role, content)`` pairs under *ref*."""
        config_digest = sha256_digest(config)
        self.blobs[config_digest] = config
        descriptors = []
        for role, content in layers:
            digest = sha256_digest(content)
            self.blobs[digest] = content
            descriptors.append(
                {
                    "mediaType": MEDIA_TYPE_PREFIX + role,
                    "digest": digest,
                    "size": len(content),
                }
            )
        manifest = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {
                "mediaType": "application/vnd.docker.container.image.v1+json",
                "digest": config_digest,
                "size": len(config),
            },
            "layers": descriptors,
        }
        self.manifests[ref.manifest_url] = (200, {"json": manifest})
        return manifest

    def blob_requests(self) -> list[str]:
        return [r for r in self.requests if "/blobs/" in r]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if "/manifests/" in url and url in self.manifests:
            status, kwargs = self.manifests[url]
            return httpx.Response(status, **kwargs)
        if "/blobs/" in url:
            digest = url.rsplit("/", 1)[1]
            if digest in self.blobs:
                return httpx.Response(200, content=self.blobs[digest])
        return httpx.Response(
            404, json={"errors": [{"code": "NOT_FOUND", "message": "not found"}]}
        )


@pytest.fixture()
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture()
def client(registry: FakeRegistry) -> ManifestClient:
    return ManifestClient(httpx.Client(transport=httpx.MockTransport(registry.handler)))


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store_root(tmp_path: Path) -> Path:
    root = tmp_path / "store"
    root.mkdir()
    return root


@pytest.fixture()
def blob_store(store_root: Path) -> BlobStore:
    return BlobStore(store_root / "blobs")


@pytest.fixture()
def llama_ref() -> ModelReference:
    return ModelReference(name="llama")
