"""
aumai-modelstore quickstart: decode a GGUF header, then create a model.

Run directly:

    python examples/quickstart.py

The registry is served by an in-process ``httpx.MockTransport``, so no
network access is needed. Everything lives in a temporary directory.
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import struct
import tempfile

import httpx


def _gguf_string(text: str) -> bytes:
    data = text.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def write_toy_gguf(path: pathlib.Path) -> None:
    """Write a little-endian v3 GGUF header with a few string entries."""
    entries = {
        "general.architecture": "llama",
        "general.basename": "Toy Llama",
        "general.size_label": "7M",
        "general.finetune": "chat",
    }
    out = b"GGUF" + struct.pack("<IQQ", 3, 0, len(entries))
    for key, value in entries.items():
        out += _gguf_string(key) + struct.pack("<I", 8) + _gguf_string(value)
    path.write_bytes(out)


# ---------------------------------------------------------------------------
# Demo 1: Decode GGUF metadata
# ---------------------------------------------------------------------------

def demo_read_metadata(model_file: pathlib.Path) -> None:
    print("\n=== Demo 1: Decode GGUF metadata ===")

    from aumai_modelstore.core import format_general
    from aumai_modelstore.gguf import parse_gguf_metadata

    metadata = parse_gguf_metadata(model_file, quick=True)
    print(f"  Version   : {metadata['version']}")
    print(f"  Key count : {metadata['kv_count']}")
    print(format_general(metadata["general"]))


# ---------------------------------------------------------------------------
# Demo 2: Create a model on top of a registry base
# ---------------------------------------------------------------------------

def _fake_registry() -> httpx.MockTransport:
    """Serve one base model, ``llama``, with a config blob and a template layer."""
    blobs: dict[str, bytes] = {}

    def add(data: bytes) -> dict[str, object]:
        digest = "sha256:" + hashlib.sha256(data).hexdigest()
        blobs[digest] = data
        return {"digest": digest, "size": len(data)}

    manifest = {
        "schemaVersion": 2,
        "config": {"mediaType": "application/vnd.docker.container.image.v1+json", **add(b"{}")},
        "layers": [
            {"mediaType": "application/vnd.ollama.image.model", **add(b"base weights")},
            {"mediaType": "application/vnd.ollama.image.template", **add(b"{{ .Prompt }}")},
        ],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.endswith("/library/llama/manifests/latest"):
            return httpx.Response(200, json=manifest)
        digest = url.rsplit("/", 1)[1]
        if "/blobs/" in url and digest in blobs:
            return httpx.Response(200, content=blobs[digest])
        return httpx.Response(404, json={"errors": [{"message": "not found"}]})

    return httpx.MockTransport(handler)


def demo_create_model(model_file: pathlib.Path, store_root: pathlib.Path) -> None:
    print("\n=== Demo 2: Create a model ===")

    from aumai_modelstore.core import ModelCreator
    from aumai_modelstore.models import CreateConfig, LocalFileOverrides
    from aumai_modelstore.registry import ManifestClient

    config = CreateConfig(
        store_root=store_root,
        overrides=LocalFileOverrides(candidates={"model": [model_file]}),
    )
    with httpx.Client(transport=_fake_registry()) as http, ManifestClient(http) as client:
        result = ModelCreator(client).create(config)

    print(f"  Name     : {result.name}")
    print(f"  Base     : {result.base}")
    print(f"  Manifest : {result.manifest_path}")
    for layer in result.manifest.layers:
        print(f"    {layer.role:<10} {layer.digest[:19]}  {layer.size} bytes")
    print(json.dumps(json.loads(result.manifest.to_json()), indent=2)[:200] + "...")


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        root = pathlib.Path(tmp)
        model_file = root / "toy.gguf"
        write_toy_gguf(model_file)
        demo_read_metadata(model_file)
        demo_create_model(model_file, root / "store")


if __name__ == "__main__":
    main()
