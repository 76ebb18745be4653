"""Core logic for aumai-modelstore."""

from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter, deque
from pathlib import Path
from typing import Any

from .errors import DigestMismatchError, MissingInputError
from .gguf import parse_gguf_metadata
from .models import (
    DEFAULT_REGISTRY,
    DIGEST_ALGORITHM,
    MEDIA_TYPE_PREFIX,
    CreateConfig,
    CreateResult,
    Digest,
    LocalFileOverrides,
    Manifest,
    ManifestLayer,
)
from .registry import ManifestClient, parse_model_name

__all__ = [
    "BlobStore",
    "LayerReconciler",
    "ModelCreator",
    "format_general",
    "join_by_dash",
    "load_manifest",
    "save_manifest",
    "show_metadata",
]

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {
    "model": "gguf",
    "adapter": "gguf",
    "projector": "gguf",
    "params": "json",
    "messages": "json",
    "template": "txt",
    "system": "txt",
    "license": "txt",
}

# Older manifests call the template layer "prompt".
_ROLE_ALIASES = {"prompt": "template"}


def _sha256_file(path: str | Path) -> str:
    """Return 'sha256:<hex>' digest for the file at *path*."""
    logger.info("Calculating digest of %s", path)
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            h.update(chunk)
    return f"{DIGEST_ALGORITHM}:{h.hexdigest()}"


def join_by_dash(*parts: Any) -> str:
    """Join the truthy *parts* with dashes; whitespace becomes dashes too."""
    return re.sub(r"\s", "-", "-".join(str(p) for p in parts if p))


def format_general(general: dict[str, Any]) -> str:
    """Render the scalar entries of a metadata subtree, one per line."""
    return "\n".join(
        f"  {key}: {value}"
        for key, value in general.items()
        if not isinstance(value, (dict, list))
    )


def load_manifest(path: Path) -> Manifest:
    return Manifest.model_validate_json(Path(path).read_text(encoding="utf-8"))


def save_manifest(path: Path, manifest: Manifest) -> None:
    """Write *manifest* to *path*, replacing whatever is there."""
    logger.info("Writing %s", path)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    path.write_text(manifest.to_json(), encoding="utf-8")


class BlobStore:
    """
    Digest-keyed blob directory.

    Layout::

        <root>/sha256-<hex>     # downloaded file, or symlink to a user file
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, digest: str | Digest) -> Path:
        if isinstance(digest, str):
            digest = Digest.parse(digest)
        return self.root / digest.filename

    def exists(self, digest: str | Digest) -> bool:
        return self.path_for(digest).exists()

    def link(self, digest: str | Digest, target: str | Path) -> Path:
        """Point the store entry for *digest* at *target*, replacing it."""
        if isinstance(digest, str):
            digest = Digest.parse(digest)
        target = Path(target).resolve()
        logger.info("Linking %s to %s", digest.short, target)
        path = self.path_for(digest)
        self.root.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.resolve() == target:
            return path
        path.unlink(missing_ok=True)
        path.symlink_to(target)
        return path


class LayerReconciler:
    """
    Reconcile manifest layers against user-supplied local files.

    Per layer, in manifest order:

    * excluded role: the layer is dropped;
    * a local candidate that exists: it is hashed, the layer takes its
      digest and size, and the store entry is symlinked to it;
    * a local candidate that does not exist: the blob is downloaded to that
      path and the store entry is symlinked to it;
    * no candidate: the blob is downloaded into the store unless it is
      already there (or ``force`` is set).

    Candidates left over after the last layer become extra layers.
    """

    def __init__(
        self,
        client: ManifestClient,
        store: BlobStore,
        blobs_url: str,
        *,
        out_dir: str | Path | None = None,
        model_name: str = "",
        force: bool = False,
        verify: bool = True,
    ) -> None:
        self.client = client
        self.store = store
        self.blobs_url = blobs_url
        self.out_dir = Path(out_dir) if out_dir is not None else None
        self.model_name = model_name
        self.force = force
        self.verify = verify

    def fetch_config(self, config: ManifestLayer) -> None:
        """Download the config blob unless the store already has it."""
        if self.force or not self.store.exists(config.digest):
            self._download(config.digest, self.store.path_for(config.digest))

    def reconcile(
        self, layers: list[ManifestLayer], overrides: LocalFileOverrides
    ) -> list[ManifestLayer]:
        pending = {
            role: deque(Path(f) for f in overrides.files_for(role))
            for role in overrides.candidates
        }
        generated: Counter[str] = Counter()
        result: list[ManifestLayer] = []

        for layer in layers:
            role = _ROLE_ALIASES.get(layer.role, layer.role)
            if overrides.is_excluded(role):
                logger.info("Excluding %s layer %s", role, layer.digest)
                continue

            queue = pending.get(role)
            local = queue.popleft() if queue else self._output_file(role, generated)
            if local is not None:
                layer = self._use_local_file(layer, local)
            elif self.force or not self.store.exists(layer.digest):
                self._download(layer.digest, self.store.path_for(layer.digest))
            result.append(layer)

        for role, queue in pending.items():
            if overrides.is_excluded(role):
                continue
            for local in queue:
                if not local.is_file():
                    logger.warning("file %s not found, skipping", local)
                    continue
                digest = _sha256_file(local)
                self.store.link(digest, local)
                result.append(
                    ManifestLayer(
                        media_type=MEDIA_TYPE_PREFIX + role,
                        digest=digest,
                        size=local.stat().st_size,
                    )
                )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _use_local_file(self, layer: ManifestLayer, local: Path) -> ManifestLayer:
        if local.is_file():
            layer = layer.model_copy(
                update={"digest": _sha256_file(local), "size": local.stat().st_size}
            )
        else:
            self._download(layer.digest, local)
        self.store.link(layer.digest, local)
        return layer

    def _output_file(self, role: str, generated: Counter[str]) -> Path | None:
        """Path under ``out_dir`` for a layer the user did not supply."""
        if self.out_dir is None:
            return None
        ext = FILE_EXTENSIONS.get(role)
        index = generated[role]
        generated[role] += 1
        stem = join_by_dash(
            re.sub(r"[/:]", "-", self.model_name),
            role if role != "model" and ext else None,
            index,
        )
        return self.out_dir / f"{stem}.{ext or role}"

    def _download(self, digest: str, dest: Path) -> None:
        self.client.fetch_blob_to_file(f"{self.blobs_url}/{digest}", dest)
        if not self.verify or Digest.parse(digest).algorithm != DIGEST_ALGORITHM:
            return
        actual = _sha256_file(dest)
        if actual != digest:
            Path(dest).unlink(missing_ok=True)
            raise DigestMismatchError(digest, actual)


class ModelCreator:
    """Create or update a model in the store from a base model and local files."""

    def __init__(self, client: ManifestClient) -> None:
        self.client = client

    def resolve_inputs(
        self, config: CreateConfig
    ) -> tuple[str, str, LocalFileOverrides]:
        """
        Work out the target name, the base reference and the overrides.

        Missing values come from the GGUF header of the model file. A model
        file with no derivable base becomes its own base.
        """
        name, base, overrides = config.name, config.base, config.overrides
        model_file = overrides.model_file

        if (not base or not name) and model_file is not None and model_file.is_file():
            logger.info("Reading metadata of %s", model_file)
            general = parse_gguf_metadata(model_file, quick=True).get("general")
            if not isinstance(general, dict):
                general = {}
            logger.info("%s", format_general(general))
            name = name or join_by_dash(
                general.get("basename") or general.get("name"),
                general.get("size_label"),
                general.get("finetune"),
                general.get("version"),
            )
            base = base or general.get("architecture")

        if not base:
            if model_file is None:
                raise MissingInputError("missing model: give a model file or a base model")
            base = str(model_file)
            overrides = overrides.without("model")

        return name or base, base, overrides

    def create(self, config: CreateConfig) -> CreateResult:
        name, base, overrides = self.resolve_inputs(config)
        source = parse_model_name(base, config.registry)
        target = parse_model_name(name, config.registry)
        manifest_path = target.manifest_path(config.store_root)
        updated = manifest_path.exists()
        logger.info(
            "%s model %s...", "Updating existing" if updated else "Creating new", name
        )

        manifest = self.client.fetch_manifest(source.manifest_url)
        reconciler = LayerReconciler(
            self.client,
            BlobStore(target.blobs_path(config.store_root)),
            source.blobs_url,
            out_dir=config.out_dir,
            model_name=name,
            force=config.force,
        )
        reconciler.fetch_config(manifest.config)
        layers = reconciler.reconcile(manifest.layers, overrides)
        manifest = manifest.model_copy(update={"layers": layers})
        save_manifest(manifest_path, manifest)

        return CreateResult(
            name=name,
            base=base,
            manifest_path=manifest_path,
            updated=updated,
            manifest=manifest,
        )


def show_metadata(
    model: str | None,
    store_root: str | Path,
    registry: str = DEFAULT_REGISTRY,
) -> dict[str, Any]:
    """
    Decode the full GGUF header of *model*.

    *model* is a GGUF file path or the name of a model in the store, in
    which case its ``model`` layer blob is read.
    """
    if model and not Path(model).is_file():
        ref = parse_model_name(model, registry)
        manifest_path = ref.manifest_path(Path(store_root))
        if not manifest_path.is_file():
            raise MissingInputError(f"invalid model {model}")
        manifest = load_manifest(manifest_path)
        layer = next((e for e in manifest.layers if e.role == "model"), None)
        if layer is None:
            raise MissingInputError(f"invalid model {model}: no model layer")
        model = str(BlobStore(ref.blobs_path(Path(store_root))).path_for(layer.digest))

    if not model or not Path(model).is_file():
        raise MissingInputError(f"invalid model {model or ''}")
    return parse_gguf_metadata(model)
