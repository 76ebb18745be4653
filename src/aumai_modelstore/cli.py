"""CLI entry point for aumai-modelstore."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

import click

from .core import ModelCreator, show_metadata
from .errors import ModelStoreError
from .models import DEFAULT_REGISTRY, ROLES, CreateConfig, LocalFileOverrides
from .registry import ManifestClient


def _default_store_root() -> Path:
    return Path.home() / ".ollama" / "models"


_store_option = click.option(
    "--store",
    "store_root",
    envvar="OLLAMA_MODELS",
    default=_default_store_root,
    show_default="~/.ollama/models",
    type=click.Path(file_okay=False, path_type=Path),
    help="Model store directory (env: OLLAMA_MODELS).",
)
_registry_option = click.option(
    "--registry",
    default=DEFAULT_REGISTRY,
    show_default=True,
    help="Registry used when a model name has no registry part.",
)


def _file_option(
    role: str, short: str | None, help_text: str
) -> Callable[..., Any]:
    decls = [f"--{role}"] + ([f"-{short}"] if short else [])
    return click.option(
        *decls,
        role,
        multiple=True,
        type=click.Path(dir_okay=False, path_type=Path),
        help=help_text,
    )


@click.group()
@click.version_option(package_name="aumai-modelstore")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output.")
def main(verbose: bool) -> None:
    """AumAI ModelStore: content-addressed local store for GGUF models."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
    )


@main.command("create")
@click.argument("models", nargs=-1, type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--from",
    "-b",
    "base",
    help="Base model from the registry. Default: architecture from GGUF metadata.",
)
@click.option(
    "--name",
    "-n",
    help="Name of the new model. Default: basename-size_label-finetune-version "
    "from metadata, or the base model name.",
)
@click.option(
    "--dir",
    "-d",
    "out_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Download model files to this directory and symlink them into the store.",
)
@click.option("--force", "-f", is_flag=True, help="Re-download blobs that already exist.")
@_file_option("params", "p", "JSON file with model parameters.")
@_file_option("messages", "m", "JSON file with the message history.")
@_file_option("template", "t", "File with the full prompt template.")
@_file_option("system", "s", "File with the system message.")
@_file_option("adapter", "a", "(Q)LoRA adapter to apply to the model.")
@_file_option("projector", None, "Multimodal projector.")
@_file_option("license", "l", "File with the legal license.")
@click.option(
    "--exclude",
    "-x",
    multiple=True,
    type=click.Choice(ROLES),
    help="Drop every layer of this role from the base model.",
)
@_store_option
@_registry_option
def create_command(
    models: tuple[Path, ...],
    base: str | None,
    name: str | None,
    out_dir: Path | None,
    force: bool,
    exclude: tuple[str, ...],
    store_root: Path,
    registry: str,
    **role_files: tuple[Path, ...],
) -> None:
    """
    Create or update a model from a base model in the registry.

    MODELS are local GGUF files. Every given file is symlinked into the
    store; a file that does not exist yet is downloaded from the base model
    to that location.
    """
    candidates = {role: list(files) for role, files in role_files.items() if files}
    if models:
        candidates["model"] = list(models)

    config = CreateConfig(
        store_root=store_root,
        registry=registry,
        name=name,
        base=base,
        out_dir=out_dir,
        force=force,
        overrides=LocalFileOverrides(candidates=candidates, excluded=set(exclude)),
    )
    try:
        with ManifestClient() as client:
            result = ModelCreator(client).create(config)
    except (ModelStoreError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"Model {result.name} successfully {'updated' if result.updated else 'created'}!"
    )
    click.echo(f"  Base     : {result.base}")
    click.echo(f"  Manifest : {result.manifest_path}")
    click.echo(f"  Layers   : {len(result.manifest.layers)}")


@main.command("metadata")
@click.argument("model", required=False)
@_store_option
@_registry_option
def metadata_command(model: str | None, store_root: Path, registry: str) -> None:
    """Print the GGUF metadata of MODEL (a file or a model name) as JSON."""
    try:
        metadata = show_metadata(model, store_root, registry)
    except (ModelStoreError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(metadata, indent=2))


if __name__ == "__main__":
    main()
