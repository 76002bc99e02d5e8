from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from sae_trainer.config.manifest import MODEL_FORMAT, ModelManifest, hash_files
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.model.registry import LayerRegistry

MANIFEST_NAME = "manifest.json"


class ModelFormatError(ValueError):
    pass


def _group_filename(index: int) -> str:
    return f"group_{index:03d}.npz"


def _parse_group_index(path: Path) -> int:
    match = re.match(r"group_(\d+)\.npz$", path.name)
    if not match:
        raise ModelFormatError(f"invalid group filename: {path.name}")
    return int(match.group(1))


def build_model(
    n_inputs: int,
    hidden_units: List[int],
    n_outputs: int,
    *,
    nonlinearity: str = "sigmoid",
    tied_weights: bool = False,
    corrupt_prob: float = 0.0,
    corrupt_value: float = 0.0,
    seed: int | None = None,
    name: str = "sae",
) -> StackedAutoencoder:
    registry = LayerRegistry(
        n_inputs,
        hidden_units,
        n_outputs,
        nonlinearity=nonlinearity,
        tied_weights=tied_weights,
        corrupt_prob=corrupt_prob,
        corrupt_value=corrupt_value,
        seed=seed,
    )
    return StackedAutoencoder(registry, name=name)


def save_model(
    model: StackedAutoencoder,
    directory: str | Path,
    *,
    tag: str | None = None,
    notes: Dict[str, Any] | None = None,
) -> ModelManifest:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    registry = model.registry
    groups = registry.groups_in_save_order()
    paths: List[Path] = []
    for index, group in enumerate(groups):
        path = directory / _group_filename(index)
        np.savez(path, **group.values)
        paths.append(path)
    manifest = ModelManifest.create(
        n_inputs=registry.n_inputs,
        hidden_units=list(registry.hidden_units),
        n_outputs=registry.n_outputs,
        nonlinearity=registry.nonlinearity,
        tied_weights=registry.tied_weights,
        corrupt_prob=registry.corrupt_prob,
        corrupt_value=registry.corrupt_value,
        groups=[group.name for group in groups],
        params_hash=hash_files(paths),
        tag=tag,
        notes=notes,
    )
    manifest.save(directory / MANIFEST_NAME)
    return manifest


def load_parameters(model: StackedAutoencoder, directory: str | Path) -> ModelManifest:
    directory = Path(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.exists():
        raise FileNotFoundError(manifest_path)
    manifest = ModelManifest.load(manifest_path)
    if manifest.model_format != MODEL_FORMAT:
        raise ModelFormatError(f"unsupported model_format: {manifest.model_format}")

    registry = model.registry
    if (
        manifest.n_inputs != registry.n_inputs
        or list(manifest.hidden_units) != registry.hidden_units
        or manifest.n_outputs != registry.n_outputs
    ):
        raise ModelFormatError("saved topology does not match the model")
    if manifest.tied_weights != registry.tied_weights:
        raise ModelFormatError("saved tied_weights does not match the model")

    group_files = sorted(directory.glob("group_*.npz"), key=_parse_group_index)
    groups = registry.groups_in_save_order()
    if len(group_files) != len(groups):
        raise ModelFormatError(
            f"found {len(group_files)} group files, model has {len(groups)} parameter groups"
        )
    if manifest.groups != [group.name for group in groups]:
        raise ModelFormatError("saved group order does not match the model")
    if hash_files(group_files) != manifest.params_hash:
        raise ModelFormatError("params_hash does not match the group files")

    for index, (path, group) in enumerate(zip(group_files, groups)):
        if _parse_group_index(path) != index:
            raise ModelFormatError(f"missing group file {_group_filename(index)}")
        with np.load(path) as data:
            arrays = {key: np.asarray(data[key]) for key in data.files}
        try:
            group.load_values(arrays)
        except ValueError as exc:
            raise ModelFormatError(f"{path.name}: {exc}") from exc
    return manifest


def load_model(directory: str | Path, name: str = "sae") -> StackedAutoencoder:
    directory = Path(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.exists():
        raise FileNotFoundError(manifest_path)
    manifest = ModelManifest.load(manifest_path)
    model = build_model(
        manifest.n_inputs,
        list(manifest.hidden_units),
        manifest.n_outputs,
        nonlinearity=manifest.nonlinearity,
        tied_weights=manifest.tied_weights,
        corrupt_prob=manifest.corrupt_prob,
        corrupt_value=manifest.corrupt_value,
        name=name,
    )
    load_parameters(model, directory)
    return model


def parameters_fingerprint(model: StackedAutoencoder) -> str:
    digest = hashlib.sha256()
    for group in model.registry.groups_in_save_order():
        digest.update(group.name.encode("utf-8"))
        digest.update(np.ascontiguousarray(group.flat_values()).tobytes())
    return digest.hexdigest()
