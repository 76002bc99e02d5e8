from __future__ import annotations

import hashlib
import json
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

MODEL_FORMAT = "sae_npz_v1"


def _require_keys(data: Dict[str, Any], keys: Iterable[str], context: str) -> None:
    missing = [key for key in keys if key not in data]
    if missing:
        joined = ", ".join(missing)
        raise ValueError(f"missing {context} keys: {joined}")


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(path: str | Path) -> str:
    path = Path(path)
    return _sha256_bytes(path.read_bytes())


def hash_files(paths: Iterable[str | Path]) -> str:
    digest = hashlib.sha256()
    for path in paths:
        digest.update(Path(path).read_bytes())
    return digest.hexdigest()


def current_git_commit() -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout.strip() or None


@dataclass(frozen=True)
class ModelManifest:
    model_format: str
    n_inputs: int
    hidden_units: List[int]
    n_outputs: int
    nonlinearity: str
    tied_weights: bool
    corrupt_prob: float
    corrupt_value: float
    groups: List[str]
    params_hash: str
    created_at: str
    git_commit: str | None = None
    tag: str | None = None
    notes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelManifest":
        _require_keys(
            data,
            [
                "model_format",
                "n_inputs",
                "hidden_units",
                "n_outputs",
                "nonlinearity",
                "tied_weights",
                "groups",
                "params_hash",
                "created_at",
            ],
            "model manifest",
        )
        return cls(
            model_format=str(data["model_format"]),
            n_inputs=int(data["n_inputs"]),
            hidden_units=[int(units) for units in data["hidden_units"]],
            n_outputs=int(data["n_outputs"]),
            nonlinearity=str(data["nonlinearity"]),
            tied_weights=bool(data["tied_weights"]),
            corrupt_prob=float(data.get("corrupt_prob", 0.0) or 0.0),
            corrupt_value=float(data.get("corrupt_value", 0.0) or 0.0),
            groups=[str(name) for name in data["groups"]],
            params_hash=str(data["params_hash"]),
            created_at=str(data["created_at"]),
            git_commit=data.get("git_commit"),
            tag=(str(data["tag"]) if data.get("tag") else None),
            notes=dict(data.get("notes") or {}),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "model_format": self.model_format,
            "n_inputs": self.n_inputs,
            "hidden_units": list(self.hidden_units),
            "n_outputs": self.n_outputs,
            "nonlinearity": self.nonlinearity,
            "tied_weights": self.tied_weights,
            "corrupt_prob": self.corrupt_prob,
            "corrupt_value": self.corrupt_value,
            "groups": list(self.groups),
            "params_hash": self.params_hash,
            "created_at": self.created_at,
            "git_commit": self.git_commit,
            "tag": self.tag,
            "notes": dict(self.notes),
        }

    def fingerprint(self) -> str:
        payload = json.dumps(self.as_dict(), sort_keys=True).encode("utf-8")
        return _sha256_bytes(payload)

    @classmethod
    def create(
        cls,
        *,
        n_inputs: int,
        hidden_units: List[int],
        n_outputs: int,
        nonlinearity: str,
        tied_weights: bool,
        corrupt_prob: float,
        corrupt_value: float,
        groups: List[str],
        params_hash: str,
        tag: str | None = None,
        git_commit: str | None = None,
        notes: Dict[str, Any] | None = None,
    ) -> "ModelManifest":
        if git_commit is None:
            git_commit = current_git_commit()
        return cls(
            model_format=MODEL_FORMAT,
            n_inputs=n_inputs,
            hidden_units=list(hidden_units),
            n_outputs=n_outputs,
            nonlinearity=nonlinearity,
            tied_weights=tied_weights,
            corrupt_prob=corrupt_prob,
            corrupt_value=corrupt_value,
            groups=list(groups),
            params_hash=params_hash,
            created_at=datetime.now(timezone.utc).isoformat(),
            git_commit=git_commit,
            tag=tag,
            notes=dict(notes or {}),
        )

    @classmethod
    def load(cls, path: str | Path) -> "ModelManifest":
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        return cls.from_dict(data)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.write_text(json.dumps(self.as_dict(), indent=2), encoding="utf-8")
