from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List

import numpy as np


@dataclass(frozen=True)
class Example:
    index: int
    inputs: Any
    target: int | None = None


class ArrayDataSet:
    def __init__(self, inputs: Any, targets: Any = None, name: str = "data") -> None:
        x = np.asarray(inputs, dtype=np.float64)
        if x.ndim != 2:
            raise ValueError(f"{name}: inputs must be a 2D array, got shape {x.shape}")
        if targets is not None:
            t = np.asarray(targets).reshape(-1)
            if t.shape[0] != x.shape[0]:
                raise ValueError(f"{name}: {t.shape[0]} targets for {x.shape[0]} examples")
            if not np.all(np.equal(np.mod(t, 1), 0)):
                raise ValueError(f"{name}: class targets must be integers")
            t = t.astype(np.int64)
        else:
            t = None
        self.name = name
        self._inputs = x
        self._targets = t

    @property
    def example_count(self) -> int:
        return int(self._inputs.shape[0])

    @property
    def n_inputs(self) -> int:
        return int(self._inputs.shape[1])

    @property
    def has_targets(self) -> bool:
        return self._targets is not None

    @property
    def inputs(self) -> Any:
        return self._inputs

    @property
    def targets(self) -> Any:
        return self._targets

    def __len__(self) -> int:
        return self.example_count

    def select_example(self, index: int) -> Example:
        if index < 0 or index >= self.example_count:
            raise IndexError(f"{self.name}: example {index} out of range")
        target = int(self._targets[index]) if self._targets is not None else None
        return Example(index=index, inputs=self._inputs[index], target=target)

    def order(self, rng: Any = None) -> List[int]:
        indices = list(range(self.example_count))
        if rng is not None:
            rng.shuffle(indices)
        return indices

    def __iter__(self) -> Iterator[Example]:
        for index in range(self.example_count):
            yield self.select_example(index)

    def head(self, count: int) -> "ArrayDataSet":
        count = max(0, min(int(count), self.example_count))
        targets = self._targets[:count] if self._targets is not None else None
        return ArrayDataSet(self._inputs[:count], targets, name=self.name)


def _load_npz(path: Path) -> tuple[Any, Any]:
    with np.load(path) as data:
        if "inputs" not in data:
            raise ValueError(f"{path}: npz dataset requires an 'inputs' array")
        inputs = np.asarray(data["inputs"], dtype=np.float64)
        targets = np.asarray(data["targets"]) if "targets" in data else None
    return inputs, targets


def _load_jsonl(path: Path, max_load: int | None) -> tuple[Any, Any]:
    rows: List[List[float]] = []
    targets: List[int] = []
    with path.open("r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid JSONL at line {line_no}: {exc}") from exc
            values = record.get("inputs")
            if not isinstance(values, list):
                raise ValueError(f"dataset line {line_no}: missing 'inputs' list")
            if rows and len(values) != len(rows[0]):
                raise ValueError(
                    f"dataset line {line_no}: inputs length {len(values)} != {len(rows[0])}"
                )
            rows.append([float(v) for v in values])
            if "target" in record and record["target"] is not None:
                targets.append(int(record["target"]))
            if max_load is not None and len(rows) >= max_load:
                break
    if not rows:
        raise ValueError(f"{path}: dataset contains no examples")
    if targets and len(targets) != len(rows):
        raise ValueError(f"{path}: some records are missing 'target'")
    return np.asarray(rows, dtype=np.float64), (np.asarray(targets) if targets else None)


def _load_matrix(path: Path, n_inputs: int | None) -> tuple[Any, Any]:
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not lines:
        raise ValueError(f"{path}: empty matrix file")
    header = lines[0].split()
    if len(header) != 2:
        raise ValueError(f"{path}: matrix header must be '<rows> <cols>'")
    n_rows, n_cols = int(header[0]), int(header[1])
    body = np.asarray([[float(v) for v in line.split()] for line in lines[1:]], dtype=np.float64)
    if body.shape != (n_rows, n_cols):
        raise ValueError(f"{path}: matrix shape {body.shape} != header ({n_rows}, {n_cols})")
    if n_inputs is None:
        n_inputs = n_cols - 1
    if n_cols == n_inputs:
        return body, None
    if n_cols != n_inputs + 1:
        raise ValueError(f"{path}: {n_cols} columns for {n_inputs} inputs")
    return body[:, :n_inputs], body[:, n_inputs]


def load_dataset(
    path: str | Path,
    *,
    n_inputs: int | None = None,
    max_load: int | None = None,
    name: str | None = None,
) -> ArrayDataSet:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    if max_load is not None and max_load < 0:
        max_load = None
    suffix = path.suffix.lower()
    if suffix == ".npz":
        inputs, targets = _load_npz(path)
    elif suffix == ".jsonl":
        inputs, targets = _load_jsonl(path, max_load)
    else:
        inputs, targets = _load_matrix(path, n_inputs)
    if n_inputs is not None and inputs.shape[1] != n_inputs:
        raise ValueError(f"{path}: {inputs.shape[1]} inputs per example, expected {n_inputs}")
    dataset = ArrayDataSet(inputs, targets, name=name or path.stem)
    if max_load is not None:
        return dataset.head(max_load)
    return dataset
