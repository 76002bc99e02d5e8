import json
from pathlib import Path

import numpy as np
import pytest

from sae_trainer.data.dataset import ArrayDataSet, load_dataset


def test_array_dataset_basics() -> None:
    data = ArrayDataSet(np.arange(12.0).reshape(4, 3), [0, 1, 1, 0], name="train")
    assert data.example_count == 4 and len(data) == 4
    assert data.n_inputs == 3
    example = data.select_example(2)
    assert example.index == 2 and example.target == 1
    assert np.array_equal(example.inputs, [6.0, 7.0, 8.0])
    assert [e.index for e in data] == [0, 1, 2, 3]
    assert data.order() == [0, 1, 2, 3]
    shuffled = data.order(np.random.default_rng(0))
    assert sorted(shuffled) == [0, 1, 2, 3]
    head = data.head(2)
    assert head.example_count == 2 and list(head.targets) == [0, 1]
    assert data.head(10).example_count == 4
    with pytest.raises(IndexError, match="example 4 out of range"):
        data.select_example(4)


def test_unlabeled_dataset() -> None:
    data = ArrayDataSet(np.zeros((2, 3)))
    assert not data.has_targets
    assert data.select_example(0).target is None
    assert data.head(1).targets is None


@pytest.mark.parametrize(
    "inputs,targets,match",
    [
        (np.zeros(3), None, "inputs must be a 2D array"),
        (np.zeros((2, 3)), [0], "1 targets for 2 examples"),
        (np.zeros((2, 3)), [0.5, 1.0], "class targets must be integers"),
    ],
)
def test_array_dataset_errors(inputs: object, targets: object, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        ArrayDataSet(inputs, targets)


def test_load_npz(tmp_path: Path) -> None:
    path = tmp_path / "train.npz"
    np.savez(path, inputs=np.ones((5, 4)), targets=np.array([0, 1, 2, 1, 0]))
    data = load_dataset(path, n_inputs=4, max_load=3)
    assert data.name == "train"
    assert data.example_count == 3
    assert list(data.targets) == [0, 1, 2]
    assert load_dataset(path, max_load=-1).example_count == 5
    np.savez(tmp_path / "bad.npz", x=np.ones((2, 2)))
    with pytest.raises(ValueError, match="requires an 'inputs' array"):
        load_dataset(tmp_path / "bad.npz")


def test_load_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "valid.jsonl"
    rows = [{"inputs": [0.1, 0.2], "target": 1}, {"inputs": [0.3, 0.4], "target": 0}]
    path.write_text("\n".join(json.dumps(row) for row in rows) + "\n\n", encoding="utf-8")
    data = load_dataset(path, name="valid")
    assert data.example_count == 2
    assert list(data.targets) == [1, 0]
    assert load_dataset(path, max_load=1).example_count == 1


@pytest.mark.parametrize(
    "content,match",
    [
        ('{"inputs": [1, 2]}\nnot json\n', "invalid JSONL at line 2"),
        ('{"values": [1, 2]}\n', "missing 'inputs' list"),
        ('{"inputs": [1, 2]}\n{"inputs": [1]}\n', "inputs length 1 != 2"),
        ('{"inputs": [1, 2], "target": 0}\n{"inputs": [1, 2]}\n', "missing 'target'"),
        ("\n", "contains no examples"),
    ],
)
def test_jsonl_errors(tmp_path: Path, content: str, match: str) -> None:
    path = tmp_path / "data.jsonl"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError, match=match):
        load_dataset(path)


def test_load_matrix_with_class_column(tmp_path: Path) -> None:
    path = tmp_path / "train.txt"
    path.write_text("3 3\n0.1 0.2 1\n0.3 0.4 0\n0.5 0.6 1\n", encoding="utf-8")
    labeled = load_dataset(path, n_inputs=2)
    assert labeled.has_targets
    assert list(labeled.targets) == [1, 0, 1]
    assert np.allclose(labeled.inputs[2], [0.5, 0.6])
    unlabeled = load_dataset(path, n_inputs=3)
    assert not unlabeled.has_targets


@pytest.mark.parametrize(
    "content,match",
    [
        ("", "empty matrix file"),
        ("3\n1 2 3\n", "header must be"),
        ("2 2\n1 2\n", r"matrix shape \(1, 2\) != header \(2, 2\)"),
        ("1 4\n1 2 3 4\n", "4 columns for 2 inputs"),
    ],
)
def test_matrix_errors(tmp_path: Path, content: str, match: str) -> None:
    path = tmp_path / "data.txt"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError, match=match):
        load_dataset(path, n_inputs=2)


def test_input_width_mismatch_and_missing_file(tmp_path: Path) -> None:
    path = tmp_path / "train.npz"
    np.savez(path, inputs=np.ones((2, 3)))
    with pytest.raises(ValueError, match="3 inputs per example, expected 4"):
        load_dataset(path, n_inputs=4)
    with pytest.raises(FileNotFoundError):
        load_dataset(tmp_path / "nope.npz")
