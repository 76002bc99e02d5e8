from __future__ import annotations

import argparse
import json
from pathlib import Path

from sae_trainer.config import load_trainspec
from sae_trainer.data.dataset import load_dataset
from sae_trainer.experiments.metrics import (
    classification_metrics,
    compute_metrics,
    load_events,
    reconstruction_metrics,
)
from sae_trainer.model.serialization import load_model
from sae_trainer.nn.criteria import RECONSTRUCTION_COSTS, reconstruction_criterion
from sae_trainer.training.runner import run_experiment


def _emit(report: object, out: str | None) -> None:
    output = json.dumps(report, indent=2)
    if out:
        Path(out).write_text(output, encoding="utf-8")
    else:
        print(output)


def _run_train(args: argparse.Namespace) -> int:
    spec = load_trainspec(args.spec)
    result = run_experiment(spec)
    report = {
        "run_id": result.run_id,
        "out_dir": str(result.out_dir),
        "log": str(result.log_path),
        "phases": [
            {
                "phase": phase.phase,
                "skipped": phase.skipped,
                "epochs": len(phase.epochs),
                "final_loss": phase.final_loss,
                "stopped_early": phase.stopped_early,
            }
            for phase in result.phases
        ],
        "models": sorted(result.manifests),
        "evaluations": result.evaluations,
    }
    _emit(report, args.out)
    return 0


def _run_evaluate(args: argparse.Namespace) -> int:
    model = load_model(args.model)
    dataset = load_dataset(args.data, n_inputs=model.registry.n_inputs, max_load=args.max_load)
    report = {}
    if dataset.has_targets:
        report["classification"] = classification_metrics(model, dataset)
    if args.recons_cost:
        criterion = reconstruction_criterion(args.recons_cost)
        report["reconstruction"] = reconstruction_metrics(model, dataset, criterion)
    _emit(report, args.out)
    return 0


def _run_metrics(args: argparse.Namespace) -> int:
    events = []
    for path in args.log:
        events.extend(load_events(path))
    grouped: dict[str, list[dict[str, object]]] = {}
    for event in events:
        run_id = str(event.get("run_id", "unknown"))
        grouped.setdefault(run_id, []).append(event)
    report = {run_id: compute_metrics(run_events) for run_id, run_events in grouped.items()}
    _emit(report, args.out)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="sae_trainer")
    sub = parser.add_subparsers(dest="cmd", required=True)

    train = sub.add_parser("train", help="train a stacked autoencoder from a trainspec")
    train.add_argument("--spec", required=True, help="path to a JSON or YAML trainspec")
    train.add_argument("--out", help="write the run summary here instead of stdout")
    train.set_defaults(func=_run_train)

    evaluate = sub.add_parser("evaluate", help="evaluate a saved model on a dataset")
    evaluate.add_argument("--model", required=True, help="saved model directory")
    evaluate.add_argument("--data", required=True, help="dataset file (.npz, .jsonl or matrix)")
    evaluate.add_argument("--max-load", type=int)
    evaluate.add_argument(
        "--recons-cost",
        choices=list(RECONSTRUCTION_COSTS),
        help="also report the reconstruction cost of every autoencoder",
    )
    evaluate.add_argument("--out")
    evaluate.set_defaults(func=_run_evaluate)

    metrics = sub.add_parser("metrics", help="summarise training JSONL logs")
    metrics.add_argument("--log", action="append", required=True, help="path to a JSONL log")
    metrics.add_argument("--out")
    metrics.set_defaults(func=_run_metrics)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
