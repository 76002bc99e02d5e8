from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from sae_trainer.config.trainspec import TrainSpec
from sae_trainer.runtime.clock import Clock, RealClock


class JsonlLogger:
    def __init__(
        self,
        out_dir: str | Path,
        run_id: str,
        clock: Clock | None = None,
    ) -> None:
        self._dir = Path(out_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._path = self._dir / f"{run_id}_train.jsonl"
        self._clock = clock or RealClock()
        self._run_id = run_id
        self._fh = self._path.open("a", encoding="utf-8")

    @property
    def path(self) -> Path:
        return self._path

    def _base_event(self, event: str) -> Dict[str, Any]:
        return {
            "ts_ms": self._clock.now_ms(),
            "run_id": self._run_id,
            "event": event,
        }

    def log_run_start(self, spec: TrainSpec, model_fingerprint: str | None = None) -> None:
        payload = self._base_event("run_start")
        payload["trainspec"] = spec.as_dict()
        payload["model_fingerprint"] = model_fingerprint
        self._write(payload)

    def log_event(self, event: str, fields: Dict[str, Any]) -> None:
        payload = self._base_event(event)
        payload.update(fields)
        self._write(payload)

    def _write(self, payload: Dict[str, Any]) -> None:
        self._fh.write(json.dumps(payload, ensure_ascii=True) + "\n")
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "JsonlLogger":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
