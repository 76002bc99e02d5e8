from sae_trainer.runtime.clock import Clock, FakeClock, RealClock
from sae_trainer.runtime.logging import JsonlLogger

__all__ = ["Clock", "RealClock", "FakeClock", "JsonlLogger"]
