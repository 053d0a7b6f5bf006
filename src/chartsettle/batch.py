from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .aggregator import ErrorAggregator
from .charts import output_path_for
from .config import AppConfig
from .models import BatchState
from .slots import SlotManager
from .store import JobStore


@dataclass(slots=True)
class Batch:
    """Everything one conversion run owns, shared by reference."""

    config: AppConfig
    store: JobStore
    aggregator: ErrorAggregator
    slots: SlotManager
    state: BatchState = BatchState.RUNNING

    @classmethod
    def create(cls, sources: Sequence[str | Path], config: AppConfig) -> Batch:
        directory = config.output.directory

        def output_for(source: str) -> str:
            return str(output_path_for(source, directory))

        return cls(
            config=config,
            store=JobStore([str(source) for source in sources], output_for),
            aggregator=ErrorAggregator(),
            slots=SlotManager(config.slots),
        )
