"""Partition selection loaded from partitions.yaml.

Supports:
- Discovery: every (exchange, instrument) found in the raw table
- Explicit partitions, each with an optional batch size override
- A disable list with "exchange/*" wildcards
- No YAML file = discover everything, nothing disabled

Example:
    discover: false
    partitions:
      - exchange: bitflyer
        instrument: FX_BTC_JPY
        batch_max_rows: 50000
      - exchange: liquid
    disabled:
      - mex/*
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, field_validator, model_validator

from compactor.models import ALL_INSTRUMENTS, PartitionKey

logger = logging.getLogger(__name__)


class PartitionEntry(BaseModel):
    """A single partition entry in the YAML config."""

    exchange: str
    instrument: str = ALL_INSTRUMENTS
    enabled: bool = True
    batch_max_rows: int | None = None

    @field_validator("batch_max_rows")
    @classmethod
    def _check_batch(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("batch_max_rows must be >= 1")
        return value

    @property
    def key(self) -> PartitionKey:
        return PartitionKey(self.exchange, self.instrument)


class PartitionConfig(BaseModel):
    """Top-level partitions.yaml configuration."""

    discover: bool = True
    partitions: list[PartitionEntry] = []
    disabled: list[str] = []

    @model_validator(mode="after")
    def _validate(self):
        if not self.discover and not self.partitions:
            raise ValueError(
                "discover=false requires at least one entry in 'partitions'"
            )
        for pattern in self.disabled:
            PartitionKey.parse(pattern)
        keys = [p.key for p in self.partitions]
        if len(keys) != len(set(keys)):
            raise ValueError("duplicate entries in 'partitions'")
        return self

    def is_disabled(self, key: PartitionKey) -> bool:
        for pattern in self.disabled:
            disabled = PartitionKey.parse(pattern)
            if disabled.exchange != key.exchange:
                continue
            if disabled.instrument in (ALL_INSTRUMENTS, key.instrument):
                return True
        entry = self._entry(key)
        return entry is not None and not entry.enabled

    def _entry(self, key: PartitionKey) -> PartitionEntry | None:
        # An exact entry wins over the exchange's wildcard entry
        fallback = None
        for entry in self.partitions:
            if entry.key == key:
                return entry
            if entry.exchange == key.exchange and entry.instrument == ALL_INSTRUMENTS:
                fallback = entry
        return fallback

    def batch_rows_for(self, key: PartitionKey, default: int) -> int:
        entry = self._entry(key)
        if entry is not None and entry.batch_max_rows is not None:
            return entry.batch_max_rows
        return default

    def needs_discovery(self, explicit: list[PartitionKey] | None = None) -> bool:
        """Whether selecting partitions requires listing the source."""
        if explicit:
            return any(k.instrument == ALL_INSTRUMENTS for k in explicit)
        return self.discover or any(p.instrument == ALL_INSTRUMENTS for p in self.partitions)

    def resolve(self, discovered: list[PartitionKey]) -> list[PartitionKey]:
        """Combine discovered and configured partitions, minus disabled ones."""
        keys = set(expand_wildcards([p.key for p in self.partitions], discovered))
        if self.discover:
            keys.update(discovered)
        return sorted(k for k in keys if not self.is_disabled(k))

    def select(
        self,
        discovered: list[PartitionKey],
        explicit: list[PartitionKey] | None = None,
    ) -> list[PartitionKey]:
        """Partitions to process; an explicit list bypasses the file."""
        if explicit:
            return expand_wildcards(explicit, discovered)
        return self.resolve(discovered)


def expand_wildcards(
    keys: list[PartitionKey], discovered: list[PartitionKey]
) -> list[PartitionKey]:
    """Replace "exchange/*" keys with that exchange's discovered instruments.

    A wildcard discovery itself reports (a source without an instrument
    column) is kept as is.
    """
    found = set(discovered)
    result: set[PartitionKey] = set()
    for key in keys:
        if key.instrument != ALL_INSTRUMENTS or key in found:
            result.add(key)
            continue
        matches = {k for k in found if k.exchange == key.exchange}
        if not matches:
            logger.warning("No instruments discovered for %s", key)
        result.update(matches)
    return sorted(result)


_DEFAULT_PATH = Path("partitions.yaml")


def load_partition_config(path: Path | None = None) -> PartitionConfig:
    """Load partition selection from YAML file.

    Falls back to defaults (discover all, none disabled) if the file
    doesn't exist.
    """
    config_path = path or _DEFAULT_PATH

    if not config_path.exists():
        logger.info(
            "No partitions.yaml found at %s, discovering all partitions",
            config_path,
        )
        return PartitionConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = PartitionConfig(**raw)
    logger.info(
        "Loaded partition config: discover=%s, %d explicit, %d disabled",
        config.discover,
        len(config.partitions),
        len(config.disabled),
    )
    return config
