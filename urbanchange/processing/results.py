"""
Result records and the ordered, immutable result table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

AREA = "area"
CHANGE = "change"

AREA_FIELDS = ("urban_area_km2",)
CHANGE_FIELDS = ("loss_km2", "gain_km2", "stable_km2")

NO_DATA_LABEL = "no data"

_KIND_ORDER = {AREA: 0, CHANGE: 1}


class RecordStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"
    RESOURCE_EXCEEDED = "resource_exceeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ResultRecord:
    """One (year, configuration) or (year pair, configuration) outcome.

    Values of failed records are None, never 0.
    """

    kind: str
    year: int
    configuration: str
    values: Mapping[str, Optional[float]]
    status: RecordStatus = RecordStatus.OK
    image_count: Optional[int] = None
    baseline_year: Optional[int] = None
    baseline_image_count: Optional[int] = None
    message: Optional[str] = None
    processing_time: float = field(default=0.0, compare=False)

    def __post_init__(self):
        if self.kind not in _KIND_ORDER:
            raise ValueError(f"Unknown record kind '{self.kind}'")
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "status", RecordStatus(self.status))

    @classmethod
    def failed(
        cls,
        kind: str,
        year: int,
        configuration: str,
        status: RecordStatus,
        message: str,
        **kwargs,
    ) -> "ResultRecord":
        fields = AREA_FIELDS if kind == AREA else CHANGE_FIELDS
        return cls(kind, year, configuration, {f: None for f in fields}, status, message=message, **kwargs)

    @property
    def ok(self) -> bool:
        return self.status == RecordStatus.OK

    def value(self, name: str) -> Optional[float]:
        return self.values.get(name)

    def as_dict(self) -> Dict:
        row = {
            "kind": self.kind,
            "year": self.year,
            "baseline_year": self.baseline_year,
            "configuration": self.configuration,
            "status": self.status.value,
            "image_count": self.image_count,
            "baseline_image_count": self.baseline_image_count,
        }
        row.update(self.values)
        row["message"] = self.message
        return row


class ResultTable:
    """
    Ordered, read-only collection of result records.

    Records are sorted by kind (area first), year, baseline year and the
    configuration order given at construction.
    """

    def __init__(self, records: Iterable[ResultRecord], configuration_order: Sequence[str] = None):
        records = list(records)
        order = list(configuration_order or [])
        for record in records:
            if record.configuration not in order:
                order.append(record.configuration)
        rank = {name: i for i, name in enumerate(order)}
        self._configuration_order = tuple(order)
        self._records = tuple(
            sorted(
                records,
                key=lambda r: (
                    _KIND_ORDER[r.kind],
                    r.year,
                    r.baseline_year if r.baseline_year is not None else -1,
                    rank[r.configuration],
                ),
            )
        )

    def __iter__(self) -> Iterator[ResultRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> ResultRecord:
        return self._records[index]

    @property
    def records(self) -> tuple:
        return self._records

    @property
    def configurations(self) -> tuple:
        return self._configuration_order

    @property
    def years(self) -> List[int]:
        return sorted({r.year for r in self._records if r.kind == AREA})

    def area_records(self) -> List[ResultRecord]:
        return [r for r in self._records if r.kind == AREA]

    def change_records(self) -> List[ResultRecord]:
        return [r for r in self._records if r.kind == CHANGE]

    def failures(self) -> List[ResultRecord]:
        return [r for r in self._records if not r.ok]

    def get(self, kind: str, year: int, configuration: str, baseline_year: int = None) -> Optional[ResultRecord]:
        for record in self._records:
            if (
                record.kind == kind
                and record.year == year
                and record.configuration == configuration
                and (baseline_year is None or record.baseline_year == baseline_year)
            ):
                return record
        return None

    def area(self, year: int, configuration: str) -> Optional[float]:
        record = self.get(AREA, year, configuration)
        return None if record is None else record.value("urban_area_km2")

    def to_dataframe(self, kind: str = None) -> pd.DataFrame:
        """Long-form table; missing values are NaN, or <NA> in the integer count columns."""
        rows = [r.as_dict() for r in self._records if kind is None or r.kind == kind]
        columns = [
            "kind", "year", "baseline_year", "configuration", "status",
            "image_count", "baseline_image_count",
            *AREA_FIELDS, *CHANGE_FIELDS, "message",
        ]
        df = pd.DataFrame(rows, columns=columns)
        for col in (*AREA_FIELDS, *CHANGE_FIELDS):
            df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)
        for col in ("baseline_year", "image_count", "baseline_image_count"):
            df[col] = pd.to_numeric(df[col], errors="coerce").astype("Int64")
        if kind == AREA:
            df = df.drop(columns=["baseline_year", "baseline_image_count", *CHANGE_FIELDS])
        elif kind == CHANGE:
            df = df.drop(columns=[*AREA_FIELDS])
        return df

    def pivot(self, value: str = "urban_area_km2", prefix: str = "urban_") -> pd.DataFrame:
        """Wide year x configuration table, one column per configuration.

        Includes an ``image_count`` column taken from the area records.
        """
        area = self.to_dataframe(AREA)
        if area.empty:
            return pd.DataFrame(columns=["year", "image_count"])
        wide = area.pivot(index="year", columns="configuration", values=value)
        wide = wide.reindex(columns=[c for c in self._configuration_order if c in wide.columns])
        wide.columns = [f"{prefix}{c}" for c in wide.columns]
        counts = area.groupby("year")["image_count"].first().astype(float)
        wide.insert(0, "image_count", counts)
        return wide.reset_index()

    def to_text(self) -> str:
        """Human-readable listing; failed cells read 'no data'."""
        sections = []
        area = self.to_dataframe(AREA)
        if not area.empty:
            sections.append("Urban area by year (km²)")
            sections.append(
                area.drop(columns=["kind", "message"]).to_string(
                    index=False, na_rep=NO_DATA_LABEL, float_format=lambda v: f"{v:.4f}"
                )
            )
        change = self.to_dataframe(CHANGE)
        if not change.empty:
            sections.append("")
            sections.append("Built-up change between years (km²)")
            sections.append(
                change.drop(columns=["kind", "message"]).to_string(
                    index=False, na_rep=NO_DATA_LABEL, float_format=lambda v: f"{v:.4f}"
                )
            )
        failures = self.failures()
        if failures:
            sections.append("")
            sections.append("Records without data:")
            for record in failures:
                label = f"{record.baseline_year}->{record.year}" if record.baseline_year else str(record.year)
                sections.append(f"  [{record.kind}] {label} {record.configuration}: {record.status.value} ({record.message})")
        return "\n".join(sections)

    def to_csv(self, path: str) -> str:
        self.to_dataframe().to_csv(path, index=False)
        logger.info(f"Result table written to {path}")
        return str(path)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {status.value: 0 for status in RecordStatus}
        for record in self._records:
            counts[record.status.value] += 1
        return counts

