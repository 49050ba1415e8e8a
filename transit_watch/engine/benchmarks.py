"""
Transit-time benchmarks.

Delivered shipments from a trailing window are reduced to average
transit days per (carrier, zone), (service option, zone) and per
international route. Entries are written as a full replace-by-key
upsert; one failing group never stops the others.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import pandas as pd

from transit_watch.config import Settings, get_settings
from transit_watch.engine.sweep import SweepRun
from transit_watch.schemas import DEFAULT_ZONE, ZONES, BenchmarkEntry, BenchmarkKind, ShipmentRecord, SweepSummary
from transit_watch.timeutils import fractional_days, utcnow

logger = logging.getLogger(__name__)

SWEEP_NAME = "calculate-benchmarks"

DOMESTIC_CAP_DAYS = 30
INTERNATIONAL_CAP_DAYS = 60
MIN_ROUTE_SAMPLES = 3
BUFFER = Decimal("1.30")
FALLBACK_DOMESTIC = 8
FALLBACK_INTERNATIONAL = 12


def round_half_up(value: float, places: int = 1) -> float:
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def route_key(carrier: str, origin: str, destination: str) -> str:
    return f"{carrier}:{origin}:{destination}"


def buffered_threshold(average: float) -> int:
    # Decimal keeps 10.0 * 1.3 at exactly 13 before the ceiling.
    return int(math.ceil(Decimal(str(average)) * BUFFER))


def transit_frame(shipments: list[ShipmentRecord]) -> pd.DataFrame:
    rows = [
        {
            "carrier": s.carrier,
            "ship_option": s.ship_option,
            "zone": s.zone,
            "origin": s.origin_country,
            "destination": s.destination_country,
            "international": s.is_international,
            "transit_days": fractional_days(s.label_created_at, s.delivered_at),
        }
        for s in shipments
        if s.label_created_at and s.delivered_at
    ]
    columns = ["carrier", "ship_option", "zone", "origin", "destination", "international", "transit_days"]
    return pd.DataFrame(rows, columns=columns)


def zone_entries(df: pd.DataFrame, kind: BenchmarkKind, column: str, now: datetime) -> dict[str, BenchmarkEntry]:
    """Per-zone averages for every value of `column` (carrier or ship option)."""
    if df.empty:
        return {}
    sample = df[(df["transit_days"] > 0) & (df["transit_days"] <= DOMESTIC_CAP_DAYS)]
    sample = sample[sample[column].notna() & sample["zone"].isin(list(ZONES))]

    entries: dict[str, BenchmarkEntry] = {}
    for (key, zone), grp in sample.groupby([column, "zone"]):
        key = str(key)
        entry = entries.get(key)
        if entry is None:
            display = key if kind == BenchmarkKind.CARRIER_SERVICE else f"Ship Option {key}"
            entry = entries[key] = BenchmarkEntry(kind=kind, key=key, display_name=display, calculated_at=now)
        zone = int(zone)
        entry.zone_averages[zone] = round_half_up(grp["transit_days"].mean())
        entry.zone_counts[zone] = int(len(grp))
    return entries


def route_entries(df: pd.DataFrame, now: datetime) -> dict[str, BenchmarkEntry]:
    if df.empty:
        return {}
    sample = df[df["international"] & (df["transit_days"] > 0) & (df["transit_days"] <= INTERNATIONAL_CAP_DAYS)]
    sample = sample[sample["carrier"].notna()]

    entries: dict[str, BenchmarkEntry] = {}
    for (carrier, origin, dest), grp in sample.groupby(["carrier", "origin", "destination"]):
        if len(grp) < MIN_ROUTE_SAMPLES:
            continue
        key = route_key(carrier, origin, dest)
        entries[key] = BenchmarkEntry(
            kind=BenchmarkKind.INTERNATIONAL_ROUTE,
            key=key,
            display_name=f"{carrier}: {origin} -> {dest}",
            zone_averages={1: round_half_up(grp["transit_days"].mean())},
            zone_counts={1: int(len(grp))},
            calculated_at=now,
        )
    return entries


def compute_benchmarks(shipments: list[ShipmentRecord], now: datetime) -> list[BenchmarkEntry]:
    df = transit_frame(shipments)
    out: list[BenchmarkEntry] = []
    out.extend(zone_entries(df, BenchmarkKind.CARRIER_SERVICE, "carrier", now).values())
    out.extend(zone_entries(df, BenchmarkKind.SHIP_OPTION, "ship_option", now).values())
    out.extend(route_entries(df, now).values())
    return out


def run_benchmark_recompute(
    repo,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    run: Optional[SweepRun] = None,
) -> SweepSummary:
    settings = settings or get_settings()
    now = now or utcnow()
    run = run or SweepRun(SWEEP_NAME, settings.sweep_budget_seconds, settings.max_reported_errors)

    try:
        since = now - timedelta(days=settings.benchmark_window_days)
        shipments = repo.fetch_delivered_shipments(since)
        run.count("samples", len(shipments))
        logger.info("[%s] %d delivered shipments since %s", SWEEP_NAME, len(shipments), since.date())

        for entry in compute_benchmarks(shipments, now):
            if run.out_of_time():
                break
            try:
                repo.upsert_benchmark(entry)
                run.count(entry.kind.value)
            except Exception as e:
                run.error(f"{entry.kind.value}/{entry.key}", str(e))
    except Exception as e:
        run.fail(e)
    return run.summary()


# ============================================================================
# Read side: one immutable snapshot per sweep
# ============================================================================

@dataclass(frozen=True)
class ThresholdDecision:
    threshold: int
    benchmark_average: Optional[float]
    source: str


class BenchmarkSnapshot:
    """Read-only benchmark lookup, loaded once per sweep."""

    def __init__(self, entries: list[BenchmarkEntry]):
        self._entries = {(e.kind, e.key): e for e in entries}

    @classmethod
    def load(cls, repo) -> "BenchmarkSnapshot":
        return cls(repo.list_benchmarks())

    def __len__(self):
        return len(self._entries)

    def zone_average(self, kind: BenchmarkKind, key: Optional[str], zone: int) -> Optional[float]:
        if key is None:
            return None
        entry = self._entries.get((kind, str(key)))
        return entry.average_for(zone) if entry else None

    def route_average(self, carrier: Optional[str], origin: Optional[str], dest: Optional[str]) -> Optional[float]:
        if not (carrier and origin and dest):
            return None
        return self.zone_average(BenchmarkKind.INTERNATIONAL_ROUTE, route_key(carrier, origin, dest), 1)

    def threshold_for(self, shipment: ShipmentRecord) -> ThresholdDecision:
        if shipment.is_international:
            avg = self.route_average(shipment.carrier, shipment.origin_country, shipment.destination_country)
            if avg:
                return ThresholdDecision(buffered_threshold(avg), avg, "international_route")
            return ThresholdDecision(FALLBACK_INTERNATIONAL, None, "fallback")

        zone = shipment.zone if shipment.zone in ZONES else DEFAULT_ZONE
        avg = self.zone_average(BenchmarkKind.CARRIER_SERVICE, shipment.carrier, zone)
        if avg:
            return ThresholdDecision(buffered_threshold(avg), avg, "carrier_service")
        avg = self.zone_average(BenchmarkKind.SHIP_OPTION, shipment.ship_option, zone)
        if avg:
            return ThresholdDecision(buffered_threshold(avg), avg, "ship_option")
        return ThresholdDecision(FALLBACK_DOMESTIC, None, "fallback")

    def typical_transit_days(self, shipment: ShipmentRecord) -> Optional[float]:
        return self.threshold_for(shipment).benchmark_average
