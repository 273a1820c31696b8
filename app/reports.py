import argparse
import asyncio
import datetime as dt
import os
from typing import List

import pandas as pd
import pytz

from config import REPORT_DIR, REPORT_TZ
from domain import TripRecord
from store import TripStore

from logging_config import get_logger

logger = get_logger("reports", "reports.log")

REPORT_COLUMNS = [
    "trip_id", "start_time", "end_time", "duration", "distance",
    "max_speed", "avg_speed", "points", "category",
]


# ----------------- Formatting -----------------
def format_speed(speed_kmh: float) -> str:
    return f"{speed_kmh:.0f} km/h"


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{meters:.0f} m"
    return f"{meters / 1000:.1f} km"


def format_duration(millis: int) -> str:
    total_s = int(millis // 1000)
    hours, rem = divmod(total_s, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def speed_category(speed_kmh: float) -> str:
    if speed_kmh < 30:
        return "City (slow)"
    if speed_kmh < 50:
        return "City"
    if speed_kmh < 70:
        return "Urban"
    if speed_kmh < 90:
        return "Suburban"
    if speed_kmh < 110:
        return "Highway"
    if speed_kmh < 130:
        return "Fast Highway"
    return "Very Fast"


# ----------------- Report building -----------------
def trips_dataframe(records: List[TripRecord], tz_name: str = REPORT_TZ) -> pd.DataFrame:
    """
    One row per trip, times localized to `tz_name`. Active trips are listed
    with an empty end time.
    """
    tz = pytz.timezone(tz_name)
    rows = []
    for rec in records:
        start = pd.Timestamp(rec.start_time_ms, unit="ms", tz="UTC").tz_convert(tz)
        end = (
            pd.Timestamp(rec.end_time_ms, unit="ms", tz="UTC").tz_convert(tz)
            if rec.end_time_ms is not None else None
        )
        rows.append({
            "trip_id": rec.trip_id,
            "start_time": start,
            "end_time": end,
            "duration": format_duration(rec.duration_ms),
            "distance": format_distance(rec.distance_m),
            "max_speed": format_speed(rec.max_speed_kmh),
            "avg_speed": format_speed(rec.avg_speed_kmh),
            "points": rec.point_count,
            "category": speed_category(rec.avg_speed_kmh),
        })
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def build_excel(df: pd.DataFrame, records: List[TripRecord], out_path: str, tz_name: str = REPORT_TZ) -> str:
    summary = pd.DataFrame([{
        "total_trips": len(records),
        "total_distance_km": sum(r.distance_m for r in records) / 1000.0,
        "driving_hours": sum(r.duration_ms for r in records) / 3_600_000.0,
        "max_speed_kmh": max((r.max_speed_kmh for r in records), default=0.0),
        "still_active": sum(1 for r in records if r.active),
    }])

    # Excel has no timezone support: export local wall-clock time
    trips = df.copy()
    for col in ("start_time", "end_time"):
        trips[col] = pd.to_datetime(trips[col], utc=True).dt.tz_convert(tz_name).dt.tz_localize(None)

    with pd.ExcelWriter(out_path, engine="openpyxl") as writer:
        summary.to_excel(writer, sheet_name="Summary", index=False)
        trips.to_excel(writer, sheet_name="Trips", index=False)
    return out_path


def day_window(report_date: dt.date, tz_name: str = REPORT_TZ):
    """Local calendar day as a UTC [start, end) window."""
    tz = pytz.timezone(tz_name)
    start_local = tz.localize(dt.datetime.combine(report_date, dt.time.min))
    end_local = tz.localize(dt.datetime.combine(report_date + dt.timedelta(days=1), dt.time.min))
    return start_local.astimezone(pytz.utc), end_local.astimezone(pytz.utc)


async def daily_trip_report(report_date=None, out_dir: str = REPORT_DIR, store=None) -> pd.DataFrame:
    """
    report_date: date object for the day to report (defaults to yesterday, local time)
    Writes trips_<date>.csv and trips_<date>.xlsx into out_dir and returns the frame.
    """
    if store is None:
        store = TripStore()

    tz = pytz.timezone(REPORT_TZ)
    if report_date is None:
        report_date = (dt.datetime.now(tz) - dt.timedelta(days=1)).date()

    start, end = day_window(report_date)
    records = await store.trips_between(start, end)
    df = trips_dataframe(records)

    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, f"trips_{report_date.isoformat()}.csv")
    df.to_csv(path, index=False)
    build_excel(df, records, os.path.join(out_dir, f"trips_{report_date.isoformat()}.xlsx"))
    logger.info(f"[reports] {len(df)} trips for {report_date} written to {path}")
    return df


# ----------------- CLI -----------------
def parse_args():
    p = argparse.ArgumentParser(description="Write the trip report of one local day as CSV.")
    p.add_argument("date", nargs="?", default=None, help="YYYY-MM-DD, defaults to yesterday")
    p.add_argument("--out", default=REPORT_DIR, help="Output directory")
    return p.parse_args()


def main():
    args = parse_args()
    report_date = dt.date.fromisoformat(args.date) if args.date else None
    df = asyncio.run(daily_trip_report(report_date, args.out))
    print(df.to_string(index=False))


if __name__ == "__main__":
    main()
