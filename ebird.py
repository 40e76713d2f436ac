"""
ebird.py - Spreadsheet import and CSV export

Imported rows take the same path as photo batches: rows are grouped into
candidate outings (same date + same location), each group is matched
against stored outings, species names are normalized, and confirmed
observations are folded into the life list.
"""

import csv
import io
from datetime import datetime, timedelta
from typing import Optional

from dateutil import parser as date_parser
from dateutil import tz
from loguru import logger

import config as cfg
from clustering import find_matching_outing, parse_time
from ledger import reconcile
from models import Certainty, Cluster
from species import combine_names, display_name, normalize, scientific_name
from store import new_observation_id

IMPORT_NOTE = "Imported from eBird"

HEADER_ALIASES = {
    "species": ("common name", "species", "species name"),
    "scientific": ("scientific name", "species"),
    "date": ("date", "observation date", "obs date"),
    "location": ("location", "location name", "locality"),
    "count": ("count", "number"),
    "lat": ("latitude", "lat"),
    "lon": ("longitude", "lon", "lng"),
    "time": ("time", "start time"),
}


def _pick(row: dict, field: str) -> str:
    for header in HEADER_ALIASES[field]:
        value = (row.get(header) or "").strip()
        if value:
            return value
    return ""


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def parse_date(date_str: str, time_str: str = "", timezone_str: str = "UTC") -> datetime:
    """Parse a spreadsheet date (+ optional time); unparseable dates become now"""
    local_tz = tz.gettz(timezone_str) or tz.UTC
    text = f"{date_str} {time_str}".strip()
    try:
        dt = date_parser.parse(text)
    except (ValueError, OverflowError):
        logger.warning("Unparseable date '{}', using now", text)
        return datetime.now(local_tz)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=local_tz)
    return dt


def parse_ebird_csv(content: str, timezone_str: str = "UTC") -> list:
    """Parse CSV text into import preview rows; rows without species or date are dropped"""
    reader = csv.reader(io.StringIO(content.lstrip("\ufeff")))
    rows = [r for r in reader if any(cell.strip() for cell in r)]
    if not rows:
        return []

    headers = [h.strip().lower() for h in rows[0]]
    previews = []
    skipped = 0
    for values in rows[1:]:
        row = dict(zip(headers, values))
        common = _pick(row, "species")
        date_str = _pick(row, "date")
        if not common or not date_str:
            skipped += 1
            continue

        try:
            count = int(_pick(row, "count") or "1")
        except ValueError:
            # eBird uses "X" for present-but-uncounted
            count = 1

        previews.append({
            "species_name": combine_names(common, _pick(row, "scientific")),
            "date": parse_date(date_str, _pick(row, "time"), timezone_str).isoformat(),
            "location": _pick(row, "location") or "Unknown",
            "count": count,
            "lat": _to_float(_pick(row, "lat")),
            "lon": _to_float(_pick(row, "lon")),
        })

    if skipped:
        logger.info("Skipped {} CSV row(s) without species or date", skipped)
    return previews


def group_previews(previews: list) -> list:
    """Rows sharing a calendar date and location form one candidate outing"""
    groups = {}
    for preview in previews:
        key = (preview["date"][:10], preview["location"])
        groups.setdefault(key, []).append(preview)
    return list(groups.values())


def group_to_cluster(group: list) -> Cluster:
    """Time window and position of a group of rows; ends an hour after the last record"""
    times = sorted(parse_time(p["date"]) for p in group)
    located = [p for p in group if p.get("lat") is not None and p.get("lon") is not None]
    first = located[0] if located else {}
    return Cluster(
        items=tuple(group),
        start_time=times[0],
        end_time=times[-1] + timedelta(hours=1),
        center_lat=first.get("lat"),
        center_lon=first.get("lon"),
        located=1 if located else 0,
    )


def import_previews(store, previews: list, config: dict = None, normalizer=normalize) -> dict:
    """Commit parsed rows as outings + confirmed observations and update the life list"""
    config = config or cfg.load_config()
    summary = {"outings_created": 0, "outings_merged": 0, "observations": 0, "new_species": 0}

    for group in group_previews(previews):
        cluster = group_to_cluster(group)
        match = find_matching_outing(
            cluster, store.list_outings(), cfg.match_buffer(config), cfg.radius_km(config),
        )
        if match:
            outing = store.widen_outing_window(
                match["id"], cluster.start_time.isoformat(), cluster.end_time.isoformat(),
            )
            summary["outings_merged"] += 1
        else:
            location = group[0]["location"]
            outing = store.create_outing({
                "id": "",
                "start_time": cluster.start_time.isoformat(),
                "end_time": cluster.end_time.isoformat(),
                "location_name": location,
                "editable_location_name": location,
                "lat": cluster.center_lat,
                "lon": cluster.center_lon,
                "notes": IMPORT_NOTE,
                "created_at": datetime.now(tz.UTC).isoformat(),
            })
            summary["outings_created"] += 1

        # Same species twice in one checklist becomes one observation
        counts = {}
        for preview in group:
            name = normalizer(preview["species_name"])
            counts[name] = counts.get(name, 0) + preview["count"]

        observations = [
            {
                "id": new_observation_id(),
                "outing_id": outing["id"],
                "species_name": name,
                "count": count,
                "certainty": Certainty.CONFIRMED.value,
                "notes": "",
            }
            for name, count in counts.items()
        ]
        store.append_observations(observations)
        result = reconcile(store, outing["id"], observations)
        summary["observations"] += len(observations)
        summary["new_species"] += result["new_species_count"]

    return summary


def _write_csv(headers: list, rows: list) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


def export_outing_csv(outing: dict, observations: list) -> str:
    """eBird record format for one outing's confirmed observations"""
    start = parse_time(outing["start_time"])
    rows = []
    for obs in observations:
        if obs["certainty"] != Certainty.CONFIRMED.value:
            continue
        rows.append([
            display_name(obs["species_name"]),
            scientific_name(obs["species_name"]) or "",
            str(obs["count"]),
            outing.get("location_name", ""),
            f"{outing['lat']:.6f}" if outing.get("lat") is not None else "",
            f"{outing['lon']:.6f}" if outing.get("lon") is not None else "",
            start.strftime("%m/%d/%Y"),
            start.strftime("%H:%M"),
            "Incidental",
            obs.get("notes") or outing.get("notes", ""),
        ])
    headers = [
        "Common Name", "Species", "Count", "Location", "Latitude",
        "Longitude", "Date", "Time", "Protocol", "Comments",
    ]
    return _write_csv(headers, rows)


def export_dex_csv(dex: list) -> str:
    """The whole life list, one row per species"""
    rows = [
        [
            entry["species_name"],
            entry["first_seen_date"][:10],
            entry["last_seen_date"][:10],
            str(entry["total_outings"]),
            str(entry["total_count"]),
            entry.get("notes", ""),
        ]
        for entry in sorted(dex, key=lambda e: e["species_name"].lower())
    ]
    headers = ["Species Name", "First Seen Date", "Last Seen Date", "Total Outings", "Total Count", "Notes"]
    return _write_csv(headers, rows)
