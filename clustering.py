"""
clustering.py - Group captured photos into outings and match them to history

Clustering is a greedy single pass over the photos in capture order: a photo
joins the current cluster when it was taken soon after the cluster's latest
photo and (when both have GPS) close to the cluster's running centroid.
Results are deterministic for a given input order.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil import parser as date_parser
from loguru import logger

from models import CapturedItem, Cluster

EARTH_RADIUS_KM = 6371.0
DEFAULT_TIME_GAP = timedelta(hours=5)
DEFAULT_RADIUS_KM = 6.0
DEFAULT_MATCH_BUFFER = timedelta(hours=5)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def parse_time(value) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are taken as UTC"""
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else date_parser.isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def start_cluster(item: CapturedItem) -> Cluster:
    """A one-item cluster"""
    return Cluster(
        items=(item,),
        start_time=item.captured_at,
        end_time=item.captured_at,
        center_lat=item.lat if item.has_location else None,
        center_lon=item.lon if item.has_location else None,
        located=1 if item.has_location else 0,
    )


def add_item(cluster: Cluster, item: CapturedItem) -> Cluster:
    """Return a new cluster with `item` folded into the window and centroid"""
    start, end = cluster.start_time, cluster.end_time
    if item.captured_at is not None:
        start = item.captured_at if start is None else min(start, item.captured_at)
        end = item.captured_at if end is None else max(end, item.captured_at)

    center_lat, center_lon, located = cluster.center_lat, cluster.center_lon, cluster.located
    if item.has_location:
        if located == 0:
            center_lat, center_lon = item.lat, item.lon
        else:
            # Incremental arithmetic mean
            center_lat = center_lat + (item.lat - center_lat) / (located + 1)
            center_lon = center_lon + (item.lon - center_lon) / (located + 1)
        located += 1

    return Cluster(
        items=cluster.items + (item,),
        start_time=start,
        end_time=end,
        center_lat=center_lat,
        center_lon=center_lon,
        located=located,
    )


def belongs_to(
    cluster: Cluster,
    item: CapturedItem,
    max_gap: timedelta = DEFAULT_TIME_GAP,
    radius_km: float = DEFAULT_RADIUS_KM,
) -> bool:
    """Whether `item` continues the outing that `cluster` describes"""
    if cluster.end_time is not None and item.captured_at is not None:
        if item.captured_at - cluster.end_time > max_gap:
            return False

    # Missing GPS on either side never splits an outing
    if cluster.has_location and item.has_location:
        distance = haversine_km(cluster.center_lat, cluster.center_lon, item.lat, item.lon)
        return distance <= radius_km

    return True


def cluster_items(
    items: list,
    max_gap: timedelta = DEFAULT_TIME_GAP,
    radius_km: float = DEFAULT_RADIUS_KM,
) -> list:
    """
    Partition captured items into clusters, earliest outing first.

    Items without a capture time cannot be placed on the timeline; they trail
    the timed clusters in arrival order, split only by distance.
    """
    if not items:
        return []

    timed = sorted((i for i in items if i.captured_at is not None), key=lambda i: i.captured_at)
    untimed = [i for i in items if i.captured_at is None]
    if timed and untimed:
        logger.info("{} photo(s) have no capture time; grouping them separately", len(untimed))

    clusters = _split(timed, max_gap, radius_km) + _split(untimed, max_gap, radius_km)
    logger.debug("Clustered {} item(s) into {} outing(s)", len(items), len(clusters))
    return clusters


def _split(ordered: list, max_gap: timedelta, radius_km: float) -> list:
    clusters = []
    current = None
    for item in ordered:
        if current is None:
            current = start_cluster(item)
        elif belongs_to(current, item, max_gap, radius_km):
            current = add_item(current, item)
        else:
            clusters.append(current)
            current = start_cluster(item)
    if current is not None:
        clusters.append(current)
    return clusters


def find_matching_outing(
    cluster: Cluster,
    outings: list,
    buffer: timedelta = DEFAULT_MATCH_BUFFER,
    radius_km: float = DEFAULT_RADIUS_KM,
) -> Optional[dict]:
    """
    Find the stored outing a new cluster belongs to, if any.

    Match criteria:
    - cluster window overlaps the outing window, widened by `buffer` each side
    - both lack GPS, or their centres are within `radius_km`
    Among several matches, the outing whose start is closest to the
    cluster's start wins.
    """
    if cluster.start_time is None:
        return None
    cluster_start = parse_time(cluster.start_time)
    cluster_end = parse_time(cluster.end_time)

    best = None
    best_delta = None
    for outing in outings:
        outing_start = parse_time(outing["start_time"])
        outing_end = parse_time(outing["end_time"])

        if cluster_start > outing_end + buffer or cluster_end < outing_start - buffer:
            continue

        outing_located = outing.get("lat") is not None and outing.get("lon") is not None
        if cluster.has_location and outing_located:
            distance = haversine_km(cluster.center_lat, cluster.center_lon, outing["lat"], outing["lon"])
            if distance > radius_km:
                continue
        elif cluster.has_location or outing_located:
            continue

        delta = abs(cluster_start - outing_start)
        if best is None or delta < best_delta:
            best, best_delta = outing, delta

    if best is not None:
        logger.info("Cluster starting {} matches outing {}", cluster_start.isoformat(), best["id"])
    return best


def widened_window(outing: dict, start: datetime, end: datetime) -> tuple:
    """Union of an outing's stored window and a new one; never shrinks"""
    outing_start = parse_time(outing["start_time"])
    outing_end = parse_time(outing["end_time"])
    return min(outing_start, parse_time(start)), max(outing_end, parse_time(end))


def format_outing_time(start_time: str, end_time: str) -> str:
    """Human-readable outing window, e.g. 'Jan 15, 2026 07:30 - 09:10'"""
    start = date_parser.isoparse(start_time)
    end = date_parser.isoparse(end_time)
    if start.date() == end.date():
        return f"{start.strftime('%b %d, %Y %H:%M')} - {end.strftime('%H:%M')}"
    return f"{start.strftime('%b %d, %Y %H:%M')} - {end.strftime('%b %d, %Y %H:%M')}"
