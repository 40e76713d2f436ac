"""
Unit tests for clustering.py - photo clustering and outing matching

Run with: uv run pytest tests/ -v
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from clustering import (
    add_item,
    belongs_to,
    cluster_items,
    find_matching_outing,
    format_outing_time,
    haversine_km,
    parse_time,
    start_cluster,
    widened_window,
)
from models import CapturedItem, Cluster

T0 = datetime(2026, 5, 3, 7, 0, tzinfo=timezone.utc)
HOME = (39.7392, -104.9903)


def item(item_id, minutes=None, lat=None, lon=None):
    captured = T0 + timedelta(minutes=minutes) if minutes is not None else None
    return CapturedItem(id=item_id, captured_at=captured, lat=lat, lon=lon)


def outing(outing_id, start_minutes, end_minutes, lat=None, lon=None):
    return {
        "id": outing_id,
        "start_time": (T0 + timedelta(minutes=start_minutes)).isoformat(),
        "end_time": (T0 + timedelta(minutes=end_minutes)).isoformat(),
        "lat": lat,
        "lon": lon,
    }


class TestHaversine:
    """Tests for great-circle distance"""

    def test_same_point(self):
        assert haversine_km(*HOME, *HOME) == 0

    def test_one_degree_latitude(self):
        assert haversine_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.1)

    def test_symmetric(self):
        a = haversine_km(39.7, -105.0, 40.0, -105.3)
        b = haversine_km(40.0, -105.3, 39.7, -105.0)
        assert a == pytest.approx(b)


class TestParseTime:
    """Tests for parse_time"""

    def test_none_and_empty(self):
        assert parse_time(None) is None
        assert parse_time("") is None

    def test_naive_is_utc(self):
        assert parse_time("2026-05-03T07:00:00") == T0

    def test_offset_preserved(self):
        dt = parse_time("2026-05-03T01:00:00-06:00")
        assert dt == T0

    def test_datetime_passthrough(self):
        assert parse_time(T0) is T0


class TestClusterBuilding:
    """Tests for start_cluster / add_item"""

    def test_start_cluster(self):
        cluster = start_cluster(item("a", 0, *HOME))
        assert cluster.start_time == cluster.end_time == T0
        assert (cluster.center_lat, cluster.center_lon) == HOME
        assert cluster.located == 1

    def test_centroid_is_running_mean(self):
        cluster = start_cluster(item("a", 0, 10.0, 20.0))
        cluster = add_item(cluster, item("b", 10, 12.0, 22.0))
        cluster = add_item(cluster, item("c", 20, 14.0, 24.0))
        assert cluster.center_lat == pytest.approx(12.0)
        assert cluster.center_lon == pytest.approx(22.0)
        assert cluster.located == 3

    def test_unlocated_item_keeps_centroid(self):
        cluster = start_cluster(item("a", 0, *HOME))
        cluster = add_item(cluster, item("b", 10))
        assert (cluster.center_lat, cluster.center_lon) == HOME
        assert cluster.located == 1
        assert cluster.end_time == T0 + timedelta(minutes=10)

    def test_first_location_sets_centroid(self):
        cluster = start_cluster(item("a", 0))
        assert not cluster.has_location
        cluster = add_item(cluster, item("b", 5, *HOME))
        assert (cluster.center_lat, cluster.center_lon) == HOME

    def test_add_item_returns_new_cluster(self):
        cluster = start_cluster(item("a", 0))
        grown = add_item(cluster, item("b", 5))
        assert len(cluster.items) == 1
        assert len(grown.items) == 2


class TestBelongsTo:
    """Tests for the join rule"""

    def test_within_gap(self):
        cluster = start_cluster(item("a", 0))
        assert belongs_to(cluster, item("b", 300))

    def test_beyond_gap(self):
        cluster = start_cluster(item("a", 0))
        assert not belongs_to(cluster, item("b", 301))

    def test_gap_measured_from_latest_item(self):
        cluster = add_item(start_cluster(item("a", 0)), item("b", 240))
        assert belongs_to(cluster, item("c", 480))

    def test_too_far(self):
        cluster = start_cluster(item("a", 0, *HOME))
        assert not belongs_to(cluster, item("b", 10, HOME[0] + 0.5, HOME[1]))

    def test_missing_gps_never_splits(self):
        cluster = start_cluster(item("a", 0, *HOME))
        assert belongs_to(cluster, item("b", 10))
        assert belongs_to(start_cluster(item("c", 0)), item("d", 10, *HOME))

    def test_custom_thresholds(self):
        cluster = start_cluster(item("a", 0))
        assert not belongs_to(cluster, item("b", 31), max_gap=timedelta(minutes=30))


class TestClusterItems:
    """Tests for cluster_items"""

    def test_empty(self):
        assert cluster_items([]) == []

    def test_partition_and_order(self):
        items = [
            item("c", 600, *HOME),
            item("a", 0, *HOME),
            item("b", 20, *HOME),
            item("d", 610, *HOME),
        ]
        clusters = cluster_items(items)
        assert [[i.id for i in c.items] for c in clusters] == [["a", "b"], ["c", "d"]]
        all_ids = sorted(i.id for c in clusters for i in c.items)
        assert all_ids == ["a", "b", "c", "d"]

    def test_same_place_twenty_minutes_apart(self):
        clusters = cluster_items([item("a", 0, *HOME), item("b", 20, *HOME)])
        assert len(clusters) == 1
        assert clusters[0].start_time == T0
        assert clusters[0].end_time == T0 + timedelta(minutes=20)

    def test_fifty_km_away_splits(self):
        far = (HOME[0] + 0.45, HOME[1])
        clusters = cluster_items([item("a", 0, *HOME), item("b", 20, *far)])
        assert len(clusters) == 2

    def test_window_contains_members(self):
        items = [item(str(n), n * 30, *HOME) for n in range(6)]
        for cluster in cluster_items(items):
            for member in cluster.items:
                assert cluster.start_time <= member.captured_at <= cluster.end_time

    def test_consecutive_clusters_separated(self):
        items = [item("a", 0), item("b", 400), item("c", 900)]
        clusters = cluster_items(items)
        assert len(clusters) == 3
        for earlier, later in zip(clusters, clusters[1:]):
            assert later.start_time - earlier.end_time > timedelta(hours=5)

    def test_untimed_items_trail(self):
        items = [item("x"), item("a", 0), item("y", lat=HOME[0], lon=HOME[1])]
        clusters = cluster_items(items)
        assert [[i.id for i in c.items] for c in clusters] == [["a"], ["x", "y"]]
        assert clusters[-1].start_time is None

    def test_untimed_items_split_by_distance(self):
        items = [
            item("x", lat=HOME[0], lon=HOME[1]),
            item("y", lat=HOME[0] + 0.45, lon=HOME[1]),
            item("z"),
        ]
        clusters = cluster_items(items)
        assert [[i.id for i in c.items] for c in clusters] == [["x"], ["y", "z"]]
        assert all(c.start_time is None for c in clusters)

    def test_single_item_without_time_or_place(self):
        clusters = cluster_items([item("x")])
        assert len(clusters) == 1
        assert clusters[0].start_time is None
        assert not clusters[0].has_location

    def test_deterministic(self):
        items = [item("a", 0, *HOME), item("b", 100), item("c", 200, HOME[0] + 1, HOME[1])]
        first = [[i.id for i in c.items] for c in cluster_items(items)]
        second = [[i.id for i in c.items] for c in cluster_items(list(items))]
        assert first == second


class TestFindMatchingOuting:
    """Tests for matching a cluster to stored outings"""

    def make_cluster(self, start_minutes, end_minutes, lat=None, lon=None):
        return Cluster(
            items=(),
            start_time=T0 + timedelta(minutes=start_minutes),
            end_time=T0 + timedelta(minutes=end_minutes),
            center_lat=lat,
            center_lon=lon,
            located=1 if lat is not None else 0,
        )

    def test_no_outings(self):
        assert find_matching_outing(self.make_cluster(0, 10), []) is None

    def test_overlap_same_place(self):
        stored = outing("o1", 0, 60, *HOME)
        assert find_matching_outing(self.make_cluster(30, 90, *HOME), [stored]) == stored

    def test_within_buffer(self):
        stored = outing("o1", 0, 60)
        assert find_matching_outing(self.make_cluster(360, 400), [stored]) == stored

    def test_outside_buffer(self):
        stored = outing("o1", 0, 60)
        assert find_matching_outing(self.make_cluster(361, 400), [stored]) is None

    def test_too_far(self):
        stored = outing("o1", 0, 60, *HOME)
        far = self.make_cluster(0, 60, HOME[0] + 0.5, HOME[1])
        assert find_matching_outing(far, [stored]) is None

    def test_one_side_without_gps_does_not_match(self):
        assert find_matching_outing(self.make_cluster(0, 60, *HOME), [outing("o1", 0, 60)]) is None
        assert find_matching_outing(self.make_cluster(0, 60), [outing("o1", 0, 60, *HOME)]) is None

    def test_closest_start_wins(self):
        outings = [outing("early", -200, -100), outing("close", 20, 80), outing("late", 200, 260)]
        assert find_matching_outing(self.make_cluster(0, 60), outings)["id"] == "close"

    def test_untimed_cluster_never_matches(self):
        cluster = Cluster(items=())
        assert find_matching_outing(cluster, [outing("o1", 0, 60)]) is None


class TestWindowHelpers:
    """Tests for widened_window and format_outing_time"""

    def test_widened_window_never_shrinks(self):
        stored = outing("o1", 0, 60)
        start, end = widened_window(stored, T0 + timedelta(minutes=10), T0 + timedelta(minutes=90))
        assert start == T0
        assert end == T0 + timedelta(minutes=90)

    def test_format_same_day(self):
        text = format_outing_time("2026-05-03T07:30:00+00:00", "2026-05-03T09:10:00+00:00")
        assert text == "May 03, 2026 07:30 - 09:10"

    def test_format_multi_day(self):
        text = format_outing_time("2026-05-03T22:00:00+00:00", "2026-05-04T01:00:00+00:00")
        assert text == "May 03, 2026 22:00 - May 04, 2026 01:00"
