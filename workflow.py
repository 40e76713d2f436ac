"""
workflow.py - Drive one batch of photos from upload to the life list

    upload -> extracting -> review(cluster i) -> identifying(photo j)
           -> confirm | manual-crop | no-species -> ... -> review(cluster i+1)
           -> ... -> complete

Photos are identified one at a time so each suggestion can be reviewed
before the next image is sent. Each decision is written to the store as
soon as it is made. The life list is updated when the last photo of a
cluster is decided, or on close for a cluster left part-way. Closing keeps
every decision made so far; nothing is rolled back.
"""

import dataclasses
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

import config as cfg
from clustering import cluster_items, find_matching_outing, parse_time
from identify import crop_image
from ledger import reconcile
from metadata import compute_file_hash
from models import CapturedItem, Certainty, FlowStep, Identification
from species import normalize
from store import new_observation_id

DECIDING_STEPS = (FlowStep.CONFIRM, FlowStep.MANUAL_CROP, FlowStep.NO_SPECIES)


class WorkflowError(RuntimeError):
    """An action was requested in a state that does not allow it."""


def needs_close_confirmation(step: FlowStep) -> bool:
    """Closing loses nothing before the first upload or after completion"""
    return step not in (FlowStep.UPLOAD, FlowStep.COMPLETE)


def read_file_bytes(path: str) -> bytes:
    return Path(path).read_bytes()


class IdentificationWorkflow:
    """State machine for one upload batch."""

    def __init__(
        self,
        store,
        extractor: Callable,
        identifier: Callable,
        config: dict = None,
        normalizer: Callable = normalize,
        read_bytes: Callable = read_file_bytes,
        now: Callable = None,
    ):
        self.store = store
        self.extractor = extractor
        self.identifier = identifier
        self.config = config or cfg.load_config()
        self.normalizer = normalizer
        self.read_bytes = read_bytes
        self.now = now or (lambda: datetime.now(timezone.utc))

        self.step = FlowStep.UPLOAD
        self.closed = False
        self.clusters = []
        self.cluster_index = 0
        self.item_index = 0
        self.outing = None
        # One entry per decided photo in the current cluster: observation dict or None (skipped)
        self.results = []
        self.candidates = []
        self.selected = None
        self.crop_box = None
        self.crop_retried = False

        self.duplicates_skipped = 0
        self.new_species_count = 0
        self.outing_ids = []
        self.committed_observations = 0

    # State helpers

    def _require(self, *steps: FlowStep) -> None:
        if self.closed:
            raise WorkflowError("Workflow has been closed")
        if self.step not in steps:
            allowed = ", ".join(s.value for s in steps)
            raise WorkflowError(f"Cannot do that while {self.step.value} (expected {allowed})")

    @property
    def current_cluster(self):
        if self.cluster_index < len(self.clusters):
            return self.clusters[self.cluster_index]
        return None

    @property
    def current_item(self) -> Optional[CapturedItem]:
        cluster = self.current_cluster
        if cluster is None or self.item_index >= len(cluster.items):
            return None
        return cluster.items[self.item_index]

    @property
    def auto_confirm(self) -> bool:
        """Top suggestion is confident enough to confirm without an explicit pick"""
        return self.selected is not None and self.selected.confidence >= cfg.high_confidence(self.config)

    # upload -> extracting -> review

    def extract(self, paths: list) -> list:
        """Read metadata, drop already-stored photos, and cluster the rest"""
        self._require(FlowStep.UPLOAD)
        self.step = FlowStep.EXTRACTING

        items = []
        seen = set()
        for path in paths:
            data = self.read_bytes(path)
            file_hash = compute_file_hash(data)
            meta = self.extractor(data) or {}

            captured_at = parse_time(meta.get("timestamp"))
            timestamp = captured_at.isoformat() if captured_at else None
            if (file_hash, timestamp) in seen or self.store.find_stored_item(file_hash, timestamp):
                logger.info("Skipping duplicate upload {}", Path(str(path)).name)
                self.duplicates_skipped += 1
                continue
            seen.add((file_hash, timestamp))

            location = meta.get("location") or {}
            items.append(CapturedItem(
                id=f"photo-{uuid.uuid4().hex[:12]}",
                captured_at=captured_at,
                lat=location.get("lat"),
                lon=location.get("lon"),
                path=str(path),
                file_hash=file_hash,
            ))

        self.clusters = cluster_items(items, cfg.time_gap(self.config), cfg.radius_km(self.config))
        self.cluster_index = 0
        logger.info(
            "Extracted {} photo(s) into {} outing(s), {} duplicate(s) skipped",
            len(items), len(self.clusters), self.duplicates_skipped,
        )
        self.step = FlowStep.REVIEW if self.clusters else FlowStep.COMPLETE
        return self.clusters

    # review -> identifying

    def confirm_outing(
        self,
        location_name: str = "",
        start_time: datetime = None,
        end_time: datetime = None,
        lat: float = None,
        lon: float = None,
        notes: str = "",
    ) -> dict:
        """Accept (or edit) the proposed outing, then merge it into history or create it"""
        self._require(FlowStep.REVIEW)
        cluster = self.current_cluster

        edits = {}
        if start_time is not None:
            edits["start_time"] = start_time
        if end_time is not None:
            edits["end_time"] = end_time
        if lat is not None and lon is not None:
            edits.update(center_lat=lat, center_lon=lon)
        if edits:
            cluster = dataclasses.replace(cluster, **edits)
            self.clusters[self.cluster_index] = cluster

        # Undated photos: the outing starts now unless the user supplied a time
        start = cluster.start_time or self.now()
        end = cluster.end_time or start

        match = find_matching_outing(
            cluster, self.store.list_outings(),
            cfg.match_buffer(self.config), cfg.radius_km(self.config),
        )
        if match:
            self.outing = self.store.widen_outing_window(match["id"], start.isoformat(), end.isoformat())
        else:
            self.outing = self.store.create_outing({
                "id": "",
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "location_name": location_name,
                "editable_location_name": location_name,
                "lat": cluster.center_lat,
                "lon": cluster.center_lon,
                "notes": notes,
                "created_at": self.now().isoformat(),
            })
        if self.outing["id"] not in self.outing_ids:
            self.outing_ids.append(self.outing["id"])

        self.item_index = 0
        self.results = []
        self.crop_retried = False
        self._identify_current()
        return self.outing

    def _store_current_photo(self) -> None:
        """A photo counts as uploaded once a decision has been made for it"""
        item = self.current_item
        self.store.add_photos([{
            "id": item.id,
            "outing_id": self.outing["id"],
            "file_name": Path(item.path).name,
            "file_hash": item.file_hash,
            "captured_at": item.captured_at.isoformat() if item.captured_at else None,
            "lat": item.lat,
            "lon": item.lon,
        }])

    def _identify_current(self, image_bytes: bytes = None) -> None:
        self.step = FlowStep.IDENTIFYING
        item = self.current_item
        data = image_bytes if image_bytes is not None else self.read_bytes(item.path)

        if item.has_location:
            location = {"lat": item.lat, "lon": item.lon}
        elif self.outing.get("lat") is not None and self.outing.get("lon") is not None:
            location = {"lat": self.outing["lat"], "lon": self.outing["lon"]}
        else:
            location = None
        month = item.captured_at.month if item.captured_at else None

        try:
            result = self.identifier(data, location, month, self.outing.get("location_name", ""))
        except Exception as e:
            # No automatic retry: a failed call is the same as no bird found
            logger.warning("Identification failed for {}: {}", item.id, e)
            result = Identification()

        self.candidates = list(result.candidates)
        self.crop_box = result.crop_box
        if self.candidates:
            self.selected = self.candidates[0]
            self.step = FlowStep.CONFIRM
        else:
            self.selected = None
            self.step = FlowStep.NO_SPECIES if self.crop_retried else FlowStep.MANUAL_CROP

    # identifying -> decisions

    def select(self, index: int) -> None:
        """Pick an alternate candidate"""
        self._require(FlowStep.CONFIRM)
        self.selected = self.candidates[index]

    def apply_crop(self, box: dict) -> None:
        """Tighten the image to a percent box and identify again"""
        self._require(*DECIDING_STEPS)
        cropped = crop_image(self.read_bytes(self.current_item.path), box)
        self.crop_retried = True
        self._identify_current(cropped)

    def accept_suggestion(self) -> dict:
        """Confirm a high-confidence top suggestion"""
        self._require(FlowStep.CONFIRM)
        if not self.auto_confirm:
            raise WorkflowError("Low-confidence suggestion needs an explicit choice")
        return self.record(certainty=Certainty.CONFIRMED)

    def record(self, species: str = None, certainty: Certainty = Certainty.CONFIRMED, count: int = 1, notes: str = "") -> dict:
        """Record a confirmed/possible decision for the current photo and move on"""
        self._require(*DECIDING_STEPS)
        if certainty not in (Certainty.CONFIRMED, Certainty.POSSIBLE):
            raise WorkflowError(f"Cannot record a {certainty.value} observation")

        raw_name = species or (self.selected.species if self.selected else "")
        species_name = self.normalizer(raw_name)
        if not species_name:
            raise WorkflowError("No species to record")

        observation = {
            "id": new_observation_id(),
            "outing_id": self.outing["id"],
            "species_name": species_name,
            "count": count,
            "certainty": certainty.value,
            "representative_photo_id": self.current_item.id,
            "notes": notes,
        }
        if self.selected is not None and raw_name == self.selected.species:
            observation["ai_confidence"] = self.selected.confidence

        self._store_current_photo()
        self.store.append_observations([observation])
        self.results.append(observation)
        self._advance()
        return observation

    def skip(self) -> None:
        """No observation for the current photo"""
        self._require(*DECIDING_STEPS)
        self._store_current_photo()
        self.results.append(None)
        self._advance()

    def back(self) -> None:
        """Return to the previous photo, dropping its decision"""
        self._require(*DECIDING_STEPS)
        if self.item_index == 0:
            raise WorkflowError("Already at the first photo of this outing")
        dropped = self.results.pop()
        if dropped is not None:
            self.store.remove_observation(dropped["id"])
        self.item_index -= 1
        self.store.remove_photo(self.current_item.id)
        self.crop_retried = False
        self._identify_current()

    def _advance(self) -> None:
        self.item_index += 1
        self.crop_retried = False
        if self.item_index < len(self.current_cluster.items):
            self._identify_current()
        else:
            self._finish_cluster()

    def _reconcile_results(self) -> None:
        """Fold the decided observations of the current cluster into the life list"""
        observations = [o for o in self.results if o is not None]
        summary = reconcile(self.store, self.outing["id"], observations)
        self.committed_observations += len(observations)
        self.new_species_count += summary["new_species_count"]

    def _finish_cluster(self) -> None:
        self._reconcile_results()

        self.cluster_index += 1
        self.item_index = 0
        self.results = []
        self.candidates = []
        self.selected = None
        self.outing = None
        self.step = FlowStep.REVIEW if self.cluster_index < len(self.clusters) else FlowStep.COMPLETE

    def close(self) -> dict:
        """Stop the batch; committed outings and observations stay"""
        if self.closed:
            return self.summary()
        if self.outing is not None and any(o is not None for o in self.results):
            # Decisions made so far in an unfinished cluster still count
            self._reconcile_results()
            self.results = []
        if self.step != FlowStep.COMPLETE:
            logger.info("Workflow closed at {} ({} observation(s) committed)", self.step.value, self.committed_observations)
        self.closed = True
        return self.summary()

    def summary(self) -> dict:
        return {
            "outings": list(self.outing_ids),
            "observations": self.committed_observations,
            "new_species": self.new_species_count,
            "duplicates_skipped": self.duplicates_skipped,
        }
