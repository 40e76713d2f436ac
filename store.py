"""
store.py - JSON file persistence for outings, observations, photos and the life list

Each collection lives in its own file under data/. Every call reads and
writes the whole file; calls are independent and there is no transaction
spanning several of them.
"""

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from clustering import parse_time

PROJECT_ROOT = Path(__file__).parent
DATA_PATH = PROJECT_ROOT / "data"


def generate_id(date: datetime, outings: list) -> str:
    """Generate outing ID in format YYYYMMDD-NNN"""
    date_prefix = date.strftime("%Y%m%d")

    # Count existing outings for this date
    existing = [o for o in outings if o["id"].startswith(date_prefix)]
    sequence = len(existing) + 1

    return f"{date_prefix}-{sequence:03d}"


def new_observation_id() -> str:
    return f"obs-{uuid.uuid4().hex[:12]}"


class JsonStore:
    """Persistence collaborator backed by JSON files."""

    def __init__(self, data_path: Path = None):
        self.data_path = Path(data_path) if data_path else DATA_PATH
        self.outings_path = self.data_path / "outings.json"
        self.observations_path = self.data_path / "observations.json"
        self.dex_path = self.data_path / "dex.json"
        self.photos_path = self.data_path / "photos.json"

    def _load(self, path: Path) -> list:
        if not path.exists():
            return []
        with open(path) as f:
            return json.load(f)

    def _save(self, path: Path, records: list) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(records, f, indent=2, ensure_ascii=False)

    # Outings

    def list_outings(self) -> list:
        return self._load(self.outings_path)

    def get_outing(self, outing_id: str) -> Optional[dict]:
        for outing in self.list_outings():
            if outing["id"] == outing_id:
                return outing
        return None

    def create_outing(self, outing: dict) -> dict:
        outings = self.list_outings()
        if not outing.get("id"):
            outing = {**outing, "id": generate_id(parse_time(outing["start_time"]), outings)}
        outings.append(outing)
        self._save(self.outings_path, outings)
        logger.info("Created outing {} ({})", outing["id"], outing.get("location_name", ""))
        return outing

    def widen_outing_window(self, outing_id: str, start: str, end: str) -> dict:
        """Extend an outing's window to cover [start, end]; location and name stay untouched"""
        outings = self.list_outings()
        for outing in outings:
            if outing["id"] == outing_id:
                new_start = min(parse_time(outing["start_time"]), parse_time(start))
                new_end = max(parse_time(outing["end_time"]), parse_time(end))
                outing["start_time"] = new_start.isoformat()
                outing["end_time"] = new_end.isoformat()
                self._save(self.outings_path, outings)
                logger.info("Widened outing {} to {} - {}", outing_id, outing["start_time"], outing["end_time"])
                return outing
        raise KeyError(f"Outing {outing_id} not found")

    # Observations

    def list_observations(self, outing_id: str = None) -> list:
        observations = self._load(self.observations_path)
        if outing_id is None:
            return observations
        return [o for o in observations if o["outing_id"] == outing_id]

    def append_observations(self, new_observations: list) -> None:
        if not new_observations:
            return
        observations = self._load(self.observations_path)
        observations.extend(new_observations)
        self._save(self.observations_path, observations)
        logger.info("Appended {} observation(s)", len(new_observations))

    def remove_observation(self, observation_id: str) -> None:
        observations = self._load(self.observations_path)
        kept = [o for o in observations if o["id"] != observation_id]
        self._save(self.observations_path, kept)
        logger.info("Removed {} observation(s)", len(observations) - len(kept))

    # Life list

    def list_dex(self) -> list:
        return self._load(self.dex_path)

    def get_dex_entry(self, species_name: str) -> Optional[dict]:
        for entry in self.list_dex():
            if entry["species_name"] == species_name:
                return entry
        return None

    def upsert_dex_entry(self, entry: dict) -> None:
        dex = self.list_dex()
        for idx, existing in enumerate(dex):
            if existing["species_name"] == entry["species_name"]:
                dex[idx] = entry
                break
        else:
            dex.append(entry)
        self._save(self.dex_path, dex)

    def replace_dex(self, entries: list) -> None:
        self._save(self.dex_path, entries)

    # Photos

    def list_photos(self) -> list:
        return self._load(self.photos_path)

    def add_photos(self, photos: list) -> None:
        if not photos:
            return
        stored = self.list_photos()
        stored.extend(photos)
        self._save(self.photos_path, stored)

    def remove_photo(self, photo_id: str) -> None:
        stored = [p for p in self.list_photos() if p["id"] != photo_id]
        self._save(self.photos_path, stored)

    def find_stored_item(self, file_hash: str, timestamp: Optional[str]) -> Optional[dict]:
        """Photo already stored with the same content hash and capture time"""
        for photo in self.list_photos():
            if photo["file_hash"] == file_hash and photo.get("captured_at") == timestamp:
                return photo
        return None
