"""
models.py - Shared types for the outing / life list pipeline

Persisted records (outings, observations, dex entries, photos) are plain
dicts stored as JSON, like the rest of the data files. The types here are
the ephemeral values passed between the clusterer, matcher and workflow.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Certainty(str, Enum):
    """Status tag on an observation."""

    CONFIRMED = "confirmed"
    POSSIBLE = "possible"
    REJECTED = "rejected"


class FlowStep(str, Enum):
    """States of the identification workflow for one upload batch."""

    UPLOAD = "upload"
    EXTRACTING = "extracting"
    REVIEW = "review"
    IDENTIFYING = "identifying"
    MANUAL_CROP = "manual-crop"
    NO_SPECIES = "no-species"
    CONFIRM = "confirm"
    COMPLETE = "complete"


@dataclass(frozen=True)
class TaxonEntry:
    common: str
    scientific: str

    @property
    def canonical(self) -> str:
        """'Common Name (Scientific name)' form used as the ledger key"""
        return f"{self.common} ({self.scientific})"


@dataclass
class CapturedItem:
    """A newly captured photo, before it belongs to any outing."""

    id: str
    captured_at: Optional[datetime] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    path: str = ""
    file_hash: str = ""

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass(frozen=True)
class Cluster:
    """A proposed outing: items grouped by time and place."""

    items: tuple
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    center_lat: Optional[float] = None
    center_lon: Optional[float] = None
    # Members with coordinates, kept so the centroid can be folded forward
    located: int = 0

    @property
    def has_location(self) -> bool:
        return self.center_lat is not None and self.center_lon is not None


@dataclass(frozen=True)
class Candidate:
    """One ranked species guess from the identifier."""

    species: str
    confidence: float


@dataclass
class Identification:
    """Result of one identifier call."""

    candidates: list = field(default_factory=list)
    crop_box: Optional[dict] = None
