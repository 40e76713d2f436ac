"""
ledger.py - Fold confirmed observations into the cumulative life list

One dex entry per canonical species name:
    total_outings  distinct outings with a confirmed observation of the species
    total_count    sum of confirmed observation counts
    first/last     earliest/latest start time of those outings

Only confirmed observations count. "Possible" observations are stored with
their outing but never reach the life list.
"""

from typing import Optional

from loguru import logger

from clustering import parse_time
from models import Certainty


def is_confirmed(observation: dict) -> bool:
    return observation.get("certainty") == Certainty.CONFIRMED.value


def new_entry(species_name: str, seen_at: str, count: int) -> dict:
    return {
        "species_name": species_name,
        "first_seen_date": seen_at,
        "last_seen_date": seen_at,
        "added_date": seen_at,
        "total_outings": 1,
        "total_count": count,
        "notes": "",
    }


def fold_observation(entry: Optional[dict], observation: dict, outing: dict, first_in_outing: bool) -> dict:
    """Return the dex entry after one more confirmed observation; `entry` is not modified"""
    seen_at = outing["start_time"]
    count = int(observation.get("count", 1))

    if entry is None:
        return new_entry(observation["species_name"], seen_at, count)

    updated = dict(entry)
    updated["total_count"] = entry["total_count"] + count
    if first_in_outing:
        updated["total_outings"] = entry["total_outings"] + 1
    if parse_time(seen_at) < parse_time(entry["first_seen_date"]):
        updated["first_seen_date"] = seen_at
    if parse_time(seen_at) > parse_time(entry["last_seen_date"]):
        updated["last_seen_date"] = seen_at
    return updated


def reconcile_entries(dex_by_species: dict, outing: dict, observations: list, prior_species: set) -> tuple:
    """
    Fold a batch of observations for one outing into the life list.

    `prior_species` holds species already confirmed for this outing before
    the batch. Returns (changed entries by species, number of new species).
    """
    changed = {}
    seen_in_outing = set(prior_species)
    new_species = 0

    for observation in observations:
        if not is_confirmed(observation):
            continue
        name = observation["species_name"]
        current = changed.get(name, dex_by_species.get(name))
        if current is None:
            new_species += 1
        changed[name] = fold_observation(current, observation, outing, name not in seen_in_outing)
        seen_in_outing.add(name)

    return changed, new_species


def reconcile(store, outing_id: str, observations: list) -> dict:
    """
    Update the stored life list for observations just confirmed on an outing.

    Call once per confirmation event; re-submitting the same observations
    counts them again.
    """
    outing = store.get_outing(outing_id)
    if outing is None:
        raise KeyError(f"Cannot reconcile observations for unknown outing {outing_id}")

    incoming_ids = {o["id"] for o in observations}
    prior_species = {
        o["species_name"]
        for o in store.list_observations(outing_id)
        if is_confirmed(o) and o["id"] not in incoming_ids
    }
    dex_by_species = {e["species_name"]: e for e in store.list_dex()}

    changed, new_species = reconcile_entries(dex_by_species, outing, observations, prior_species)
    for entry in changed.values():
        store.upsert_dex_entry(entry)

    if new_species:
        logger.info("Outing {} added {} new species", outing_id, new_species)
    return {"new_species_count": new_species}


def rebuild_dex(outings: list, observations: list, existing_dex: list) -> list:
    """Recompute the whole life list from outings and observations"""
    outings_by_id = {o["id"]: o for o in outings}
    existing = {e["species_name"]: e for e in existing_dex}

    grouped = {}
    for observation in observations:
        if not is_confirmed(observation):
            continue
        if observation["outing_id"] not in outings_by_id:
            logger.warning("Observation {} references missing outing {}", observation["id"], observation["outing_id"])
            continue
        grouped.setdefault(observation["species_name"], []).append(observation)

    rebuilt = []
    for species_name, species_observations in grouped.items():
        outing_ids = {o["outing_id"] for o in species_observations}
        starts = sorted((outings_by_id[oid]["start_time"] for oid in outing_ids), key=parse_time)
        previous = existing.get(species_name, {})
        rebuilt.append({
            "species_name": species_name,
            "first_seen_date": starts[0],
            "last_seen_date": starts[-1],
            "added_date": previous.get("added_date") or starts[0],
            "total_outings": len(outing_ids),
            "total_count": sum(int(o.get("count", 1)) for o in species_observations),
            "notes": previous.get("notes", ""),
        })

    return sorted(rebuilt, key=lambda e: e["species_name"].lower())


def detect_import_conflicts(previews: list, dex_by_species: dict) -> list:
    """
    Tag each import preview row against the current life list:
    new           species not yet on the list (or within its date range)
    duplicate     same day as the first sighting
    update_dates  extends the first/last seen range
    """
    tagged = []
    for preview in previews:
        existing = dex_by_species.get(preview["species_name"])
        row = dict(preview)
        if existing is None:
            row["conflict"] = "new"
            tagged.append(row)
            continue

        row["existing_entry"] = existing
        seen = parse_time(preview["date"])
        first_seen = parse_time(existing["first_seen_date"])
        last_seen = parse_time(existing["last_seen_date"])
        if seen.date() == first_seen.date():
            row["conflict"] = "duplicate"
        elif seen < first_seen or seen > last_seen:
            row["conflict"] = "update_dates"
        else:
            row["conflict"] = "new"
        tagged.append(row)
    return tagged


def importable_rows(tagged: list) -> list:
    """Drop rows tagged as duplicates and strip the tagging keys"""
    return [
        {k: v for k, v in row.items() if k not in ("conflict", "existing_entry")}
        for row in tagged
        if row["conflict"] != "duplicate"
    ]
