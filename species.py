"""
species.py - Resolve free-text species names to the canonical ledger key

The canonical form is "Common Name (Scientific name)". Two inputs only land
on the same life list row if they normalize to the same string, so every
producer (AI suggestions, CSV rows, typed names) goes through normalize().
"""

import re
from typing import Optional

from loguru import logger

from taxonomy import default_taxonomy

SCIENTIFIC_PATTERN = re.compile(r"\(([^)]+)\)")


def normalize(raw_name: str, taxonomy=None) -> str:
    """Map a species string onto the taxonomy; unknown names pass through trimmed"""
    taxonomy = taxonomy or default_taxonomy()
    name = (raw_name or "").strip()
    if not name:
        return ""

    match = taxonomy.find_best_match(name)
    if match is None:
        logger.info("No taxonomy match for '{}', keeping raw name", name)
        return name

    canonical = match.canonical
    if canonical != name:
        logger.debug("Normalized '{}' -> '{}'", name, canonical)
    return canonical


def display_name(species_name: str) -> str:
    """'Northern Cardinal (Cardinalis cardinalis)' -> 'Northern Cardinal'"""
    return species_name.split("(")[0].strip()


def scientific_name(species_name: str) -> Optional[str]:
    """'Northern Cardinal (Cardinalis cardinalis)' -> 'Cardinalis cardinalis'"""
    match = SCIENTIFIC_PATTERN.search(species_name)
    return match.group(1) if match else None


def combine_names(common: str, scientific: str = "") -> str:
    """Join spreadsheet columns into one species string before normalizing"""
    common = (common or "").strip()
    scientific = (scientific or "").strip()
    if scientific and "(" not in common and scientific.lower() != common.lower():
        return f"{common} ({scientific})"
    return common
