#!/usr/bin/env python3
"""
taxonomy.py - Bundled bird taxonomy: search and best-match lookup

This module handles:
- Loading the reference list of (common name, scientific name) pairs
- Ranked prefix/substring search for autocomplete
- Resolving free-text species strings (AI output, spreadsheet cells,
  manual typing) to a single reference entry
- Memoizing lookups in front of the index
"""

import json
import re
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from models import TaxonEntry

PROJECT_ROOT = Path(__file__).parent
TAXONOMY_PATH = PROJECT_ROOT / "data" / "taxonomy.json"

# "Common Kingfisher (Alcedo atthis)"
PAREN_PATTERN = re.compile(r"^(.+?)\s*\(([^)]+)\)\s*$")
TOKEN_SPLIT = re.compile(r"[\s\-()]+")


def load_taxonomy(path: Path = None) -> list:
    """Load [common, scientific] pairs from disk"""
    path = path or TAXONOMY_PATH
    with open(path) as f:
        raw = json.load(f)
    return [TaxonEntry(common=row[0], scientific=row[1]) for row in raw]


class TaxonomyIndex:
    """In-memory reference list with ranked search and best-match lookup."""

    def __init__(self, entries: list):
        self.entries = list(entries)
        # Pre-compute lower-cased names for search
        self._lower = [(t.common.lower(), t.scientific.lower()) for t in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def from_file(cls, path: Path = None) -> "TaxonomyIndex":
        return cls(load_taxonomy(path))

    def search(self, query: str, limit: int = 8) -> list:
        """
        Search by prefix / substring.

        Ranked: common-name prefix, scientific-name prefix, common-name
        substring, scientific-name substring. The scan stops once
        3 x limit candidates are collected.
        """
        q = query.lower().strip()
        if not q or limit <= 0:
            return []

        tiers = ([], [], [], [])
        collected = 0
        for entry, (common, scientific) in zip(self.entries, self._lower):
            if common.startswith(q):
                tiers[0].append(entry)
            elif scientific.startswith(q):
                tiers[1].append(entry)
            elif q in common:
                tiers[2].append(entry)
            elif q in scientific:
                tiers[3].append(entry)
            else:
                continue

            collected += 1
            if collected >= limit * 3:
                break

        return (tiers[0] + tiers[1] + tiers[2] + tiers[3])[:limit]

    def _by_common(self, name: str) -> Optional[TaxonEntry]:
        for entry, (common, _) in zip(self.entries, self._lower):
            if common == name:
                return entry
        return None

    def _by_scientific(self, name: str) -> Optional[TaxonEntry]:
        for entry, (_, scientific) in zip(self.entries, self._lower):
            if scientific == name:
                return entry
        return None

    def find_best_match(self, name: str) -> Optional[TaxonEntry]:
        """
        Find the single best reference entry for a species string.

        Resolution order, first hit wins:
        1. exact common name (case-insensitive)
        2. "<common> (<scientific>)": scientific part, then common part
        3. exact scientific name
        4. word overlap: entry whose "common scientific" text contains the
           most input words, accepted only if at least half the words match
        """
        if not name or not name.strip():
            return None

        raw = name.strip()
        lowered = raw.lower()

        match = self._by_common(lowered)
        if match:
            return match

        paren = PAREN_PATTERN.match(raw)
        if paren:
            common_part = paren.group(1).strip().lower()
            sci_part = paren.group(2).strip().lower()
            match = self._by_scientific(sci_part) or self._by_common(common_part)
            if match:
                return match

        match = self._by_scientific(lowered)
        if match:
            return match

        words = [w for w in TOKEN_SPLIT.split(lowered) if w]
        if not words:
            return None
        required = (len(words) + 1) // 2

        best_score = 0
        best_entry = None
        for entry, (common, scientific) in zip(self.entries, self._lower):
            combined = f"{common} {scientific}"
            score = sum(1 for w in words if w in combined)
            if score > best_score and score >= required:
                best_score = score
                best_entry = entry

        return best_entry


class CachedTaxonomy:
    """Memoizes search and best-match results in front of a TaxonomyIndex."""

    def __init__(self, index: TaxonomyIndex):
        self.index = index
        self._matches = {}
        self._searches = {}

    def __len__(self) -> int:
        return len(self.index)

    def search(self, query: str, limit: int = 8) -> list:
        cache_key = (query.lower().strip(), limit)
        if cache_key not in self._searches:
            self._searches[cache_key] = self.index.search(query, limit)
        return list(self._searches[cache_key])

    def find_best_match(self, name: str) -> Optional[TaxonEntry]:
        cache_key = (name or "").lower().strip()
        if cache_key in self._matches:
            return self._matches[cache_key]

        match = self.index.find_best_match(name)
        # Misses are cached too, to avoid rescanning for local names
        self._matches[cache_key] = match
        return match

    def clear(self) -> None:
        self._matches.clear()
        self._searches.clear()


_default = None


def default_taxonomy() -> CachedTaxonomy:
    """Shared memoized index over the bundled reference list"""
    global _default
    if _default is None:
        index = TaxonomyIndex.from_file()
        logger.debug("Loaded taxonomy: {} species", len(index))
        _default = CachedTaxonomy(index)
    return _default


if __name__ == "__main__":
    # Quick lookup from the command line
    query = " ".join(sys.argv[1:])
    taxonomy = default_taxonomy()
    if not query:
        print(f"{len(taxonomy)} species in reference list")
    else:
        best = taxonomy.find_best_match(query)
        print(f"Best match: {best.canonical if best else '(none)'}")
        for entry in taxonomy.search(query):
            print(f"  {entry.common} ({entry.scientific})")
