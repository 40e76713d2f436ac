#!/usr/bin/env python3
"""
build.py - Static HTML report of outings and the life list

Commands:
    python build.py           Full build
    python build.py --serve   Build and serve locally
    python build.py --output  Build to custom directory
"""

import argparse
import http.server
import os
import shutil
import socketserver
from collections import Counter, OrderedDict
from datetime import datetime
from pathlib import Path

import markdown
from jinja2 import Environment, FileSystemLoader, select_autoescape

import config as cfg
from clustering import format_outing_time, parse_time
from models import Certainty
from species import display_name, scientific_name
from store import JsonStore

PROJECT_ROOT = Path(__file__).parent
TEMPLATES_PATH = PROJECT_ROOT / "templates"
DEFAULT_OUTPUT = PROJECT_ROOT / "site"


def format_date(date_str: str) -> str:
    """Format ISO date string to readable format"""
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        return dt.strftime("%B %d, %Y")
    except (AttributeError, ValueError):
        return date_str[:10] if len(date_str) >= 10 else date_str


def format_short_date(date_str: str) -> str:
    """Format ISO date string to short format"""
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        return dt.strftime("%b %d")
    except (AttributeError, ValueError):
        return date_str[:10] if len(date_str) >= 10 else date_str


def render_notes(text: str) -> str:
    """Outing notes are written in markdown"""
    if not text:
        return ""
    return markdown.markdown(text, extensions=["tables", "fenced_code"])


def compute_stats(outings: list, observations: list, dex: list) -> dict:
    """Totals and per-month breakdowns for the index page"""
    stats = {
        "total_outings": len(outings),
        "total_observations": sum(1 for o in observations if o["certainty"] != Certainty.REJECTED.value),
        "life_list": len(dex),
        "generated_at": datetime.now().strftime("%B %d, %Y"),
    }

    # Outings by month
    month_counts = Counter()
    for outing in outings:
        month_counts[parse_time(outing["start_time"]).strftime("%Y-%m")] += 1
    stats["by_month"] = OrderedDict(
        (datetime.strptime(m, "%Y-%m").strftime("%b %Y"), month_counts[m]) for m in sorted(month_counts)
    )
    stats["max_month"] = max(month_counts.values()) if month_counts else 1

    # Life list growth: species added per month of first sighting
    seen = Counter(parse_time(e["first_seen_date"]).strftime("%Y-%m") for e in dex)
    running = 0
    curve = OrderedDict()
    for month in sorted(seen):
        running += seen[month]
        curve[datetime.strptime(month, "%Y-%m").strftime("%b %Y")] = running
    stats["discovery_curve"] = curve

    # Most often seen species (by outings)
    top = sorted(dex, key=lambda e: (-e["total_outings"], e["species_name"]))[:5]
    stats["top_species"] = [(display_name(e["species_name"]), e["total_outings"]) for e in top]

    # Species seen on a single outing only
    stats["single_outing_species"] = sorted(
        display_name(e["species_name"]) for e in dex if e["total_outings"] == 1
    )

    return stats


def build_site(output_path: Path, store: JsonStore = None):
    """Build the complete static report"""
    config = cfg.load_config()
    store = store or JsonStore()

    outings = sorted(store.list_outings(), key=lambda o: o["start_time"], reverse=True)
    observations = store.list_observations()
    dex = sorted(store.list_dex(), key=lambda e: e["species_name"].lower())

    env = Environment(loader=FileSystemLoader(TEMPLATES_PATH), autoescape=select_autoescape(["html"]))
    env.filters["date"] = format_date
    env.filters["short_date"] = format_short_date
    env.filters["common"] = display_name
    env.filters["scientific"] = lambda name: scientific_name(name) or ""

    # Clean and create output directories
    if output_path.exists():
        shutil.rmtree(output_path)
    (output_path / "outings").mkdir(parents=True)

    base_context = {
        "config": config,
        "base_url": "",
        "now": datetime.now().isoformat(),
    }

    # Observations grouped per outing, rejected ones hidden
    by_outing = {}
    for obs in observations:
        if obs["certainty"] == Certainty.REJECTED.value:
            continue
        by_outing.setdefault(obs["outing_id"], []).append(obs)

    for outing in outings:
        outing["when"] = format_outing_time(outing["start_time"], outing["end_time"])
        outing["species_count"] = len({o["species_name"] for o in by_outing.get(outing["id"], [])})

    stats = compute_stats(outings, observations, dex)

    template = env.get_template("index.html")
    html = template.render(**base_context, stats=stats, latest_outings=outings[:5])
    (output_path / "index.html").write_text(html)

    template = env.get_template("outings.html")
    html = template.render(**base_context, outings=outings)
    (output_path / "outings.html").write_text(html)

    template = env.get_template("dex.html")
    html = template.render(**base_context, dex=dex)
    (output_path / "dex.html").write_text(html)

    template = env.get_template("outing.html")
    for idx, outing in enumerate(outings):
        # Prev/next navigation (outings sorted newest first)
        prev_outing = outings[idx - 1] if idx > 0 else None
        next_outing = outings[idx + 1] if idx < len(outings) - 1 else None
        outing_obs = sorted(by_outing.get(outing["id"], []), key=lambda o: o["species_name"])
        html = template.render(
            **base_context,
            outing=outing,
            observations=outing_obs,
            notes_html=render_notes(outing.get("notes", "")),
            prev_outing=prev_outing,
            next_outing=next_outing,
        )
        (output_path / "outings" / f"{outing['id']}.html").write_text(html)

    print(f"\nBuilt site:")
    print(f"  - 1 index page")
    print(f"  - 1 outings page ({len(outings)} outings)")
    print(f"  - 1 life list page ({len(dex)} species)")
    print(f"  - {len(outings)} outing pages")
    print(f"\nOutput: {output_path}/")


def serve(output_path: Path, port: int = 8000):
    """Serve the site locally"""
    os.chdir(output_path)

    # Skip reverse DNS lookups and per-request logging
    class QuietHandler(http.server.SimpleHTTPRequestHandler):
        def address_string(self):
            return self.client_address[0]

        def log_message(self, format, *args):
            pass

    class QuietServer(socketserver.TCPServer):
        allow_reuse_address = True

    with QuietServer(("", port), QuietHandler) as httpd:
        print(f"\nServing at http://localhost:{port}")
        print("Press Ctrl+C to stop\n")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            print("\nStopped.")


def main():
    parser = argparse.ArgumentParser(description="Build static report of outings and the life list")
    parser.add_argument("--serve", "-s", action="store_true", help="Build and serve locally")
    parser.add_argument("--output", "-o", type=str, help="Output directory")
    parser.add_argument("--port", "-p", type=int, default=8000, help="Port for local server")

    args = parser.parse_args()

    output_path = Path(args.output) if args.output else DEFAULT_OUTPUT

    build_site(output_path)

    if args.serve:
        serve(output_path, args.port)


if __name__ == "__main__":
    main()
