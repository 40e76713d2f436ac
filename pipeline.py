#!/usr/bin/env python3
"""
pipeline.py - CLI tool for turning bird photos and checklists into outings

Commands:
    add       Identify photos in inbox/ (or given files) and log them as outings
    import    Import an eBird-style CSV checklist export
    outings   List recent outings
    dex       Show the life list
    search    Search the bundled bird taxonomy
    export    Export the life list or one outing as CSV
    rebuild   Recompute the life list from outings and observations
    stats     Show totals
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

from dateutil import parser as date_parser
from dateutil import tz

import config as cfg
from clustering import format_outing_time
from ebird import export_dex_csv, export_outing_csv, import_previews, parse_ebird_csv
from identify import BirdIdentifier
from ledger import detect_import_conflicts, importable_rows, rebuild_dex
from log import find_latest_log_file, init_logging
from metadata import IMAGE_SUFFIXES, extract_metadata
from models import Certainty, FlowStep
from species import display_name, normalize
from store import JsonStore
from taxonomy import default_taxonomy
from workflow import IdentificationWorkflow, WorkflowError

PROJECT_ROOT = Path(__file__).parent
INBOX_PATH = PROJECT_ROOT / "inbox"


def parse_crop_box(text: str) -> dict:
    """'x,y,w,h' in percent -> crop box dict"""
    parts = [float(p) for p in text.replace(" ", "").split(",")]
    if len(parts) != 4:
        raise ValueError("Expected four numbers: x,y,width,height")
    x, y, w, h = parts
    if not (0 <= x < 100 and 0 <= y < 100 and 0 < w <= 100 and 0 < h <= 100):
        raise ValueError("Crop values are percentages of the image")
    return {"x": x, "y": y, "width": w, "height": h}


def prompt_time(label: str, current: datetime, local_tz) -> datetime:
    """Ask for an optional replacement time; Enter keeps the current one"""
    shown = current.astimezone(local_tz).strftime("%Y-%m-%d %H:%M") if current else "unknown"
    while True:
        value = input(f"{label} [{shown}]: ").strip()
        if not value:
            return None
        try:
            dt = date_parser.parse(value)
        except (ValueError, OverflowError):
            print("  ✗ Use YYYY-MM-DD HH:MM")
            continue
        return dt if dt.tzinfo else dt.replace(tzinfo=local_tz)


def review_cluster(wf: IdentificationWorkflow, local_tz) -> None:
    cluster = wf.current_cluster
    print(f"\nOuting {wf.cluster_index + 1} of {len(wf.clusters)}: {len(cluster.items)} photo(s)")
    if cluster.start_time:
        print(f"  When:  {format_outing_time(cluster.start_time.isoformat(), cluster.end_time.isoformat())}")
    else:
        print("  When:  no capture time (defaults to now)")
    if cluster.has_location:
        print(f"  Where: {cluster.center_lat:.4f}, {cluster.center_lon:.4f}")
    else:
        print("  Where: no GPS data")

    location_name = input("Location name: ").strip()
    start = prompt_time("Start", cluster.start_time, local_tz)
    end = prompt_time("End", cluster.end_time, local_tz) if start or cluster.end_time else None
    notes = input("Notes: ").strip()

    outing = wf.confirm_outing(location_name=location_name, start_time=start, end_time=end, notes=notes)
    print(f"  → Outing {outing['id']}")


def decide_photo(wf: IdentificationWorkflow) -> bool:
    """Handle one prompt for the current photo; returns False when the user quits"""
    cluster = wf.current_cluster
    item = wf.current_item
    print(f"\nPhoto {wf.item_index + 1} of {len(cluster.items)}: {Path(item.path).name}")

    if wf.step == FlowStep.CONFIRM:
        for idx, candidate in enumerate(wf.candidates, 1):
            marker = "*" if candidate is wf.selected else " "
            print(f" {marker}{idx}. {candidate.species} ({int(candidate.confidence * 100)}%)")
        if wf.auto_confirm:
            hint = "[Enter] confirm, p possible, 1-5 pick, s skip, c crop, b back, q quit"
        else:
            hint = "y confirm, p possible, 1-5 pick, s skip, c crop, b back, q quit"
    elif wf.step == FlowStep.MANUAL_CROP:
        print("  No bird found. Crop to the bird and try again.")
        hint = "c crop, s skip, b back, q quit, or type a species name"
    else:
        print("  Still no bird found after cropping.")
        hint = "s skip, c crop, b back, q quit, or type a species name"

    choice = input(f"{hint}: ").strip()
    lowered = choice.lower()

    if lowered == "q":
        return False
    if lowered == "b":
        wf.back()
    elif lowered == "s":
        wf.skip()
    elif lowered == "c":
        if wf.crop_box:
            box = wf.crop_box
            print(f"  Suggested crop: {box['x']},{box['y']},{box['width']},{box['height']}")
        try:
            wf.apply_crop(parse_crop_box(input("Crop x,y,width,height (%): ")))
        except ValueError as e:
            print(f"  ✗ {e}")
    elif wf.step == FlowStep.CONFIRM and lowered.isdigit():
        index = int(lowered) - 1
        if 0 <= index < len(wf.candidates):
            wf.select(index)
        else:
            print(f"  ✗ Choose 1-{len(wf.candidates)}")
    elif wf.step == FlowStep.CONFIRM and lowered in ("", "y", "p"):
        if lowered == "" and not wf.auto_confirm:
            print("  ✗ Low confidence: choose y (confirm) or p (possible)")
            return True
        certainty = Certainty.POSSIBLE if lowered == "p" else Certainty.CONFIRMED
        obs = wf.record(certainty=certainty, count=prompt_count())
        print(f"✓ {obs['species_name']} ({obs['certainty']})")
    elif choice:
        obs = wf.record(species=choice, certainty=Certainty.CONFIRMED, count=prompt_count())
        print(f"✓ {obs['species_name']} ({obs['certainty']})")
    return True


def prompt_count() -> int:
    value = input("Count [1]: ").strip()
    try:
        return max(1, int(value)) if value else 1
    except ValueError:
        print("Invalid count, using 1.")
        return 1


def cmd_add(args):
    """Identify photos and log them as outings"""
    config = cfg.load_config()
    store = JsonStore()
    local_tz = tz.gettz(config["timezone"]) or tz.UTC

    if args.files:
        image_files = [Path(f) for f in args.files]
    else:
        image_files = sorted(
            f for f in INBOX_PATH.iterdir() if f.suffix.lower() in IMAGE_SUFFIXES
        ) if INBOX_PATH.exists() else []

    if not image_files:
        print("No images found in inbox/")
        return

    print(f"Found {len(image_files)} image(s) to process")
    wf = IdentificationWorkflow(
        store,
        extractor=lambda data: extract_metadata(data, config["timezone"]),
        identifier=BirdIdentifier(config),
        config=config,
    )
    wf.extract(image_files)
    if wf.duplicates_skipped:
        print(f"⚠ Skipped {wf.duplicates_skipped} photo(s) already uploaded")

    try:
        while wf.step != FlowStep.COMPLETE:
            try:
                if wf.step == FlowStep.REVIEW:
                    review_cluster(wf, local_tz)
                elif not decide_photo(wf):
                    break
            except WorkflowError as e:
                print(f"  ✗ {e}")
    except (KeyboardInterrupt, EOFError):
        print()

    summary = wf.close()
    print("-" * 50)
    print(f"Outings: {len(summary['outings'])}, observations: {summary['observations']}")
    if summary["new_species"]:
        print(f"🎉 {summary['new_species']} new species for the life list!")


def cmd_import(args):
    """Import an eBird CSV export"""
    config = cfg.load_config()
    store = JsonStore()

    path = Path(args.csv)
    if not path.exists():
        print(f"File not found: {args.csv}")
        return

    previews = parse_ebird_csv(path.read_text(encoding="utf-8"), config["timezone"])
    if not previews:
        print("No importable rows found.")
        return

    dex_by_species = {e["species_name"]: e for e in store.list_dex()}
    normalized = [{**p, "species_name": normalize(p["species_name"])} for p in previews]
    tagged = detect_import_conflicts(normalized, dex_by_species)

    print(f"{'Date':<12} {'Species':<40} {'Count':>5}  Status")
    print("-" * 72)
    for row in tagged:
        print(f"{row['date'][:10]:<12} {display_name(row['species_name'])[:39]:<40} {row['count']:>5}  {row['conflict']}")

    rows = importable_rows(tagged)
    skipped = len(tagged) - len(rows)
    if skipped:
        print(f"\n⚠ Skipping {skipped} duplicate row(s)")
    if not rows:
        print("Nothing new to import.")
        return

    if not args.yes:
        confirm = input(f"\nImport {len(rows)} record(s)? [y/N]: ").strip().lower()
        if confirm != "y":
            print("Cancelled.")
            return

    summary = import_previews(store, rows, config)
    print(f"\n✓ Imported {summary['observations']} observation(s)")
    print(f"  Outings: {summary['outings_created']} new, {summary['outings_merged']} merged")
    if summary["new_species"]:
        print(f"  New species: {summary['new_species']}")


def cmd_outings(args):
    """List recent outings"""
    store = JsonStore()
    outings = sorted(store.list_outings(), key=lambda o: o["start_time"], reverse=True)[: args.last]
    if not outings:
        print("No outings yet.")
        return

    observations = store.list_observations()
    print(f"{'ID':<14} {'When':<36} {'Species':>7}  Location")
    print("-" * 80)
    for outing in outings:
        species = {
            o["species_name"] for o in observations
            if o["outing_id"] == outing["id"] and o["certainty"] != Certainty.REJECTED.value
        }
        when = format_outing_time(outing["start_time"], outing["end_time"])
        print(f"{outing['id']:<14} {when:<36} {len(species):>7}  {outing.get('location_name', '')}")


def cmd_dex(args):
    """Show the life list"""
    store = JsonStore()
    dex = store.list_dex()
    if not dex:
        print("Life list is empty.")
        return

    if args.sort == "recent":
        dex = sorted(dex, key=lambda e: e["last_seen_date"], reverse=True)
    elif args.sort == "count":
        dex = sorted(dex, key=lambda e: e["total_count"], reverse=True)
    else:
        dex = sorted(dex, key=lambda e: e["species_name"].lower())

    print(f"{'Species':<45} {'First':<11} {'Last':<11} {'Outings':>7} {'Count':>6}")
    print("-" * 84)
    for entry in dex:
        print(
            f"{entry['species_name'][:44]:<45} {entry['first_seen_date'][:10]:<11} "
            f"{entry['last_seen_date'][:10]:<11} {entry['total_outings']:>7} {entry['total_count']:>6}"
        )
    print(f"\n{len(dex)} species")


def cmd_search(args):
    """Search the taxonomy"""
    config = cfg.load_config()
    taxonomy = default_taxonomy()
    results = taxonomy.search(args.query, args.limit or config["search"]["limit"])
    if not results:
        print("No matches.")
        return
    for entry in results:
        print(f"  {entry.common} ({entry.scientific})")


def cmd_export(args):
    """Export the life list or a single outing as CSV"""
    store = JsonStore()
    if args.what == "dex":
        content = export_dex_csv(store.list_dex())
    else:
        if not args.id:
            print("Outing ID required: export outing <id>")
            return
        outing = store.get_outing(args.id)
        if not outing:
            print(f"Outing {args.id} not found.")
            return
        content = export_outing_csv(outing, store.list_observations(args.id))

    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"✓ Wrote {args.output}")
    else:
        sys.stdout.write(content)


def cmd_rebuild(args):
    """Recompute the life list from stored outings and observations"""
    store = JsonStore()
    before = {e["species_name"]: e for e in store.list_dex()}
    rebuilt = rebuild_dex(store.list_outings(), store.list_observations(), list(before.values()))

    changed = 0
    for entry in rebuilt:
        old = before.get(entry["species_name"])
        if old is None or any(old.get(k) != entry[k] for k in ("total_outings", "total_count", "first_seen_date", "last_seen_date")):
            changed += 1
    removed = len(set(before) - {e["species_name"] for e in rebuilt})

    store.replace_dex(rebuilt)
    print(f"✓ Life list rebuilt: {len(rebuilt)} species ({changed} changed, {removed} removed)")


def cmd_stats(args):
    """Show totals"""
    config = cfg.load_config()
    store = JsonStore()
    outings = store.list_outings()
    observations = store.list_observations()
    dex = store.list_dex()

    if not outings:
        print("No outings yet.")
        return

    by_certainty = {}
    for o in observations:
        by_certainty[o["certainty"]] = by_certainty.get(o["certainty"], 0) + 1

    starts = sorted(o["start_time"] for o in outings)
    print(f"\n{config['site_title']} - Statistics")
    print("=" * 40)
    print(f"Outings: {len(outings)}")
    print(f"Observations: {len(observations)}")
    for certainty in Certainty:
        print(f"  {certainty.value}: {by_certainty.get(certainty.value, 0)}")
    print(f"Life list: {len(dex)} species")
    print(f"Date range: {starts[0][:10]} to {starts[-1][:10]}")
    latest_log = find_latest_log_file()
    if latest_log:
        print(f"Log: {latest_log}")


def main():
    parser = argparse.ArgumentParser(description="Bird outings and life list pipeline")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    add_parser = subparsers.add_parser("add", help="Identify photos and log outings")
    add_parser.add_argument("files", nargs="*", help="Photo files (default: everything in inbox/)")

    import_parser = subparsers.add_parser("import", help="Import an eBird CSV")
    import_parser.add_argument("csv", help="Path to CSV file")
    import_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")

    outings_parser = subparsers.add_parser("outings", help="List recent outings")
    outings_parser.add_argument("--last", "-n", type=int, default=10, help="Number of entries")

    dex_parser = subparsers.add_parser("dex", help="Show the life list")
    dex_parser.add_argument("--sort", "-s", choices=["name", "recent", "count"], default="name")

    search_parser = subparsers.add_parser("search", help="Search the taxonomy")
    search_parser.add_argument("query", help="Common or scientific name fragment")
    search_parser.add_argument("--limit", "-n", type=int, help="Maximum results")

    export_parser = subparsers.add_parser("export", help="Export CSV")
    export_parser.add_argument("what", choices=["dex", "outing"])
    export_parser.add_argument("id", nargs="?", help="Outing ID (for 'outing')")
    export_parser.add_argument("--output", "-o", help="Write to file instead of stdout")

    subparsers.add_parser("rebuild", help="Recompute the life list")
    subparsers.add_parser("stats", help="Show totals")

    args = parser.parse_args()
    init_logging(verbose=args.verbose)

    commands = {
        "add": cmd_add,
        "import": cmd_import,
        "outings": cmd_outings,
        "dex": cmd_dex,
        "search": cmd_search,
        "export": cmd_export,
        "rebuild": cmd_rebuild,
        "stats": cmd_stats,
    }
    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
