"""
Command-line interface for the regulation source poller.

Subcommands:
    poll      run one poll cycle (scheduler entry point)
    analyze   classify jurisdictions from a saved report artifact
    curate    empty the sources of problematic or chosen jurisdictions
    prune     remove individual broken sources
    add       add replacement sources to a jurisdiction
    revert    undo a curation, prune or add from its snapshot
    export    regenerate the CSV export from the registry
    counts    list jurisdictions by number of configured sources
    validate  check the registry file
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config.settings import PollerSettings, get_poller_settings
from .ingest import registry as registry_store
from .ingest.alerts import should_exit_nonzero
from .ingest.coordinator import run_poll_cycle
from .ingest.curator import (
    apply_additions,
    apply_curation,
    apply_prune,
    failed_urls_from_artifact,
    restore_snapshot,
)
from .ingest.export import write_export
from .ingest.health import load_health_tracker
from .ingest.jurisdictions import is_valid_code, normalize_code
from .ingest.registry import ConfigCorrupt, CuratorWriteConflict, count_sources
from .ingest.report import ReportArtifactError, build, load_report_artifact, metrics_from_artifact
from .logging_config import configure_logging
from .run_utils import find_latest_report


def _settings(args: argparse.Namespace) -> PollerSettings:
    settings = get_poller_settings(args.config)
    overrides = {}
    if args.registry:
        overrides["registry_path"] = args.registry
    if args.runs_dir:
        overrides["runs_dir"] = args.runs_dir
    if args.export:
        overrides["export_path"] = args.export
    return dataclasses.replace(settings, **overrides) if overrides else settings


def _resolve_report_path(report_arg: Optional[str], settings: PollerSettings) -> Path:
    if report_arg:
        return Path(report_arg)
    latest = find_latest_report(Path(settings.runs_dir))
    if latest is None:
        raise ReportArtifactError(f"No poll report found under {settings.runs_dir}")
    return latest


def _parse_codes(raw: List[str]) -> List[str]:
    codes = []
    for chunk in raw:
        codes.extend(normalize_code(c) for c in chunk.split(",") if c.strip())
    return codes


def cmd_poll(args: argparse.Namespace) -> int:
    """Run one poll cycle."""
    settings = _settings(args)
    try:
        result = run_poll_cycle(
            settings=settings,
            run_id=args.run_id,
            notify=args.notify,
            recipients=args.recipient or None,
            auto_curate=args.auto_curate,
        )
    except (ConfigCorrupt, CuratorWriteConflict) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report = result.report
    print(f"Run {result.run_id}: {report.total_sources_evaluated} sources, "
          f"{report.accessible_count} accessible, avg score {report.average_score:.3f}")
    print(f"Report: {result.report_path}")
    if report.problematic_jurisdictions:
        print(f"Problematic: {', '.join(sorted(report.problematic_jurisdictions))}")
    if result.curation is not None:
        print(f"Curated: removed {result.curation.diff.removed_count} sources "
              f"(snapshot {result.curation.snapshot_path})")
    print(f"Alert status: {result.alert_report.status}")

    if should_exit_nonzero(result.alert_report):
        print("Poll run FAILED - exiting with error code", file=sys.stderr)
        return 1
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Re-classify jurisdictions from a saved report artifact."""
    settings = _settings(args)
    try:
        report_path = _resolve_report_path(args.report, settings)
        artifact = load_report_artifact(report_path)
        registry = registry_store.load(settings.registry_path) if args.include_empty else None
    except (ReportArtifactError, ConfigCorrupt) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    poller_id = None if args.all_pollers else settings.poller_id
    metrics = metrics_from_artifact(artifact, poller_id=poller_id, registry=registry)
    report = build(metrics, run_id=artifact.get("runId", ""), poller_id=settings.poller_id)

    print(f"Analyzed {report.total_sources_evaluated} sources from {report_path}\n")
    for m in sorted(metrics.values(), key=lambda m: m.average_score):
        flag = "  PROBLEMATIC" if m.code in report.problematic_jurisdictions else ""
        print(f"{m.code}: {m.total_sources} total, {m.accessible_sources} accessible, "
              f"avg score {m.average_score:.3f}{flag}")

    problematic = sorted(report.problematic_jurisdictions)
    print(f"\nProblematic jurisdictions ({len(problematic)}): {', '.join(problematic) or 'none'}")

    if args.output:
        output = {
            "totalSources": report.total_sources_evaluated,
            "stateMetrics": {
                code: {
                    "totalSources": m.total_sources,
                    "accessibleSources": m.accessible_sources,
                    "averageScore": round(m.average_score, 4),
                }
                for code, m in metrics.items()
            },
            "problematicStates": problematic,
        }
        with open(args.output, 'w') as f:
            json.dump(output, f, indent=2)
        print(f"Wrote {args.output}")

    return 0


def _print_outcome(outcome, settings: PollerSettings) -> None:
    diff = outcome.diff
    verb = "Would remove" if outcome.dry_run else "Removed"
    for code, removed in diff.removed.items():
        counts = count_sources(removed)
        print(f"{verb} {counts.total} sources from {code} "
              f"({counts.news} news, {counts.regulation} regulation, {counts.rss} rss)")
    verb = "Would add" if outcome.dry_run else "Added"
    for code, added in diff.added.items():
        counts = count_sources(added)
        print(f"{verb} {counts.total} sources to {code} "
              f"({counts.news} news, {counts.regulation} regulation, {counts.rss} rss)")
    if diff.already_empty:
        print(f"Already empty: {', '.join(diff.already_empty)}")
    if diff.unknown_codes:
        print(f"Not in registry: {', '.join(diff.unknown_codes)}")
    if diff.unknown_urls:
        print(f"URLs not in registry: {len(diff.unknown_urls)}")
    if diff.skipped_urls:
        print(f"Already registered, skipped: {', '.join(diff.skipped_urls)}")
    if diff.is_empty:
        print("Registry unchanged")
    if outcome.snapshot_path:
        print(f"Snapshot: {outcome.snapshot_path}")
    if outcome.export_rows is not None:
        print(f"Export regenerated: {settings.export_path} ({outcome.export_rows} rows)")
    if outcome.dry_run:
        print("(dry run - registry not written)")


def _snapshot_dir(settings: PollerSettings) -> Path:
    return Path(settings.runs_dir) / "_meta" / "registry_snapshots"


def cmd_curate(args: argparse.Namespace) -> int:
    """Empty sources of problematic (from report) or listed jurisdictions."""
    settings = _settings(args)

    try:
        if args.codes:
            codes = _parse_codes(args.codes)
            invalid = [c for c in codes if not is_valid_code(c)]
            if invalid:
                print(f"Warning: not jurisdiction codes, ignored: {', '.join(invalid)}", file=sys.stderr)
        else:
            artifact = load_report_artifact(_resolve_report_path(args.report, settings))
            codes = list(artifact.get("problematicStates", []))

        outcome = apply_curation(
            settings.registry_path,
            codes,
            settings.export_path,
            snapshot_dir=_snapshot_dir(settings),
            dry_run=args.dry_run,
            poller_id=settings.poller_id,
        )
    except (ReportArtifactError, ConfigCorrupt, CuratorWriteConflict) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_outcome(outcome, settings)
    return 0


def cmd_prune(args: argparse.Namespace) -> int:
    """Remove individual broken sources (failed in a report, DOWN, or listed)."""
    settings = _settings(args)

    try:
        if args.urls:
            urls = list(args.urls)
        elif args.down:
            urls = load_health_tracker(settings.runs_dir).get_summary()["down_sources"]
        else:
            artifact = load_report_artifact(_resolve_report_path(args.report, settings))
            urls = failed_urls_from_artifact(artifact, settings.poller_id)

        outcome = apply_prune(
            settings.registry_path,
            urls,
            settings.export_path,
            snapshot_dir=_snapshot_dir(settings),
            dry_run=args.dry_run,
            poller_id=settings.poller_id,
        )
    except (ReportArtifactError, ConfigCorrupt, CuratorWriteConflict) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_outcome(outcome, settings)
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    """Add verified replacement sources to one jurisdiction."""
    settings = _settings(args)
    code = normalize_code(args.code)
    if not is_valid_code(code):
        print(f"Error: unknown jurisdiction code: {code}", file=sys.stderr)
        return 1
    if not (args.news or args.regulation or args.rss):
        print("Error: give at least one --news, --regulation or --rss URL", file=sys.stderr)
        return 1

    try:
        outcome = apply_additions(
            settings.registry_path,
            code,
            settings.export_path,
            news=args.news or [],
            regulation=args.regulation or [],
            rss=args.rss or [],
            snapshot_dir=_snapshot_dir(settings),
            dry_run=args.dry_run,
            poller_id=settings.poller_id,
        )
    except (ConfigCorrupt, CuratorWriteConflict) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_outcome(outcome, settings)
    return 0


def cmd_revert(args: argparse.Namespace) -> int:
    """Undo a registry edit from its snapshot file."""
    settings = _settings(args)
    try:
        restored = restore_snapshot(args.snapshot, settings.registry_path, settings.export_path,
                                    poller_id=settings.poller_id)
    except (ConfigCorrupt, CuratorWriteConflict, OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    total = sum(len(j.sources) for j in restored.values())
    print(f"Restored registry from {args.snapshot} ({total} sources)")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Regenerate the CSV export."""
    settings = _settings(args)
    try:
        registry = registry_store.load(settings.registry_path)
    except ConfigCorrupt as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rows = write_export(registry, settings.export_path, settings.poller_id)
    print(f"Exported {rows} sources to {settings.export_path}")
    return 0


def cmd_counts(args: argparse.Namespace) -> int:
    """List jurisdictions by total configured sources, lowest first."""
    settings = _settings(args)
    try:
        registry = registry_store.load(settings.registry_path)
    except ConfigCorrupt as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rows = sorted(((code, count_sources(j)) for code, j in registry.items()), key=lambda r: r[1].total)
    if args.limit:
        rows = rows[:args.limit]

    print("Jurisdictions by total sources (lowest first):")
    for code, counts in rows:
        print(f"{code}: {counts.total} ({counts.news} news, {counts.regulation} reg, {counts.rss} rss)")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate the registry file."""
    settings = _settings(args)
    try:
        registry = registry_store.load(settings.registry_path)
    except ConfigCorrupt as e:
        print(f"INVALID: {e}", file=sys.stderr)
        return 1

    total = sum(len(j.sources) for j in registry.values())
    print(f"OK: {len(registry)} jurisdictions, {total} sources")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="regwatch",
        description="Regulation source poller - polling, scoring and curation"
    )

    parser.add_argument("--config", help="Path to poller config (default: config/poller.yaml)")
    parser.add_argument("--registry", help="Path to source registry YAML")
    parser.add_argument("--runs-dir", help="Path to runs directory")
    parser.add_argument("--export", help="Path to CSV export")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    poll_parser = subparsers.add_parser("poll", help="Run one poll cycle")
    poll_parser.add_argument("--run-id", help="Run identifier (default: RUN_<timestamp>)")
    poll_parser.add_argument("--notify", action="store_true", help="E-mail broken links")
    poll_parser.add_argument("--recipient", action="append", help="Notification recipient (repeatable)")
    poll_parser.add_argument("--auto-curate", action="store_true",
                             help="Empty problematic jurisdictions after the run")
    poll_parser.set_defaults(func=cmd_poll)

    analyze_parser = subparsers.add_parser("analyze", help="Classify jurisdictions from a report")
    analyze_parser.add_argument("--report", help="Report artifact (default: latest run)")
    analyze_parser.add_argument("--output", "-o", help="Write analysis JSON here")
    analyze_parser.add_argument("--all-pollers", action="store_true",
                                help="Count entries from every poller id")
    analyze_parser.add_argument("--include-empty", action="store_true",
                                help="Include registry jurisdictions with no report entries")
    analyze_parser.set_defaults(func=cmd_analyze)

    curate_parser = subparsers.add_parser("curate", help="Empty sources of flagged jurisdictions")
    curate_parser.add_argument("--report", help="Report artifact (default: latest run)")
    curate_parser.add_argument("--codes", nargs="+", help="Manual override list, e.g. AR IN or AR,IN")
    curate_parser.add_argument("--dry-run", action="store_true", help="Don't write the registry")
    curate_parser.set_defaults(func=cmd_curate)

    prune_parser = subparsers.add_parser("prune", help="Remove individual broken sources")
    prune_source = prune_parser.add_mutually_exclusive_group()
    prune_source.add_argument("--report", help="Prune failedSources of this report (default: latest run)")
    prune_source.add_argument("--down", action="store_true", help="Prune sources whose health is DOWN")
    prune_source.add_argument("--urls", nargs="+", help="Prune exactly these URLs")
    prune_parser.add_argument("--dry-run", action="store_true", help="Don't write the registry")
    prune_parser.set_defaults(func=cmd_prune)

    add_parser = subparsers.add_parser("add", help="Add replacement sources to a jurisdiction")
    add_parser.add_argument("code", help="Jurisdiction code, e.g. AR")
    add_parser.add_argument("--news", nargs="+", help="News page URLs")
    add_parser.add_argument("--regulation", nargs="+", help="Regulation page URLs")
    add_parser.add_argument("--rss", nargs="+", help="RSS feed URLs")
    add_parser.add_argument("--dry-run", action="store_true", help="Don't write the registry")
    add_parser.set_defaults(func=cmd_add)

    revert_parser = subparsers.add_parser("revert", help="Undo a registry edit")
    revert_parser.add_argument("snapshot", help="Snapshot JSON written by curate, prune or add")
    revert_parser.set_defaults(func=cmd_revert)

    export_parser = subparsers.add_parser("export", help="Regenerate the CSV export")
    export_parser.set_defaults(func=cmd_export)

    counts_parser = subparsers.add_parser("counts", help="Jurisdictions by source count")
    counts_parser.add_argument("--limit", type=int, default=15, help="Rows to show (0 = all)")
    counts_parser.set_defaults(func=cmd_counts)

    validate_parser = subparsers.add_parser("validate", help="Validate the registry")
    validate_parser.set_defaults(func=cmd_validate)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
