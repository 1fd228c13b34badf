"""
Re-summarize an existing custodian export.

Rebuilds <export_dir>/summary-report.xml from <export_dir>/<reports>/*/summary-report.xml,
e.g. after custodians were exported again by hand following an aborted run.

Usage:
    python summarize_reports.py D:/exports/case-42 --start-time "2024-01-05 09:30"
"""

import argparse
import os
import sys

from dateutil import parser as date_parser

from export_engine import DIGEST_NAME, ArtifactConsolidator
from run_context import ProgressTracker, RunLogger, new_run_id, sync_warning_events
from summary_reporter import REPORT_NAME, SummaryReporter


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Merge per-custodian summary reports into one summary report.")
    parser.add_argument("export_dir", help="Export directory containing the reports directory.")
    parser.add_argument("--reports-subdir", default="Reports", help="Reports directory name (REPORTS for productions).")
    parser.add_argument("--details-type", default="Custodian", help="Element name used for per-custodian details.")
    parser.add_argument("--start-time", help="Start of the original export; defaults to the earliest custodian report.")
    parser.add_argument("--engine-version", default="", help="Version written on the root element.")
    parser.add_argument("--output", help=f"Output path; defaults to <export_dir>/{REPORT_NAME}.")
    parser.add_argument("--append-digests", action="store_true", help=f"Also rebuild {DIGEST_NAME}.")
    parser.add_argument("--no-log", action="store_true", help="Do not write run logs under <export_dir>/logs.")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    reports_dir = os.path.join(args.export_dir, args.reports_subdir)
    if not os.path.isdir(reports_dir):
        parser.error(f"reports directory not found: {reports_dir}")

    start_time = None
    if args.start_time:
        try:
            start_time = date_parser.parse(args.start_time)
        except (ValueError, OverflowError):
            parser.error(f"could not parse --start-time: {args.start_time}")

    warnings = []
    with RunLogger(os.path.join(args.export_dir, "logs"), new_run_id(), enabled=not args.no_log) as run_logger:
        progress = ProgressTracker(run_logger=run_logger)
        reporter = SummaryReporter(
            args.export_dir,
            reports_dir,
            start_time=start_time,
            details_type=args.details_type,
            engine_version=args.engine_version,
            progress=progress,
            warnings=warnings,
        )
        output_path = reporter.write(args.output or os.path.join(args.export_dir, REPORT_NAME))
        if args.append_digests:
            digest_path = os.path.join(args.export_dir, DIGEST_NAME)
            if os.path.exists(digest_path):
                run_logger.log("info", "file_removed", f"Replacing {digest_path}", path=digest_path)
                os.remove(digest_path)
            ArtifactConsolidator(args.export_dir, reports_dir, progress=progress).append(DIGEST_NAME)
        sync_warning_events(warnings, 0, run_logger)

    for warning in warnings:
        print(f"WARNING {warning['code']}: {warning['message']}")
    print(f"Wrote {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
