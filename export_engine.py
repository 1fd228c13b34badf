"""
Custodian Export Engine - exports a case selection one custodian at a time
Drives the external batch exporter per custodian, files each custodian's reports
into Reports/<custodian>, and summarizes all custodian reports into one report.
"""

import os
import glob
import json
import shutil
import threading
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from run_context import (
    ProgressTracker,
    RunLogger,
    new_run_id,
    record_warning,
    sync_warning_events,
)
from summary_reporter import REPORT_NAME, SummaryReporter

OUTCOME_COMPLETED = "completed"
OUTCOME_ABORTED = "aborted"
OUTCOME_FAILED = "failed"

JOB_MODES = ("native", "report_whitelist", "pst")

DIGEST_NAME = "top-level-MD5-digests.txt"
LOAD_FILE_DAT = "loadfile.dat"
LOAD_FILE_OPT = "loadfile.opt"
MANIFEST_NAME = "export_manifest.json"

MISSING_CUSTODIAN_QUERY = "has-custodian:0"
MISSING_STORED_PDF_QUERY = "-has-stored:pdf"

DEFAULT_PRODUCTION_SETTINGS = {
    'load_file': 'concordance',
    'product': {
        'type': 'tiff',
        'options': {
            'naming': 'full',
            'path': 'IMAGES',
        },
    },
    'numbering': {
        'delimiter': '',
        'groupDocumentPages': False,
        'groupFamilyItems': False,
        'advancedView': False,
        'folder': {'minWidth': 6, 'from': 0, 'to': 999, 'startAt': 0},
        'page': {'minWidth': 3, 'from': 0, 'to': 999, 'startAt': 1},
    },
}


class MissingCustodianError(RuntimeError):
    """Raised before any export when selected items have no custodian."""

    def __init__(self, guids: List[str]):
        super().__init__(f"{len(guids)} items to export have no custodian")
        self.guids = list(guids)


def custodian_query(name: str) -> str:
    escaped = name.replace('\\', '\\\\').replace('"', '\\"')
    return f'custodian:"{escaped}"'


class FileReorganizer:
    """
    Moves the files the export engine wrote for one custodian into Reports/<custodian>.

    Modes:
        native: every regular file is moved
        report_whitelist: only the digest and summary report files are moved
        pst: every regular file except PSTs is moved; with "item_name" naming,
            Export*.pst files in each subdirectory are renamed after the
            custodian and lifted into the items directory
    """

    PST_PREFIX = "Export"
    PST_EXTENSION = ".pst"
    REPORT_WHITELIST = (DIGEST_NAME, REPORT_NAME, "summary-report.txt")

    def __init__(
        self,
        reports_root: str,
        mode: str = "native",
        naming: str = "item_name_with_path",
        progress: Optional[ProgressTracker] = None,
    ):
        if mode not in JOB_MODES:
            raise ValueError(f"Unknown reorganization mode: {mode}")
        self.reports_root = reports_root
        self.mode = mode
        self.naming = naming
        self.progress = progress if progress is not None else ProgressTracker()

    def _move(self, source: str, destination: str) -> None:
        self.progress.log("info", "file_move", f"Moving {source} to {destination}", source=source, destination=destination)
        if not os.path.exists(source):
            raise FileNotFoundError(f"Cannot move missing file: {source}")
        shutil.move(source, destination)

    def reorganize(self, partition_export_dir: str, partition_name: str) -> Dict[str, List[str]]:
        """
        Args:
            partition_export_dir: Directory the export engine wrote this custodian's output to
            partition_name: Custodian name

        Returns:
            Dict with 'moved' (report file names) and 'renamed' (new PST paths)
        """
        report_dir = os.path.join(self.reports_root, partition_name)
        os.makedirs(report_dir, exist_ok=True)
        self.progress.log(
            "info",
            "reorganize_start",
            f"Moving files from {partition_export_dir}",
            directory=partition_export_dir,
            custodian=partition_name,
        )

        moved: List[str] = []
        renamed: List[str] = []
        if self.mode == "report_whitelist":
            for name in self.REPORT_WHITELIST:
                self._move(os.path.join(partition_export_dir, name), os.path.join(report_dir, name))
                moved.append(name)
        else:
            for entry in sorted(os.listdir(partition_export_dir)):
                path = os.path.join(partition_export_dir, entry)
                if os.path.isfile(path):
                    if self.mode == "pst" and entry.lower().endswith(self.PST_EXTENSION):
                        continue
                    self._move(path, os.path.join(report_dir, entry))
                    moved.append(entry)
                elif os.path.isdir(path) and self.mode == "pst" and self.naming == "item_name":
                    renamed.extend(self.consolidate_psts(path, partition_name, partition_export_dir))

        self.progress.log(
            "info",
            "reorganize_end",
            f"Moved: {', '.join(moved) if moved else 'nothing'}",
            custodian=partition_name,
            moved=len(moved),
            renamed=len(renamed),
        )
        return {"moved": moved, "renamed": renamed}

    def consolidate_psts(self, directory: str, custodian: str, items_dir: str) -> List[str]:
        """Rename Export*.pst in ``directory`` to <custodian>*.pst in ``items_dir``; drop the directory if emptied."""
        renamed = []
        pattern = os.path.join(glob.escape(directory), f"{self.PST_PREFIX}*{self.PST_EXTENSION}")
        for pst in sorted(glob.glob(pattern)):
            new_name = custodian + os.path.basename(pst)[len(self.PST_PREFIX):]
            destination = os.path.join(items_dir, new_name)
            self._move(pst, destination)
            renamed.append(destination)
        if not os.listdir(directory):
            self.progress.log("info", "directory_removed", f"Removing empty {directory}", directory=directory)
            os.rmdir(directory)
        return renamed


class ArtifactConsolidator:
    """Builds export-level artifacts from the per-custodian copies under Reports/*/"""

    def __init__(self, export_dir: str, reports_root: str, progress: Optional[ProgressTracker] = None):
        self.export_dir = export_dir
        self.reports_root = reports_root
        self.progress = progress if progress is not None else ProgressTracker()

    def discover(self, name: str) -> List[str]:
        pattern = os.path.join(glob.escape(self.reports_root), "*", name)
        return [path for path in sorted(glob.glob(pattern)) if os.path.isfile(path)]

    @staticmethod
    def _ends_with_newline(path: str) -> bool:
        if os.path.getsize(path) == 0:
            return True
        with open(path, "rb") as handle:
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) == b"\n"

    def _append_parts(self, name: str, skip_header: bool) -> Optional[str]:
        parts = self.discover(name)
        if not parts:
            return None
        self.progress.status(f"Generating {name}")
        output_path = os.path.join(self.export_dir, name)
        for part in parts:
            self.progress.log("info", "artifact_append", f"Adding {part}", file=part, artifact=name)
            drop_first_line = skip_header and os.path.exists(output_path)
            if os.path.exists(output_path) and not self._ends_with_newline(output_path):
                with open(output_path, "ab") as output:
                    output.write(b"\n")
            with open(part, "rb") as source, open(output_path, "ab") as output:
                if drop_first_line:
                    source.readline()
                shutil.copyfileobj(source, output)
        return output_path

    def append(self, name: str) -> Optional[str]:
        """Concatenate every Reports/*/<name> into <export_dir>/<name>."""
        return self._append_parts(name, skip_header=False)

    def append_tabular(self, name: str) -> Optional[str]:
        """Concatenate load-file style parts, keeping the header line of the first part only."""
        return self._append_parts(name, skip_header=True)


class CustodianExportOrchestrator:
    """Coordinates a per-custodian export run"""

    def __init__(
        self,
        item_store,
        exporter_factory: Callable[[str], Any],
        mode: str = "native",
        naming: Optional[str] = None,
        mail_format: str = "pst",
        items_subdir: str = "Items",
        reports_subdir: str = "Reports",
        logs_subdir: str = "logs",
        summary_name: str = REPORT_NAME,
        details_type: str = "Custodian",
        engine_version: str = "",
        enable_detailed_logging: bool = True,
        log_privacy_mode: str = "redacted",
    ):
        if mode not in JOB_MODES:
            raise ValueError(f"Unknown export mode: {mode}")
        self.item_store = item_store
        self.exporter_factory = exporter_factory
        self.mode = mode
        if naming is None:
            naming = "item_name" if mode == "pst" else "item_name_with_path"
        self.naming = naming
        self.mail_format = mail_format
        self.items_subdir = items_subdir
        self.reports_subdir = reports_subdir
        self.logs_subdir = logs_subdir
        self.summary_name = summary_name
        self.details_type = details_type
        self.engine_version = engine_version
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode

    def run(
        self,
        export_dir: str,
        items,
        progress_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict:
        """
        Main entry point for a custodian export

        Args:
            export_dir: Directory receiving Items/, Reports/ and the summary report
            items: Selected items from the case
            progress_callback: Optional callback function(current, total, message)
            event_callback: Optional callback receiving every run log payload
            cancel_event: Optional threading.Event; set to stop before the next custodian

        Returns:
            Dict describing the run; 'outcome' is completed, aborted or failed
        """
        print(f"\nCustodian export to: {export_dir}")
        items_dir = os.path.join(export_dir, self.items_subdir)
        reports_dir = os.path.join(export_dir, self.reports_subdir)
        logs_dir = os.path.join(export_dir, self.logs_subdir)
        os.makedirs(export_dir, exist_ok=True)

        run_id = new_run_id()
        run_logger = RunLogger(
            logs_dir=logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )
        progress = ProgressTracker(
            progress_callback=progress_callback,
            cancel_event=cancel_event,
            run_logger=run_logger,
        )
        warnings: List[Dict] = []
        errors: List[Dict] = []
        result: Dict[str, Any] = {
            'run_id': run_id,
            'outcome': None,
            'reason': None,
            'export_dir': export_dir,
            'mode': self.mode,
            'naming': self.naming,
            'selected': len(items),
            'custodians': [],
            'skipped_custodians': [],
            'missing_custodian': [],
            'summary_report': None,
            'artifacts': [],
        }
        fatal_exception = None
        fatal_error_message = ""
        warning_cursor = 0

        for key, path in (("items", items_dir), ("reports", reports_dir), ("logs", logs_dir)):
            run_logger.log("info", "path", f"Writing {key} to {path}", directory=path)

        try:
            start_time = datetime.now().astimezone()
            result['started_at'] = start_time.isoformat(timespec='seconds')
            working_items = self._resolve_items(items, progress)
            progress.total = len(working_items)
            run_logger.log("info", "items_resolved", f"{progress.total} items to export", total=progress.total)
            self._check_custodians(working_items, progress)

            self._before_export(export_dir, working_items, progress)
            reorganizer = FileReorganizer(reports_dir, mode=self._reorganize_mode(), naming=self.naming, progress=progress)
            complete = self._export_custodians(export_dir, working_items, progress, reorganizer, result)
            warning_cursor = sync_warning_events(warnings, warning_cursor, run_logger)

            if progress.abort_requested and not complete:
                result['outcome'] = OUTCOME_ABORTED
                result['reason'] = 'user_abort'
                run_logger.log("warning", "run_aborted", "Aborted", exported=progress.exported, total=progress.total)
            else:
                if not complete:
                    record_warning(
                        warnings,
                        'export_incomplete',
                        'Custodian exports ended before every item was exported',
                        exported=progress.exported,
                        total=progress.total,
                    )
                reporter = SummaryReporter(
                    export_dir,
                    reports_dir,
                    start_time=start_time,
                    details_type=self.details_type,
                    engine_version=self.engine_version,
                    progress=progress,
                    warnings=warnings,
                )
                result['summary_report'] = reporter.write(os.path.join(export_dir, self.summary_name))
                warning_cursor = sync_warning_events(warnings, warning_cursor, run_logger)
                consolidator = ArtifactConsolidator(export_dir, reports_dir, progress=progress)
                result['artifacts'] = self._consolidate_artifacts(consolidator)
                result['outcome'] = OUTCOME_COMPLETED
                run_logger.log("info", "run_completed", "Completed", exported=progress.exported, total=progress.total)
        except MissingCustodianError as exc:
            result['outcome'] = OUTCOME_FAILED
            result['reason'] = 'missing_custodian'
            result['missing_custodian'] = exc.guids
        except Exception as exc:
            fatal_exception = exc
            fatal_error_message = str(exc)
            result['outcome'] = OUTCOME_FAILED
            result['reason'] = 'fatal_error'
            errors.append(
                {
                    "code": "export_unhandled_error",
                    "message": "Fatal error stopped the export",
                    "error": str(exc),
                    "traceback": traceback.format_exc(),
                }
            )
            run_logger.log("error", "fatal_error", "Fatal error stopped the export", error=str(exc))
        finally:
            sync_warning_events(warnings, warning_cursor, run_logger)
            result['exported'] = progress.exported
            result['total'] = progress.total
            result['finished_at'] = datetime.now().astimezone().isoformat(timespec='seconds')
            result['paths'] = {
                'items_dir': items_dir,
                'reports_dir': reports_dir,
                'logs_dir': logs_dir,
            }
            result['logs'] = {
                'text_log': run_logger.text_log_path,
                'jsonl_log': run_logger.jsonl_log_path,
            }
            result['warnings'] = warnings
            if errors:
                result['errors'] = errors

            manifest_path = os.path.join(logs_dir, MANIFEST_NAME)
            try:
                os.makedirs(logs_dir, exist_ok=True)
                with open(manifest_path, 'w', encoding='utf-8') as f:
                    json.dump(result, f, indent=2, default=str)
                run_logger.log("info", "manifest_written", "Wrote export manifest", path=manifest_path)
            except OSError as manifest_exc:
                run_logger.log(
                    "warning",
                    "manifest_write_failed",
                    f"Could not write {MANIFEST_NAME}: {manifest_exc}",
                    path=manifest_path,
                )
                result['manifest_write_error'] = str(manifest_exc)
            finally:
                run_logger.close()

        if fatal_exception is not None:
            raise RuntimeError(
                f"{fatal_error_message}\n"
                f"Run log: {run_logger.text_log_path}\n"
                f"Manifest: {os.path.join(logs_dir, MANIFEST_NAME)}"
            ) from fatal_exception

        return result

    def _intersect(self, query: str, items):
        matches = self.item_store.search(query)
        return self.item_store.intersection(items, matches)

    def _resolve_items(self, items, progress: ProgressTracker):
        progress.status(f"Finding top-level items from {len(items)} selected items")
        return self.item_store.find_top_level_items(items)

    def _check_custodians(self, working_items, progress: ProgressTracker) -> None:
        missing = self._intersect(MISSING_CUSTODIAN_QUERY, working_items)
        if not len(missing):
            return
        progress.log("error", "missing_custodian", "ERROR - Items missing custodian", count=len(missing))
        guids = []
        for item in missing:
            guids.append(item.guid)
            progress.log("error", "missing_custodian_item", item.guid)
        print(f"  ERROR - {len(guids)} items missing custodian")
        raise MissingCustodianError(guids)

    def _before_export(self, export_dir: str, working_items, progress: ProgressTracker) -> None:
        pass

    def _reorganize_mode(self) -> str:
        return self.mode

    def _export_custodians(
        self,
        export_dir: str,
        working_items,
        progress: ProgressTracker,
        reorganizer: FileReorganizer,
        result: Dict,
    ) -> bool:
        """Export custodian by custodian until every item is exported or an abort is requested."""
        progress.status(f"Exporting to {export_dir}")
        for name in self.item_store.get_all_custodians():
            partition = self._partition_items(name, working_items)
            if not len(partition):
                result['skipped_custodians'].append(name)
                continue
            if progress.abort_requested:
                progress.log("warning", "run_cancelled", "Abort requested; no further custodians exported", next_custodian=name)
                break

            count = len(partition)
            progress.status(f"Exporting custodian: {name} ({count} items)", custodian=name, count=count)
            partition_dir = self._export_partition(export_dir, name, partition, progress)
            complete = progress.advance(count)
            result['custodians'].append({'name': name, 'items': count})
            reorganizer.reorganize(partition_dir, name)
            if complete:
                return True
        return progress.complete

    def _partition_items(self, name: str, working_items):
        return self._intersect(custodian_query(name), working_items)

    def _create_exporter(self, destination: str, options: Dict[str, Any]):
        exporter = self.exporter_factory(destination)
        exporter.add_product('native', options)
        if getattr(self.item_store, 'supports_production_sets', True):
            exporter.set_numbering_options({'createProductionSet': False})
        return exporter

    def _export_partition(self, export_dir: str, name: str, partition, progress: ProgressTracker) -> str:
        """Run the export engine for one custodian; returns the directory it wrote to."""
        items_dir = os.path.join(export_dir, self.items_subdir)
        options = {'naming': self.naming, 'mailFormat': self.mail_format}
        if self.mode == "pst":
            options['path'] = name
            destination = items_dir
        else:
            destination = os.path.join(items_dir, name)
        self._create_exporter(destination, options).export_items(partition)
        return destination

    def _consolidate_artifacts(self, consolidator: ArtifactConsolidator) -> List[str]:
        created = consolidator.append(DIGEST_NAME)
        return [created] if created else []


class CustodianProductionOrchestrator(CustodianExportOrchestrator):
    """
    Production variant: one production set per custodian, exported with a load file.

    Works on the selected items themselves rather than their top-level items and
    writes everything the exporter leaves in the export root to REPORTS/<custodian>.
    """

    def __init__(
        self,
        item_store,
        exporter_factory: Callable[[str], Any],
        settings: Optional[Dict[str, Any]] = None,
        populate_pdf_store: bool = True,
        reports_subdir: str = "REPORTS",
        stores_subdir: str = "stores",
        **kwargs,
    ):
        super().__init__(item_store, exporter_factory, reports_subdir=reports_subdir, **kwargs)
        self.settings = settings if settings is not None else DEFAULT_PRODUCTION_SETTINGS
        self.populate_pdf_store = populate_pdf_store
        self.stores_subdir = stores_subdir
        self._exporter = None

    def _resolve_items(self, items, progress: ProgressTracker):
        progress.status(f"{len(items)} selected items")
        return items

    def _reorganize_mode(self) -> str:
        return "native"

    def _before_export(self, export_dir: str, working_items, progress: ProgressTracker) -> None:
        self._exporter = None
        if not self.populate_pdf_store:
            return
        missing = self._intersect(MISSING_STORED_PDF_QUERY, working_items)
        progress.log("info", "pdf_store_check", f"{len(missing)} selected items without stored PDF", count=len(missing))
        if not len(missing):
            return
        temp_dir = os.path.join(export_dir, self.stores_subdir)
        progress.status(f"Generating PDFs for {len(missing)} items", directory=temp_dir)
        os.makedirs(temp_dir, exist_ok=True)
        populator = self.exporter_factory(temp_dir)
        populator.add_product('pdf', {'naming': 'md5'})
        populator.set_numbering_options({'createProductionSet': False})
        populator.export_items(missing)
        progress.log("info", "pdf_store_cleanup", f"Removing {temp_dir}", directory=temp_dir)
        shutil.rmtree(temp_dir)

    def _production_exporter(self, export_dir: str):
        if self._exporter is None:
            exporter = self.exporter_factory(export_dir)
            exporter.add_load_file(self.settings['load_file'])
            product = self.settings['product']
            exporter.add_product(product['type'], product['options'])
            self._exporter = exporter
        return self._exporter

    def _create_production_set(self, name: str, partition, progress: ProgressTracker):
        progress.log("info", "production_set", f"Creating Production Set {name}", custodian=name)
        production_set = self.item_store.new_production_set(name)
        numbering = dict(self.settings['numbering'])
        numbering['prefix'] = name
        production_set.set_numbering_options(numbering)
        production_set.add_items(partition)
        production_set.renumber({'sortOrder': 'position'})
        return production_set

    def _export_partition(self, export_dir: str, name: str, partition, progress: ProgressTracker) -> str:
        production_set = self._create_production_set(name, partition, progress)
        progress.status(f"Exporting Production Set {name}", custodian=name)
        self._production_exporter(export_dir).export_items(production_set)
        return export_dir

    def _consolidate_artifacts(self, consolidator: ArtifactConsolidator) -> List[str]:
        created = []
        for name in (LOAD_FILE_OPT, DIGEST_NAME):
            path = consolidator.append(name)
            if path:
                created.append(path)
        path = consolidator.append_tabular(LOAD_FILE_DAT)
        if path:
            created.append(path)
        return created
