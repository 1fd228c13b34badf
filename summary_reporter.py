"""
Summary Reporter - parses per-custodian summary-report.xml files and merges them
The export engine writes one summary-report.xml per custodian export; this module
combines them into a single summary-report.xml for the whole export.
"""

import os
import glob
import platform
import xml.etree.ElementTree as ET
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from run_context import ProgressTracker, record_warning

REPORT_NAME = 'summary-report.xml'
EXPORT_STAT_FIELDS = ('SelectedItems', 'ExcludedCount', 'TotalItemsToExport', 'FailedItems')
THROUGHPUT_SOURCE_FIELD = 'NativeFilesExported'
EXPORT_DIRECTORY_FIELD = 'ExportDirectory'


class MalformedReportError(ValueError):
    """Raised when a summary-report.xml cannot be read as an export report."""


def lower_first(name: str) -> str:
    return name[:1].lower() + name[1:]


def _parse_count(value: Optional[str], label: str, file_path: str) -> int:
    """Parse a counter, truncating fractional values."""
    if value is None or not value.strip():
        raise MalformedReportError(f"{label} is missing in {file_path}")
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        raise MalformedReportError(f"{label} is not a number in {file_path}: {text!r}") from None


def _parse_optional_count(value: Optional[str]) -> Optional[int]:
    """Lenient counterpart of _parse_count for open-ended groups; None when unreadable."""
    if value is None or not value.strip():
        return None
    try:
        return _parse_count(value, '', '')
    except MalformedReportError:
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value or not value.strip():
        return None
    try:
        return date_parser.parse(value).astimezone()
    except (ValueError, TypeError, OverflowError, OSError):
        return None


@dataclass(frozen=True)
class ExportConfiguration:
    """Serialized ExportConfiguration element; never shared with a parsed tree."""

    xml: str

    @classmethod
    def from_element(cls, element: ET.Element) -> "ExportConfiguration":
        detached = deepcopy(element)
        detached.tail = None
        return cls(ET.tostring(detached, encoding='unicode'))

    @classmethod
    def empty(cls) -> "ExportConfiguration":
        return cls('<ExportConfiguration />')

    def to_element(self) -> ET.Element:
        return ET.fromstring(self.xml)

    @property
    def export_directory(self) -> Optional[str]:
        node = self.to_element().find(EXPORT_DIRECTORY_FIELD)
        return None if node is None else node.text

    def with_export_directory(self, export_dir: str) -> "ExportConfiguration":
        element = self.to_element()
        node = element.find(EXPORT_DIRECTORY_FIELD)
        if node is None:
            node = ET.SubElement(element, EXPORT_DIRECTORY_FIELD)
        node.text = export_dir
        return ExportConfiguration.from_element(element)

    def matches(self, other: "ExportConfiguration") -> bool:
        """Compare two configurations, ignoring their export directories."""
        mine = ET.canonicalize(self.with_export_directory('').xml, strip_text=True)
        theirs = ET.canonicalize(other.with_export_directory('').xml, strip_text=True)
        return mine == theirs


@dataclass
class PartitionReportStats:
    """Statistics of one custodian's export."""

    name: str
    duration: int
    export_stats: Dict[str, int]
    file_stats: Dict[str, int] = field(default_factory=dict)
    mime_stats: Dict[str, int] = field(default_factory=dict)
    configuration: Optional[ExportConfiguration] = None
    started_at: Optional[datetime] = None

    @property
    def statistics(self) -> Dict[str, Dict[str, int]]:
        return {'export': self.export_stats, 'file': self.file_stats, 'mime': self.mime_stats}

    def details(self) -> Dict[str, Any]:
        """Detail record for the <Type>Details element, with lower-camel-cased stat names."""
        record: Dict[str, Any] = {'name': self.name, 'exportDuration': self.duration}
        for key, value in self.export_stats.items():
            record[lower_first(key)] = value
        return record


class ReportFile:
    """
    Parser for one summary-report.xml.

    The custodian name is the name of the directory holding the report, e.g.
    Reports/Jones/summary-report.xml belongs to "Jones".

    Only exportDuration and the export statistics are required. Unreadable
    file statistics and MIME types are skipped, each with a
    ``report_stat_ignored`` warning.
    """

    @staticmethod
    def parse(file_path: str, warnings: Optional[List[Dict]] = None) -> PartitionReportStats:
        try:
            tree = ET.parse(file_path)
        except ET.ParseError as exc:
            raise MalformedReportError(f"{file_path} is not valid XML: {exc}") from exc

        root = tree.getroot()
        export = root if root.tag == 'Export' else root.find('Export')
        if export is None:
            raise MalformedReportError(f"{file_path} has no Export element")

        custodian = os.path.basename(os.path.dirname(os.path.abspath(file_path)))
        duration = _parse_count(export.get('exportDuration'), 'exportDuration', file_path)

        export_stats = {}
        for name in EXPORT_STAT_FIELDS:
            node = export.find(f'ExportStatistics/{name}')
            export_stats[name] = _parse_count(None if node is None else node.text, name, file_path)

        file_stats = {}
        file_group = export.find('FileStatistics')
        if file_group is not None:
            for node in file_group:
                count = _parse_optional_count(node.text)
                if count is None:
                    record_warning(
                        warnings,
                        'report_stat_ignored',
                        'Unreadable file statistic left out of the summary',
                        file=file_path,
                        statistic=node.tag,
                        value=node.text,
                    )
                    continue
                file_stats[node.tag] = count

        mime_stats = {}
        mime_group = export.find('MimeTypeStatistics/MimeTypes')
        if mime_group is not None:
            for node in mime_group:
                mime_name = node.get('name')
                count = _parse_optional_count(node.get('count'))
                if not mime_name or count is None:
                    record_warning(
                        warnings,
                        'report_stat_ignored',
                        'Unreadable MIME type statistic left out of the summary',
                        file=file_path,
                        statistic=mime_name,
                        value=node.get('count'),
                    )
                    continue
                mime_stats[mime_name] = count

        configuration_node = export.find('ExportConfiguration')
        configuration = None
        if configuration_node is not None:
            configuration = ExportConfiguration.from_element(configuration_node)

        return PartitionReportStats(
            name=custodian,
            duration=duration,
            export_stats=export_stats,
            file_stats=file_stats,
            mime_stats=mime_stats,
            configuration=configuration,
            started_at=_parse_timestamp(export.get('startTime')),
        )


def _merge_counts(accumulator: Dict[str, int], update: Dict[str, int]) -> None:
    for key, value in update.items():
        accumulator[key] = accumulator.get(key, 0) + value


def _format_number(value) -> str:
    if isinstance(value, float):
        return repr(round(value, 6))
    return str(value)


@dataclass
class AggregateReport:
    """The merged summary of every custodian export."""

    export_dir: str
    configuration: ExportConfiguration
    start_time: datetime
    end_time: datetime
    total_duration: int = 0
    export_stats: Dict[str, int] = field(default_factory=dict)
    file_stats: Dict[str, int] = field(default_factory=dict)
    mime_stats: Dict[str, int] = field(default_factory=dict)
    partitions: List[Dict[str, Any]] = field(default_factory=list)
    throughput: float = 0.0
    details_type: str = 'Custodian'
    engine_version: str = ''
    architecture: str = field(default_factory=platform.machine)

    @property
    def processing_duration(self) -> float:
        return round((self.end_time - self.start_time).total_seconds(), 3)

    @staticmethod
    def _stats_element(name: str, stats: Dict[str, int]) -> ET.Element:
        element = ET.Element(name)
        for key, value in stats.items():
            ET.SubElement(element, key).text = _format_number(value)
        return element

    def to_element(self) -> ET.Element:
        root = ET.Element('Nuix', {'version': self.engine_version, 'architecture': self.architecture})
        export = ET.SubElement(
            root,
            'Export',
            {
                'startTime': self.start_time.isoformat(timespec='seconds'),
                'endTime': self.end_time.isoformat(timespec='seconds'),
                'exportDuration': str(self.total_duration),
                'processingDuration': _format_number(self.processing_duration),
            },
        )
        export.append(self.configuration.to_element())
        export.append(self._stats_element('ExportStatistics', self.export_stats))

        details = ET.SubElement(export, f'{self.details_type}Details')
        for record in self.partitions:
            ET.SubElement(details, self.details_type, {k: _format_number(v) for k, v in record.items()})

        export.append(self._stats_element('FileStatistics', self.file_stats))
        throughput = ET.SubElement(export, 'ThroughputStatistics')
        ET.SubElement(throughput, 'NativeDocRate').text = _format_number(self.throughput)

        mime_types = ET.SubElement(ET.SubElement(export, 'MimeTypeStatistics'), 'MimeTypes')
        for mime_name, count in self.mime_stats.items():
            ET.SubElement(mime_types, 'MimeType', {'name': mime_name, 'count': str(count)})
        return root

    def write(self, file_path: str) -> str:
        tree = ET.ElementTree(self.to_element())
        ET.indent(tree, space='  ')
        os.makedirs(os.path.dirname(os.path.abspath(file_path)), exist_ok=True)
        tree.write(file_path, encoding='utf-8', xml_declaration=True)
        return file_path


class SummaryReporter:
    """Merges the per-custodian summary reports found under a reports directory"""

    def __init__(
        self,
        export_dir: str,
        reports_path: str,
        start_time: Optional[datetime] = None,
        details_type: str = 'Custodian',
        report_name: str = REPORT_NAME,
        engine_version: str = '',
        progress: Optional[ProgressTracker] = None,
        warnings: Optional[List[Dict]] = None,
    ):
        self.export_dir = export_dir
        self.reports_path = reports_path
        self.start_time = start_time
        self.details_type = details_type
        self.report_name = report_name
        self.engine_version = engine_version
        self.progress = progress if progress is not None else ProgressTracker()
        self.warnings = warnings if warnings is not None else []

    def discover(self) -> List[str]:
        """Report documents one level below the reports directory, in name order."""
        pattern = os.path.join(glob.escape(self.reports_path), '*', self.report_name)
        return [path for path in sorted(glob.glob(pattern)) if os.path.isfile(path)]

    def _parse_reports(self) -> List[PartitionReportStats]:
        parsed = []
        for file_path in self.discover():
            self.progress.log("info", "report_read", f"Reading {file_path}", report=file_path)
            try:
                parsed.append(ReportFile.parse(file_path, warnings=self.warnings))
            except MalformedReportError as exc:
                record_warning(
                    self.warnings,
                    'report_parse_failed',
                    'Could not parse custodian summary report; custodian left out of the summary',
                    file=file_path,
                    error=str(exc),
                )
        return parsed

    def _capture_configuration(self, reports: List[PartitionReportStats]) -> ExportConfiguration:
        captured = None
        for report in reports:
            if report.configuration is None:
                continue
            if captured is None:
                captured = report.configuration
            elif not captured.matches(report.configuration):
                record_warning(
                    self.warnings,
                    'configuration_mismatch',
                    'Export configuration differs from the first custodian report; first one kept',
                    custodian=report.name,
                )
        if captured is None:
            captured = ExportConfiguration.empty()
        return captured.with_export_directory(self.export_dir)

    def _resolve_start_time(self, reports: List[PartitionReportStats], end_time: datetime) -> datetime:
        if self.start_time is not None:
            return self.start_time.astimezone()
        starts = [report.started_at for report in reports if report.started_at is not None]
        return min(starts) if starts else end_time

    def aggregate(self) -> AggregateReport:
        """
        Parse and merge every custodian report.

        Counters with the same name are summed; a counter reported by only one
        custodian keeps its value. Unparsable reports are skipped with a warning.

        Returns:
            AggregateReport for the whole export
        """
        self.progress.status(f"Summarizing reports in {self.reports_path}")
        reports = self._parse_reports()

        export_stats: Dict[str, int] = {}
        file_stats: Dict[str, int] = {}
        mime_stats: Dict[str, int] = {}
        total_duration = 0
        for report in reports:
            total_duration += report.duration
            _merge_counts(export_stats, report.export_stats)
            _merge_counts(file_stats, report.file_stats)
            _merge_counts(mime_stats, report.mime_stats)

        if total_duration > 0:
            throughput = file_stats.get(THROUGHPUT_SOURCE_FIELD, 0) / float(total_duration)
        else:
            throughput = 0.0
            record_warning(
                self.warnings,
                'throughput_undefined',
                'Total export duration is zero; NativeDocRate written as 0',
                reports=len(reports),
            )

        end_time = datetime.now().astimezone()
        return AggregateReport(
            export_dir=self.export_dir,
            configuration=self._capture_configuration(reports),
            start_time=self._resolve_start_time(reports, end_time),
            end_time=end_time,
            total_duration=total_duration,
            export_stats=export_stats,
            file_stats=file_stats,
            mime_stats=mime_stats,
            partitions=[report.details() for report in reports],
            throughput=throughput,
            details_type=self.details_type,
            engine_version=self.engine_version,
        )

    def write(self, file_path: Optional[str] = None) -> str:
        """Aggregate and write the summary report; defaults to <export_dir>/summary-report.xml."""
        if file_path is None:
            file_path = os.path.join(self.export_dir, REPORT_NAME)
        report = self.aggregate()
        self.progress.status(f"Writing {file_path}")
        report.write(file_path)
        self.progress.log(
            "info",
            "summary_written",
            "Wrote summary report",
            path=file_path,
            custodians=len(report.partitions),
        )
        return file_path


def aggregate_reports(
    reports_path: str,
    start_time: Optional[datetime],
    export_dir: str,
    **kwargs,
) -> AggregateReport:
    return SummaryReporter(export_dir, reports_path, start_time=start_time, **kwargs).aggregate()
