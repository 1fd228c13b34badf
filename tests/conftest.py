from pathlib import Path
import os
import re
import shutil
import tempfile
import uuid

import pytest


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "custodian_export_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def build_report_xml(
    duration=10,
    export_stats=None,
    file_stats=None,
    mimes=None,
    export_directory="C:/engine/out",
    start_time="2024-01-01T09:00:00+00:00",
    configuration_extra="<Product>native</Product>",
):
    export_stats = export_stats or {
        "SelectedItems": 2,
        "ExcludedCount": 0,
        "TotalItemsToExport": 2,
        "FailedItems": 0,
    }
    file_stats = {"NativeFilesExported": 2} if file_stats is None else file_stats
    mimes = {"application/pdf": 2} if mimes is None else mimes
    export_xml = "".join(f"<{k}>{v}</{k}>" for k, v in export_stats.items())
    file_xml = "".join(f"<{k}>{v}</{k}>" for k, v in file_stats.items())
    mime_xml = "".join(f'<MimeType name="{k}" count="{v}"/>' for k, v in mimes.items())
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<Nuix version="9.0" architecture="amd64">\n'
        f'  <Export startTime="{start_time}" exportDuration="{duration}">\n'
        "    <ExportConfiguration>\n"
        f"      <ExportDirectory>{export_directory}</ExportDirectory>\n"
        f"      {configuration_extra}\n"
        "    </ExportConfiguration>\n"
        f"    <ExportStatistics>{export_xml}</ExportStatistics>\n"
        f"    <FileStatistics>{file_xml}</FileStatistics>\n"
        f"    <MimeTypeStatistics><MimeTypes>{mime_xml}</MimeTypes></MimeTypeStatistics>\n"
        "  </Export>\n"
        "</Nuix>\n"
    )


@pytest.fixture
def report_xml():
    return build_report_xml


@pytest.fixture
def make_report(tmp_path: Path):
    def _make(custodian: str, reports_dir: Path = None, content: str = None, **kwargs) -> Path:
        root = reports_dir or (tmp_path / "export" / "Reports")
        path = root / custodian / "summary-report.xml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content if content is not None else build_report_xml(**kwargs), encoding="utf-8")
        return path

    return _make


class FakeItem:
    def __init__(self, guid, custodian=None, parent=None, has_stored_pdf=True):
        self.guid = guid
        self.custodian = custodian
        self.parent = parent
        self.has_stored_pdf = has_stored_pdf

    def __repr__(self):
        return f"FakeItem({self.guid!r})"


class FakeProductionSet:
    def __init__(self, name):
        self.name = name
        self.items = []
        self.numbering_options = None
        self.renumbered_with = None

    def set_numbering_options(self, options):
        self.numbering_options = options

    def add_items(self, items):
        self.items.extend(items)

    def renumber(self, options):
        self.renumbered_with = options

    def __len__(self):
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


class FakeItemStore:
    """In-memory case: custodian and PDF-store queries over a fixed item list."""

    def __init__(self, items, custodians=None):
        self.items = list(items)
        if custodians is None:
            custodians = []
            for item in self.items:
                if item.custodian and item.custodian not in custodians:
                    custodians.append(item.custodian)
        self.custodians = custodians
        self.queries = []
        self.production_sets = {}

    def find_top_level_items(self, items):
        tops = []
        for item in items:
            top = item
            while top.parent is not None:
                top = top.parent
            if top not in tops:
                tops.append(top)
        return tops

    def search(self, query):
        self.queries.append(query)
        if query == "has-custodian:0":
            return [item for item in self.items if not item.custodian]
        if query == "-has-stored:pdf":
            return [item for item in self.items if not item.has_stored_pdf]
        match = re.fullmatch(r'custodian:"(.*)"', query)
        if match:
            name = match.group(1).replace('\\"', '"').replace("\\\\", "\\")
            return [item for item in self.items if item.custodian == name]
        raise ValueError(f"Unsupported query: {query}")

    def intersection(self, items, others):
        wanted = {id(item) for item in others}
        return [item for item in items if id(item) in wanted]

    def get_all_custodians(self):
        return list(self.custodians)

    def new_production_set(self, name):
        production_set = FakeProductionSet(name)
        self.production_sets[name] = production_set
        return production_set


@pytest.fixture
def make_store():
    def _make(entries, custodians=None):
        """entries: (guid, custodian) pairs, or (guid, custodian, parent_guid) for child items."""
        by_guid = {}
        items = []
        for entry in entries:
            guid, custodian = entry[0], entry[1]
            parent = by_guid[entry[2]] if len(entry) > 2 and entry[2] else None
            item = FakeItem(guid, custodian, parent=parent)
            by_guid[guid] = item
            items.append(item)
        return FakeItemStore(items, custodians=custodians)

    return _make


class FakeExporter:
    def __init__(self, engine, destination):
        self.engine = engine
        self.destination = destination
        self.products = []
        self.load_files = []
        self.numbering_options = None

    def add_product(self, kind, options):
        self.products.append((kind, dict(options)))

    def add_load_file(self, kind):
        self.load_files.append(kind)

    def set_numbering_options(self, options):
        self.numbering_options = options

    def export_items(self, items):
        self.engine.export(self, list(items))


class FakeExportEngine:
    """
    Stands in for the batch exporter: writes a summary report, a digest file and
    native output for every export_items call.
    """

    def __init__(self, pst_files=("Export.pst",), fail_on=None, before_export=None, durations=None):
        self.pst_files = pst_files
        self.fail_on = fail_on
        self.before_export = before_export
        self.durations = durations or {}
        self.exports = []

    def __call__(self, destination):
        return FakeExporter(self, destination)

    def export(self, exporter, items):
        custodian = items[0].custodian if items else None
        if self.before_export is not None:
            self.before_export(exporter, items)
        if self.fail_on is not None and custodian == self.fail_on:
            raise RuntimeError(f"export engine failed for {custodian}")
        self.exports.append({"destination": exporter.destination, "custodian": custodian, "items": items, "exporter": exporter})

        root = Path(exporter.destination)
        root.mkdir(parents=True, exist_ok=True)
        kind, options = exporter.products[-1] if exporter.products else ("native", {})
        if kind == "pdf":
            for item in items:
                (root / f"{item.guid}.pdf").write_bytes(b"%PDF-1.4")
            return

        count = len(items)
        (root / "summary-report.xml").write_text(
            build_report_xml(
                duration=self.durations.get(custodian, count),
                export_stats={
                    "SelectedItems": count,
                    "ExcludedCount": 0,
                    "TotalItemsToExport": count,
                    "FailedItems": 0,
                },
                file_stats={"NativeFilesExported": count},
                mimes={"message/rfc822": count},
                export_directory=str(root),
            ),
            encoding="utf-8",
        )
        (root / "summary-report.txt").write_text(f"{custodian}: {count} items\n", encoding="utf-8")
        (root / "top-level-MD5-digests.txt").write_text(
            "".join(f"{item.guid}-md5\n" for item in items),
            encoding="utf-8",
        )

        if exporter.load_files:
            (root / "loadfile.dat").write_text(
                "DOCID|CUSTODIAN\n" + "".join(f"{item.guid}|{custodian}\n" for item in items),
                encoding="utf-8",
            )
            (root / "loadfile.opt").write_text(
                "".join(f"{item.guid},IMAGES\\{item.guid}.tif\n" for item in items),
                encoding="utf-8",
            )
            images = root / options.get("path", "IMAGES")
            images.mkdir(exist_ok=True)
            for item in items:
                (images / f"{item.guid}.tif").write_bytes(b"II*")
            return

        native_dir = root / options["path"] if "path" in options else root / "Mailbox"
        native_dir.mkdir(parents=True, exist_ok=True)
        if options.get("naming") == "item_name":
            for name in self.pst_files:
                (native_dir / name).write_bytes(b"!BDN")
        else:
            for item in items:
                (native_dir / f"{item.guid}.eml").write_text("From: a@example.com\n", encoding="utf-8")


@pytest.fixture
def fake_engine():
    def _make(**kwargs):
        return FakeExportEngine(**kwargs)

    return _make
