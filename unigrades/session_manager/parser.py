"""Parse the portal's academic-work frame into grade rows and student info.

Extraction strategy:
1. Locate the grades frame (by URL prefix, then by URL markers)
2. Pick the header row by keyword score (the SAP grid nests tables, so the
   shortest best-scoring row is the real header)
3. Map columns by exact header text and read the rows of the same table
4. Read student name, average and credits from labels and KPI tables
"""

from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup, Tag

from ..constants import GRADES_FRAME_MARKERS, GRADES_FRAME_PREFIX
from ..log import Logger, get_logger
from ..models.grades import Grade, ScrapeResult, StudentInfo
from .browser import BrowserDriver

logger = get_logger(__name__)

HEADER_COLUMNS = {
    "Module Semester": "semester",
    "Module Categ.": "category",
    "Κωδικός": "code",
    "Τίτλος": "title",
    "Grade Symbol": "grade",
    "Academic year": "year",
    "Weighting": "gravity",
    "Attm.Credits": "ects",
    "Bkg Status": "bkg_status",
    "Acad. Session": "acad_session",
    "Appr.Status": "appr_status",
}

HEADER_SCORES = [
    (("semester",), 1),
    (("code", "κωδικός"), 1),
    (("title", "τίτλος"), 1),
    (("grade symbol",), 2),
    (("academic year",), 1),
]

NUMERIC_GRADE = re.compile(r"^\d{1,2}(\.\d{1,3})?$")
NUMERIC_VALUE = re.compile(r"^\d{1,3}([.,]\d+)?\s*$")


# ── Utility Functions ────────────────────────────────────────────────────────


def _clean_text(text: str | None) -> str:
    """Strip whitespace and normalize text."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def _text(tag: Optional[Tag]) -> str:
    return _clean_text(tag.get_text(" ")) if tag is not None else ""


def _cells(row: Tag) -> list[Tag]:
    return row.find_all(["td", "th"], recursive=False)


def _decimal(value: str) -> str:
    return (value or "").replace(",", ".")


def _numeric_grade(value: str) -> str:
    compact = re.sub(r"\s+", "", value or "").replace(",", ".")
    if not NUMERIC_GRADE.match(compact):
        return ""
    return compact if 0 <= float(compact) <= 10 else ""


# ── Grades ───────────────────────────────────────────────────────────────────


def _find_header_row(soup: BeautifulSoup) -> Optional[Tag]:
    candidates = []
    for row in soup.find_all("tr"):
        text = _text(row).lower()
        score = sum(weight for keys, weight in HEADER_SCORES if any(k in text for k in keys))
        if score >= 2:
            candidates.append((-score, len(text), row))
    if not candidates:
        return None
    candidates.sort(key=lambda c: (c[0], c[1]))
    return candidates[0][2]


def _column_map(header_cells: list[Tag]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for index, cell in enumerate(header_cells):
        text = _text(cell)
        field = HEADER_COLUMNS.get(text)
        if field:
            columns[field] = index
        lower = text.lower()
        if "status" not in columns and ("status" in lower or "κατάσταση" in lower):
            columns["status"] = index
    return columns


def _data_rows(header_row: Tag) -> list[Tag]:
    table = header_row.find_parent("table")
    if table is None:
        return []
    tbody = table.find("tbody", id=re.compile(r"contentTBody$")) or table.find("tbody", id=re.compile("content"))
    if tbody is not None:
        return tbody.find_all("tr", recursive=False)
    return [row for row in table.find_all("tr") if row.find_parent("table") is table]


def parse_grade_rows(soup: BeautifulSoup) -> tuple[list[Grade], list[str]]:
    header_row = _find_header_row(soup)
    if header_row is None:
        return [], []

    header_cells = _cells(header_row)
    headers = [_text(c) for c in header_cells]
    columns = _column_map(header_cells)

    grades = []
    for row in _data_rows(header_row):
        if row is header_row:
            continue
        cells = _cells(row)
        if len(cells) < 3:
            continue

        def value(field: str) -> str:
            index = columns.get(field, -1)
            return _text(cells[index]) if 0 <= index < len(cells) else ""

        code, title = value("code"), value("title")
        if not code and not title:
            continue
        if any(k in code.lower() for k in ("code", "κωδ")) and any(k in title.lower() for k in ("title", "τίτλος")):
            continue

        bkg_status = value("bkg_status")
        grades.append(Grade(
            semester=value("semester"),
            code=code,
            title=title,
            grade=_decimal(value("grade")),
            year=value("year"),
            session=value("acad_session"),
            ects=_decimal(value("ects")),
            status=bkg_status or value("status") or "Enrolled",
            category=value("category"),
            acad_session=value("acad_session"),
            appr_status=value("appr_status"),
            bkg_status=bkg_status,
            gravity=_decimal(value("gravity")),
        ))
    return grades, headers


# ── Student Info ─────────────────────────────────────────────────────────────


def _student_name(soup: BeautifulSoup) -> str:
    for label in soup.find_all(["label", "span"]):
        text = _text(label)
        if "Ονοματεπώνυμο" not in text and "Name" not in text:
            continue
        container = label.find_parent(["tr", "div"])
        if container is None:
            continue
        for candidate in container.select("span.lsTextView--design-standard, input, div.lsTextView"):
            value = _clean_text(candidate.get("value") or candidate.get_text(" "))
            if value and "Ονοματεπώνυμο" not in value:
                return value.split(";")[0].replace(",", "").strip()
    return ""


def _average(soup: BeautifulSoup) -> str:
    for table in soup.find_all("table"):
        text = _text(table).lower()
        if not any(k in text for k in ("δείκτες απόδοσης", "δεικτες αποδοσης", "performance indicators")):
            continue
        for row in table.find_all("tr"):
            cells = row.find_all(["td", "th"])
            if len(cells) < 3:
                continue
            metric = _text(cells[1]).lower()
            if ("βαθμ" not in metric and "grade" not in metric) or "ects" in metric:
                continue
            candidate = _numeric_grade(_text(cells[2]))
            if candidate:
                return candidate
    return ""


def _value_by_label(soup: BeautifulSoup, labels: list[str]) -> str:
    wanted = [label.lower() for label in labels]
    for label in soup.find_all("label"):
        text = _text(label).lower()
        if not any(w in text for w in wanted):
            continue
        target_id = label.get("for") or label.get("f")
        target = soup.find(id=target_id) if target_id else None
        if target is not None:
            return _clean_text(target.get("value") or target.get_text(" "))

    for row in soup.select("tr, .urSTRow, .lsFormRow")[:220]:
        if not any(w in _text(row).lower() for w in wanted):
            continue
        for candidate in row.select("td, th, span, input, div.lsTextView"):
            value = _clean_text(candidate.get("value") or candidate.get_text(" "))
            if NUMERIC_VALUE.match(value):
                return value
    return ""


def parse_student_info(soup: BeautifulSoup) -> StudentInfo:
    total_credits = _value_by_label(soup, ["Total Earned Credits", "Σύνολο Πιστωτικών Μονάδων"])
    greek_credits = _value_by_label(soup, ["Total Earned Greek Credits", "Σύνολο Διδακτικών Μονάδων"])
    return StudentInfo(
        name=_student_name(soup),
        average=_average(soup),
        total_credits=_decimal(total_credits or _value_by_label(soup, ["ECTS"])),
        total_greek_credits=_decimal(greek_credits),
    )


def parse_grades_html(html: str) -> ScrapeResult:
    soup = BeautifulSoup(html, "html.parser")
    grades, headers = parse_grade_rows(soup)
    return ScrapeResult(grades=grades, student_info=parse_student_info(soup), headers=headers)


async def scrape(driver: BrowserDriver, log: Logger = logger) -> ScrapeResult:
    """Extract grades and student info from the grades frame of ``driver``'s page."""
    log.info("Parsing grades and info...")
    frames = driver.frames()
    target = next((f for f in frames if driver.frame_url(f).startswith(GRADES_FRAME_PREFIX)), None)
    if target is None:
        target = next(
            (f for f in frames if any(m in driver.frame_url(f) for m in GRADES_FRAME_MARKERS)),
            None,
        )
    if target is None:
        log.warning("Grades frame not present, nothing to parse.")
        return ScrapeResult()

    log.info(f"Found target frame: {driver.frame_url(target)}")
    result = parse_grades_html(await driver.content(target))
    log.info(f"Parsed {len(result.grades)} grade rows.")
    return result
