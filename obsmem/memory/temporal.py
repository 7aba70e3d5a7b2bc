"""Render-time relative-date annotations for observation text.

Nothing here is persisted: the annotator rewrites a copy of the observation
text just before injection, so the phrases stay correct however long after
the observation was written the memory is read.
"""

from __future__ import annotations

import re
from datetime import date, datetime

_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"(january|february|march|april|may|june|july|august|september|sept|october|november|december|jan|feb|mar|apr|jun|jul|aug|sep|oct|nov|dec)\.?"
_ORDINAL = r"(?:st|nd|rd|th)?"

# Vague modifiers anchor to a day of the month.
_VAGUE_DAYS = {"early": 7, "mid": 15, "late": 23}

_ISO_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_VAGUE_RE = re.compile(rf"\b(early|mid|late)[\s-]+{_MONTH},?\s+(\d{{4}})\b", re.IGNORECASE)
_MONTH_DAY_YEAR_RE = re.compile(rf"\b{_MONTH}\s+(\d{{1,2}}){_ORDINAL}(?:\s*[-–]\s*\d{{1,2}}{_ORDINAL})?,?\s+(\d{{4}})\b", re.IGNORECASE)
_DAY_MONTH_YEAR_RE = re.compile(rf"\b(\d{{1,2}}){_ORDINAL}\s+(?:of\s+)?{_MONTH},?\s+(\d{{4}})\b", re.IGNORECASE)
_MONTH_DAY_RE = re.compile(rf"\b{_MONTH}\s+(\d{{1,2}}){_ORDINAL}\b", re.IGNORECASE)
_MONTH_YEAR_RE = re.compile(rf"\b{_MONTH},?\s+(\d{{4}})\b", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(\d{4})\b")

INLINE_DATE_RE = re.compile(r"\((estimated|meaning)\s+([^)]+)\)", re.IGNORECASE)
DATE_HEADER_RE = re.compile(r"^(\s*(?:#+\s*)?Date:\s*)(.+?)\s*$", re.IGNORECASE)
FUTURE_INTENT_RE = re.compile(
    r"\b(will|shall|plans?\s+to|planning\s+to|going\s+to|gonna|needs?\s+to|intends?\s+to|"
    r"wants?\s+to|expects?\s+to|hopes?\s+to|scheduled|upcoming|about\s+to)\b",
    re.IGNORECASE,
)


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date_text(text: str) -> date | None:
    """
    Parse the first calendar date in *text*.

    Handles ISO dates, "Feb 12, 2026", "12 February 2026", ranges such as
    "Mar 3-5, 2026" or "Mar 3 to Mar 9, 2026" (the start date is used), and
    "early/mid/late <month> <year>". A bare "<month> <year>" means the 1st.
    """
    text = text.strip()
    if m := _ISO_RE.search(text):
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    if m := _VAGUE_RE.search(text):
        return _safe_date(int(m.group(3)), _MONTHS[m.group(2).lower()], _VAGUE_DAYS[m.group(1).lower()])
    if m := _MONTH_DAY_YEAR_RE.search(text):
        first = _MONTH_DAY_RE.search(text)
        if first is not None and first.start() < m.start():
            # Start of a range whose year only appears at the end.
            return _safe_date(int(m.group(3)), _MONTHS[first.group(1).lower()], int(first.group(2)))
        return _safe_date(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)))
    if m := _DAY_MONTH_YEAR_RE.search(text):
        return _safe_date(int(m.group(3)), _MONTHS[m.group(2).lower()], int(m.group(1)))
    if m := _MONTH_DAY_RE.search(text):
        year = _YEAR_RE.search(text[m.end():])
        if year:
            return _safe_date(int(year.group(1)), _MONTHS[m.group(1).lower()], int(m.group(2)))
    if m := _MONTH_YEAR_RE.search(text):
        return _safe_date(int(m.group(2)), _MONTHS[m.group(1).lower()], 1)
    return None


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def span_phrase(days: int) -> str:
    """Bucket a non-negative day count: days < 7, weeks < 30, months < 365, then years."""
    if days < 7:
        return _plural(days, "day")
    if days < 30:
        return _plural(days // 7, "week")
    if days < 365:
        return _plural(days // 30, "month")
    return _plural(days // 365, "year")


def relative_phrase(target: date, today: date) -> str:
    delta = (target - today).days
    if delta == 0:
        return "today"
    if delta == -1:
        return "yesterday"
    if delta == 1:
        return "tomorrow"
    span = span_phrase(abs(delta))
    return f"{span} ago" if delta < 0 else f"in {span}"


class TemporalAnnotator:
    """Append relative-time context to dated observations.

    Inline ``(meaning <date>)`` / ``(estimated <date>)`` annotations gain a
    relative phrase; ``Date:`` header lines gain one too, and a
    ``[N weeks later]`` style gap line is inserted between consecutive headers
    more than one day apart.
    """

    def __init__(self, today: date | None = None) -> None:
        self.today = today or datetime.now().date()

    def annotate(self, text: str) -> str:
        out: list[str] = []
        previous_header: date | None = None
        for line in text.split("\n"):
            header = DATE_HEADER_RE.match(line)
            if header:
                parsed = parse_date_text(header.group(2))
                if parsed is not None:
                    if previous_header is not None:
                        gap = (parsed - previous_header).days
                        if gap > 1:
                            out.append(f"[{span_phrase(gap)} later]")
                    previous_header = parsed
                    out.append(f"{header.group(1)}{header.group(2)} ({relative_phrase(parsed, self.today)})")
                    continue
            out.append(self._annotate_inline(line))
        return "\n".join(out)

    def _annotate_inline(self, line: str) -> str:
        def _replace(m: re.Match[str]) -> str:
            parsed = parse_date_text(m.group(2))
            if parsed is None:
                return m.group(0)
            phrase = relative_phrase(parsed, self.today)
            if parsed < self.today and FUTURE_INTENT_RE.search(line[:m.start()]):
                phrase += ", likely already happened"
            return f"({m.group(1)} {m.group(2).strip()} - {phrase})"

        return INLINE_DATE_RE.sub(_replace, line)
