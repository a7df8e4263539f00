# services/browser/markup.py
"""
Everything that knows about the stop page's markup.

The site changes without notice, so selectors and the table parser are kept
here, away from the session manager and the scrape loop.
"""

from dataclasses import dataclass
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from models.scrape_result import ArrivalRow

ESTIMATE_PREFIX = "Tahmini Varış Süresi:"


@dataclass(frozen=True)
class PageMarkup:
    """Selectors used to drive the stop page."""

    control_selector: str = 'input.btn.red[value="Otobus Nerede?"]'
    table_selector: str = "table.list"
    row_selector: str = "table.list tr"
    estimate_selector: str = 'b[style*="color"]'


DEFAULT_MARKUP = PageMarkup()


def _is_bold(cell: Tag) -> bool:
    style = (cell.get("style") or "").lower().replace(" ", "")
    return "font-weight:bold" in style or "font-weight:700" in style


def _clean_estimate(text: str) -> str:
    text = text.strip()
    if text.startswith(ESTIMATE_PREFIX):
        text = text[len(ESTIMATE_PREFIX):]
    return text.strip()


def parse_arrival_rows(html: str, markup: Optional[PageMarkup] = None) -> List[ArrivalRow]:
    """
    Walk the result table and pair every bold "line / line name" header row
    with the estimate row that follows it.

    Returns an empty list when the table exists but lists no bus.
    """
    markup = markup or DEFAULT_MARKUP
    soup = BeautifulSoup(html, "html.parser")

    results: List[ArrivalRow] = []
    current_line: Optional[str] = None
    current_name: Optional[str] = None

    for row in soup.select(markup.row_selector):
        cells = row.find_all("td", recursive=False)

        # Header row: two cells, the first one bold
        if len(cells) == 2 and _is_bold(cells[0]):
            current_line = cells[0].get_text(strip=True)
            current_name = cells[1].get_text(strip=True)
            continue

        # Estimate row: coloured bold text, spans both columns
        estimate = row.select_one(markup.estimate_selector)
        if estimate is not None and current_line:
            results.append(
                ArrivalRow(
                    line=current_line,
                    line_name=current_name or "",
                    time=_clean_estimate(estimate.get_text()),
                )
            )
            current_line = None
            current_name = None

    return results
