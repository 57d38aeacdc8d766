import io
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from .clock import safe_tz
from .models import Driver, Location

EXCEL_SHEET_NAME_MAX_LEN = 31


def autosize_columns(ws, min_w: int = 10, max_w: int = 60) -> None:
    """Auto-size worksheet columns based on content."""
    widths: Dict[int, int] = {}
    for row in ws.iter_rows(values_only=True):
        for i, v in enumerate(row, start=1):
            if v is None:
                continue
            widths[i] = max(widths.get(i, 0), len(str(v)))
    for i, w in widths.items():
        ws.column_dimensions[get_column_letter(i)].width = max(min_w, min(max_w, w + 2))


def safe_sheet_name(name: str, existing: Set[str]) -> str:
    """Create a safe, unique Excel sheet name."""
    name = (name or "driver")[:EXCEL_SHEET_NAME_MAX_LEN]
    for char in r'[]:*?/\\':
        name = name.replace(char, "_")

    base_name = name
    counter = 1
    while name in existing:
        suffix = f"_{counter}"
        name = base_name[:EXCEL_SHEET_NAME_MAX_LEN - len(suffix)] + suffix
        counter += 1
    return name


def _local(captured_at: str, tz_name: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(captured_at)
    except (TypeError, ValueError):
        return None
    # openpyxl refuses tz-aware datetimes
    return dt.astimezone(safe_tz(tz_name)).replace(tzinfo=None)


def write_driver_sheet(wb: Workbook, driver: Driver, rows: List[Location],
                       admin_tz: str, existing: Set[str]) -> None:
    name = safe_sheet_name(driver.name, existing)
    existing.add(name)
    ws = wb.create_sheet(title=name)

    ws.append([f"Locations — {driver.name} ({driver.id})"])
    ws["A1"].font = Font(bold=True, size=14)
    ws.append(["Captured (Local)", "TZ", "Latitude", "Longitude"])
    for c in ws[2]:
        c.font = Font(bold=True)

    for loc in sorted(rows, key=lambda l: l.captured_at):
        tz_name = loc.timezone or admin_tz
        ws.append([_local(loc.captured_at, tz_name) or loc.captured_at, tz_name, loc.latitude, loc.longitude])

    for row in ws.iter_rows(min_row=3, max_row=ws.max_row):
        if isinstance(row[0].value, datetime):
            row[0].number_format = "yyyy-mm-dd hh:mm"
        row[2].number_format = "0.000000"
        row[3].number_format = "0.000000"

    ws.freeze_panes = "A3"
    autosize_columns(ws)


def locations_workbook(drivers: List[Driver], locations: List[Location],
                       admin_tz: str) -> Tuple[bytes, str]:
    """Location log as an .xlsx file, one sheet per driver that has locations."""
    wb = Workbook()
    if wb.active:
        wb.remove(wb.active)

    by_driver: Dict[str, List[Location]] = {}
    for loc in locations:
        by_driver.setdefault(loc.driver_id, []).append(loc)

    existing: Set[str] = set()
    for driver in drivers:
        rows = by_driver.get(driver.id)
        if rows:
            write_driver_sheet(wb, driver, rows, admin_tz, existing)

    if not wb.sheetnames:
        ws = wb.create_sheet(title="Locations")
        ws.append(["No locations yet"])

    filename = "locations.xlsx" if len(drivers) != 1 else f"locations_{drivers[0].id[:8]}.xlsx"
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue(), filename
