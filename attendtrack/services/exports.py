from __future__ import annotations

from datetime import date, datetime, timezone
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy import select
from sqlalchemy.orm import Session

from attendtrack.errors import ApiError
from attendtrack.models import Account, AttendanceRecord, AttendanceStatus, WorkMode
from attendtrack.services.attendance import summarize_records

RANGE_HEADERS = [
    "Date",
    "Employee ID",
    "Employee Name",
    "Email",
    "Department",
    "Work Mode",
    "Status",
    "Check In (UTC)",
    "Check Out (UTC)",
    "Working Hours",
]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
META_VALUE_FILL = PatternFill(fill_type="solid", fgColor="F8FCFF")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
WARNING_FILL = PatternFill(fill_type="solid", fgColor="FFF3CD")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="0B4F73", size=14)
MUTED_FONT = Font(color="334155")

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def _to_excel_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            if cell.coordinate in ws.merged_cells:
                continue
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _merge_title(ws: Worksheet, row: int, text: str) -> None:
    ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(RANGE_HEADERS))
    cell = ws.cell(row=row, column=1, value=text)
    cell.font = TITLE_FONT
    cell.alignment = Alignment(horizontal="left", vertical="center")


def _style_metadata_rows(ws: Worksheet, *, start_row: int, end_row: int) -> None:
    for row_idx in range(start_row, end_row + 1):
        label_cell = ws.cell(row=row_idx, column=1)
        value_cell = ws.cell(row=row_idx, column=2)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell.font = MUTED_FONT
        value_cell.fill = META_VALUE_FILL
        value_cell.border = THIN_BORDER


def fetch_range_rows(
    db: Session,
    *,
    start_date: date,
    end_date: date,
    account_id: int | None = None,
    work_mode: WorkMode | None = None,
) -> list[tuple[AttendanceRecord, Account]]:
    stmt = (
        select(AttendanceRecord, Account)
        .join(Account, Account.id == AttendanceRecord.account_id)
        .where(
            AttendanceRecord.date >= start_date.isoformat(),
            AttendanceRecord.date <= end_date.isoformat(),
        )
        .order_by(AttendanceRecord.date.asc(), Account.name.asc(), AttendanceRecord.id.asc())
    )
    if account_id is not None:
        stmt = stmt.where(AttendanceRecord.account_id == account_id)
    if work_mode is not None:
        stmt = stmt.where(AttendanceRecord.work_mode == work_mode)
    return [(record, account) for record, account in db.execute(stmt).all()]


def build_attendance_range_xlsx_bytes(
    db: Session,
    *,
    start_date: date,
    end_date: date,
    account_id: int | None = None,
    work_mode: WorkMode | None = None,
) -> bytes:
    if end_date < start_date:
        raise ApiError(
            status_code=400,
            code="INVALID_DATE_RANGE",
            message="endDate must be on or after startDate.",
        )

    rows = fetch_range_rows(
        db,
        start_date=start_date,
        end_date=end_date,
        account_id=account_id,
        work_mode=work_mode,
    )
    summary = summarize_records([record for record, _account in rows])

    wb = Workbook()
    ws = wb.active
    ws.title = "Attendance"

    _merge_title(ws, 1, "ATTENDANCE REPORT")
    ws.append(["Period", f"{start_date.isoformat()} - {end_date.isoformat()}"])
    ws.append(["Records", summary.total_days])
    ws.append(["Total Hours", summary.total_hours])
    ws.append(["Average Hours", summary.avg_hours])
    ws.append(["Office / WFH", f"{summary.office_days} / {summary.wfh_days}"])
    ws.append(["Generated (UTC)", datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")])
    _style_metadata_rows(ws, start_row=2, end_row=ws.max_row)
    ws.append([])

    header_row = ws.max_row + 1
    ws.append(RANGE_HEADERS)
    _style_header(ws, header_row)

    for record, account in rows:
        ws.append(
            [
                date.fromisoformat(record.date),
                account.employee_id or "-",
                account.name,
                account.email,
                account.department or "-",
                record.work_mode.value,
                record.status.value,
                _to_excel_datetime(record.check_in_at),
                _to_excel_datetime(record.check_out_at),
                record.working_hours,
            ]
        )

    data_start = header_row + 1
    data_end = ws.max_row
    ws.freeze_panes = f"A{header_row + 1}"
    if data_end >= data_start:
        ws.auto_filter.ref = f"A{header_row}:{get_column_letter(len(RANGE_HEADERS))}{data_end}"
        for offset, row in enumerate(ws.iter_rows(min_row=data_start, max_row=data_end)):
            open_day = row[6].value == AttendanceStatus.CHECKED_IN.value
            for cell in row:
                cell.border = THIN_BORDER
                if open_day:
                    cell.fill = WARNING_FILL
                elif offset % 2 == 1:
                    cell.fill = ZEBRA_FILL
            row[0].number_format = "yyyy-mm-dd"
            row[7].number_format = "yyyy-mm-dd hh:mm"
            row[8].number_format = "yyyy-mm-dd hh:mm"
            row[9].number_format = "0.00"
    _auto_width(ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
