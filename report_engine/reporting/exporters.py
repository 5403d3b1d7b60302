# report_engine/reporting/exporters.py
"""Result serialisation for report downloads (json, csv, xlsx)."""

import io
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from report_engine.core.exceptions import ExportError


@dataclass(frozen=True)
class ExportedFile:
    content: bytes
    media_type: str
    extension: str

    def filename(self, stem: str) -> str:
        return f"{stem}.{self.extension}"


class DataFrameExporter:
    """Builds a pandas DataFrame from result rows and writes it in the requested format."""

    MEDIA_TYPES = {
        "json": "application/json",
        "csv": "text/csv",
        "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    }

    def supported_formats(self) -> List[str]:
        return list(self.MEDIA_TYPES)

    def export(
        self,
        rows: List[Dict[str, Any]],
        columns: List[str],
        fmt: str,
        labels: Optional[Dict[str, str]] = None,
        sheet_name: str = "Report",
    ) -> ExportedFile:
        fmt = (fmt or "").lower()
        if fmt not in self.MEDIA_TYPES:
            raise ExportError(
                f"Unsupported export format '{fmt}'. Supported formats: {', '.join(self.supported_formats())}"
            )

        df = pd.DataFrame(rows, columns=columns)

        try:
            if fmt == "json":
                content = df.to_json(orient="records", date_format="iso").encode("utf-8")
            elif fmt == "csv":
                if labels:
                    df = df.rename(columns=labels)
                content = df.to_csv(index=False).encode("utf-8")
            else:
                if labels:
                    df = df.rename(columns=labels)
                content = self._to_xlsx(df, sheet_name)
        except Exception as exc:
            raise ExportError(f"Error creating {fmt} export: {exc}") from exc

        return ExportedFile(content=content, media_type=self.MEDIA_TYPES[fmt], extension=fmt)

    def _to_xlsx(self, df: pd.DataFrame, sheet_name: str) -> bytes:
        from openpyxl.styles import Alignment, Font, PatternFill

        excel_buffer = io.BytesIO()
        # Excel sheet name limit is 31 chars
        sheet_name = sheet_name[:31] or "Report"
        with pd.ExcelWriter(excel_buffer, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name=sheet_name, index=False)
            worksheet = writer.sheets[sheet_name]

            header_font = Font(bold=True, color="FFFFFF")
            header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
            for col_num in range(1, len(df.columns) + 1):
                cell = worksheet.cell(row=1, column=col_num)
                cell.font = header_font
                cell.fill = header_fill
                cell.alignment = Alignment(horizontal="center", vertical="center")

            _auto_adjust_columns(worksheet)

        return excel_buffer.getvalue()


def _auto_adjust_columns(worksheet):
    """Auto-adjust column widths for better readability."""
    for column in worksheet.columns:
        column_letter = column[0].column_letter
        max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
        # Padding, max 50 characters
        worksheet.column_dimensions[column_letter].width = min(max_length + 2, 50)
