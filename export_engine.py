"""
Export module for analysis results.

Writes one CSV per analysis stage named `<prefix>_<stage>_<YYYYMMDD>.csv`,
an optional multi-sheet Excel workbook, and rendered figures.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import re
import sys
import pandas as pd
import plotly.graph_objects as go

from omics_parser import MeasurementTable

logger = logging.getLogger(__name__)


def output_filename(prefix: str, stage: str, run_date: date, extension: str = "csv") -> str:
    """`<prefix>_<stage>_<YYYYMMDD>.<extension>` with unsafe characters replaced."""
    stage = re.sub(r"[^A-Za-z0-9_.-]+", "_", stage).strip("_")
    return f"{prefix}_{stage}_{run_date.strftime('%Y%m%d')}.{extension}"


class ExportEngine:
    """Writes stage outputs under one directory with a fixed prefix and run date."""

    def __init__(
        self,
        output_dir: Union[str, Path],
        prefix: str = "analysis",
        run_date: Optional[date] = None,
    ):
        self.output_dir = Path(output_dir)
        self.prefix = prefix
        self.run_date = run_date or date.today()

    def path_for(self, stage: str, extension: str = "csv") -> Path:
        return self.output_dir / output_filename(self.prefix, stage, self.run_date, extension)

    def write_csv(self, df: pd.DataFrame, stage: str, index: bool = False) -> Path:
        """Write one stage table and return its path."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(stage)
        df.to_csv(path, index=index)
        logger.info(f"Wrote {stage}: {path} ({len(df)} rows)")
        return path

    def write_matrix(self, table: MeasurementTable, stage: str) -> Path:
        """Write a harmonized features × samples matrix (feature ids kept)."""
        data = table.data.copy()
        data.index.name = "feature"
        return self.write_csv(data, stage, index=True)

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def export_workbook(
        self, sheets: Dict[str, pd.DataFrame], settings: Optional[Dict[str, Any]] = None
    ) -> Path:
        """
        Export stage tables to one multi-sheet Excel workbook plus a Settings sheet.

        Args:
            sheets: sheet name → table
            settings: Key-value pairs written to the Settings sheet
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for("workbook", extension="xlsx")
        used = set()
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            for name, df in sheets.items():
                sheet_name = self.sanitize_sheet_name(name)
                # Keep names unique after truncation
                suffix = 1
                base = sheet_name
                while sheet_name in used:
                    tail = f"_{suffix}"
                    sheet_name = base[: 31 - len(tail)] + tail
                    suffix += 1
                used.add(sheet_name)
                df.to_excel(writer, sheet_name=sheet_name, index=False)
            self._write_settings_sheet(writer, settings or {})
        logger.info(f"Wrote workbook: {path}")
        return path

    def _write_settings_sheet(self, writer: pd.ExcelWriter, settings: Dict[str, Any]) -> None:
        settings_data = [
            ["Parameter", "Value"],
            ["Export Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            ["Run Date", self.run_date.isoformat()],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
        ]
        for key, value in settings.items():
            settings_data.append([str(key), str(value)])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)

    def export_figure(self, fig: go.Figure, stage: str, format: str = "html", scale: int = 3) -> Path:
        """
        Render a Plotly figure.

        Args:
            fig: Plotly Figure object
            stage: Name used in the output filename
            format: 'html' (no extra dependency) or an image format ('png',
                'svg', 'pdf') rendered through kaleido
            scale: Scale factor for raster formats
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(stage, extension=format)
        if format == "html":
            fig.write_html(str(path), include_plotlyjs="cdn")
        else:
            fig.write_image(str(path), format=format, scale=scale)
        logger.info(f"Wrote figure {stage}: {path}")
        return path
