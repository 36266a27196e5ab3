# pyright: reportMissingTypeArgument=false
from __future__ import annotations

"""
Omics table loader.

Reads feature measurement tables and sample metadata from local CSV, TSV or
Excel files and wraps them in typed records:

- MeasurementTable: features × samples numeric matrix (feature ids as index)
- SampleMetadata: one row per sample, categorical fields as columns

Schema problems surface here as SchemaMismatchError instead of a KeyError at
first use further down the pipeline.
"""

from dataclasses import dataclass
from enum import Enum
from os import PathLike
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import zipfile
import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)


KNOWN_SAMPLE_HEADERS = [
    "sample",
    "sample_id",
    "SampleID",
    "Sample_ID",
    "samplename",
    "Sample_Name",
    "samples",
    "id",
    "ID",
]

KNOWN_FEATURE_HEADERS = [
    "feature",
    "gene",
    "Gene",
    "GENE",
    "GeneSymbol",
    "gene_symbol",
    "gene_id",
    "SYMBOL",
    "GeneName",
    "gene_name",
    "protein",
    "Protein",
    "accession",
    "Accession",
    "program",
]

EXCEL_SUFFIXES = {".xlsx", ".xls"}
TEXT_SUFFIXES = {".csv", ".tsv", ".txt"}

PathType = Union[str, PathLike]


class Modality(Enum):
    """Kind of measurement held by a MeasurementTable."""

    RNA_COUNTS = "rna_counts"
    PROTEIN_INTENSITY = "protein_intensity"
    PROGRAM_SCORE = "program_score"


class InputValidationError(Exception):
    """Raised when an input table cannot be used for analysis."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message: str = message
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)


class MissingInputError(InputValidationError):
    """An input file the current stage needs does not exist."""

    def __init__(self, expected_path: PathType, what: str = "Input file"):
        super().__init__(
            f"{what} not found: {expected_path}. "
            f"Suggestion: Check the path in the analysis config and that the file exists.",
            details={"expected_path": str(expected_path)},
        )


class SchemaMismatchError(InputValidationError):
    """A table lacks the columns or shape a stage requires."""

    def __init__(self, stage: str, missing: Sequence[str], available: Sequence[str] = ()):
        available = [str(c) for c in available]
        available_str = ", ".join(available[:10])
        extra = f"... ({len(available) - 10} more)" if len(available) > 10 else ""
        super().__init__(
            f"{stage}: missing required columns {list(missing)}. "
            f"Found columns: {available_str}{extra}.",
            details={"stage": stage, "missing": list(missing), "available": available},
        )


def validate_columns(df: pd.DataFrame, required: Sequence[str], stage: str) -> None:
    """Raise SchemaMismatchError if any of `required` is absent from df."""
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaMismatchError(stage, missing, df.columns.tolist())


@dataclass(frozen=True, eq=False)
class MeasurementTable:
    """Features × samples matrix of one modality.

    The wrapped frame is treated as read-only; every transformation returns a
    new MeasurementTable via `with_data`.
    """

    data: pd.DataFrame
    modality: Modality
    is_log_scale: bool = False
    source: Optional[str] = None
    dropped_columns: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.data is None or self.data.empty:
            raise SchemaMismatchError(
                f"MeasurementTable[{self.modality.value}]", ["<feature rows>"], []
            )
        non_numeric = [
            str(c) for c in self.data.columns
            if not pd.api.types.is_numeric_dtype(self.data[c])
        ]
        if non_numeric:
            raise InputValidationError(
                f"Measurement table has non-numeric sample columns: {non_numeric[:5]}",
                details={"non_numeric": non_numeric},
            )

    @property
    def features(self) -> List[str]:
        return self.data.index.tolist()

    @property
    def samples(self) -> List[str]:
        return self.data.columns.tolist()

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def with_data(self, data: pd.DataFrame, **changes) -> "MeasurementTable":
        """Return a copy of this table holding `data` (and any changed fields)."""
        values = {
            "modality": self.modality,
            "is_log_scale": self.is_log_scale,
            "source": self.source,
            "dropped_columns": self.dropped_columns,
        }
        values.update(changes)
        return MeasurementTable(data=data, **values)


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """Sample annotations indexed by sample id."""

    data: pd.DataFrame
    source: Optional[str] = None

    @property
    def samples(self) -> List[str]:
        return self.data.index.tolist()

    def require(self, fields: Sequence[str], stage: str = "SampleMetadata") -> None:
        validate_columns(self.data, fields, stage)

    def subset(self, samples: Sequence[str]) -> "SampleMetadata":
        return SampleMetadata(data=self.data.loc[list(samples)].copy(), source=self.source)

    def groups(self, factor: str) -> Dict[str, List[str]]:
        """Map each level of `factor` to its sample ids (missing levels excluded)."""
        self.require([factor], stage=f"groups({factor})")
        column = self.data[factor].dropna().astype(str)
        groups: Dict[str, List[str]] = {}
        for sample, level in column.items():
            groups.setdefault(level, []).append(sample)
        return groups

    def conditions(self, factor: str) -> Dict[str, str]:
        """sample → level mapping used by plots."""
        return {s: level for level, members in self.groups(factor).items() for s in members}


def _read_delimited(path: Path, suffix: str) -> pd.DataFrame:
    sep = "\t" if suffix == ".tsv" else ","
    try:
        df = pd.read_csv(path, sep=sep)
        encoding = "utf-8"
    except UnicodeDecodeError:
        # Spreadsheet exports are often Latin-1
        logger.warning(f"{path} is not valid UTF-8; reading it as Latin-1")
        encoding = "latin-1"
        df = pd.read_csv(path, sep=sep, encoding=encoding)
    # If only one column, try the other delimiter
    if len(df.columns) == 1:
        df = pd.read_csv(path, sep="," if sep == "\t" else "\t", encoding=encoding)
    return df


def read_table(file_path: PathType, sheet_name: Optional[str] = None) -> pd.DataFrame:
    """
    Read a CSV, TSV or Excel file into a raw DataFrame.

    Args:
        file_path: Path to the table
        sheet_name: Excel sheet to read (default: first sheet)

    Returns:
        Parsed DataFrame (raw, before any processing)

    Raises:
        MissingInputError: If the file does not exist
        InputValidationError: If the file is empty or cannot be parsed
    """
    path = Path(file_path)
    if not path.exists():
        raise MissingInputError(path)

    suffix = path.suffix.lower()
    try:
        if suffix in EXCEL_SUFFIXES:
            excel_file = pd.ExcelFile(path)
            if sheet_name and sheet_name not in excel_file.sheet_names:
                available = ", ".join(excel_file.sheet_names[:5])
                raise InputValidationError(
                    f"Sheet '{sheet_name}' not found in {path}. Available sheets: {available}",
                    details={"available_sheets": excel_file.sheet_names},
                )
            df = pd.read_excel(excel_file, sheet_name=sheet_name or 0)
        else:
            df = _read_delimited(path, suffix)
    except pd.errors.EmptyDataError:
        raise InputValidationError(
            f"File is empty or contains no readable data: {path}",
            details={"path": str(path)},
        )
    except pd.errors.ParserError as e:
        raise InputValidationError(
            f"Failed to parse {path}: {str(e)}. "
            f"Suggestion: Verify the file is valid CSV/TSV and check for encoding issues.",
            details={"path": str(path)},
        )
    except (ValueError, zipfile.BadZipFile) as e:
        raise InputValidationError(
            f"Failed to read {path}: {str(e)}. "
            f"Suggestion: Re-save the file as .xlsx or UTF-8 CSV.",
            details={"path": str(path)},
        )

    if df.empty:
        raise InputValidationError(
            f"File has no data rows: {path}", details={"path": str(path)}
        )
    return df


def detect_feature_column(df: pd.DataFrame) -> Optional[str]:
    """Pick the column holding feature identifiers.

    Known headers win; otherwise the first non-numeric column is used.
    """
    for header in KNOWN_FEATURE_HEADERS:
        if header in df.columns:
            return header
    for col in df.columns:
        if not pd.api.types.is_numeric_dtype(df[col]):
            return col
    return None


def detect_sample_column(df: pd.DataFrame) -> str:
    lowered = {str(c).lower(): c for c in df.columns}
    for header in KNOWN_SAMPLE_HEADERS:
        if header.lower() in lowered:
            return lowered[header.lower()]
    return df.columns[0]


def load_measurement_table(
    file_path: PathType,
    modality: Modality,
    feature_column: Optional[str] = None,
    sheet_name: Optional[str] = None,
    is_log_scale: bool = False,
) -> MeasurementTable:
    """
    Load a features × samples matrix.

    Duplicate feature ids are kept; collapsing them is a preprocessing step.

    Args:
        file_path: CSV/TSV/Excel file, one row per feature
        modality: Measurement kind
        feature_column: Column with feature ids (auto-detected if None)
        sheet_name: Excel sheet name
        is_log_scale: Whether values are already log-transformed

    Returns:
        MeasurementTable with feature ids as index and samples as columns
    """
    df = read_table(file_path, sheet_name=sheet_name)

    if feature_column is None:
        feature_column = detect_feature_column(df)
        if feature_column is None:
            raise SchemaMismatchError(
                f"load_measurement_table({file_path})", ["<feature id column>"], df.columns
            )
    else:
        validate_columns(df, [feature_column], f"load_measurement_table({file_path})")

    ids = df[feature_column].astype(str).str.strip()
    valid = df[feature_column].notna() & (ids != "")
    n_empty = int((~valid).sum())
    if n_empty:
        logger.warning(f"{file_path}: dropped {n_empty} rows without a feature id")

    values = df.loc[valid].drop(columns=[feature_column])
    values.index = pd.Index(ids[valid], name="feature")

    numeric = values.select_dtypes(include=[np.number])
    dropped = [str(c) for c in values.columns if c not in numeric.columns]
    if dropped:
        logger.info(f"{file_path}: ignoring non-numeric columns {dropped}")
    if numeric.shape[1] == 0:
        raise InputValidationError(
            f"No numeric sample columns found in {file_path}",
            details={"dropped_columns": dropped},
        )
    numeric.columns = [str(c) for c in numeric.columns]

    logger.info(
        f"Loaded {modality.value} table {file_path}: "
        f"{numeric.shape[0]} features × {numeric.shape[1]} samples"
    )
    return MeasurementTable(
        data=numeric.astype(float),
        modality=modality,
        is_log_scale=is_log_scale,
        source=str(file_path),
        dropped_columns=tuple(dropped),
    )


def load_sample_metadata(
    file_path: PathType,
    sample_column: Optional[str] = None,
    required_fields: Sequence[str] = (),
    sheet_name: Optional[str] = None,
) -> SampleMetadata:
    """
    Load the sample annotation table.

    Raises:
        MissingInputError: If the file does not exist
        InputValidationError: On duplicated sample ids
        SchemaMismatchError: If required fields are absent
    """
    df = read_table(file_path, sheet_name=sheet_name)

    if sample_column is None:
        sample_column = detect_sample_column(df)
    else:
        validate_columns(df, [sample_column], f"load_sample_metadata({file_path})")

    ids = df[sample_column].astype(str).str.strip()
    valid = df[sample_column].notna() & (ids != "")
    n_empty = int((~valid).sum())
    if n_empty:
        logger.warning(f"{file_path}: dropped {n_empty} rows without a sample id")
    df = df.loc[valid].copy()
    df[sample_column] = ids[valid]
    duplicated = df[sample_column][df[sample_column].duplicated()].unique().tolist()
    if duplicated:
        raise InputValidationError(
            f"Sample metadata has duplicated sample ids: {duplicated[:5]}",
            details={"duplicated": duplicated},
        )

    df = df.set_index(sample_column)
    df.index.name = "sample"
    metadata = SampleMetadata(data=df, source=str(file_path))
    metadata.require(required_fields, stage=f"load_sample_metadata({file_path})")
    logger.info(f"Loaded metadata {file_path}: {len(df)} samples, fields {df.columns.tolist()}")
    return metadata
