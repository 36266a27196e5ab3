"""
Feature filtering and normalization.

Every function takes a MeasurementTable (and metadata where needed) and
returns new objects; inputs are left untouched.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging
import numpy as np
import pandas as pd

from omics_parser import (
    InputValidationError,
    MeasurementTable,
    Modality,
    SampleMetadata,
)

logger = logging.getLogger(__name__)

NORMALIZATION_METHODS = ["auto", "cpm", "log2", "log2p1", "median_center", "none"]


@dataclass(frozen=True, eq=False)
class PreprocessResult:
    """Output of the filter/normalize stage."""

    table: MeasurementTable
    metadata: SampleMetadata
    n_duplicates_collapsed: int
    n_filtered: int
    normalization: str
    warnings: List[str] = field(default_factory=list)


def intersect_samples(
    table: MeasurementTable, metadata: SampleMetadata
) -> Tuple[MeasurementTable, SampleMetadata]:
    """
    Restrict table and metadata to their shared samples.

    Sample order follows the measurement table columns. Applying this twice
    gives the same result as applying it once.

    Raises:
        InputValidationError: If no samples are shared
    """
    meta_samples = set(metadata.samples)
    shared = [s for s in table.samples if s in meta_samples]
    if not shared:
        raise InputValidationError(
            "No samples shared between measurement table and metadata. "
            f"Table samples: {table.samples[:5]}; metadata samples: {metadata.samples[:5]}. "
            "Suggestion: Check that sample ids use the same naming in both files.",
            details={"table_samples": table.samples, "metadata_samples": metadata.samples},
        )

    only_table = [s for s in table.samples if s not in meta_samples]
    only_meta = [s for s in metadata.samples if s not in set(shared)]
    if only_table:
        logger.warning(f"Dropping {len(only_table)} samples without metadata: {only_table[:5]}")
    if only_meta:
        logger.warning(f"Dropping {len(only_meta)} metadata rows without measurements: {only_meta[:5]}")

    return table.with_data(table.data[shared]), metadata.subset(shared)


def deduplicate_features(table: MeasurementTable) -> Tuple[MeasurementTable, int]:
    """
    Collapse repeated feature rows into one row holding their mean.

    Returns:
        (deduplicated table, number of rows removed)
    """
    data = table.data
    n_dups = int(data.index.duplicated().sum())
    if n_dups == 0:
        return table, 0

    collapsed = data.groupby(level=0, sort=False).mean()
    collapsed.index.name = data.index.name
    logger.info(f"Averaged {n_dups} duplicate feature rows ({len(collapsed)} unique features)")
    return table.with_data(collapsed), n_dups


def filter_low_detection(
    table: MeasurementTable, detection_threshold: float = 0.0, min_samples: int = 2
) -> Tuple[MeasurementTable, int]:
    """
    Drop features detected in fewer than `min_samples` samples.

    A feature is detected in a sample when its value is present and greater
    than `detection_threshold`.

    Returns:
        (filtered table, number of features removed)
    """
    detected = (table.data > detection_threshold).sum(axis=1)
    keep = detected >= min_samples
    n_removed = int((~keep).sum())
    if keep.sum() == 0:
        raise InputValidationError(
            f"No features detected in at least {min_samples} samples "
            f"(threshold > {detection_threshold}).",
            details={"n_features": len(table.data)},
        )
    if n_removed:
        logger.info(f"Filtered {n_removed} low-detection features ({int(keep.sum())} remaining)")
    return table.with_data(table.data.loc[keep]), n_removed


def _resolve_method(table: MeasurementTable, method: str) -> str:
    if method not in NORMALIZATION_METHODS:
        raise ValueError(f"Unknown normalization '{method}'. Available: {NORMALIZATION_METHODS}")
    if method != "auto":
        return method
    if table.is_log_scale or table.modality == Modality.PROGRAM_SCORE:
        return "none"
    if table.modality == Modality.RNA_COUNTS:
        return "cpm"
    return "log2"


def log_normalize(table: MeasurementTable, method: str = "auto") -> MeasurementTable:
    """
    Log-normalize a table.

    Methods:
        cpm: counts per million by library size, then log2(x + 1)
        log2: log2(x), non-positive values become NaN (intensities)
        log2p1: log2(x + 1)
        median_center: log2(x) then subtract each sample's median
        none: unchanged
        auto: cpm for counts, log2 for intensities, none for scores or
            tables already on log scale
    """
    method = _resolve_method(table, method)
    data = table.data

    if method == "none":
        return table
    if table.is_log_scale:
        logger.warning(f"Table {table.source} is already on log scale; applying '{method}' anyway")

    if method == "cpm":
        lib_sizes = data.sum(axis=0)
        lib_sizes = lib_sizes.replace(0, np.nan)
        normalized = np.log2(data.div(lib_sizes, axis=1) * 1e6 + 1)
    elif method == "log2p1":
        normalized = np.log2(data.clip(lower=0) + 1)
    else:
        normalized = np.log2(data.where(data > 0))
        if method == "median_center":
            normalized = normalized - normalized.median(axis=0)

    return table.with_data(normalized, is_log_scale=True)


def preprocess(
    table: MeasurementTable,
    metadata: SampleMetadata,
    detection_threshold: float = 0.0,
    min_samples: int = 2,
    normalization: str = "auto",
) -> PreprocessResult:
    """Intersect samples, average duplicates, filter, then normalize."""
    warnings_list: List[str] = []

    n_table, n_meta = len(table.samples), len(metadata.samples)
    table, metadata = intersect_samples(table, metadata)
    if len(table.samples) < n_table or len(metadata.samples) < n_meta:
        warnings_list.append(
            f"Kept {len(table.samples)} shared samples "
            f"(table had {n_table}, metadata had {n_meta})"
        )

    table, n_dups = deduplicate_features(table)
    if n_dups:
        warnings_list.append(f"{n_dups} duplicate feature rows averaged")

    table, n_filtered = filter_low_detection(
        table, detection_threshold=detection_threshold, min_samples=min_samples
    )

    resolved = _resolve_method(table, normalization)
    table = log_normalize(table, resolved)

    return PreprocessResult(
        table=table,
        metadata=metadata,
        n_duplicates_collapsed=n_dups,
        n_filtered=n_filtered,
        normalization=resolved,
        warnings=warnings_list,
    )
