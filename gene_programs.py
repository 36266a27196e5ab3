"""
Gene program / pathway set catalogs.

A catalog comes either from a provided artifact (GMT, JSON, YAML or a long
CSV/TSV table) or from the embedded default programs below. The chosen
source is explicit on the catalog and logged when the catalog is loaded.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union
import json
import logging
import yaml
import numpy as np
import pandas as pd

from omics_parser import (
    InputValidationError,
    MeasurementTable,
    MissingInputError,
    Modality,
    read_table,
    validate_columns,
)

logger = logging.getLogger(__name__)


class ProgramSource(Enum):
    PROVIDED_ARTIFACT = "provided_artifact"
    EMBEDDED_DEFAULT = "embedded_default"


# Used when no artifact from a prior analysis is available.
EMBEDDED_DEFAULT_PROGRAMS: Dict[str, List[str]] = {
    "Interferon response": [
        "ISG15", "IFI6", "IFI27", "IFIT1", "IFIT3", "MX1", "OAS1", "OAS2",
        "STAT1", "IRF7", "IFI44L", "RSAD2",
    ],
    "Antigen presentation": [
        "HLA-A", "HLA-B", "HLA-C", "B2M", "TAP1", "TAP2", "TAPBP",
        "PSMB8", "PSMB9", "HLA-DRA", "CD74", "NLRC5",
    ],
    "Cell cycle G2/M": [
        "MKI67", "TOP2A", "CCNB1", "CCNB2", "CDK1", "CDC20", "PLK1",
        "AURKA", "AURKB", "BUB1", "CENPF", "UBE2C",
    ],
    "Epithelial-mesenchymal transition": [
        "VIM", "CDH2", "FN1", "SNAI2", "ZEB1", "TWIST1", "COL1A1",
        "COL3A1", "SPARC", "TAGLN", "MMP2", "ACTA2",
    ],
    "Hypoxia": [
        "VEGFA", "CA9", "SLC2A1", "LDHA", "PGK1", "BNIP3", "ADM",
        "NDRG1", "ENO1", "PDK1", "ANKRD37", "EGLN3",
    ],
    "T cell cytotoxicity": [
        "CD8A", "CD8B", "GZMA", "GZMB", "GZMK", "PRF1", "NKG7",
        "IFNG", "CCL5", "CXCL13", "TBX21", "EOMES",
    ],
    "Exhaustion": [
        "PDCD1", "CTLA4", "LAG3", "HAVCR2", "TIGIT", "TOX", "ENTPD1",
        "CXCL13", "LAYN", "BATF",
    ],
    "Oxidative phosphorylation": [
        "NDUFA4", "NDUFB8", "SDHA", "SDHB", "UQCRC1", "UQCRC2",
        "COX4I1", "COX5A", "ATP5F1A", "ATP5F1B", "CYCS",
    ],
}


@dataclass(frozen=True, eq=False)
class GeneSetCatalog:
    """Immutable program label → feature id set mapping."""

    name: str
    programs: Mapping[str, FrozenSet[str]]
    source: ProgramSource
    path: Optional[str] = None

    @classmethod
    def from_mapping(
        cls,
        programs: Mapping[str, Iterable[str]],
        name: str,
        source: ProgramSource,
        path: Optional[str] = None,
    ) -> "GeneSetCatalog":
        frozen = {}
        for label, features in programs.items():
            members = frozenset(str(f).strip() for f in features if str(f).strip())
            if members:
                frozen[str(label)] = members
        if not frozen:
            raise InputValidationError(
                f"Gene set catalog '{name}' contains no non-empty sets",
                details={"path": path},
            )
        return cls(name=name, programs=MappingProxyType(frozen), source=source, path=path)

    def __len__(self) -> int:
        return len(self.programs)

    def __iter__(self):
        return iter(self.programs)

    def __getitem__(self, label: str) -> FrozenSet[str]:
        return self.programs[label]

    def to_frame(self) -> pd.DataFrame:
        """Long format: one row per (program, feature)."""
        rows = [
            {"program": label, "feature": feature}
            for label, features in self.programs.items()
            for feature in sorted(features)
        ]
        return pd.DataFrame(rows, columns=["program", "feature"])


def embedded_default_catalog() -> GeneSetCatalog:
    return GeneSetCatalog.from_mapping(
        EMBEDDED_DEFAULT_PROGRAMS, name="embedded_default", source=ProgramSource.EMBEDDED_DEFAULT
    )


def _read_gmt(path: Path) -> Dict[str, List[str]]:
    # name <tab> description <tab> feature ...
    programs: Dict[str, List[str]] = {}
    with open(path, "r") as f:
        for line in f:
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3:
                continue
            programs[parts[0]] = [p for p in parts[2:] if p]
    return programs


def _read_nested(config) -> Dict[str, List[str]]:
    # Accepts {"programs": {name: [..]}} or {"programs": {name: {"genes": [..]}}} or a flat mapping
    if isinstance(config, dict) and "programs" in config:
        config = config["programs"]
    if not isinstance(config, dict):
        raise InputValidationError("Gene program artifact must be a mapping of program → features")
    programs = {}
    for label, info in config.items():
        if isinstance(info, dict):
            info = info.get("features", info.get("genes", []))
        programs[label] = list(info)
    return programs


def read_catalog_artifact(path: Union[str, Path]) -> Dict[str, List[str]]:
    """
    Parse a gene program artifact into program → feature list.

    Supported: .gmt, .json, .yaml/.yml, .csv/.tsv/.txt with columns
    `program` and `feature` (one row per membership).
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".gmt":
        return _read_gmt(path)
    if suffix == ".json":
        with open(path, "r") as f:
            return _read_nested(json.load(f))
    if suffix in (".yaml", ".yml"):
        with open(path, "r") as f:
            return _read_nested(yaml.safe_load(f))

    df = read_table(path)
    validate_columns(df, ["program", "feature"], f"read_catalog_artifact({path})")
    df = df.dropna(subset=["program", "feature"])
    return {
        str(label): group["feature"].astype(str).tolist()
        for label, group in df.groupby("program", sort=False)
    }


def load_catalog(
    artifact_path: Optional[Union[str, Path]] = None, allow_fallback: bool = True
) -> GeneSetCatalog:
    """
    Load the gene program catalog, recording where it came from.

    Args:
        artifact_path: Artifact from a prior analysis; None selects the
            embedded default directly
        allow_fallback: If the artifact is missing, fall back to the embedded
            default (with a warning) instead of raising

    Raises:
        MissingInputError: Artifact missing and fallback disabled
    """
    if artifact_path is None:
        catalog = embedded_default_catalog()
        logger.info(
            f"Gene program source: {catalog.source.value} (no artifact configured, "
            f"{len(catalog)} programs)"
        )
        return catalog

    path = Path(artifact_path)
    if not path.exists():
        if not allow_fallback:
            raise MissingInputError(path, what="Gene program artifact")
        catalog = embedded_default_catalog()
        logger.warning(
            f"Gene program artifact not found at {path}; "
            f"falling back to {catalog.source.value} ({len(catalog)} programs)"
        )
        return catalog

    catalog = GeneSetCatalog.from_mapping(
        read_catalog_artifact(path),
        name=path.stem,
        source=ProgramSource.PROVIDED_ARTIFACT,
        path=str(path),
    )
    logger.info(f"Gene program source: {catalog.source.value} {path} ({len(catalog)} programs)")
    return catalog


def score_programs(
    table: MeasurementTable, catalog: GeneSetCatalog, min_features: int = 2
) -> MeasurementTable:
    """
    Score each program per sample as the mean z-score of its features.

    Algorithm:
    1. Keep program features present in the table
    2. Z-score each feature across samples
    3. Program score per sample = mean z-score over its features

    Programs with fewer than `min_features` measured features are skipped
    and logged.

    Args:
        table: features × samples, log scale
        catalog: Programs to score
        min_features: Minimum measured features per program

    Returns:
        programs × samples MeasurementTable (modality PROGRAM_SCORE)
    """
    data = table.data
    std = data.std(axis=1).replace(0, np.nan)
    z_scores = data.sub(data.mean(axis=1), axis=0).div(std, axis=0)

    scores = {}
    for label, features in catalog.programs.items():
        available = [f for f in features if f in z_scores.index]
        if len(available) < min_features:
            logger.warning(
                f"Program '{label}': {len(available)}/{len(features)} features measured "
                f"(need {min_features}); not scored"
            )
            continue
        scores[label] = z_scores.loc[available].mean(axis=0)

    if not scores:
        raise InputValidationError(
            f"No program of catalog '{catalog.name}' has {min_features} measured features",
            details={"catalog": catalog.name},
        )

    score_df = pd.DataFrame(scores).T
    score_df.index.name = "feature"
    return MeasurementTable(
        data=score_df,
        modality=Modality.PROGRAM_SCORE,
        is_log_scale=True,
        source=f"{table.source}|{catalog.name}",
    )
