"""
Analysis parameters loaded from a YAML file.

These replace the parameters that used to be edited in place at the top of
each notebook. See config/analysis.yaml for an annotated example.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import yaml

from omics_parser import Modality
from preprocessing import NORMALIZATION_METHODS

DE_METHODS = ["welch", "deseq2"]
CORRELATION_METHODS = ["pearson", "spearman"]
FIGURE_FORMATS = ["html", "png", "svg", "pdf"]


class ConfigError(Exception):
    """Raised when the analysis configuration is missing or invalid."""


@dataclass(frozen=True)
class InputConfig:
    measurement_path: str
    metadata_path: str
    modality: Modality = Modality.RNA_COUNTS
    feature_column: Optional[str] = None
    sample_column: Optional[str] = None
    sheet_name: Optional[str] = None
    is_log_scale: bool = False


@dataclass(frozen=True)
class FilterConfig:
    detection_threshold: float = 0.0
    min_samples: int = 2
    normalization: str = "auto"


@dataclass(frozen=True)
class ComparisonConfig:
    factor: str = "condition"
    # (test, reference) pairs; empty means every pair of levels
    contrasts: Tuple[Tuple[str, str], ...] = ()
    method: str = "welch"
    padj_threshold: float = 0.05
    lfc_threshold: float = 0.0
    min_samples_per_group: int = 2


@dataclass(frozen=True)
class EnrichmentConfig:
    enabled: bool = True
    catalog_path: Optional[str] = None
    allow_fallback: bool = True
    min_set_size: int = 3
    max_set_size: int = 500
    score_programs: bool = True
    # Enrichr libraries queried online (e.g. KEGG_2021_Human); empty skips the query
    enrichr_libraries: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IntegrationConfig:
    method: str = "pearson"
    min_pairs: int = 3
    per_feature: bool = True


@dataclass(frozen=True)
class OutputConfig:
    output_dir: str = "results"
    prefix: str = "analysis"
    run_date: date = field(default_factory=date.today)
    figure_format: str = "html"
    write_workbook: bool = False


@dataclass(frozen=True)
class AnalysisConfig:
    primary: InputConfig
    secondary: Optional[InputConfig] = None
    filtering: FilterConfig = field(default_factory=FilterConfig)
    comparison: ComparisonConfig = field(default_factory=ComparisonConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Plain, JSON-friendly view of the configuration."""
        return _plain(self)


def _plain(value):
    if hasattr(value, "__dataclass_fields__"):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Modality):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _section(cls, raw: Optional[dict], name: str):
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {unknown}. Allowed: {sorted(known)}")
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigError(f"Invalid '{name}' section: {str(e)}")


def _input_section(raw: Optional[dict], name: str) -> Optional[InputConfig]:
    if raw is None:
        return None
    raw = dict(raw)
    for key in ("measurement_path", "metadata_path"):
        if not raw.get(key):
            raise ConfigError(f"'{name}.{key}' is required")
    if "modality" in raw:
        try:
            raw["modality"] = Modality(raw["modality"])
        except ValueError:
            allowed = [m.value for m in Modality]
            raise ConfigError(f"'{name}.modality' must be one of {allowed}, got {raw['modality']!r}")
    return _section(InputConfig, raw, name)


def _parse_run_date(value: Union[str, date, None]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise ConfigError(f"'output.run_date' must be YYYY-MM-DD, got {value!r}")


def parse_config(raw: Dict[str, Any], base_dir: Optional[Path] = None) -> AnalysisConfig:
    """
    Build an AnalysisConfig from a parsed YAML mapping.

    Relative paths are resolved against `base_dir` when given.
    """
    if not isinstance(raw, dict):
        raise ConfigError("Analysis config must be a YAML mapping")
    allowed = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown top-level keys: {unknown}. Allowed: {sorted(allowed)}")
    if "primary" not in raw:
        raise ConfigError("'primary' input section is required")

    def resolve(section: Optional[dict], keys: List[str]) -> Optional[dict]:
        if section is None or base_dir is None:
            return section
        section = dict(section)
        for key in keys:
            if section.get(key) and not Path(section[key]).is_absolute():
                section[key] = str(base_dir / section[key])
        return section

    input_keys = ["measurement_path", "metadata_path"]
    primary = _input_section(resolve(raw["primary"], input_keys), "primary")
    secondary = _input_section(resolve(raw.get("secondary"), input_keys), "secondary")

    comparison_raw = dict(raw.get("comparison") or {})
    if "contrasts" in comparison_raw:
        pairs = comparison_raw["contrasts"] or []
        if any(not isinstance(p, (list, tuple)) or len(p) != 2 for p in pairs):
            raise ConfigError("'comparison.contrasts' must be a list of [test, reference] pairs")
        comparison_raw["contrasts"] = tuple((str(t), str(r)) for t, r in pairs)

    enrichment_raw = resolve(raw.get("enrichment"), ["catalog_path"])
    if isinstance(enrichment_raw, dict) and "enrichr_libraries" in enrichment_raw:
        enrichment_raw = dict(enrichment_raw)
        libraries = enrichment_raw["enrichr_libraries"] or []
        if isinstance(libraries, str) or not isinstance(libraries, (list, tuple)):
            raise ConfigError("'enrichment.enrichr_libraries' must be a list of library names")
        enrichment_raw["enrichr_libraries"] = tuple(str(lib) for lib in libraries)

    output_raw = dict(resolve(raw.get("output"), ["output_dir"]) or {})
    output_raw["run_date"] = _parse_run_date(output_raw.get("run_date"))

    config = AnalysisConfig(
        primary=primary,
        secondary=secondary,
        filtering=_section(FilterConfig, raw.get("filtering"), "filtering"),
        comparison=_section(ComparisonConfig, comparison_raw, "comparison"),
        enrichment=_section(EnrichmentConfig, enrichment_raw, "enrichment"),
        integration=_section(IntegrationConfig, raw.get("integration"), "integration"),
        output=_section(OutputConfig, output_raw, "output"),
    )
    _check_choice("filtering.normalization", config.filtering.normalization, NORMALIZATION_METHODS)
    _check_choice("comparison.method", config.comparison.method, DE_METHODS)
    _check_choice("integration.method", config.integration.method, CORRELATION_METHODS)
    _check_choice("output.figure_format", config.output.figure_format, FIGURE_FORMATS)
    return config


def _check_choice(name: str, value: str, allowed: List[str]) -> None:
    if value not in allowed:
        raise ConfigError(f"'{name}' must be one of {allowed}, got {value!r}")


def load_config(config_path: Union[str, Path]) -> AnalysisConfig:
    """
    Load analysis parameters from YAML.

    Relative paths inside the file are resolved against the file's directory.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f)

    return parse_config(raw, base_dir=config_file.parent)
