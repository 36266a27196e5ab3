import json
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Dict, Optional, Union
from datetime import datetime
import platform


class RunManifest:
    """Save and load a JSON record of one pipeline run.

    Records parameters, the gene program source, library versions and
    per-stage status. Holds no DataFrames or figures.
    """

    TRACKED_PACKAGES = [
        "pandas", "numpy", "scipy", "statsmodels", "pydeseq2",
        "gseapy", "plotly", "scikit-learn", "PyYAML", "openpyxl",
    ]

    MANIFEST_VERSION = "1.0"

    @staticmethod
    def library_versions() -> Dict[str, str]:
        versions = {}
        for package in RunManifest.TRACKED_PACKAGES:
            try:
                versions[package] = importlib_metadata.version(package)
            except importlib_metadata.PackageNotFoundError:
                versions[package] = "not installed"
        return versions

    @staticmethod
    def build(
        config: Dict[str, Any],
        stages: Dict[str, Any],
        outputs: Optional[Dict[str, Union[str, Path]]] = None,
    ) -> dict:
        """Assemble the manifest dict for a finished run."""
        return {
            "_meta": {
                "manifest_version": RunManifest.MANIFEST_VERSION,
                "created_at": datetime.now().isoformat(),
                "python": platform.python_version(),
                "platform": platform.platform(),
            },
            "libraries": RunManifest.library_versions(),
            "config": _make_serializable(config),
            "stages": _make_serializable(stages),
            "outputs": {k: str(v) for k, v in (outputs or {}).items()},
        }

    @staticmethod
    def save(manifest: dict, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(manifest, f, indent=2, default=str)
        return path

    @staticmethod
    def load(path: Union[str, Path]) -> dict:
        with open(path, "r") as f:
            return json.load(f)

    @staticmethod
    def get_summary(manifest: dict) -> dict:
        """Get human-readable summary of a saved run."""
        stages = manifest.get("stages", {})
        return {
            "created_at": manifest.get("_meta", {}).get("created_at"),
            "catalog_source": stages.get("catalog_source"),
            "num_contrasts": len(stages.get("contrasts", [])),
            "num_skipped": len(stages.get("skipped", [])),
            "num_outputs": len(manifest.get("outputs", {})),
        }


def _make_serializable(obj):
    """Recursively convert tuples, paths and sets for JSON serialization."""
    if isinstance(obj, (tuple, list, set, frozenset)):
        return [_make_serializable(item) for item in obj]
    elif isinstance(obj, dict):
        return {str(k): _make_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, Path):
        return str(obj)
    return obj
