from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

from tnpcoffea.analysis_config import CUTS

logger = logging.getLogger(__name__)

DATATYPES = ("mc", "data")


def _short_list(items: list[str], *, limit: int = 8) -> str:
    if not items:
        return "(none)"
    if len(items) <= limit:
        return ", ".join(items)
    return ", ".join(items[:limit]) + f", ... (+{len(items) - limit} more)"


def load_json(filepath):
    """Load JSON data from the specified file."""
    try:
        with open(filepath, "r", encoding="utf-8") as file:
            data = json.load(file)
    except Exception as e:
        raise RuntimeError(f"Failed to read JSON file {filepath}: {e}") from e
    logger.info("Successfully loaded JSON file: %s", filepath)
    return data


def validate_fileset_schema(fileset: object, *, filepath: str | None = None) -> None:
    """Validate that the fileset matches what ``bin/run_tnp.py`` expects.

    Expected structure:
      {dataset_key: {"files": {path: "Events", ...},
                     "metadata": {"sample": ..., "datatype": "mc"|"data"}}, ...}
    """
    where = f" ({filepath})" if filepath else ""

    if not isinstance(fileset, Mapping):
        raise ValueError(f"Fileset must be a JSON object (dict-like){where}.")

    if not fileset:
        raise ValueError(f"Fileset is empty{where}.")

    for ds_key, ds_val in fileset.items():
        if not isinstance(ds_key, str):
            raise ValueError(f"Fileset dataset key must be a string{where}.")
        if not isinstance(ds_val, Mapping):
            raise ValueError(f"Fileset['{ds_key}'] must be an object{where}.")

        files = ds_val.get("files")
        md = ds_val.get("metadata")
        if not isinstance(files, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['files'] must be an object mapping file→treename{where}.")
        if not isinstance(md, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['metadata'] must be an object{where}.")

        if "sample" not in md:
            raise ValueError(f"Fileset['{ds_key}']['metadata']['sample'] is missing{where}.")
        datatype = str(md.get("datatype", "")).strip().lower()
        if datatype not in DATATYPES:
            raise ValueError(
                f"Fileset['{ds_key}']['metadata']['datatype'] must be one of {DATATYPES}{where}."
            )


def filter_by_datatype(fileset: Mapping, datatype: str | None) -> dict:
    """Keep datasets whose metadata datatype matches; all of them when ``datatype`` is None."""
    if datatype is None:
        return dict(fileset)
    selected = {
        ds: data
        for ds, data in fileset.items()
        if str((data.get("metadata") or {}).get("datatype", "")).lower() == datatype
    }
    if not selected:
        samples = [str((d.get("metadata") or {}).get("sample", ds)) for ds, d in fileset.items()]
        raise ValueError(
            f"Selection matched 0 datasets for datatype '{datatype}'. "
            f"Available samples (subset): {_short_list(sorted(samples))}"
        )
    return selected


def load_fileset(filepath: Path, *, datatype: str | None = None, maxfiles: int | None = None) -> dict:
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Fileset JSON not found: {filepath}.")

    fileset = load_json(str(filepath))
    validate_fileset_schema(fileset, filepath=str(filepath))
    fileset = filter_by_datatype(fileset, datatype)

    if maxfiles is not None:
        from coffea.dataset_tools import max_files
        fileset = max_files(fileset, maxfiles)

    return fileset


def fileset_from_files(files: list[str], *, sample: str, datatype: str, treename: str = "Events") -> dict:
    """Build a one-dataset fileset from explicit ROOT file paths."""
    fileset = {
        sample: {
            "files": {f: treename for f in files},
            "metadata": {"sample": sample, "datatype": datatype},
        }
    }
    validate_fileset_schema(fileset)
    return fileset


def parse_cut_overrides(items: list[str] | None) -> dict[str, float]:
    """Parse ``["key=value", ...]`` into a cut-override dict.

    Keys are checked against ``CUTS``; numeric validation happens in
    ``analysis_config.resolve_cuts``.
    """
    overrides: dict[str, float] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key or not value.strip():
            raise ValueError(f"Malformed override '{item}'. Expected key=value.")
        if key not in CUTS:
            raise ValueError(f"Unknown cut '{key}'. Valid cuts: {_short_list(sorted(CUTS), limit=20)}")
        try:
            overrides[key] = float(value)
        except ValueError as e:
            raise ValueError(f"Cut '{key}' must be numeric, got '{value.strip()}'") from e
    return overrides


def build_output_path(output_dir: Path, *, name: str | None, policy: str, suffix: str = "root") -> Path:
    """Return ``<output_dir>/TnP_<name>_<policy>.<suffix>`` (``TnP_<policy>`` without a name)."""
    stem = f"TnP_{name}_{policy}" if name else f"TnP_{policy}"
    return Path(output_dir) / f"{stem}.{suffix}"
