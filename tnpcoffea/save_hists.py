import logging
from pathlib import Path
from typing import Dict

import uproot
from hist import Hist

logger = logging.getLogger(__name__)


def _sum_cutflow_hists(my_hists, cutflow_key="cutflow"):
    """Sum all cutflow histograms across datasets, recursively.

    Supports structures like ``{"onecut": Hist, "cumulative": Hist, "status": Hist}``
    and nested dicts thereof.
    """
    def _merge(dst, src):
        if isinstance(src, Hist):
            if dst is None:
                return src.copy()
            if isinstance(dst, Hist):
                dst += src
                return dst
            raise TypeError("Cutflow key has mixed types (Hist vs dict) across datasets.")
        if isinstance(src, dict):
            if dst is None or isinstance(dst, Hist):
                dst = {}
            for k, v in src.items():
                dst[k] = _merge(dst.get(k), v)
            return dst
        return dst

    out = {}
    for dataset_payload in my_hists.values():
        cfmap = dataset_payload.get(cutflow_key)
        if not isinstance(cfmap, dict):
            continue
        for k, v in cfmap.items():
            out[k] = _merge(out.get(k), v)
    return out


def _save_cutflows(root_file, cutflow_summed: Dict[str, dict], prefix: str):
    """Recursively write all cutflow histograms, skipping repeated paths."""
    seen = set()

    def _recurse(prefix, obj):
        if isinstance(obj, Hist):
            if prefix not in seen:
                root_file[prefix] = obj
                seen.add(prefix)
            return
        if isinstance(obj, dict):
            for name, child in obj.items():
                _recurse(f"{prefix}/{name}", child)

    _recurse(prefix, cutflow_summed)


def sum_hists(my_hists):
    """Sum the top-level Hist objects of every dataset payload."""
    if not my_hists:
        raise ValueError("No histogram data provided.")

    summed = {}
    for dataset_info in my_hists.values():
        for key, value in dataset_info.items():
            if not isinstance(value, Hist):
                continue
            if key in summed:
                summed[key] += value
            else:
                summed[key] = value.copy()
    return summed


def split_pair_mass(h):
    """Split the pair-mass histogram into ``{(working_point, probe): 1D Hist}``."""
    wp_ax = h.axes["working_point"]
    probe_ax = h.axes["probe"]
    out = {}
    for wp in [wp_ax.value(i) for i in range(wp_ax.size)]:
        for probe in [probe_ax.value(i) for i in range(probe_ax.size)]:
            out[(wp, probe)] = h[{wp_ax.name: wp, probe_ax.name: probe}]
    return out


def save_histograms(histograms, output_file):
    """Write the summed TnP histograms to ``output_file``.

    Layout:
        /<working_point>/pair_mass_<working_point>_<pass|fail>
        /cutflow/...
    """
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    summed = sum_hists(histograms)
    cutflow_summed = _sum_cutflow_hists(histograms)

    with uproot.recreate(output_file) as root_file:
        if "pair_mass" in summed:
            for (wp, probe), h in split_pair_mass(summed["pair_mass"]).items():
                root_file[f"/{wp}/pair_mass_{wp}_{probe}"] = h
        _save_cutflows(root_file, cutflow_summed, "/cutflow")

    logger.info(f"Histograms saved to {output_file}.")
    return output_file
