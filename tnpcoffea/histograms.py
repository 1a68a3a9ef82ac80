"""Histogram creation and filling for the TnP processor.

Output layout per chunk (before the dataset nesting added by the processor):
  - ``pair_mass``: tag-probe invariant mass, split by working point and by
    whether the probe passes it.
  - ``cutflow``: PackedSelection cutflows (weighted and unweighted) plus a
    per-status event count.
"""

import logging

import hist
import numpy as np

from tnpcoffea.analysis_config import (
    CUTFLOW_CHAIN,
    CUTS,
    MVA_WORKING_POINTS,
    WORKING_POINTS,
)
from tnpcoffea.resolver import ResolutionStatus

logger = logging.getLogger(__name__)

PASS = "pass"
FAIL = "fail"

# 1 GeV bins over the default mass window
PAIR_MASS_BINS = (80, CUTS["mass_window_low"], CUTS["mass_window_high"])
# nearest_pole applies no mass window
NEAREST_POLE_MASS_BINS = (200, 0, 200)


def create_pair_mass_hist(bins=PAIR_MASS_BINS):
    """Pair-mass histogram with (working_point, probe) categorical axes.

    Masses outside ``bins`` go to the flow bins, so the range should cover
    every mass the resolution policy can return.
    """
    return (
        hist.Hist.new
        .StrCat([], name="working_point", label="Working point", growth=True)
        .StrCat([PASS, FAIL], name="probe", label="Probe")
        .Reg(*bins, name="pair_mass", label=r"$m_{ee}$ [GeV]")
        .Weight()
    )


def create_status_hist():
    return (
        hist.Hist.new
        .StrCat([s.name for s in ResolutionStatus], name="status", label="Resolution status")
        .Weight()
    )


def fill_pair_mass_histograms(output, record):
    """Fill ``output["pair_mass"]`` from a resolved-event record.

    ``record`` maps output branch names to flat per-pair arrays and must
    contain ``pair_mass``, ``weight`` and one boolean column per working point.
    """
    mass = np.asarray(record["pair_mass"])
    weight = np.asarray(record["weight"])
    for wp in list(WORKING_POINTS) + list(MVA_WORKING_POINTS):
        passing = np.asarray(record[wp], dtype=bool)
        output["pair_mass"].fill(working_point=wp, probe=PASS, pair_mass=mass[passing], weight=weight[passing])
        output["pair_mass"].fill(working_point=wp, probe=FAIL, pair_mass=mass[~passing], weight=weight[~passing])


def _relabel_cutflow(h_raw, cut_names):
    """Convert an Integer-axis cutflow histogram to one with a StrCategory axis."""
    h = hist.Hist(
        hist.axis.StrCategory(cut_names, name="cut"),
        storage=h_raw.storage_type(),
    )
    h.view(flow=False)[...] = h_raw.view(flow=False)
    return h


def fill_cutflows(output, selections, weights, status):
    """Build the cumulative TnP cutflow and the status breakdown.

    Output layout (keys under ``output["cutflow"]``):
        - ``onecut`` / ``cumulative`` and their ``_unweighted`` variants,
          labelled "no_cuts" followed by the selection names.
        - ``status``: weighted event count per ResolutionStatus name.
    """
    bucket = output.setdefault("cutflow", {})
    cut_names = ["no_cuts"] + list(CUTFLOW_CHAIN)

    cf = selections.cutflow(*CUTFLOW_CHAIN, weights=weights)
    h_onecut_raw, h_cum_raw, _labels = cf.yieldhist(weighted=True)
    bucket["onecut"] = _relabel_cutflow(h_onecut_raw, cut_names)
    bucket["cumulative"] = _relabel_cutflow(h_cum_raw, cut_names)

    h_onecut_unw, h_cum_unw, _labels = cf.yieldhist(weighted=False)
    bucket["onecut_unweighted"] = _relabel_cutflow(h_onecut_unw, cut_names)
    bucket["cumulative_unweighted"] = _relabel_cutflow(h_cum_unw, cut_names)

    h_status = create_status_hist()
    names = [ResolutionStatus(int(s)).name for s in status]
    h_status.fill(status=names, weight=weights.weight())
    bucket["status"] = h_status
