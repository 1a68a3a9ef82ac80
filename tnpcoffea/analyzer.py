"""Electron tag-and-probe processor.

High-level flow per chunk:
    1) Build electron, jet, trigger-object (and, for MC, generator) collections.
    2) Flag baseline electrons and jets, clean electrons against jets and
       match them to electron trigger objects.
    3) MC only: match electrons to prompt generator electrons.
    4) Choose at most one (tag, probe) pair per event with the configured policy.
    5) Build the per-pair output record, fill histograms and cutflows.

The same pipeline (``TnPAnalysis.run``) backs both the coffea processor and
the reduced-tree writer in ``tnpcoffea.tnp_tree``.

Notes for distributed execution (Dask):
    - expected fallbacks (e.g. NanoAOD versions without ``Jet_puId``) are
      logged once per worker process via ``_WARN_ONCE``.
    - with a seed, every chunk gets its own generator derived from
      (seed, filename, entrystart), so results do not depend on scheduling.
"""

import logging
import zlib
from dataclasses import dataclass

import awkward as ak
import numpy as np
from coffea import processor
from coffea.analysis_tools import PackedSelection, Weights

from tnpcoffea.analysis_config import (
    ELECTRON_COLUMNS,
    GENPART_COLUMNS,
    JET_COLUMNS,
    MVA_WORKING_POINTS,
    POLICIES,
    POLICY_NEAREST_POLE,
    POLICY_RANDOM,
    SEL_HAS_CANDIDATE,
    SEL_HAS_ELECTRON,
    SEL_RESOLVED,
    SEL_TAG_ACCEPTED,
    TRIGOBJ_COLUMNS,
    WORKING_POINTS,
    resolve_cuts,
)
from tnpcoffea.columns import EventTable
from tnpcoffea.histograms import (
    NEAREST_POLE_MASS_BINS,
    create_pair_mass_hist,
    fill_cutflows,
    fill_pair_mass_histograms,
)
from tnpcoffea.kinematics import pair_kinematics, take
from tnpcoffea.matching import NO_MATCH, clean_from_jets, match_gen, match_trigger
from tnpcoffea.resolver import CandidateResolver, ResolutionStatus, TnPOutcome

logger = logging.getLogger(__name__)

# Warn-once cache (per worker process) to avoid log spam.
_WARN_ONCE: set[str] = set()


def _warn_once(key, message):
    if key in _WARN_ONCE:
        return
    _WARN_ONCE.add(key)
    logger.warning(message)


def _attributes(columns):
    """``["Electron_pt", ...]`` -> ``{"pt": "pt", ...}`` for EventTable.collection."""
    attrs = [c.partition("_")[2] for c in columns]
    return {a: a for a in attrs}


def _flat(values, fill=0):
    return ak.to_numpy(ak.fill_none(values, fill))


@dataclass
class TnPChunk:
    """Everything the pipeline produces for one chunk of events."""
    outcome: TnPOutcome
    record: dict
    weights: Weights
    selections: PackedSelection


class TnPAnalysis(processor.ProcessorABC):
    """Coffea processor producing tag-and-probe pairs for electron ID studies.

    Expected ``events.metadata`` keys (typical):
      - ``datatype``: "mc" or "data"
      - ``sample``: dataset identifier string (falls back to ``dataset``)

    Parameters
    - ``policy``: candidate-resolution policy, one of ``POLICIES``.
    - ``cuts``: overrides for ``analysis_config.CUTS``.
    - ``seed``: base seed for the random draws; unseeded when None.
    - ``truth_on_clean``: gen-match every jet-clean electron instead of only
      tight ones, so non-tight probes can be genuine.
    """

    def __init__(self, policy=POLICY_RANDOM, cuts=None, seed=None, truth_on_clean=False):
        if policy not in POLICIES:
            raise ValueError(f"Invalid policy '{policy}'. Must be one of {POLICIES}.")
        self._policy = policy
        self._cuts = resolve_cuts(cuts)
        self._seed = seed
        self._truth_on_clean = bool(truth_on_clean)
        if policy == POLICY_NEAREST_POLE:
            bins = NEAREST_POLE_MASS_BINS
        else:
            bins = (
                int(round(self._cuts["mass_window_high"] - self._cuts["mass_window_low"])) or 1,
                self._cuts["mass_window_low"],
                self._cuts["mass_window_high"],
            )
        self.make_output = lambda: {"pair_mass": create_pair_mass_hist(bins)}

    @property
    def policy(self):
        return self._policy

    @property
    def cuts(self):
        return dict(self._cuts)

    def make_rng(self, metadata=None):
        """Return the random generator for one chunk."""
        if self._seed is None:
            return np.random.default_rng()
        metadata = metadata or {}
        key = f"{metadata.get('filename', '')}:{metadata.get('entrystart', 0)}"
        return np.random.default_rng([int(self._seed), zlib.crc32(key.encode())])

    def select_electrons(self, table):
        """Return all electrons (with ``idx``) and the baseline mask."""
        electrons = table.collection("Electron", _attributes(ELECTRON_COLUMNS))
        good = (electrons.pt > self._cuts["electron_pt_min"]) & (
            np.abs(electrons.eta) < self._cuts["electron_eta_max"]
        )
        table.define("Electron_isGood", good)
        return electrons, good

    def select_jets(self, table):
        """Return all jets and the baseline mask used for electron cleaning."""
        attrs = _attributes(JET_COLUMNS)
        if not table.has("Jet_puId"):
            _warn_once("jet_puid", "Jet_puId not in input; skipping pileup-ID requirement on jets.")
            attrs.pop("puId")
        jets = table.collection("Jet", attrs)

        good = (
            (jets.pt > self._cuts["jet_pt_min"])
            & (np.abs(jets.eta) < self._cuts["jet_eta_max"])
            & (jets.jetId > self._cuts["jet_id_min"])
        )
        if "puId" in attrs:
            good = good & (jets.puId > self._cuts["jet_puid_min"])
        table.define("Jet_isGood", good)
        return jets, good

    def build_masks(self, table, electrons, good):
        """Return the per-electron ``clean``, ``tight``, ``trigger``, ``tag`` and ``probe`` masks."""
        jets, jet_good = self.select_jets(table)
        clean = clean_from_jets(electrons, good, jets, jet_good, self._cuts["dr_jet_clean"])

        trigger_objects = table.collection("TrigObj", _attributes(TRIGOBJ_COLUMNS))
        trigger = match_trigger(electrons, trigger_objects, self._cuts["dr_trigger_match"])

        tight = clean & (electrons.cutBased >= self._cuts["tag_cutbased_min"])
        tag = tight & trigger

        table.define("Electron_isClean", clean)
        table.define("Electron_isTrigMatched", trigger)
        table.define("Electron_isTag", tag)
        return {"clean": clean, "tight": tight, "trigger": trigger, "tag": tag, "probe": clean}

    def match_truth(self, table, electrons, eligible):
        """Return the matched generator index per electron (-1 if none)."""
        gen_particles = table.collection("GenPart", _attributes(GENPART_COLUMNS))
        gen_idx = match_gen(
            electrons,
            eligible,
            gen_particles,
            dr_max=self._cuts["dr_gen_match"],
            pt_min=self._cuts["gen_pt_min"],
            eta_max=self._cuts["gen_eta_max"],
        )
        table.define("Electron_genIdx", gen_idx)
        return gen_idx

    def build_event_weights(self, table, is_mc):
        """MC: genWeight when present. Data: unit weights."""
        n = len(table)
        weights = Weights(n)
        if is_mc and table.has("genWeight"):
            weights.add("genWeight", _flat(table.column("genWeight")))
        elif is_mc:
            _warn_once("genweight", "genWeight not in input; MC events get unit weights.")
            weights.add("unit", np.ones(n, dtype=np.float32))
        else:
            weights.add("data", np.ones(n, dtype=np.float32))
        return weights

    def build_record(self, table, electrons, outcome, weights):
        """Flat per-pair arrays, one entry per resolved event, keyed by output branch."""
        sel = outcome.resolved
        tag = take(electrons, outcome.tag_idx)[sel]
        probe = take(electrons, outcome.probe_idx)[sel]
        pair = pair_kinematics(tag, probe)

        record = {
            "run": _flat(table.column("run"))[sel],
            "luminosityBlock": _flat(table.column("luminosityBlock"))[sel],
            "event": _flat(table.column("event"))[sel],
            "nElectron": ak.to_numpy(ak.num(electrons, axis=1))[sel],
            "tag_Idx": outcome.tag_idx[sel],
            "probe_Idx": outcome.probe_idx[sel],
        }
        for prefix, obj in (("tag_Ele", tag), ("probe_Ele", probe)):
            record[f"{prefix}_pt"] = _flat(obj.pt)
            record[f"{prefix}_eta"] = _flat(obj.eta)
            record[f"{prefix}_phi"] = _flat(obj.phi)
            record[f"{prefix}_mass"] = _flat(obj.mass)
            record[f"{prefix}_q"] = _flat(obj.charge)
        for name, values in pair.items():
            record[f"pair_{name}"] = _flat(values, np.nan)

        record["mcTrue"] = outcome.mc_truth[sel]
        record["weight"] = weights.weight()[sel]

        for wp, (column, threshold) in WORKING_POINTS.items():
            values = _flat(take(table.column(column), outcome.probe_idx)[sel], -1)
            record[wp] = values >= threshold
        for wp, (column, threshold) in MVA_WORKING_POINTS.items():
            values = _flat(take(table.column(column), outcome.probe_idx)[sel], -np.inf)
            record[wp] = values > threshold
        return record

    def build_selections(self, good, outcome):
        selections = PackedSelection()
        selections.add(SEL_HAS_ELECTRON, ak.to_numpy(ak.any(good, axis=1)))
        selections.add(SEL_HAS_CANDIDATE, outcome.status != ResolutionStatus.NO_CANDIDATE)
        selections.add(SEL_TAG_ACCEPTED, outcome.status != ResolutionStatus.TAG_REJECTED)
        selections.add(SEL_RESOLVED, outcome.resolved)
        return selections

    def run(self, table, rng, is_mc, dataset=None):
        """Run the full tag-and-probe pipeline on one chunk."""
        electrons, good = self.select_electrons(table)
        masks = self.build_masks(table, electrons, good)

        genuine = None
        if is_mc:
            eligible = masks["clean"] if self._truth_on_clean else masks["tight"]
            genuine = self.match_truth(table, electrons, eligible) != NO_MATCH

        resolver = CandidateResolver.from_cuts(self._cuts, rng)
        outcome = resolver.resolve(self._policy, electrons, masks["tag"], masks["probe"], genuine)

        unresolvable = int(np.count_nonzero(outcome.status == ResolutionStatus.UNRESOLVABLE))
        if unresolvable:
            logger.debug("%s: %d unresolvable event(s) in chunk", dataset, unresolvable)
            _warn_once(
                f"unresolvable:{dataset}",
                f"{dataset}: {unresolvable} event(s) had candidates but no distinct pair within "
                f"{self._cuts['max_draws']} draws; they are counted as unresolvable.",
            )

        weights = self.build_event_weights(table, is_mc)
        return TnPChunk(
            outcome=outcome,
            record=self.build_record(table, electrons, outcome, weights),
            weights=weights,
            selections=self.build_selections(good, outcome),
        )

    def process(self, events):
        """Run the pipeline for one NanoEvents chunk and return a dataset-nested output dict."""
        output = self.make_output()
        metadata = events.metadata
        dataset = metadata.get("sample") or metadata.get("dataset")

        datatype = (metadata.get("datatype") or "").strip().lower()
        is_mc = datatype == "mc"

        chunk = self.run(EventTable(events), self.make_rng(metadata), is_mc, dataset=dataset)

        fill_pair_mass_histograms(output, chunk.record)
        fill_cutflows(output, chunk.selections, chunk.weights, chunk.outcome.status)

        logger.debug("%s: %s", dataset, chunk.outcome.counts())
        return {dataset: {**output}}

    def postprocess(self, accumulator):
        return accumulator
