"""Geometric association between electrons and the other event collections.

Every stage is built on ``cross_product``, which enumerates all object pairs
of two collections per event. The stages differ only in the per-pair
predicate and in how pairs are reduced back onto the electron collection:

  - ``clean_from_jets``: OR over jets (any overlapping jet vetoes the electron)
  - ``match_trigger``:   OR over trigger objects
  - ``match_gen``:       minimum-ΔR over qualifying generator electrons

Collections are awkward record arrays with at least ``eta`` and ``phi``
fields (see ``EventTable.collection``). Masks are jagged booleans aligned
with their collection.
"""

import logging

import awkward as ak
import numpy as np

from tnpcoffea.analysis_config import (
    CUTS,
    ELECTRON_PDGID,
    GENPART_BIT_IS_LAST_COPY,
    GENPART_BIT_IS_PROMPT,
    TRIGOBJ_BIT_ELE_WPTIGHT_TRACKISO,
)
from tnpcoffea.geometry import delta_r

logger = logging.getLogger(__name__)

NO_MATCH = -1


def cross_product(first, second, nested=True):
    """Return every (first, second) object pair of each event.

    Pairs are ordered first-major and carry the fields ``first`` and
    ``second``. Nothing is deduplicated: with ``first is second`` self pairs
    and both orderings are present. ``nested=True`` groups pairs by the first
    object (``[event][i1][i2]``) so callers can reduce over axis 2.
    """
    return ak.cartesian({"first": first, "second": second}, axis=1, nested=nested)


def pair_delta_r(pairs):
    """ΔR between the two members of each pair."""
    return delta_r(pairs.first.eta, pairs.first.phi, pairs.second.eta, pairs.second.phi)


def has_bits(flags, *bits):
    """True where every bit in ``bits`` is set in the integer ``flags``."""
    mask = 0
    for bit in bits:
        mask |= 1 << bit
    return (flags & mask) == mask


def with_index(collection):
    """Attach the local object index as ``idx`` unless the collection has one."""
    if "idx" in ak.fields(collection):
        return collection
    return ak.with_field(collection, ak.local_index(collection, axis=1), "idx")


def clean_from_jets(electrons, electron_ok, jets, jet_ok, dr_max=CUTS["dr_jet_clean"]):
    """Flag eligible electrons with no eligible jet within ΔR <= ``dr_max``.

    An electron without any eligible jet in the event is clean.
    """
    pairs = cross_product(electrons, ak.with_field(jets, jet_ok, "ok"))
    overlap = pairs.second.ok & (pair_delta_r(pairs) <= dr_max)
    return electron_ok & ~ak.any(overlap, axis=2)


def match_trigger(
    electrons,
    trigger_objects,
    dr_max=CUTS["dr_trigger_match"],
    pdg_id=ELECTRON_PDGID,
    filter_bit=TRIGOBJ_BIT_ELE_WPTIGHT_TRACKISO,
):
    """Flag electrons within ΔR < ``dr_max`` of an electron trigger object.

    The trigger object must have ``|id| == pdg_id`` and ``filter_bit`` set in
    ``filterBits`` (bit 1: tight working point track-isolation filter).
    """
    pairs = cross_product(electrons, trigger_objects)
    trig = pairs.second
    fired = (
        (np.abs(trig.id) == pdg_id)
        & has_bits(trig.filterBits, filter_bit)
        & (pair_delta_r(pairs) < dr_max)
    )
    return ak.any(fired, axis=2)


def match_gen(
    electrons,
    electron_ok,
    gen_particles,
    dr_max=CUTS["dr_gen_match"],
    pt_min=CUTS["gen_pt_min"],
    eta_max=CUTS["gen_eta_max"],
    pdg_id=ELECTRON_PDGID,
):
    """Return, per electron, the index of the closest prompt final-state gen electron.

    Generator candidates need ``|pdgId| == pdg_id``, ``pt >= pt_min``,
    ``|eta| < eta_max`` and the isPrompt and isLastCopy status bits. The
    minimum ΔR is taken over all candidates of the event; the match is kept
    only if that minimum is below ``dr_max``. Unmatched and ineligible
    electrons get -1.
    """
    gen_particles = with_index(gen_particles)
    qualifies = (
        (np.abs(gen_particles.pdgId) == pdg_id)
        & (gen_particles.pt >= pt_min)
        & (np.abs(gen_particles.eta) < eta_max)
        & has_bits(gen_particles.statusFlags, GENPART_BIT_IS_PROMPT, GENPART_BIT_IS_LAST_COPY)
    )
    pairs = cross_product(electrons, gen_particles[qualifies])
    dr = pair_delta_r(pairs)

    closest = ak.argmin(dr, axis=2, keepdims=True)
    min_dr = ak.firsts(dr[closest], axis=2)
    gen_idx = ak.firsts(pairs.second.idx[closest], axis=2)

    matched = electron_ok & ak.fill_none(min_dr < dr_max, False)
    return ak.where(matched, ak.fill_none(gen_idx, NO_MATCH), NO_MATCH)
