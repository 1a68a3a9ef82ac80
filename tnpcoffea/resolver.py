"""Choose at most one (tag, probe) electron pair per event.

Two policies are supported:

  - ``random``: enumerate every (tag-eligible, probe-eligible) pair whose
    invariant mass lies in the closed mass window, then draw pairs uniformly
    until one with distinct electrons comes up. The number of draws is
    bounded; events that exhaust the bound are reported as unresolvable.
  - ``nearest_pole``: sort clean electrons by pt, draw one of the two leading
    ones as tag, reject the event if that tag is not tight and trigger
    matched, otherwise take as probe the other clean electron whose pair mass
    is closest to the pole mass.

The random source is an injected ``numpy.random.Generator`` so a fixed seed
reproduces the same choices.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum

import awkward as ak
import numpy as np

from tnpcoffea.analysis_config import (
    CUTS,
    POLICIES,
    POLICY_NEAREST_POLE,
    POLICY_RANDOM,
    Z_POLE_MASS,
)
from tnpcoffea.kinematics import pair_mass, take
from tnpcoffea.matching import NO_MATCH, cross_product, with_index

logger = logging.getLogger(__name__)


class ResolutionStatus(IntEnum):
    RESOLVED = 0
    NO_CANDIDATE = 1
    TAG_REJECTED = 2
    UNRESOLVABLE = 3


@dataclass
class TnPOutcome:
    """Per-event result of candidate resolution.

    Index arrays hold positions in the electron collection, -1 where the
    event has no chosen pair. ``pair_mass`` is NaN there.
    """
    tag_idx: np.ndarray
    probe_idx: np.ndarray
    pair_mass: np.ndarray
    status: np.ndarray
    mc_truth: np.ndarray
    draws: int = 0
    policy: str = field(default=POLICY_RANDOM)

    def __len__(self):
        return len(self.status)

    @property
    def resolved(self) -> np.ndarray:
        return self.status == ResolutionStatus.RESOLVED

    def counts(self) -> dict[str, int]:
        """Number of events per status name."""
        return {s.name: int(np.count_nonzero(self.status == s)) for s in ResolutionStatus}


def _to_numpy(values, fill):
    return ak.to_numpy(ak.fill_none(values, fill))


def _truth(genuine, tag_idx, probe_idx):
    """mcTrue: both members of the chosen pair are genuine. Data counts as true."""
    resolved = tag_idx >= 0
    if genuine is None:
        return resolved
    tag_ok = _to_numpy(take(genuine, tag_idx), False)
    probe_ok = _to_numpy(take(genuine, probe_idx), False)
    return resolved & tag_ok & probe_ok


class CandidateResolver:
    """Resolve tag/probe candidates with one of the policies in ``POLICIES``.

    Parameters
    - ``rng``: ``numpy.random.Generator``; a fresh unseeded one when omitted.
    - ``mass_window``: closed ``(low, high)`` pair-mass acceptance for ``random``.
    - ``pole_mass``: target mass for ``nearest_pole``.
    - ``max_draws``: upper bound on random draws per event.
    """

    def __init__(
        self,
        rng=None,
        *,
        mass_window=(CUTS["mass_window_low"], CUTS["mass_window_high"]),
        pole_mass=Z_POLE_MASS,
        max_draws=CUTS["max_draws"],
    ):
        low, high = mass_window
        if low > high:
            raise ValueError(f"Inverted mass window: [{low}, {high}]")
        if int(max_draws) < 1:
            raise ValueError(f"max_draws must be >= 1, got {max_draws}")
        self.rng = rng if rng is not None else np.random.default_rng()
        self.mass_window = (float(low), float(high))
        self.pole_mass = float(pole_mass)
        self.max_draws = int(max_draws)

    @classmethod
    def from_cuts(cls, cuts, rng=None):
        return cls(
            rng,
            mass_window=(cuts["mass_window_low"], cuts["mass_window_high"]),
            pole_mass=cuts["pole_mass"],
            max_draws=cuts["max_draws"],
        )

    def resolve(self, policy, electrons, tag_mask, probe_mask, genuine=None):
        """Dispatch to the resolver for ``policy``.

        For ``nearest_pole`` the ``probe_mask`` is the candidate pool from
        which both the tag and the probe are taken.
        """
        if policy == POLICY_RANDOM:
            return self.resolve_random(electrons, tag_mask, probe_mask, genuine)
        if policy == POLICY_NEAREST_POLE:
            return self.resolve_nearest_pole(electrons, tag_mask, probe_mask, genuine)
        raise ValueError(f"Unknown policy '{policy}'. Must be one of {POLICIES}.")

    def resolve_random(self, electrons, tag_mask, probe_mask, genuine=None):
        electrons = with_index(electrons)
        n_events = len(electrons)
        low, high = self.mass_window

        pairs = cross_product(electrons[tag_mask], electrons[probe_mask], nested=False)
        pairs = ak.with_field(pairs, pair_mass(pairs.first, pairs.second), "mass")
        pairs = pairs[(pairs.mass >= low) & (pairs.mass <= high)]

        n_pairs = ak.to_numpy(ak.num(pairs, axis=1))
        # Events whose only in-window pairs are self pairs can never succeed.
        drawable = ak.to_numpy(ak.any(pairs.first.idx != pairs.second.idx, axis=1))
        position = ak.local_index(pairs, axis=1)

        tag_idx = np.full(n_events, NO_MATCH, dtype=np.int64)
        probe_idx = np.full(n_events, NO_MATCH, dtype=np.int64)
        masses = np.full(n_events, np.nan, dtype=np.float64)

        pending = drawable.copy()
        draws = 0
        while draws < self.max_draws and pending.any():
            draws += 1
            pick = np.floor(self.rng.random(n_events) * n_pairs).astype(np.int64)
            drawn = ak.firsts(pairs[position == pick], axis=1)
            t = _to_numpy(drawn.first.idx, NO_MATCH)
            p = _to_numpy(drawn.second.idx, NO_MATCH)

            accept = pending & (t != p)
            tag_idx[accept] = t[accept]
            probe_idx[accept] = p[accept]
            masses[accept] = _to_numpy(drawn.mass, np.nan)[accept]
            pending &= ~accept

        status = np.full(n_events, ResolutionStatus.NO_CANDIDATE, dtype=np.int8)
        status[n_pairs > 0] = ResolutionStatus.UNRESOLVABLE
        status[tag_idx >= 0] = ResolutionStatus.RESOLVED

        logger.debug(
            "random policy: %d/%d events resolved after %d draw(s)",
            int(np.count_nonzero(tag_idx >= 0)), n_events, draws,
        )
        return TnPOutcome(
            tag_idx=tag_idx,
            probe_idx=probe_idx,
            pair_mass=masses,
            status=status,
            mc_truth=_truth(genuine, tag_idx, probe_idx),
            draws=draws,
            policy=POLICY_RANDOM,
        )

    def resolve_nearest_pole(self, electrons, tag_mask, candidate_mask, genuine=None):
        electrons = with_index(ak.with_field(electrons, tag_mask, "is_tag"))
        n_events = len(electrons)

        candidates = electrons[candidate_mask]
        order = ak.argsort(candidates.pt, axis=1, ascending=False, stable=True)
        candidates = candidates[order]
        n_cand = ak.to_numpy(ak.num(candidates, axis=1))

        # Uniform draw between the leading and subleading candidate.
        pick = np.floor(self.rng.random(n_events) * 2).astype(np.int64) % 2
        pick = np.minimum(pick, np.maximum(n_cand - 1, 0))
        position = ak.local_index(candidates, axis=1)
        tag = ak.firsts(candidates[position == pick], axis=1)

        tag_i = _to_numpy(tag.idx, NO_MATCH)
        tag_ok = _to_numpy(tag.is_tag, False)

        others = candidates[(candidates.idx != tag_i) & tag_ok]
        pairs = cross_product(candidates[candidates.idx == tag_i], others, nested=False)
        masses = pair_mass(pairs.first, pairs.second)
        distance = ak.nan_to_num(np.abs(masses - self.pole_mass), nan=np.inf)
        nearest = ak.argmin(distance, axis=1, keepdims=True)
        chosen = ak.firsts(pairs[nearest], axis=1)

        probe_idx = _to_numpy(chosen.second.idx, NO_MATCH).astype(np.int64)
        found = probe_idx >= 0
        tag_idx = np.where(found, tag_i, NO_MATCH).astype(np.int64)
        chosen_mass = np.where(found, _to_numpy(ak.firsts(masses[nearest], axis=1), np.nan), np.nan)

        status = np.full(n_events, ResolutionStatus.NO_CANDIDATE, dtype=np.int8)
        status[(n_cand > 0) & ~tag_ok] = ResolutionStatus.TAG_REJECTED
        status[found] = ResolutionStatus.RESOLVED

        return TnPOutcome(
            tag_idx=tag_idx,
            probe_idx=probe_idx,
            pair_mass=chosen_mass.astype(np.float64),
            status=status,
            mc_truth=_truth(genuine, tag_idx, probe_idx),
            draws=1,
            policy=POLICY_NEAREST_POLE,
        )
