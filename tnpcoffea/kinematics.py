"""Four-momentum composition for tag/probe pairs.

The resolver and the output record both go through ``pair_mass`` /
``pair_kinematics`` so the mass used to pick a pair is the mass written out.
"""

import awkward as ak
from coffea.nanoevents.methods import vector

ak.behavior.update(vector.behavior)


def p4(collection):
    """Return PtEtaPhiM Lorentz vectors built from a collection's kinematics."""
    return ak.zip(
        {
            "pt": collection.pt,
            "eta": collection.eta,
            "phi": collection.phi,
            "mass": collection.mass,
        },
        with_name="PtEtaPhiMLorentzVector",
        behavior=vector.behavior,
    )


def _total(first, second):
    return p4(first) + p4(second)


def pair_mass(first, second):
    """Invariant mass of ``first + second`` (broadcasts like awkward arithmetic)."""
    return _total(first, second).mass


def pair_kinematics(first, second):
    """Return ``{"pt", "eta", "phi", "mass"}`` of the summed four-momentum."""
    total = _total(first, second)
    return {
        "pt": total.pt,
        "eta": total.eta,
        "phi": total.phi,
        "mass": total.mass,
    }


def take(collection, index):
    """Pick one object per event at local ``index``; ``None`` where index is -1."""
    hit = ak.local_index(collection, axis=1) == index
    return ak.firsts(collection[hit], axis=1)
