"""Tests for tnpcoffea.kinematics — pair four-momentum and per-event picking."""

import awkward as ak
import numpy as np
import pytest

from tnpcoffea.kinematics import p4, pair_kinematics, pair_mass, take


def _objects(pts, etas, phis, masses):
    return ak.zip({"pt": pts, "eta": etas, "phi": phis, "mass": masses})


class TestPairMass:
    def test_back_to_back_massless(self):
        # m^2 = 2 pt1 pt2 (cosh(deta) - cos(dphi)) = 4 pt1 pt2 at deta=0, dphi=pi
        first = _objects([45.5], [0.0], [0.0], [0.0])
        second = _objects([45.5], [0.0], [np.pi], [0.0])
        assert pair_mass(first, second)[0] == pytest.approx(91.0, rel=1e-6)

    def test_same_object_twice_gives_twice_the_mass(self):
        obj = _objects([40.0], [0.3], [1.0], [30.0])
        assert pair_mass(obj, obj)[0] == pytest.approx(60.0, rel=1e-6)

    def test_jagged_broadcast(self):
        first = ak.zip({"pt": [[45.5, 45.5]], "eta": [[0.0, 0.0]], "phi": [[0.0, 0.0]], "mass": [[0.0, 0.0]]})
        second = ak.zip({"pt": [[45.5, 10.0]], "eta": [[0.0, 0.0]], "phi": [[np.pi, np.pi]], "mass": [[0.0, 0.0]]})
        m = pair_mass(first, second)
        assert ak.to_list(ak.num(m)) == [2]
        assert m[0, 0] == pytest.approx(91.0, rel=1e-6)
        assert m[0, 1] == pytest.approx(2 * np.sqrt(455.0), rel=1e-6)


class TestPairKinematics:
    def test_keys(self):
        first = _objects([45.5], [0.0], [0.0], [0.0])
        second = _objects([45.5], [0.0], [np.pi], [0.0])
        assert set(pair_kinematics(first, second)) == {"pt", "eta", "phi", "mass"}

    def test_balanced_pair_has_no_pt(self):
        first = _objects([45.5], [0.0], [0.0], [0.0])
        second = _objects([45.5], [0.0], [np.pi], [0.0])
        kin = pair_kinematics(first, second)
        assert kin["pt"][0] == pytest.approx(0.0, abs=1e-6)

    def test_mass_matches_pair_mass(self):
        first = _objects([30.0, 50.0], [0.5, -1.0], [0.2, 2.0], [0.0, 0.0])
        second = _objects([25.0, 40.0], [-0.4, 1.2], [-2.5, -1.0], [0.0, 0.0])
        np.testing.assert_array_equal(
            ak.to_numpy(pair_kinematics(first, second)["mass"]),
            ak.to_numpy(pair_mass(first, second)),
        )


class TestP4:
    def test_has_vector_behavior(self):
        vec = p4(_objects([10.0], [0.0], [0.0], [0.0]))
        assert vec.x[0] == pytest.approx(10.0)


class TestTake:
    def test_picks_by_local_index(self):
        coll = ak.Array([[10.0, 20.0, 30.0], [5.0]])
        picked = take(coll, np.array([2, 0]))
        assert ak.to_list(picked) == [30.0, 5.0]

    def test_minus_one_gives_none(self):
        coll = ak.Array([[10.0, 20.0], []])
        picked = take(coll, np.array([-1, -1]))
        assert ak.to_list(picked) == [None, None]

    def test_records(self):
        coll = ak.zip({"pt": [[10.0, 20.0]], "charge": [[1, -1]]})
        picked = take(coll, np.array([1]))
        assert picked.charge[0] == -1
