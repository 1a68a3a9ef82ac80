"""Tests for tnpcoffea.matching — pair enumeration and the association stages.

Collections are single- or few-event jagged record arrays built with
``ak.unflatten`` so empty events keep a concrete dtype.
"""

import awkward as ak
import numpy as np
import pytest

from tnpcoffea.analysis_config import GENPART_BIT_IS_LAST_COPY, GENPART_BIT_IS_PROMPT
from tnpcoffea.matching import (
    NO_MATCH,
    clean_from_jets,
    cross_product,
    has_bits,
    match_gen,
    match_trigger,
    with_index,
)

PROMPT_LAST_COPY = (1 << GENPART_BIT_IS_PROMPT) | (1 << GENPART_BIT_IS_LAST_COPY)


def _collection(events, defaults):
    """Build a jagged record array from ``[[{field: value}, ...], ...]`` per event."""
    counts = np.array([len(evt) for evt in events], dtype=np.int64)
    fields = {}
    for name, default in defaults.items():
        flat = np.array([obj.get(name, default) for evt in events for obj in evt], dtype=np.asarray(default).dtype)
        fields[name] = ak.unflatten(flat, counts)
    return with_index(ak.zip(fields))


def _electrons(events):
    return _collection(events, {"pt": 40.0, "eta": 0.0, "phi": 0.0})


def _jets(events):
    return _collection(events, {"pt": 50.0, "eta": 0.0, "phi": 0.0})


def _trigobjs(events):
    return _collection(events, {"id": 11, "filterBits": 2, "eta": 0.0, "phi": 0.0})


def _genparts(events):
    return _collection(
        events,
        {"pdgId": 11, "pt": 40.0, "eta": 0.0, "phi": 0.0, "statusFlags": PROMPT_LAST_COPY},
    )


def _ones(collection):
    return ak.ones_like(collection.pt, dtype=bool)


# ---------------------------------------------------------------------------
# cross_product
# ---------------------------------------------------------------------------


class TestCrossProduct:
    def test_three_by_four_gives_twelve_pairs(self):
        first = _electrons([[{}] * 3])
        second = _jets([[{}] * 4])
        pairs = cross_product(first, second, nested=False)
        assert ak.num(pairs).tolist() == [12]

    def test_first_major_order(self):
        first = _electrons([[{}] * 2])
        second = _jets([[{}] * 3])
        pairs = cross_product(first, second, nested=False)
        assert ak.to_list(pairs.first.idx[0]) == [0, 0, 0, 1, 1, 1]
        assert ak.to_list(pairs.second.idx[0]) == [0, 1, 2, 0, 1, 2]

    def test_nested_groups_by_first(self):
        first = _electrons([[{}] * 3])
        second = _jets([[{}] * 4])
        pairs = cross_product(first, second)
        assert ak.num(pairs, axis=2).tolist() == [[4, 4, 4]]

    def test_self_product_keeps_self_pairs(self):
        ele = _electrons([[{}] * 2])
        pairs = cross_product(ele, ele, nested=False)
        same = pairs.first.idx == pairs.second.idx
        assert ak.to_list(same[0]) == [True, False, False, True]

    def test_empty_collections(self):
        first = _electrons([[], [{}]])
        second = _jets([[{}], []])
        pairs = cross_product(first, second, nested=False)
        assert ak.num(pairs).tolist() == [0, 0]

    def test_per_event(self):
        first = _electrons([[{}], [{}] * 2])
        second = _jets([[{}] * 2, [{}] * 3])
        assert ak.num(cross_product(first, second, nested=False)).tolist() == [2, 6]


# ---------------------------------------------------------------------------
# Bit helpers
# ---------------------------------------------------------------------------


class TestHasBits:
    def test_single_bit(self):
        assert has_bits(np.array([2, 1, 3]), 1).tolist() == [True, False, True]

    def test_all_bits_required(self):
        flags = np.array([PROMPT_LAST_COPY, 1, 1 << 13])
        assert has_bits(flags, 0, 13).tolist() == [True, False, False]


# ---------------------------------------------------------------------------
# Jet cleaning
# ---------------------------------------------------------------------------


class TestCleanFromJets:
    def test_overlapping_jet_vetoes(self):
        ele = _electrons([[{"eta": 0.0}]])
        jets = _jets([[{"eta": 0.05}]])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[False]]

    def test_distant_jet_keeps(self):
        ele = _electrons([[{"eta": 0.0}]])
        jets = _jets([[{"eta": 0.5}]])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[True]]

    def test_ineligible_jet_ignored(self):
        ele = _electrons([[{"eta": 0.0}]])
        jets = _jets([[{"eta": 0.05}]])
        jet_ok = ak.zeros_like(jets.pt, dtype=bool)
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, jet_ok)) == [[True]]

    def test_any_overlapping_jet_vetoes(self):
        ele = _electrons([[{"phi": 0.0}]])
        jets = _jets([[{"phi": 2.0}, {"phi": 0.1}, {"phi": -2.0}]])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[False]]

    def test_no_jets_is_clean(self):
        ele = _electrons([[{}, {}], [{}]])
        jets = _jets([[], []])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[True, True], [True]]

    def test_ineligible_electron_never_clean(self):
        ele = _electrons([[{}]])
        jets = _jets([[]])
        ele_ok = ak.zeros_like(ele.pt, dtype=bool)
        assert ak.to_list(clean_from_jets(ele, ele_ok, jets, _ones(jets))) == [[False]]

    def test_threshold_is_configurable(self):
        ele = _electrons([[{"eta": 0.0}]])
        jets = _jets([[{"eta": 0.5}]])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets), dr_max=0.6)) == [[False]]

    def test_periodic_phi(self):
        ele = _electrons([[{"phi": 3.1}]])
        jets = _jets([[{"phi": -3.1}]])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[False]]

    def test_empty_events(self):
        ele = _electrons([[], []])
        jets = _jets([[{}], []])
        assert ak.to_list(clean_from_jets(ele, _ones(ele), jets, _ones(jets))) == [[], []]


# ---------------------------------------------------------------------------
# Trigger matching
# ---------------------------------------------------------------------------


class TestMatchTrigger:
    def test_close_electron_object_with_bit(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"eta": 0.1}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[True]]

    def test_negative_id_accepted(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"id": -11}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[True]]

    def test_wrong_id_rejected(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"id": 13}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[False]]

    def test_missing_filter_bit_rejected(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"filterBits": 1 | 4}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[False]]

    def test_other_bits_do_not_matter(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"filterBits": 2 | 8 | 1024}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[True]]

    def test_too_far_rejected(self):
        ele = _electrons([[{}]])
        trig = _trigobjs([[{"eta": 0.5}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[False]]

    def test_each_electron_independent(self):
        ele = _electrons([[{"phi": 0.0}, {"phi": 2.0}]])
        trig = _trigobjs([[{"phi": 2.05}]])
        assert ak.to_list(match_trigger(ele, trig)) == [[False, True]]

    def test_no_trigger_objects(self):
        ele = _electrons([[{}], []])
        trig = _trigobjs([[], []])
        assert ak.to_list(match_trigger(ele, trig)) == [[False], []]


# ---------------------------------------------------------------------------
# Generator matching
# ---------------------------------------------------------------------------


class TestMatchGen:
    def test_picks_closest(self):
        ele = _electrons([[{"eta": 0.0}]])
        gen = _genparts([[{"eta": 0.15}, {"eta": 0.05}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[1]]

    def test_minimum_above_threshold_is_unmatched(self):
        ele = _electrons([[{"eta": 0.0}]])
        gen = _genparts([[{"eta": 0.25}, {"eta": -0.4}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[NO_MATCH]]

    def test_index_refers_to_full_gen_collection(self):
        ele = _electrons([[{"eta": 0.0}]])
        gen = _genparts([[{"pdgId": 22}, {"pdgId": 1}, {"pdgId": -11, "eta": 0.1}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[2]]

    def test_low_pt_gen_skipped(self):
        ele = _electrons([[{}]])
        gen = _genparts([[{"pt": 2.0}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[NO_MATCH]]

    def test_forward_gen_skipped(self):
        ele = _electrons([[{"eta": 2.75}]])
        gen = _genparts([[{"eta": 2.8}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[NO_MATCH]]

    def test_status_bits_required(self):
        ele = _electrons([[{}]])
        not_last = _genparts([[{"statusFlags": 1 << GENPART_BIT_IS_PROMPT}]])
        not_prompt = _genparts([[{"statusFlags": 1 << GENPART_BIT_IS_LAST_COPY}]])
        assert ak.to_list(match_gen(ele, _ones(ele), not_last)) == [[NO_MATCH]]
        assert ak.to_list(match_gen(ele, _ones(ele), not_prompt)) == [[NO_MATCH]]

    def test_non_electron_skipped(self):
        ele = _electrons([[{}]])
        gen = _genparts([[{"pdgId": 13}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[NO_MATCH]]

    def test_ineligible_electron_unmatched(self):
        ele = _electrons([[{}, {"phi": 1.0}]])
        gen = _genparts([[{}, {"phi": 1.0}]])
        ele_ok = ak.Array([[False, True]])
        assert ak.to_list(match_gen(ele, ele_ok, gen)) == [[NO_MATCH, 1]]

    def test_no_gen_particles(self):
        ele = _electrons([[{}], []])
        gen = _genparts([[], [{}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[NO_MATCH], []]

    def test_two_electrons_two_gen(self):
        ele = _electrons([[{"phi": 0.0}, {"phi": 2.0}]])
        gen = _genparts([[{"phi": 2.01}, {"phi": 0.01}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen)) == [[1, 0]]

    @pytest.mark.parametrize("dr_max,expected", [(0.1, NO_MATCH), (0.2, 0)])
    def test_threshold_is_configurable(self, dr_max, expected):
        ele = _electrons([[{"eta": 0.0}]])
        gen = _genparts([[{"eta": 0.15}]])
        assert ak.to_list(match_gen(ele, _ones(ele), gen, dr_max=dr_max)) == [[expected]]
