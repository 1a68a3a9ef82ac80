"""Lightweight configuration for the electron tag-and-probe analysis.

Keep this module dependency-free so it can be shipped to Dask workers cheaply.
"""

# Nominal Z boson pole mass (GeV)
Z_POLE_MASS = 91.1876

# Candidate-resolution policies understood by CandidateResolver.resolve()
POLICY_RANDOM = "random"
POLICY_NEAREST_POLE = "nearest_pole"
POLICIES = (POLICY_RANDOM, POLICY_NEAREST_POLE)

# NanoAOD bit positions
TRIGOBJ_BIT_ELE_WPTIGHT_TRACKISO = 1   # hltEle*WPTight*TrackIsoFilter*
GENPART_BIT_IS_PROMPT = 0
GENPART_BIT_IS_LAST_COPY = 13

ELECTRON_PDGID = 11

# --- Physics thresholds (single source of truth for analysis cuts) -------------
CUTS = {
    # good electrons
    "electron_pt_min": 5,
    "electron_eta_max": 2.5,
    # good jets
    "jet_pt_min": 30,
    "jet_eta_max": 2.5,
    "jet_id_min": 0,
    "jet_puid_min": 4,
    # tag definition
    "tag_cutbased_min": 4,
    # matching thresholds
    "dr_jet_clean": 0.3,
    "dr_trigger_match": 0.3,
    "dr_gen_match": 0.2,
    # generator-level preselection for truth matching
    "gen_pt_min": 3,
    "gen_eta_max": 2.7,
    # pair selection
    "mass_window_low": 50,
    "mass_window_high": 130,
    "pole_mass": Z_POLE_MASS,
    "max_draws": 100,
}

# Probe working points: output branch -> (Electron column, threshold).
# A probe passes when column >= threshold (cutBased levels are nested).
WORKING_POINTS = {
    "passingVeto":   ("Electron_cutBased", 1),
    "passingLoose":  ("Electron_cutBased", 2),
    "passingMedium": ("Electron_cutBased", 3),
    "passingTight":  ("Electron_cutBased", 4),
}

# Working points defined by a strict lower bound on an MVA score.
MVA_WORKING_POINTS = {
    "passingMVAtth": ("Electron_mvaTTH", 0.7),
}

# Branches of the reduced TnP tree, in write order.
KINEMATIC_BRANCHES = [
    "tag_Ele_pt", "tag_Ele_eta", "tag_Ele_phi", "tag_Ele_mass", "tag_Ele_q",
    "probe_Ele_pt", "probe_Ele_eta", "probe_Ele_phi", "probe_Ele_mass", "probe_Ele_q",
    "pair_pt", "pair_eta", "pair_phi", "pair_mass",
]
OUTPUT_BRANCHES = (
    ["run", "luminosityBlock", "event", "nElectron", "tag_Idx", "probe_Idx"]
    + KINEMATIC_BRANCHES
    + ["mcTrue", "weight"]
    + list(WORKING_POINTS)
    + list(MVA_WORKING_POINTS)
)

# Input columns the pipeline reads (NanoAOD flat branch names).
ELECTRON_COLUMNS = [
    "Electron_pt", "Electron_eta", "Electron_phi", "Electron_mass",
    "Electron_charge", "Electron_cutBased", "Electron_mvaTTH",
]
JET_COLUMNS = ["Jet_pt", "Jet_eta", "Jet_phi", "Jet_jetId", "Jet_puId"]
TRIGOBJ_COLUMNS = ["TrigObj_id", "TrigObj_filterBits", "TrigObj_eta", "TrigObj_phi"]
GENPART_COLUMNS = [
    "GenPart_pdgId", "GenPart_pt", "GenPart_eta", "GenPart_phi", "GenPart_statusFlags",
]
EVENT_COLUMNS = ["run", "luminosityBlock", "event"]
INPUT_COLUMNS = EVENT_COLUMNS + ELECTRON_COLUMNS + JET_COLUMNS + TRIGOBJ_COLUMNS

# --- Selection names (PackedSelection) ------------------------------------------
SEL_HAS_ELECTRON = "has_electron"     # at least one baseline electron
SEL_HAS_CANDIDATE = "has_candidate"   # at least one tag/probe candidate
SEL_TAG_ACCEPTED = "tag_accepted"     # chosen tag passes tight ID + trigger match
SEL_RESOLVED = "resolved"             # one (tag, probe) pair chosen

CUTFLOW_CHAIN = [
    SEL_HAS_ELECTRON,
    SEL_HAS_CANDIDATE,
    SEL_TAG_ACCEPTED,
    SEL_RESOLVED,
]


def resolve_cuts(overrides=None):
    """Return a copy of CUTS with ``overrides`` applied and validated.

    Raises ValueError for unknown keys, an inverted mass window, or a
    non-positive draw bound.
    """
    cuts = dict(CUTS)
    for key, value in (overrides or {}).items():
        if key not in CUTS:
            raise ValueError(f"Unknown cut '{key}'. Valid cuts: {sorted(CUTS)}")
        try:
            cuts[key] = float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Cut '{key}' must be numeric, got {value!r}") from e

    if cuts["mass_window_low"] > cuts["mass_window_high"]:
        raise ValueError(
            f"Inverted mass window: [{cuts['mass_window_low']}, {cuts['mass_window_high']}]"
        )
    if int(cuts["max_draws"]) < 1:
        raise ValueError("max_draws must be a positive integer")
    cuts["max_draws"] = int(cuts["max_draws"])
    return cuts
