#!/usr/bin/env python3
"""Write flat tag-and-probe trees from NanoAOD files.

Examples:
    python bin/make_tnp_tree.py nano.root -o outputs/tnp.root
    python bin/make_tnp_tree.py a.root b.root -o outputs/ --policy nearest_pole --seed 7
    python bin/make_tnp_tree.py --cuts
"""

import argparse
import logging
from pathlib import Path

from tnpcoffea.analysis_config import CUTS, POLICIES, POLICY_RANDOM
from tnpcoffea.analyzer import TnPAnalysis
from tnpcoffea.cli_utils import parse_cut_overrides
from tnpcoffea.tnp_tree import DEFAULT_STEP, TREE_NAME, make_tnp_tree

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _print_cuts(cuts):
    """Print the effective cuts in a human-readable table."""
    print()
    print("Tag-and-probe cuts")
    print("=" * 55)
    print(f"  {'Cut':<40s} {'Value':>10}")
    print("  " + "-" * 51)
    for key in CUTS:
        label = key.replace("_", " ")
        print(f"  {label:<40s} {cuts[key]:>10}")
    print()


def _dest_for(src, output, n_inputs):
    """Output path for ``src``: ``output`` itself for one input, else ``output/<stem>_tnp.root``."""
    output = Path(output)
    if n_inputs == 1 and output.suffix == ".root":
        return output
    return output / f"{Path(src).stem}_tnp.root"


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="make_tnp_tree.py",
        description="Write flat tag-and-probe trees.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("inputs", nargs="*", help="Input NanoAOD ROOT files")
    parser.add_argument("-o", "--output", default="outputs",
                        help="Output file (single input) or directory (default: outputs)")
    parser.add_argument("--policy", default=POLICY_RANDOM, choices=POLICIES,
                        help=f"Candidate-resolution policy (default: {POLICY_RANDOM})")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the random tag/probe draws (default: unseeded)")
    parser.add_argument("--set", nargs="*", default=[], metavar="KEY=VALUE",
                        help="Override analysis cuts")
    parser.add_argument("--data", action="store_true",
                        help="Treat inputs as data even if generator branches are present")
    parser.add_argument("--step", type=int, default=DEFAULT_STEP,
                        help=f"Source entries per chunk (default: {DEFAULT_STEP})")
    parser.add_argument("--tree-name", default=TREE_NAME,
                        help=f"Output tree name (default: {TREE_NAME})")
    parser.add_argument("--cuts", action="store_true",
                        help="Print effective cuts and exit")
    args = parser.parse_args(argv)

    try:
        analysis = TnPAnalysis(policy=args.policy, cuts=parse_cut_overrides(args.set), seed=args.seed)
    except ValueError as e:
        parser.error(str(e))

    if args.cuts:
        _print_cuts(analysis.cuts)
        raise SystemExit(0)

    if not args.inputs:
        parser.print_help()
        raise SystemExit(1)

    for src in args.inputs:
        dest = _dest_for(src, args.output, len(args.inputs))
        result = make_tnp_tree(
            src,
            str(dest),
            analysis,
            is_mc=False if args.data else None,
            step_size=args.step,
            tree_name=args.tree_name,
        )
        logger.info(
            "%s -> %s: %d / %d events with a pair (%.1f%%), %s",
            result.src_path, result.dest_path, result.n_pairs, result.n_events,
            result.efficiency, result.status_counts,
        )


if __name__ == "__main__":
    main()
