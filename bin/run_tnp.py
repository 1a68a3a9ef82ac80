import os
os.environ.setdefault("NUMEXPR_MAX_THREADS", "1")

import warnings
warnings.filterwarnings("ignore", category=FutureWarning, module="coffea.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message="Missing cross-reference", module="coffea.*")
import argparse
import time
import logging
from contextlib import contextmanager
from pathlib import Path

from tnpcoffea.analysis_config import POLICIES, POLICY_RANDOM
from tnpcoffea.cli_utils import (
    DATATYPES,
    build_output_path,
    fileset_from_files,
    load_fileset,
    parse_cut_overrides,
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


@contextmanager
def _local_cluster(*, n_workers, threads_per_worker):
    """Set up a local Dask cluster, yield client, clean up on exit."""
    from dask.distributed import Client, LocalCluster

    cluster = LocalCluster(n_workers=n_workers, threads_per_worker=threads_per_worker)
    client = Client(cluster)
    try:
        yield client
    finally:
        client.close()
        cluster.close()


def _build_fileset(args):
    if args.files:
        return fileset_from_files(args.files, sample=args.sample, datatype=args.datatype or "data")
    logging.info(f"Reading files from {args.fileset}")
    return load_fileset(args.fileset, datatype=args.datatype, maxfiles=args.maxfiles)


def _process_fileset(args, fileset, *, client):
    """Preprocess and process a fileset, return histograms."""
    from coffea.nanoevents import NanoAODSchema
    from coffea.processor import Runner, DaskExecutor
    from tnpcoffea.analyzer import TnPAnalysis

    NanoAODSchema.warn_missing_crossrefs = False
    NanoAODSchema.error_missing_event_ids = False

    processor = TnPAnalysis(
        policy=args.policy,
        cuts=parse_cut_overrides(args.set),
        seed=args.seed,
    )
    run = Runner(
        executor=DaskExecutor(client=client, compression=None, retries=3),
        chunksize=args.chunksize,
        maxchunks=args.maxchunks,
        skipbadfiles=True,
        xrootdtimeout=10,
        align_clusters=False,
        savemetrics=True,
        schema=NanoAODSchema,
    )

    logging.info("***PREPROCESSING***")
    preproc = run.preprocess(fileset=fileset, treename="Events")
    logging.info("Preprocessing completed")

    logging.info("***PROCESSING***")
    hists, _ = run(preproc, treename="Events", processor_instance=processor)
    logging.info("Processing completed")
    return hists


def build_parser():
    parser = argparse.ArgumentParser(description="Electron tag-and-probe histogramming with coffea.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--fileset", type=Path, default=None, help="Fileset JSON: {dataset: {files, metadata}}.")
    source.add_argument("--files", nargs="+", default=None, help="Explicit NanoAOD files (one dataset).")
    optional = parser.add_argument_group("Optional arguments")
    optional.add_argument("--sample", type=str, default="local", help="Dataset name used with --files (default: local).")
    optional.add_argument("--datatype", type=str, default=None, choices=DATATYPES, help="Keep only mc or data datasets (with --files: their type, default data).")
    optional.add_argument("--policy", type=str, default=POLICY_RANDOM, choices=POLICIES, help=f"Candidate-resolution policy (default: {POLICY_RANDOM}).")
    optional.add_argument("--seed", type=int, default=None, help="Seed for the random tag/probe draws (default: unseeded).")
    optional.add_argument("--set", nargs="*", default=[], metavar="KEY=VALUE", help="Override analysis cuts, e.g. --set mass_window_low=60 max_draws=50.")
    optional.add_argument("--outdir", type=Path, default=Path("outputs"), help="Output directory (default: outputs).")
    optional.add_argument("--name", type=str, default=None, help="Append to the output filename.")
    optional.add_argument("--max-workers", type=int, default=3, help="Number of local Dask workers (default: 3).")
    optional.add_argument("--threads-per-worker", type=int, default=1, help="Threads per Dask worker (default: 1).")
    optional.add_argument("--chunksize", type=int, default=250_000, help="Number of events per processing chunk (default: 250000).")
    optional.add_argument("--maxchunks", type=int, default=None, help="Max chunks per dataset file (default: all). Use 1 for quick testing.")
    optional.add_argument("--maxfiles", type=int, default=None, help="Max files per dataset (default: all). Use 1 for quick testing.")
    optional.add_argument("--debug", action="store_true", help="Debug mode (don't save histograms).")
    return parser


if __name__ == "__main__":
    parser = build_parser()
    args = parser.parse_args()

    try:
        parse_cut_overrides(args.set)
    except ValueError as e:
        parser.error(str(e))

    fileset = _build_fileset(args)
    n_files = sum(len(ds.get("files", {})) for ds in fileset.values())
    logging.info("Selected %d dataset(s), %d file(s); policy '%s'.", len(fileset), n_files, args.policy)

    t0 = time.monotonic()
    with _local_cluster(n_workers=args.max_workers, threads_per_worker=args.threads_per_worker) as client:
        try:
            hists = _process_fileset(args, fileset, client=client)
            if not args.debug:
                from tnpcoffea.save_hists import save_histograms
                save_histograms(hists, build_output_path(args.outdir, name=args.name, policy=args.policy))
        except Exception:
            logging.exception("Local processing failed.")
            raise

    exec_time = time.monotonic() - t0
    logging.info(f"Execution took {exec_time/60:.2f} minutes")
