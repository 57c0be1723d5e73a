"""
One pair-task pass per node:

    python run_processer.py <input file or dir> <output.h5> [--config cfg.yaml] [--plots]

Reads events, fills the same- and mixed-event correlation containers and
writes them (with metadata and QA) for post_process.py to merge.
"""
import argparse
import itertools
import logging
import os
import sys

import analyser as an
import parser as ps
import processer as pr
import sanityplots as sanity
from config import ConfigurationError, load_config

logger = logging.getLogger(__name__)


def iter_events(paths):
    for path in paths:
        logger.info("Reading %s", path)
        yield from ps.read_events(path)


def main(argv=None):
    argp = argparse.ArgumentParser(description="Femtoscopic pair task: one processing pass.")
    argp.add_argument('infiles', help="input HDF5 file, or directory of femto_<run>_<chunk>.h5 files")
    argp.add_argument('outfile', help="output HDF5 file")
    argp.add_argument('--config', default=None, help="YAML file overriding the defaults")
    argp.add_argument('--seed', type=int, default=None, help="random seed of the pass")
    argp.add_argument('--node-id', type=int, default=0, help="ID stored in the output metadata")
    argp.add_argument('--max-events', type=int, default=None)
    argp.add_argument('--plots', action='store_true',
                      help="write sanity plots next to the output")
    argp.add_argument('--check', action='store_true',
                      help="print diagnostics of the first event before processing")
    argp.add_argument('-v', '--verbose', action='store_true')
    args = argp.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    try:
        cfg   = load_config(args.config)
        files = ps.input_paths(args.infiles)
    except (ConfigurationError, FileNotFoundError) as err:
        logger.error("%s", err)
        return 1

    if args.check:
        an.sanity_check(itertools.islice(ps.read_events(files[0]), 1))

    task = pr.run_pass(iter_events(files), cfg, seed=args.seed, max_events=args.max_events)
    an.save_hdf5(args.outfile, task, node_id=args.node_id)
    print(f"Saved {args.outfile}  ({task.counters['events_accepted']} events)")

    if args.plots:
        sanity_dir = os.path.join(os.path.dirname(os.path.abspath(args.outfile)), "SanityPlots")
        os.makedirs(sanity_dir, exist_ok=True)
        containers, meta, qa = an.load_hdf5(args.outfile)
        sanity.plot_all(containers, meta, qa, sanity_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
