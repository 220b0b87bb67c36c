import argparse
import logging
import sys

import numpy as np

from search import LatticeSearcher, SearchOptions
from util import (ScoreWriter, make_symbols, read_fst, read_fst_table, read_htk,
                  read_htk_list, read_kaldi_lattices, read_symbols)

logger = logging.getLogger(__name__)

USAGE = """Search the complex queries over lattices.

Queries can be an individual FST or, more typically, a table of FSTs.

  e.g.: lattice-search ark:lattices.ark ark:queries.ark
  e.g.: lattice-search --symbols words.txt lattice.htk query.fst
"""


def split_rspecifier(rspecifier):
    """Splits 'ark:file' / 'scp:file' into (kind, file); plain paths have
    kind None."""
    kind, sep, path = rspecifier.partition(":")
    if sep and kind in ("ark", "scp"):
        return kind, path
    return None, rspecifier


def build_parser():
    parser = argparse.ArgumentParser(
        prog="lattice-search", description=USAGE,
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("lattices",
                        help="HTK lattice file, ark:FILE (Kaldi text lattices) "
                             "or scp:FILE (list of 'key path' HTK lattices)")
    parser.add_argument("query",
                        help="Query FST in text format, or ark:FILE for a table of FSTs")
    parser.add_argument("--use-log", action=argparse.BooleanOptionalAction, default=True,
                        help="If true, compute scores using the log semiring (a.k.a. "
                             "forward), otherwise use the tropical semiring (a.k.a. viterbi).")
    parser.add_argument("--acoustic-scale", type=float, default=1.0,
                        help="Scaling factor for acoustic likelihoods in the lattices.")
    parser.add_argument("--graph-scale", type=float, default=1.0,
                        help="Scaling factor for graph probabilities in the lattices.")
    parser.add_argument("--insertion-penalty", type=float, default=0.0,
                        help="Add this penalty to the lattice arcs with non-epsilon output "
                             "label (typically, equivalent to word insertion penalty).")
    parser.add_argument("--beam", type=float, default=np.inf,
                        help="Pruning beam (applied after acoustic scaling and adding the "
                             "insertion penalty).")
    parser.add_argument("--symbols", help="Symbol table (words.txt) of lattices and queries.")
    parser.add_argument("--lockstep", action="store_true",
                        help="Score each lattice only against the query with the same key.")
    parser.add_argument("--output", help="Write scores to this file instead of stdout.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug messages.")
    return parser


def setup_logging(verbose=False):
    formatter = logging.Formatter("%(levelname)s (%(module)s) %(message)s")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


def read_queries(query_in, searcher, symbols, add_symbols=False):
    kind, path = split_rspecifier(query_in)
    if kind == "ark":
        return searcher.prepare_queries(read_fst_table(path, symbols, add_symbols))
    if kind == "scp":
        raise ValueError("Query tables must be text archives (ark:FILE)")
    return [(None, searcher.prepare_query(read_fst(path, symbols, add_symbols)))]


def read_lattices(lattice_in, symbols, add_symbols=False):
    kind, path = split_rspecifier(lattice_in)
    if kind == "ark":
        return read_kaldi_lattices(path, symbols, add_symbols)
    if kind == "scp":
        return read_htk_list(path, symbols, add_symbols)
    return iter([read_htk(path, symbols, add_symbols)])


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        options = SearchOptions(acoustic_scale=args.acoustic_scale,
                                graph_scale=args.graph_scale,
                                insertion_penalty=args.insertion_penalty,
                                beam=args.beam,
                                use_log=args.use_log)
    except ValueError as e:
        logger.error("%s", e)
        return 1
    logger.debug("%r", options)

    searcher = LatticeSearcher(options)
    output = None
    try:
        add_symbols = False
        if args.symbols:
            symbols = read_symbols(args.symbols)
        elif split_rspecifier(args.lattices)[0] == "ark":
            # Kaldi lattices and queries use integer labels.
            symbols = None
        else:
            symbols = make_symbols()
            add_symbols = True

        output = open(args.output, "w", encoding="utf-8") if args.output else sys.stdout
        queries = read_queries(args.query, searcher, symbols, add_symbols)
        writer = ScoreWriter(output)
        writer.write_scores(searcher.search(read_lattices(args.lattices, symbols, add_symbols),
                                            queries, lockstep=args.lockstep))
    except (OSError, ValueError, KeyError) as e:
        logger.error("%s", e)
        return 1
    finally:
        if output is not None and output is not sys.stdout:
            output.close()

    logger.info("Done %d lattices, failed for %d", searcher.num_done, searcher.num_failed)
    return 1 if searcher.num_failed else 0


if __name__ == "__main__":
    sys.exit(main())
