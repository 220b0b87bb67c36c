import csv
import logging
import os

import pynini

from fst import EPSILON, Arc, Fst
from lattice import Lattice

logger = logging.getLogger(__name__)

EPSILON_SYMBOL = "<eps>"
HTK_NULL_WORD = "!NULL"
NO_SYMBOL = -1  # SymbolTable.find() of a missing word.


def make_symbols(words=()):
    """Creates a symbol table with epsilon as label 0, followed by the
    given words."""
    symbols = pynini.SymbolTable()
    symbols.add_symbol(EPSILON_SYMBOL)  # Symbol id 0 (OpenFst convention).
    for word in words:
        symbols.add_symbol(word)
    return symbols


def read_symbols(file_name):
    """Reads a symbol table in the OpenFst text format (symbol id)."""
    return pynini.SymbolTable.read_text(file_name)


def find_label(symbols, word, add_symbols=False):
    """
    Label of a word in the symbol table. With add_symbols, words that are
    not in the table get new labels, so readers can build the table as they
    go; otherwise unknown words raise KeyError.
    """
    label = symbols.find(word)
    if label == NO_SYMBOL:
        if not add_symbols:
            raise KeyError(f"Symbol {word!r} is not in the symbol table")
        label = symbols.add_symbol(word)
    return label


def _label(token, symbols, add_symbols):
    if symbols is None:
        return int(token)
    return find_label(symbols, token, add_symbols)


def _fields(line):
    """HTK SLF fields (name=value) of a line."""
    fields = {}
    for token in line.split():
        if "=" in token:
            name, value = token.split("=", 1)
            fields[name] = value.strip("\"")
    return fields


def read_htk(file_name, symbols, add_symbols=False):
    """
    Reads an HTK standard lattice file.

    HTK scores are log-likelihoods, so the graph cost of a link is its
    negated language model score l, scaled by the lmscale of the header as
    in the lattice score lmscale * l + a, and the acoustic cost its negated
    acoustic score a. A --graph-scale applies on top of lmscale. The word
    of a link is its own W field or else the word of its end node; !NULL
    links are epsilon arcs.

    Returns:
        The utterance name (or the file name when absent) and the Lattice.
    """
    header = {}
    nodes = {}
    links = []

    with open(file_name, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = _fields(line)
            if "I" in fields:
                nodes[int(fields["I"])] = fields
            elif "J" in fields:
                links.append(fields)
            else:
                header.update(fields)

    num_nodes = int(header.get("NODES", header.get("N", len(nodes))))
    num_links = int(header.get("LINKS", header.get("L", len(links))))
    if len(nodes) != num_nodes or len(links) != num_links:
        raise ValueError(f"{file_name}: expected {num_nodes} nodes and {num_links} links, "
                         f"found {len(nodes)} and {len(links)}")
    lm_scale = float(header.get("lmscale", 1.0))
    utterance = header.get("UTTERANCE", os.path.splitext(os.path.basename(file_name))[0])

    lattice = Lattice()
    state = {}
    for index in sorted(nodes):
        state[index] = lattice.add_state()

    for link in links:
        start = int(link["S"])
        end = int(link["E"])
        if start not in state or end not in state:
            raise ValueError(f"{file_name}: link J={link['J']} refers to a missing node")
        word = link.get("W", nodes[end].get("W", HTK_NULL_WORD))
        label = EPSILON if word == HTK_NULL_WORD else find_label(symbols, word, add_symbols)
        weight = (-lm_scale * float(link.get("l", 0.0)), -float(link.get("a", 0.0)))
        lattice.add_arc(state[start], Arc(label, label, weight, state[end]))

    if nodes:
        lattice.set_start(state[int(header.get("start", min(nodes)))])
        lattice.set_final(state[int(header.get("end", max(nodes)))])

    logger.info("Read lattice %s with %d nodes and %d links", utterance, num_nodes, num_links)
    return utterance, lattice


def read_htk_list(file_name, symbols, add_symbols=False):
    """Reads the HTK lattices listed as 'key path' lines of a file."""
    with open(file_name, "r", encoding="utf-8") as f:
        entries = [line.split(None, 1) for line in f if line.strip()]
    for entry in entries:
        if len(entry) != 2:
            raise ValueError(f"{file_name}: expected 'key path', got {' '.join(entry)!r}")
        key, path = entry[0], entry[1].strip()
        _, lattice = read_htk(path, symbols, add_symbols)
        yield key, lattice


def _read_text_archive(file_name):
    """Yields (key, lines) of a Kaldi text archive, whose objects are a key
    line followed by text lines and an empty line."""
    key = None
    lines = []
    with open(file_name, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if key is None:
                if line:
                    key = line.split()[0]
                continue
            if not line:
                yield key, lines
                key = None
                lines = []
            else:
                lines.append(line)
    if key is not None:
        yield key, lines


def _lattice_weight(token):
    # Compact weights are graph,acoustic,transition-ids.
    values = token.split(",")
    if len(values) < 2:
        raise ValueError(f"Bad lattice weight {token!r}")
    return (float(values[0]), float(values[1]))


def _ensure_states(fst, s):
    while fst.num_states() <= s:
        fst.add_state()


def parse_kaldi_lattice(lines, symbols=None, add_symbols=False):
    """Parses the text lines of a Kaldi (compact) lattice into a Lattice."""
    lattice = Lattice()
    for line in lines:
        tokens = line.split()
        src = int(tokens[0])
        _ensure_states(lattice, src)
        if lattice.start is None:
            lattice.set_start(src)
        if len(tokens) <= 2:
            weight = _lattice_weight(tokens[1]) if len(tokens) == 2 else lattice.semiring.one()
            lattice.set_final(src, weight)
            continue
        dst = int(tokens[1])
        _ensure_states(lattice, dst)
        if len(tokens) == 3:
            ilabel = olabel = _label(tokens[2], symbols, add_symbols)
            weight = lattice.semiring.one()
        elif len(tokens) == 4:
            ilabel = olabel = _label(tokens[2], symbols, add_symbols)
            weight = _lattice_weight(tokens[3])
        else:
            ilabel = _label(tokens[2], symbols, add_symbols)
            olabel = _label(tokens[3], symbols, add_symbols)
            weight = _lattice_weight(tokens[4])
        lattice.add_arc(src, Arc(ilabel, olabel, weight, dst))
    return lattice


def read_kaldi_lattices(file_name, symbols=None, add_symbols=False):
    """Yields (key, Lattice) from a Kaldi text archive of lattices."""
    for key, lines in _read_text_archive(file_name):
        yield key, parse_kaldi_lattice(lines, symbols, add_symbols)


def read_fst_text(lines, symbols=None, add_symbols=False):
    """
    Parses an automaton in the AT&T text format into a tropical Fst.

    Arc lines are 'src dst ilabel olabel [weight]' (or 'src dst label' for
    an acceptor), final lines 'state [weight]'. The source state of the first
    line is the start state.
    """
    fst = Fst()
    for line in lines:
        tokens = line.split()
        if not tokens:
            continue
        src = int(tokens[0])
        _ensure_states(fst, src)
        if fst.start is None:
            fst.set_start(src)
        if len(tokens) <= 2:
            weight = float(tokens[1]) if len(tokens) == 2 else fst.semiring.one()
            fst.set_final(src, weight)
            continue
        if len(tokens) > 5:
            raise ValueError(f"Bad FST line {line!r}")
        dst = int(tokens[1])
        _ensure_states(fst, dst)
        ilabel = _label(tokens[2], symbols, add_symbols)
        olabel = _label(tokens[3], symbols, add_symbols) if len(tokens) > 3 else ilabel
        weight = float(tokens[4]) if len(tokens) == 5 else fst.semiring.one()
        fst.add_arc(src, Arc(ilabel, olabel, weight, dst))
    return fst


def read_fst(file_name, symbols=None, add_symbols=False):
    with open(file_name, "r", encoding="utf-8") as f:
        return read_fst_text(f, symbols, add_symbols)


def read_fst_table(file_name, symbols=None, add_symbols=False):
    """Yields (key, Fst) from a Kaldi text archive of automata."""
    for key, lines in _read_text_archive(file_name):
        yield key, read_fst_text(lines, symbols, add_symbols)


class ScoreWriter(object):
    """Implements a writer of 'lattice_key query_key score' lines."""

    def __init__(self, stream, precision=6):
        self.writer = csv.writer(stream, delimiter=" ", lineterminator="\n",
                                 quoting=csv.QUOTE_MINIMAL)
        self.precision = precision

    def format_score(self, score):
        return "{:.{}g}".format(score, self.precision)

    def write(self, score):
        row = [score.lattice_key]
        if score.query_key is not None:
            row.append(score.query_key)
        row.append(self.format_score(score.score))
        self.writer.writerow(row)

    def write_scores(self, scores):
        for score in scores:
            self.write(score)
