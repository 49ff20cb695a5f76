"""
Reads partition files written by Infomap-style community detection and rebuilds,
in memory, the assignment of state ids to modules:

- .tree / .ftree : hierarchical paths, one record per line
    <path> <flow> "<name>" <stateId> [<nodeId>] [<layerId>]
- .clu           : flat module ids
    <stateId> <moduleId> [<flow>] [<nodeId> <layerId>]

Multilayer partitions identify nodes by (layer, node). When a
layer -> node -> state id table is given, each record is mapped to its state id
and records missing from the table are dropped without error.

Sample .tree:
  # Codelength = 3.46227314 bits.
  # path flow name physicalId
  1:1:1 0.0384615 "1" 1
  1:1:2 0.025641 "2" 2
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple

import pandas as pd

LOGGER = logging.getLogger("cluster_map")

MultilayerIndex = Mapping[int, Mapping[int, int]]  # layer id -> node id -> state id

TREE_EXTENSIONS = ("tree", "ftree")
CLU_EXTENSIONS = ("clu",)

_PATH_SPLIT = re.compile(r"[^0-9]+")
_CODELENGTH = re.compile(r"codelength\s*=\s*([-+0-9.eE]+)", re.IGNORECASE)


class ClusterDataError(ValueError):
    """Base class for everything that can go wrong while reading a partition file."""


class UnsupportedFormatError(ClusterDataError):
    def __init__(self, filename: str, extension: str) -> None:
        super().__init__(
            f"Input cluster data from file {filename!r} is of unknown extension {extension!r}. "
            f"Must be 'clu', 'tree' or 'ftree'."
        )
        self.filename = filename
        self.extension = extension


class MalformedRecordError(ClusterDataError):
    """A record could not be parsed. Carries the file name, line number and raw line."""

    def __init__(self, what: str, *, filename: str = "<stream>", line_number: int = 0, line: str = "") -> None:
        super().__init__(f"{what} in {filename!r} on line {line_number}: {line!r}")
        self.what = what
        self.filename = filename
        self.line_number = line_number
        self.line = line


class MalformedNameError(MalformedRecordError):
    pass


class InvalidPathElementError(MalformedRecordError):
    pass


class MissingHigherOrderFieldError(MalformedRecordError):
    pass


class NodePath(NamedTuple):
    state_id: int
    path: Tuple[int, ...]


def parse_uint(token: str) -> int:
    if not token.isdigit():
        raise ValueError(f"Not an unsigned integer: {token!r}")
    return int(token)


def parse_path(path_string: str) -> List[int]:
    """
    Decodes a tree path such as '1:2:3' (any non-digit delimiter works) into [1, 2, 3].
    Paths are 1-based at every level, a 0 raises InvalidPathElementError.
    """
    path: List[int] = []
    for part in _PATH_SPLIT.split(path_string):
        if not part:
            continue
        child = int(part)
        if child == 0:
            raise InvalidPathElementError(
                "There is a '0' in the tree path, lowest allowed integer is 1",
                line=path_string,
            )
        path.append(child)
    return path


def extract_quoted_name(text: str) -> Tuple[str, str]:
    """
    Returns (name, rest) where name is the text between the first and second '"'
    and rest is what follows the closing quote.
    """
    head, sep, tail = text.partition('"')
    if not sep:
        raise MalformedNameError("Missing opening quote for node name", line=text)
    name, sep, rest = tail.partition('"')
    if not sep:
        raise MalformedNameError("Missing closing quote for node name", line=text)
    return name, rest


def resolve_state_id(layer_node_to_state_id: MultilayerIndex, layer_id: int, node_id: int) -> Optional[int]:
    nodes = layer_node_to_state_id.get(layer_id)
    if nodes is None:
        return None
    return nodes.get(node_id)


def extension_of(filename: str) -> str:
    base = os.path.basename(os.fspath(filename))
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1]


class ClusterMap:
    """
    Holds the result of one partition read: node paths (tree formats), cluster ids
    (.clu) and optional flow per state id. Every read resets all of it.
    """

    def __init__(self) -> None:
        self.node_paths: List[NodePath] = []
        self.cluster_ids: Dict[int, int] = {}
        self.flow_data: Dict[int, float] = {}
        self.extension = ""
        self.header: Optional[str] = None
        self.section: Optional[str] = None
        self.is_higher_order = False
        self.line_number = 0
        self.num_skipped = 0

    def _reset(self) -> None:
        self.node_paths = []
        self.cluster_ids = {}
        self.flow_data = {}
        self.header = None
        self.section = None
        self.is_higher_order = False
        self.line_number = 0
        self.num_skipped = 0

    # ------------------------------------------------------------------ dispatch

    def read_cluster_data(
        self,
        filename: str,
        include_flow: bool = False,
        layer_node_to_state_id: Optional[MultilayerIndex] = None,
    ) -> Tuple[List[NodePath], Dict[int, int], Dict[int, float]]:
        filename = os.fspath(filename)
        self.extension = extension_of(filename)
        if self.extension in TREE_EXTENSIONS:
            self.read_tree(filename, include_flow, layer_node_to_state_id)
        elif self.extension in CLU_EXTENSIONS:
            self.read_clu(filename, include_flow, layer_node_to_state_id)
        else:
            self._reset()
            raise UnsupportedFormatError(filename, self.extension)
        return self.node_paths, self.cluster_ids, self.flow_data

    def read_tree(
        self,
        filename: str,
        include_flow: bool = False,
        layer_node_to_state_id: Optional[MultilayerIndex] = None,
    ) -> List[NodePath]:
        t0 = time.time()
        with open(filename, "r", encoding="utf-8") as f:
            self.parse_tree(f, include_flow, layer_node_to_state_id, source=filename)
        LOGGER.info(
            "Read tree from '%s': records=%d skipped=%d higher_order=%s in %.2fs",
            filename,
            len(self.node_paths),
            self.num_skipped,
            self.is_higher_order,
            time.time() - t0,
        )
        return self.node_paths

    def read_clu(
        self,
        filename: str,
        include_flow: bool = False,
        layer_node_to_state_id: Optional[MultilayerIndex] = None,
    ) -> Dict[int, int]:
        t0 = time.time()
        LOGGER.info("Read initial partition from '%s'...", filename)
        with open(filename, "r", encoding="utf-8") as f:
            self.parse_clu(f, include_flow, layer_node_to_state_id, source=filename)
        LOGGER.info(
            "Read clu from '%s': nodes=%d skipped=%d in %.2fs",
            filename,
            len(self.cluster_ids),
            self.num_skipped,
            time.time() - t0,
        )
        return self.cluster_ids

    # ------------------------------------------------------------------ parsers

    def _fail(self, error_cls, what: str, source: str, line: str) -> MalformedRecordError:
        return error_cls(what, filename=source, line_number=self.line_number, line=line)

    def parse_tree(
        self,
        lines: Iterable[str],
        include_flow: bool = False,
        layer_node_to_state_id: Optional[MultilayerIndex] = None,
        *,
        source: str = "<stream>",
    ) -> List[NodePath]:
        """
        Parses .tree/.ftree lines. Stops at the first line starting with '*' (the next
        section of an .ftree file); the rest of the input is left unread.
        """
        self._reset()
        is_multilayer = layer_node_to_state_id is not None

        for raw in lines:
            self.line_number += 1
            line = raw.rstrip("\r\n")
            if not line:
                continue
            if line[0] == "#":
                if self.line_number == 1:
                    self.header = line
                continue
            if line[0] == "*":
                self.section = line
                break

            tokens = line.split(None, 2)
            if len(tokens) < 1:
                raise self._fail(MalformedRecordError, "Couldn't parse tree path", source, line)
            path_string = tokens[0]
            try:
                flow = float(tokens[1])
            except (IndexError, ValueError):
                raise self._fail(MalformedRecordError, "Couldn't parse node flow", source, line) from None

            try:
                _name, rest = extract_quoted_name(tokens[2] if len(tokens) > 2 else "")
            except MalformedNameError as e:
                raise self._fail(MalformedNameError, e.what, source, line) from None

            fields = rest.split()
            try:
                state_id = parse_uint(fields[0])
            except (IndexError, ValueError):
                raise self._fail(MalformedRecordError, "Couldn't parse node id", source, line) from None

            # a trailing token that is not an unsigned int counts as no node id
            node_id = None
            if len(fields) > 1:
                try:
                    node_id = parse_uint(fields[1])
                except ValueError:
                    node_id = None
            if node_id is not None:
                self.is_higher_order = True
            elif self.is_higher_order:
                raise self._fail(MissingHigherOrderFieldError, "Missing state id for node", source, line)

            layer_id = None
            if is_multilayer:
                try:
                    if node_id is None:
                        raise ValueError("no node id")
                    layer_id = parse_uint(fields[2])
                except (IndexError, ValueError):
                    raise self._fail(MalformedRecordError, "Couldn't parse layer id", source, line) from None

            try:
                path = parse_path(path_string)
            except InvalidPathElementError as e:
                raise self._fail(InvalidPathElementError, e.what, source, line) from None

            if is_multilayer:
                resolved = resolve_state_id(layer_node_to_state_id, layer_id, node_id)
                if resolved is None:
                    LOGGER.debug("Skipping line %d: (layer=%d, node=%d) not in network", self.line_number, layer_id, node_id)
                    self.num_skipped += 1
                    continue
                state_id = resolved

            self.node_paths.append(NodePath(state_id, tuple(path)))
            if include_flow:
                self.flow_data[state_id] = flow

        return self.node_paths

    def parse_clu(
        self,
        lines: Iterable[str],
        include_flow: bool = False,
        layer_node_to_state_id: Optional[MultilayerIndex] = None,
        *,
        source: str = "<stream>",
    ) -> Dict[int, int]:
        # state_id module flow node_id layer_id
        self._reset()
        is_multilayer = layer_node_to_state_id is not None

        for raw in lines:
            self.line_number += 1
            line = raw.rstrip("\r\n")
            if not line or line[0] in "#*":
                continue

            fields = line.split()
            try:
                state_id = parse_uint(fields[0])
                module_id = parse_uint(fields[1])
            except (IndexError, ValueError):
                raise self._fail(MalformedRecordError, "Couldn't parse node key and cluster id", source, line) from None

            pos = 2
            flow = None
            if len(fields) > pos:
                try:
                    flow = float(fields[pos])
                    pos += 1
                except ValueError:
                    flow = None

            if is_multilayer:
                try:
                    node_id = parse_uint(fields[pos])
                except (IndexError, ValueError):
                    raise self._fail(MalformedRecordError, "Couldn't parse node key", source, line) from None
                try:
                    layer_id = parse_uint(fields[pos + 1])
                except (IndexError, ValueError):
                    raise self._fail(MalformedRecordError, "Couldn't parse layer id", source, line) from None

                resolved = resolve_state_id(layer_node_to_state_id, layer_id, node_id)
                if resolved is None:
                    LOGGER.debug("Skipping line %d: (layer=%d, node=%d) not in network", self.line_number, layer_id, node_id)
                    self.num_skipped += 1
                    continue
                state_id = resolved

            if include_flow and flow is not None:
                self.flow_data[state_id] = flow
            self.cluster_ids[state_id] = module_id

        return self.cluster_ids

    # ------------------------------------------------------------------ views

    @property
    def codelength(self) -> Optional[float]:
        """Codelength from a '# Codelength = 3.46 bits.' header, if there was one."""
        if not self.header:
            return None
        m = _CODELENGTH.search(self.header)
        if m is None:
            return None
        try:
            return float(m.group(1).rstrip("."))
        except ValueError:
            return None

    def node_paths_frame(self) -> pd.DataFrame:
        rows = [
            (rec.state_id, ":".join(str(c) for c in rec.path), len(rec.path), rec.path[0] if rec.path else 0)
            for rec in self.node_paths
        ]
        df = pd.DataFrame(rows, columns=["state_id", "path", "depth", "top_module"])
        if self.flow_data:
            df["flow"] = df["state_id"].map(self.flow_data)
        return df

    def clusters_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(list(self.cluster_ids.items()), columns=["state_id", "module_id"])
        if self.flow_data:
            df["flow"] = df["state_id"].map(self.flow_data)
        return df

    def partition(self, level: int = 1) -> List[Set[int]]:
        """
        Returns one set of state ids per module. Tree records are grouped by the first
        `level` entries of their path, never including the leaf index of a nested node
        (a top-level leaf such as '3' forms its own module); .clu records by module id.
        """
        if level < 1:
            raise ValueError(f"level must be >= 1, got {level}")

        groups: Dict[Tuple[int, ...], Set[int]] = {}
        if self.node_paths:
            for state_id, path in self.node_paths:
                key = path[: min(level, max(len(path) - 1, 1))]
                groups.setdefault(key, set()).add(state_id)
        else:
            for state_id, module_id in self.cluster_ids.items():
                groups.setdefault((module_id,), set()).add(state_id)
        return list(groups.values())


def read_cluster_data(
    filename: str,
    include_flow: bool = False,
    layer_node_to_state_id: Optional[MultilayerIndex] = None,
) -> Tuple[List[NodePath], Dict[int, int], Dict[int, float]]:
    """
    Reads a .tree/.ftree/.clu partition file and returns (node_paths, cluster_ids, flow_data).
    Raises UnsupportedFormatError for any other extension, before the file is opened.
    """
    return ClusterMap().read_cluster_data(filename, include_flow, layer_node_to_state_id)
