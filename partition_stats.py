"""
Command line front-end for cluster_map: reads a .tree/.ftree/.clu partition and
reports descriptive statistics about it.

- Module count and module size distribution at a chosen tree level
- Tree depth and total flow (when --include-flow is given)
- Optionally, the weighted modularity Q of the partition on a network given as an
  edge list CSV (columns: source, target[, weight]; ids are state ids)

Multilayer partitions need a state id table, given as a CSV with columns
layer_id, node_id, state_id (--state-ids).
"""

from __future__ import annotations

import argparse
import csv
import logging
import statistics
import sys
import time
from typing import Dict, List, Optional, Set

import networkx as nx
import pandas as pd

from cluster_map import ClusterMap, MultilayerIndex

LOGGER = logging.getLogger("partition_stats")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def stage(msg: str) -> None:
    LOGGER.info("=== %s ===", msg)


def read_state_id_table(path: str) -> Dict[int, Dict[int, int]]:
    """
    Reads layer_id,node_id,state_id rows into the nested layer -> node -> state id table.
    """
    stage(f"Reading state id table: {path}")
    df = pd.read_csv(path, skipinitialspace=True)
    for col in ("layer_id", "node_id", "state_id"):
        if col not in df.columns:
            raise ValueError(f"Missing required column: {col!r}")

    table: Dict[int, Dict[int, int]] = {}
    for r in df[["layer_id", "node_id", "state_id"]].itertuples(index=False):
        table.setdefault(int(r.layer_id), {})[int(r.node_id)] = int(r.state_id)
    LOGGER.info("Loaded state ids: layers=%d states=%d", len(table), len(df))
    return table


def read_edges_csv(path: str, weight_column: str = "weight") -> pd.DataFrame:
    t0 = time.time()
    stage(f"Reading network edge list: {path}")
    df = pd.read_csv(path, skipinitialspace=True)
    for col in ("source", "target"):
        if col not in df.columns:
            raise ValueError(f"Missing required column: {col!r}")
    if weight_column not in df.columns:
        df[weight_column] = 1.0
    df["source"] = pd.to_numeric(df["source"], errors="raise").astype(int)
    df["target"] = pd.to_numeric(df["target"], errors="raise").astype(int)
    df[weight_column] = pd.to_numeric(df[weight_column], errors="raise").astype(float)
    LOGGER.info("Loaded edges=%d in %.2fs", len(df), time.time() - t0)
    return df


def build_graph(
    edges: pd.DataFrame,
    all_nodes: Set[int],
    *,
    weight_column: str = "weight",
    partition_only: bool = False,
) -> nx.Graph:
    """
    Undirected weighted graph over all partitioned nodes. Edges are folded onto
    unordered (state id, state id) pairs and their weights summed; self-loops and
    non-positive weights are dropped. With partition_only, edges touching a state id
    the partition does not cover are dropped too.
    """
    if weight_column not in edges.columns:
        raise ValueError(f"Missing weight column: {weight_column!r}")

    G = nx.Graph()
    G.add_nodes_from(all_nodes)
    if edges.empty:
        return G

    df = pd.DataFrame(
        {
            "u": edges[["source", "target"]].min(axis=1).astype(int),
            "v": edges[["source", "target"]].max(axis=1).astype(int),
            "weight": edges[weight_column].astype(float),
        }
    )
    df = df[(df["u"] != df["v"]) & (df["weight"] > 0.0)]
    if partition_only:
        df = df[df["u"].isin(all_nodes) & df["v"].isin(all_nodes)]
    df = df.groupby(["u", "v"], as_index=False)["weight"].sum()

    G.add_edges_from(nx.from_pandas_edgelist(df, "u", "v", edge_attr="weight").edges(data=True))
    LOGGER.debug("Network graph: nodes=%d edges=%d", G.number_of_nodes(), G.number_of_edges())
    return G


def modularity_q(G: nx.Graph, communities: List[Set[int]]) -> float:
    """
    Weighted Newman-Girvan modularity. Nodes of the graph that the partition does not
    cover are added as singletons; partition nodes absent from the graph are ignored.
    A node listed in several modules counts in the first one only.
    """
    if G.number_of_edges() == 0:
        return 0.0
    covered: Set[int] = set()
    in_graph: List[Set[int]] = []
    for c in communities:
        members = {n for n in c if n in G and n not in covered}
        if members:
            in_graph.append(members)
            covered |= members
    in_graph.extend({n} for n in G.nodes if n not in covered)
    return float(nx.algorithms.community.quality.modularity(G, in_graph, weight="weight"))


def partition_stats(cmap: ClusterMap, level: int) -> Dict[str, float]:
    communities = cmap.partition(level=level)
    sizes = [len(c) for c in communities]
    depths = [len(rec.path) for rec in cmap.node_paths]

    if sizes:
        s = pd.Series(sizes, dtype="int64")
        size_min = int(s.min())
        size_med = float(s.median())
        size_max = int(s.max())
        size_q1 = float(s.quantile(0.25))
        size_q3 = float(s.quantile(0.75))
    else:
        size_min = size_max = 0
        size_med = 0.0
        size_q1 = size_q3 = float("nan")

    return {
        "n_records": int(len(cmap.node_paths) or len(cmap.cluster_ids)),
        "n_skipped": int(cmap.num_skipped),
        "module_count": int(len(communities)),
        "module_size_min": size_min,
        "module_size_median": size_med,
        "module_size_max": size_max,
        "module_size_q1": size_q1,
        "module_size_q3": size_q3,
        "depth_max": int(max(depths)) if depths else 0,
        "depth_median": float(statistics.median(depths)) if depths else 0.0,
        "total_flow": float(sum(cmap.flow_data.values())),
    }


def print_stats_block(title: str, cmap: ClusterMap, stats: Dict[str, float], q: Optional[float]) -> None:
    LOGGER.info("=== %s ===", title)
    if cmap.codelength is not None:
        LOGGER.info("  codelength=%.6g bits", cmap.codelength)
    LOGGER.info(
        "  records=%d  skipped=%d  higher_order=%s",
        int(stats["n_records"]),
        int(stats["n_skipped"]),
        cmap.is_higher_order,
    )
    LOGGER.info(
        "  modules: count=%d  size(min/median/max)=%d/%.6g/%d  size(Q1/Q3)=%.6g/%.6g",
        int(stats["module_count"]),
        int(stats["module_size_min"]),
        float(stats["module_size_median"]),
        int(stats["module_size_max"]),
        float(stats["module_size_q1"]),
        float(stats["module_size_q3"]),
    )
    if cmap.node_paths:
        LOGGER.info("  depth(median/max)=%.6g/%d", float(stats["depth_median"]), int(stats["depth_max"]))
    if cmap.flow_data:
        LOGGER.info("  total flow=%.6g", float(stats["total_flow"]))
    if q is not None:
        LOGGER.info("  modularity Q (weighted)=%.6g", float(q))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Descriptive statistics for a .tree/.ftree/.clu partition.")
    ap.add_argument("--input", required=True)
    ap.add_argument("--include-flow", action="store_true")
    ap.add_argument("--level", type=int, default=1, help="Tree level the modules are taken from.")
    ap.add_argument("--state-ids", default=None, help="CSV with layer_id,node_id,state_id for multilayer input.")
    ap.add_argument("--network", default=None, help="Edge list CSV (source,target[,weight]) to compute modularity on.")
    ap.add_argument("--weight-column", default="weight", help="Edge list column holding edge weights.")
    ap.add_argument("--partition-only", action="store_true", help="Ignore edges to state ids outside the partition.")
    ap.add_argument("--output", default=None, help="Optional CSV output path for the per-node table.")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    layer_node_to_state_id: Optional[MultilayerIndex] = None
    if args.state_ids:
        layer_node_to_state_id = read_state_id_table(args.state_ids)

    stage(f"Reading partition: {args.input}")
    cmap = ClusterMap()
    cmap.read_cluster_data(args.input, args.include_flow, layer_node_to_state_id)

    q = None
    if args.network:
        edges = read_edges_csv(args.network, args.weight_column)
        nodes = {rec.state_id for rec in cmap.node_paths} | set(cmap.cluster_ids)
        G = build_graph(edges, nodes, weight_column=args.weight_column, partition_only=args.partition_only)
        q = modularity_q(G, cmap.partition(level=args.level))

    stats = partition_stats(cmap, args.level)
    print_stats_block(f"Partition statistics ({args.input})", cmap, stats, q)

    if args.output:
        out_df = cmap.node_paths_frame() if cmap.node_paths else cmap.clusters_frame()
        out_df.to_csv(args.output, index=False, quoting=csv.QUOTE_ALL)
        stage(f"Wrote node table: {args.output}")


if __name__ == "__main__":
    main()
