"""
Hierarchical Navigable Small World index for approximate nearest-neighbor search.

Layered proximity graph (Malkov & Yashunin, 2016) with the simple
"keep closest" neighbor selection instead of the paper's diversity
heuristic. Distances are Euclidean; search scores are ``1 - distance``,
so they are bounded above by 1 but not below.

Parameters:
    m                 max neighbors per node on levels >= 1
    m0 = 2 * m        max neighbors per node on level 0
    ef_construction   beam width while inserting
    ef_search         minimum beam width while querying
    level multiplier  1 / ln(m), probability of promoting a node one level

Invariants:
    - edges are symmetric: b in a.neighbors[L] iff a in b.neighbors[L]
    - every node's level <= max_level
    - entry_point is a node of level max_level, or None on an empty graph

Not thread-safe: callers serialize mutation against reads.
"""

from __future__ import annotations

import heapq
import json
import logging
import math
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from codebase_rag.events import EventBus
from codebase_rag.rag.vector_store import (
    VectorEntry,
    VectorSearchResult,
    VectorStore,
    check_vector,
    matches_filter,
)

LOG = logging.getLogger("rag.hnsw")

MAX_LEVEL_CAP = 32
BATCH_PROGRESS_EVERY = 1000
FILTER_EF_FACTOR = 4


@dataclass
class HNSWNode:
    """Graph vertex. ``neighbors[L]`` is an insertion-ordered set (dict keys)."""

    id: str
    vector: np.ndarray
    metadata: dict[str, Any]
    level: int
    neighbors: list[dict[str, None]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.neighbors:
            self.neighbors = [{} for _ in range(self.level + 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vector": self.vector.tolist(),
            "metadata": self.metadata,
            "level": self.level,
            "neighbors": [{"level": lvl, "ids": list(ids)} for lvl, ids in enumerate(self.neighbors)],
        }


class HNSWIndex(VectorStore):
    """
    Approximate nearest-neighbor index implementing the VectorStore interface.

    Usage::

        index = HNSWIndex(dimension=384, m=16, ef_construction=200, ef_search=50)
        index.add("chunk-1", vec, {"language": "python"})
        hits = index.search(query_vec, k=5)
    """

    persist_name = "hnsw.json"

    def __init__(
        self,
        dimension: Optional[int] = None,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 50,
        seed: Optional[int] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        if m < 2:
            raise ValueError(f"m must be at least 2, got {m}")
        self._dimension = dimension
        self._m = m
        self._m0 = 2 * m
        self._ef_construction = ef_construction
        self._ef_search = ef_search
        self._level_mult = 1.0 / math.log(m)
        self._rng = random.Random(seed)
        self._events = events or EventBus()

        self._nodes: dict[str, HNSWNode] = {}
        self._entry_point: Optional[str] = None
        self._max_level = 0

    # ── properties ────────────────────────────────────────────────────────

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def entry_point(self) -> Optional[str]:
        return self._entry_point

    @property
    def max_level(self) -> int:
        return self._max_level

    @property
    def level_multiplier(self) -> float:
        return self._level_mult

    def dimension(self) -> Optional[int]:
        return self._dimension

    def size(self) -> int:
        return len(self._nodes)

    def count(self) -> int:
        return len(self._nodes)

    def get(self, id: str) -> Optional[VectorEntry]:
        node = self._nodes.get(id)
        if node is None:
            return None
        return VectorEntry(id=node.id, vector=node.vector.tolist(), metadata=dict(node.metadata))

    def has(self, id: str) -> bool:
        return id in self._nodes

    def node_level(self, id: str) -> int:
        return self._nodes[id].level

    def get_neighbors(self, id: str, level: int = 0) -> list[str]:
        node = self._nodes[id]
        if level > node.level:
            return []
        return list(node.neighbors[level])

    # ── primitives ────────────────────────────────────────────────────────

    def _random_level(self) -> int:
        level = 0
        while self._rng.random() < self._level_mult and level < MAX_LEVEL_CAP:
            level += 1
        return level

    def _distance(self, query: np.ndarray, node_id: str) -> float:
        return float(np.linalg.norm(query - self._nodes[node_id].vector))

    def _search_layer(
        self,
        query: np.ndarray,
        entry_ids: Sequence[str],
        ef: int,
        level: int,
    ) -> list[tuple[float, str]]:
        """
        Beam search on one level. Returns up to ef (distance, id) pairs, closest first.

        ``candidates`` is a min-heap of nodes still to expand; ``results`` is a
        max-heap (negated distances) of the best ef nodes seen so far.
        """
        visited = set(entry_ids)
        candidates: list[tuple[float, str]] = []
        results: list[tuple[float, str]] = []
        for eid in entry_ids:
            d = self._distance(query, eid)
            heapq.heappush(candidates, (d, eid))
            heapq.heappush(results, (-d, eid))
            if len(results) > ef:
                heapq.heappop(results)

        while candidates:
            dist, current = heapq.heappop(candidates)
            if dist > -results[0][0] and len(results) >= ef:
                break
            node = self._nodes[current]
            if level > node.level:
                continue
            for nid in node.neighbors[level]:
                if nid in visited:
                    continue
                visited.add(nid)
                d = self._distance(query, nid)
                if len(results) < ef or d < -results[0][0]:
                    heapq.heappush(candidates, (d, nid))
                    heapq.heappush(results, (-d, nid))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-neg, nid) for neg, nid in results)

    def _greedy_descend(self, query: np.ndarray, top: int, bottom: int) -> str:
        """Walk from the entry point down to level ``bottom`` with ef=1."""
        ep = self._entry_point
        for level in range(top, bottom, -1):
            ep = self._search_layer(query, [ep], 1, level)[0][1]
        return ep

    def _prune(self, node: HNSWNode, level: int, max_conn: int) -> None:
        """Keep the max_conn closest neighbors; dropped edges are removed on both ends."""
        ranked = sorted(node.neighbors[level], key=lambda nid: self._distance(node.vector, nid))
        for nid in ranked[max_conn:]:
            del node.neighbors[level][nid]
            self._nodes[nid].neighbors[level].pop(node.id, None)

    # ── mutation ──────────────────────────────────────────────────────────

    def add(self, id: str, vector: Sequence[float], metadata: Optional[dict[str, Any]] = None) -> None:
        """
        Insert a vector. Re-adding an existing id replaces it.

        Raises:
            DimensionMismatchError: vector length differs from the index dimension.
        """
        arr = check_vector(vector, self._dimension)
        if self._dimension is None:
            self._dimension = int(arr.shape[0])
        if id in self._nodes:
            self._remove(id)

        level = self._random_level()
        node = HNSWNode(id=id, vector=arr, metadata=dict(metadata or {}), level=level)
        self._nodes[id] = node

        if self._entry_point is None:
            self._entry_point = id
            self._max_level = level
            self._events.emit("add", {"id": id, "level": level})
            return

        ep = self._greedy_descend(arr, self._max_level, level)
        entry_ids = [ep]
        for lvl in range(min(level, self._max_level), -1, -1):
            candidates = self._search_layer(arr, entry_ids, self._ef_construction, lvl)
            max_conn = self._m0 if lvl == 0 else self._m
            for _, nid in candidates[:max_conn]:
                node.neighbors[lvl][nid] = None
                neighbor = self._nodes[nid]
                neighbor.neighbors[lvl][id] = None
                if len(neighbor.neighbors[lvl]) > max_conn:
                    self._prune(neighbor, lvl, max_conn)
            entry_ids = [nid for _, nid in candidates]

        if level > self._max_level:
            self._max_level = level
            self._entry_point = id

        self._events.emit("add", {"id": id, "level": level})

    def add_batch(self, entries: Iterable[VectorEntry]) -> None:
        entries = list(entries)
        total = len(entries)
        for i, entry in enumerate(entries, start=1):
            self.add(entry.id, entry.vector, entry.metadata)
            if i % BATCH_PROGRESS_EVERY == 0:
                self._events.emit("batch:progress", {"completed": i, "total": total})
        if total % BATCH_PROGRESS_EVERY:
            self._events.emit("batch:progress", {"completed": total, "total": total})

    def _remove(self, id: str) -> None:
        node = self._nodes.pop(id)
        for level, ids in enumerate(node.neighbors):
            for nid in ids:
                neighbor = self._nodes.get(nid)
                if neighbor is not None and level <= neighbor.level:
                    neighbor.neighbors[level].pop(id, None)

        if self._entry_point == id:
            best: Optional[HNSWNode] = None
            for candidate in self._nodes.values():
                if best is None or candidate.level > best.level:
                    best = candidate
            if best is None:
                self._entry_point = None
                self._max_level = 0
            else:
                self._entry_point = best.id
                self._max_level = best.level

    def delete(self, id: str) -> bool:
        if id not in self._nodes:
            return False
        self._remove(id)
        self._events.emit("delete", {"id": id})
        return True

    def delete_by_filter(self, filter_metadata: dict[str, Any]) -> int:
        doomed = [nid for nid, node in self._nodes.items() if matches_filter(node.metadata, filter_metadata)]
        for nid in doomed:
            self.delete(nid)
        return len(doomed)

    def clear(self) -> None:
        self._nodes = {}
        self._entry_point = None
        self._max_level = 0
        self._events.emit("clear", None)

    # ── search ────────────────────────────────────────────────────────────

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter_metadata: Optional[dict[str, Any]] = None,
    ) -> list[VectorSearchResult]:
        """
        Return up to k approximate nearest neighbors as ``1 - euclidean_distance``.

        With a filter the beam is widened and results post-filtered; if that
        still yields fewer than k hits, the matching nodes are scanned exactly.
        """
        if self._entry_point is None or k <= 0:
            return []
        q = check_vector(query, self._dimension, where="query")

        ep = self._greedy_descend(q, self._max_level, 0)
        ef = max(k, self._ef_search)
        if filter_metadata:
            ef = max(ef, k * FILTER_EF_FACTOR)
        hits = self._search_layer(q, [ep], ef, 0)

        if filter_metadata:
            hits = [(d, nid) for d, nid in hits if matches_filter(self._nodes[nid].metadata, filter_metadata)]
            if len(hits) < k:
                hits = sorted(
                    (self._distance(q, nid), nid)
                    for nid, node in self._nodes.items()
                    if matches_filter(node.metadata, filter_metadata)
                )

        return [
            VectorSearchResult(id=nid, score=1.0 - d, metadata=dict(self._nodes[nid].metadata)) for d, nid in hits[:k]
        ]

    # ── introspection ─────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        level_counts: dict[int, int] = {}
        degree_sums: dict[int, int] = {}
        for node in self._nodes.values():
            level_counts[node.level] = level_counts.get(node.level, 0) + 1
            for lvl, ids in enumerate(node.neighbors):
                degree_sums[lvl] = degree_sums.get(lvl, 0) + len(ids)

        avg_degree: dict[int, float] = {}
        for lvl, total in sorted(degree_sums.items()):
            members = sum(c for node_level, c in level_counts.items() if node_level >= lvl)
            avg_degree[lvl] = total / members if members else 0.0

        return {
            "nodeCount": len(self._nodes),
            "dimensions": self._dimension,
            "maxLevel": self._max_level,
            "entryPoint": self._entry_point,
            "m": self._m,
            "efConstruction": self._ef_construction,
            "efSearch": self._ef_search,
            "levelDistribution": dict(sorted(level_counts.items())),
            "averageDegree": avg_degree,
        }

    def get_config(self) -> dict[str, Any]:
        return {
            "dimensions": self._dimension,
            "m": self._m,
            "efConstruction": self._ef_construction,
            "efSearch": self._ef_search,
        }

    def update_config(self, ef_search: Optional[int] = None, ef_construction: Optional[int] = None) -> None:
        """
        Retune beam widths on a live index.

        ``m`` and the dimension shape the existing graph and cannot change.
        A new ef_construction only affects nodes inserted afterwards.
        """
        for name, value in (("ef_search", ef_search), ("ef_construction", ef_construction)):
            if value is not None and value < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")
        if ef_search is not None:
            self._ef_search = ef_search
        if ef_construction is not None:
            self._ef_construction = ef_construction
        LOG.debug("HNSW config updated: efSearch=%d efConstruction=%d", self._ef_search, self._ef_construction)

    def format_status(self) -> str:
        stats = self.get_stats()
        levels = ", ".join(f"L{lvl}={n}" for lvl, n in stats["levelDistribution"].items()) or "empty"
        return (
            f"HNSW index: {stats['nodeCount']} nodes, dim={stats['dimensions']}, "
            f"max level {stats['maxLevel']} ({levels}), "
            f"M={stats['m']} efConstruction={stats['efConstruction']} efSearch={stats['efSearch']}"
        )

    def memory_usage(self) -> int:
        total = 0
        for node in self._nodes.values():
            total += node.vector.nbytes + len(node.id) + len(json.dumps(node.metadata))
            total += sum(len(ids) for ids in node.neighbors) * 8
        return total

    # ── persistence ───────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": {
                "dimensions": self._dimension,
                "m": self._m,
                "efConstruction": self._ef_construction,
                "efSearch": self._ef_search,
            },
            "entryPoint": self._entry_point,
            "maxLevel": self._max_level,
            "nodes": [node.to_dict() for node in self._nodes.values()],
        }

    def save(self, path: str | Path | None = None) -> None:
        if path is None:
            raise ValueError("HNSWIndex.save() requires a path")
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict()), encoding="utf-8")
        tmp.replace(target)
        LOG.info("Saved HNSW index (%d nodes) to %s", len(self._nodes), target)

    def load(self, path: str | Path | None = None) -> bool:
        """
        Replace the whole graph with a saved one.

        The new graph is fully built and validated before it is swapped in,
        so a failed load leaves the current graph untouched.

        Raises:
            FileNotFoundError: path does not exist.
            ValueError: file is not a valid serialized index.
        """
        if path is None:
            raise ValueError("HNSWIndex.load() requires a path")
        source = Path(path)
        if not source.exists():
            raise FileNotFoundError(source)
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
            config = data["config"]
            dimension = config.get("dimensions")
            nodes: dict[str, HNSWNode] = {}
            for raw in data["nodes"]:
                level = int(raw["level"])
                neighbors: list[dict[str, None]] = [{} for _ in range(level + 1)]
                for entry in raw.get("neighbors", []):
                    neighbors[int(entry["level"])] = dict.fromkeys(entry["ids"])
                nodes[raw["id"]] = HNSWNode(
                    id=raw["id"],
                    vector=check_vector(raw["vector"], dimension, where=f"node {raw['id']!r}"),
                    metadata=dict(raw.get("metadata") or {}),
                    level=level,
                    neighbors=neighbors,
                )
            entry_point = data.get("entryPoint")
            max_level = int(data.get("maxLevel", 0))
            if entry_point is not None and entry_point not in nodes:
                raise ValueError(f"entry point {entry_point!r} is not a node")
            for node in nodes.values():
                for ids in node.neighbors:
                    missing = [nid for nid in ids if nid not in nodes]
                    if missing:
                        raise ValueError(f"node {node.id!r} links to unknown nodes {missing[:3]}")
            m = int(config.get("m", self._m))
        except (json.JSONDecodeError, KeyError, TypeError, IndexError, ValueError) as exc:
            raise ValueError(f"Invalid HNSW index file {source}: {exc}") from exc

        self._dimension = dimension
        self._m = m
        self._m0 = 2 * m
        self._level_mult = 1.0 / math.log(m)
        self._ef_construction = int(config.get("efConstruction", self._ef_construction))
        self._ef_search = int(config.get("efSearch", self._ef_search))
        self._nodes = nodes
        self._entry_point = entry_point
        self._max_level = max_level
        LOG.info("Loaded HNSW index (%d nodes) from %s", len(nodes), source)
        return True
