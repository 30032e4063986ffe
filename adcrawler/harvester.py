"""
Response Harvester
==================
Parses raw ``/api/graphql`` response bodies into ``RawBatch`` objects.

Bodies are newline-delimited JSON. For each line we run a depth-bounded,
stack-based depth-first search for a *connection* (an object exposing an
``edges`` list):

  1. Named check — ``search_results_connection`` / ``search_results`` /
     ``results`` holding an object with ``edges``.
  2. Structural check — any object with a non-empty ``edges`` list whose
     first node carries an ad identifier or a ``collated_results`` list.

The first match in DFS order wins for a line. Across lines, the
connection with the most (flattened) edges wins the whole body.

Collated results (several ads grouped under one creative family) are
flattened so the Normalizer only ever sees leaves.

Nothing here raises: network and parse noise is expected traffic.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .models import RawBatch

logger = logging.getLogger(__name__)

# Hard bound on traversal depth; payload shape is not under our control.
MAX_SEARCH_DEPTH = 15

CONNECTION_FIELD_NAMES: Tuple[str, ...] = (
    "search_results_connection",
    "search_results",
    "results",
)

IDENTIFIER_FIELDS: Tuple[str, ...] = ("ad_archive_id", "adArchiveID", "adArchiveId")

COLLATED_FIELD = "collated_results"


def _looks_like_connection(obj: dict) -> bool:
    edges = obj.get("edges")
    if not isinstance(edges, list) or not edges:
        return False
    first = edges[0]
    node = first.get("node") if isinstance(first, dict) else None
    if not isinstance(node, dict):
        return False
    if any(node.get(key) for key in IDENTIFIER_FIELDS):
        return True
    return isinstance(node.get(COLLATED_FIELD), list)


def find_connection(root: Any, max_depth: int = MAX_SEARCH_DEPTH) -> Optional[dict]:
    """Return the first connection-shaped object in depth-first order."""
    stack: List[Tuple[Any, int]] = [(root, 0)]
    while stack:
        obj, depth = stack.pop()
        if depth > max_depth:
            continue

        if isinstance(obj, list):
            children = [(item, depth + 1) for item in obj if isinstance(item, (dict, list))]
            stack.extend(reversed(children))
            continue

        if not isinstance(obj, dict):
            continue

        for key in CONNECTION_FIELD_NAMES:
            candidate = obj.get(key)
            if isinstance(candidate, dict) and "edges" in candidate:
                return candidate

        if _looks_like_connection(obj):
            return obj

        children = [
            (value, depth + 1) for value in obj.values()
            if isinstance(value, (dict, list))
        ]
        stack.extend(reversed(children))
    return None


def flatten_edges(edges: List[Any]) -> List[Dict[str, Any]]:
    """Expand collated wrapper nodes into one synthetic edge per sub-result.

    Each synthetic edge carries the group size and group id so the
    Normalizer can derive ``creative_count`` without seeing the wrapper.
    """
    flat: List[Dict[str, Any]] = []
    for edge in edges:
        if not isinstance(edge, dict):
            continue
        node = edge.get("node")
        collated = node.get(COLLATED_FIELD) if isinstance(node, dict) else None
        if not isinstance(collated, list):
            flat.append(edge)
            continue
        group_id = node.get("collation_id") or node.get("collationId")
        subs = [sub for sub in collated if isinstance(sub, dict)]
        for sub in subs:
            flat.append({
                "node": sub,
                "collated_group_size": len(subs),
                "collated_group_id": group_id,
            })
    return flat


def extract_batch(connection: dict) -> RawBatch:
    """Edges, paging info and count from a connection object."""
    raw_edges = connection.get("edges") or []
    page_info = (
        connection.get("page_info")
        or connection.get("pageInfo")
        or connection.get("page_info_result")
        or {}
    )
    count = connection.get("count") or connection.get("total_count") or 0
    try:
        count = int(count)
    except (TypeError, ValueError):
        count = 0
    return RawBatch(records=flatten_edges(raw_edges), page_info=page_info, total_count=count)


def harvest(response_body: str) -> RawBatch:
    """Parse a newline-delimited JSON body into its best ``RawBatch``."""
    best = RawBatch()
    if not response_body:
        return best

    parsed_lines = 0
    for line in response_body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            continue
        parsed_lines += 1

        connection = find_connection(payload)
        if connection is None:
            continue

        batch = extract_batch(connection)
        if len(batch.records) > len(best.records):
            best = RawBatch(
                records=batch.records,
                page_info=batch.page_info,
                total_count=batch.total_count or best.total_count,
            )

    if best.records:
        logger.debug(
            f"[HARVEST] {len(best.records)} edges from {parsed_lines} parsed line(s)"
        )
    return best
