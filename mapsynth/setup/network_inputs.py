"""
network_inputs.py

Adapters from the network builder's output to NetworkElements.

The routable graph itself (download, simplification, geometry fixing) is
built upstream with OSMnx. Here we only read it:
    - edges become SEGMENT elements, numbered 0..n-1 in (u, v, key) order
    - nodes optionally become INTERSECTION elements, numbered after the edges
      in node order

Ids depend only on the graph's content, so the same graph always yields the
same element ids.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import geopandas as gpd
import networkx as nx
import numpy as np
import osmnx as ox

from ..model import ElementKind, NetworkElement
from .external_sources import geometry_to_points

logger = logging.getLogger(__name__)

EDGE_ATTRIBUTES = ["u", "v", "key", "osmid", "name", "highway", "length", "oneway", "maxspeed", "lanes"]
NODE_ATTRIBUTES = ["osmid", "street_count", "highway"]


def _plain(value: Any) -> Any:
    """Make an attribute value JSON-friendly; None for missing."""
    if isinstance(value, (list, tuple, set)):
        return ";".join(str(v) for v in value)
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _attributes(row: Dict[str, Any], names: List[str]) -> Dict[str, Any]:
    out = {}
    for name in names:
        if name in row:
            value = _plain(row[name])
            if value is not None:
                out[name] = value
    return out


def ensure_graph(G: nx.MultiDiGraph | str | Path) -> nx.MultiDiGraph:
    """Return G, loading it from GraphML first if given a path."""
    if isinstance(G, nx.MultiDiGraph):
        return G
    if isinstance(G, (str, Path)):
        logger.info("Loading graph from %s via osmnx.load_graphml", G)
        return ox.load_graphml(G)
    raise TypeError("G must be a networkx.MultiDiGraph or a path to a GraphML file.")


def elements_from_graph(
    G: nx.MultiDiGraph | str | Path,
    include_intersections: bool = True,
) -> Tuple[List[NetworkElement], Optional[str]]:
    """
    Convert an OSMnx-style MultiDiGraph to NetworkElements.

    Returns
    -------
    (elements, crs)
        Elements ordered by id, and the graph's declared CRS.
    """
    G = ensure_graph(G)
    crs = G.graph.get("crs")
    crs = str(crs) if crs is not None else None

    elements: List[NetworkElement] = []
    if G.number_of_edges() > 0:
        edges = ox.graph_to_gdfs(G, nodes=False, edges=True, fill_edge_geometry=True)
        edges = edges.sort_index().reset_index()
        for element_id, row in enumerate(edges.to_dict("records")):
            elements.append(
                NetworkElement(
                    element_id=element_id,
                    kind=ElementKind.SEGMENT,
                    points=geometry_to_points(row["geometry"]),
                    attributes=_attributes(row, EDGE_ATTRIBUTES),
                )
            )

    if include_intersections:
        next_id = len(elements)
        for offset, node in enumerate(sorted(G.nodes)):
            data = G.nodes[node]
            elements.append(
                NetworkElement(
                    element_id=next_id + offset,
                    kind=ElementKind.INTERSECTION,
                    points=[(float(data["x"]), float(data["y"]))],
                    attributes={"node": _plain(node), **_attributes(data, NODE_ATTRIBUTES)},
                )
            )

    logger.info(
        "Read %d network elements (%d segments) from graph with crs %s",
        len(elements),
        G.number_of_edges(),
        crs,
    )
    return elements, crs


def elements_from_gdf(
    gdf: gpd.GeoDataFrame,
    id_column: Optional[str] = None,
) -> Tuple[List[NetworkElement], Optional[str]]:
    """
    Convert a GeoDataFrame of lines and points to NetworkElements.

    Lines become segments, everything else an intersection at its centroid.
    Ids come from `id_column` if given, else from row position.
    """
    crs = gdf.crs.to_string() if gdf.crs is not None else None
    elements = []
    for pos, row in enumerate(gdf.to_dict("records")):
        geom = row[gdf.geometry.name]
        points = geometry_to_points(geom)
        if not points:
            logger.warning("Skipping network feature %d with empty geometry", pos)
            continue
        element_id = int(row[id_column]) if id_column is not None else pos
        kind = ElementKind.SEGMENT if len(points) >= 2 else ElementKind.INTERSECTION
        attrs = {
            k: _plain(v)
            for k, v in row.items()
            if k != gdf.geometry.name and k != id_column and _plain(v) is not None
        }
        elements.append(NetworkElement(element_id=element_id, kind=kind, points=points, attributes=attrs))
    logger.info("Read %d network elements from frame with crs %s", len(elements), crs)
    return elements, crs


def load_network(path: str | Path, include_intersections: bool = True, layer: Optional[str] = None):
    """Load elements from a GraphML graph or any geospatial file of lines."""
    path = Path(path)
    if path.suffix.lower() == ".graphml":
        return elements_from_graph(path, include_intersections=include_intersections)
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    return elements_from_gdf(gdf)
