"""Group nearby pending samples so each group costs a single enrichment call."""
from typing import List, Sequence

import numpy as np
from loguru import logger
from sklearn.neighbors import BallTree

from ..geofence.geometry import EARTH_RADIUS_METERS, haversine_many
from ..models.location_models import ClusterBatchEntry


class SpatialClusterer:
    """Greedy proximity clustering.

    Entries are visited in order. Each unassigned entry seeds a new cluster that absorbs
    every later unassigned entry within ``radius_meters`` of the seed. The seed is always
    the first member of its cluster.
    """

    def __init__(self, radius_meters: float = 100.0):
        self.radius_meters = radius_meters

    def cluster(self, entries: Sequence[ClusterBatchEntry]) -> List[List[ClusterBatchEntry]]:
        if not entries:
            return []
        coords = np.array([(e.sample.latitude, e.sample.longitude) for e in entries], dtype=float)
        groups = self._group_indices(coords)
        clusters = [[entries[i] for i in group] for group in groups]
        logger.info(f"🧩 Clustered {len(entries)} samples into {len(clusters)} groups (radius {self.radius_meters}m)")
        return clusters

    def _group_indices(self, coords: np.ndarray) -> List[List[int]]:
        n = len(coords)
        assigned = np.zeros(n, dtype=bool)
        groups = []
        for i in range(n):
            if assigned[i]:
                continue
            assigned[i] = True
            group = [i]
            if i + 1 < n:
                distances = haversine_many(coords[i, 0], coords[i, 1], coords[i + 1:, 0], coords[i + 1:, 1])
                later = np.flatnonzero((distances <= self.radius_meters) & ~assigned[i + 1:]) + i + 1
                assigned[later] = True
                group.extend(int(j) for j in later)
            groups.append(group)
        return groups


class BallTreeClusterer(SpatialClusterer):
    """Same greedy contract, with neighbour lookup through a haversine BallTree."""

    def _group_indices(self, coords: np.ndarray) -> List[List[int]]:
        n = len(coords)
        tree = BallTree(np.radians(coords), metric="haversine")
        radius = self.radius_meters / EARTH_RADIUS_METERS
        assigned = np.zeros(n, dtype=bool)
        groups = []
        for i in range(n):
            if assigned[i]:
                continue
            assigned[i] = True
            neighbours = tree.query_radius(np.radians(coords[i:i + 1]), r=radius)[0]
            later = np.sort(neighbours[(neighbours > i) & ~assigned[neighbours]])
            assigned[later] = True
            groups.append([i] + [int(j) for j in later])
        return groups


def build_clusterer(strategy: str, radius_meters: float) -> SpatialClusterer:
    if strategy == "balltree":
        return BallTreeClusterer(radius_meters)
    return SpatialClusterer(radius_meters)
