"""Shared GeoJSON index of the routes covered by all published sessions."""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any

from streetsurvey.errors import ConflictError, RemoteError
from streetsurvey.storage.models import Capture, Session
from streetsurvey.sync.documents import COVERAGE_INDEX_PATH, encode_json
from streetsurvey.sync.github import GitHubContentsClient

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088

Coordinate = list[float]  # [lng, lat]


def empty_index() -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "stats": {
            "totalSessions": 0,
            "totalKilometers": 0,
            "totalImages": 0,
            "contributors": 0,
        },
        "features": [],
    }


def _sq_segment_distance(p: Coordinate, a: Coordinate, b: Coordinate) -> float:
    """Squared distance from p to the segment a-b, in coordinate units."""
    x, y = a
    dx, dy = b[0] - x, b[1] - y

    if dx or dy:
        t = ((p[0] - x) * dx + (p[1] - y) * dy) / (dx * dx + dy * dy)
        if t > 1:
            x, y = b
        elif t > 0:
            x += dx * t
            y += dy * t

    dx, dy = p[0] - x, p[1] - y
    return dx * dx + dy * dy


def simplify_route(coords: list[Coordinate], tolerance: float) -> list[Coordinate]:
    """Simplify a polyline with the Douglas-Peucker algorithm.

    Consecutive duplicate points are dropped first. Endpoints are always
    kept.

    Args:
        coords: [lng, lat] points in route order
        tolerance: Maximum allowed deviation in degrees

    Returns:
        The simplified polyline
    """
    points = [p for i, p in enumerate(coords) if i == 0 or p != coords[i - 1]]
    if len(points) < 3:
        return points

    sq_tolerance = tolerance * tolerance
    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]

    while stack:
        first, last = stack.pop()
        max_sq_dist = sq_tolerance
        index = None
        for i in range(first + 1, last):
            sq_dist = _sq_segment_distance(points[i], points[first], points[last])
            if sq_dist > max_sq_dist:
                index, max_sq_dist = i, sq_dist

        if index is not None:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, kept in zip(points, keep) if kept]


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two [lng, lat] points in kilometers."""
    lng1, lat1 = map(math.radians, a)
    lng2, lat2 = map(math.radians, b)
    h = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def route_length_km(coords: list[Coordinate]) -> float:
    return sum(haversine_km(a, b) for a, b in zip(coords, coords[1:]))


def is_route_feature(feature: Any) -> bool:
    """Check that a feature carries properties and LineString coordinates."""
    if not isinstance(feature, dict):
        return False
    geometry = feature.get("geometry")
    return (
        isinstance(feature.get("properties"), dict)
        and isinstance(geometry, dict)
        and isinstance(geometry.get("coordinates"), list)
    )


def _feature_session_id(feature: Any) -> str | None:
    properties = feature.get("properties") if isinstance(feature, dict) else None
    return properties.get("sessionId") if isinstance(properties, dict) else None


def compute_stats(features: list[dict[str, Any]]) -> dict[str, Any]:
    """Recompute the aggregate stats of an index from its features.

    Features without properties or coordinates are not counted.
    """
    routes = [f for f in features if is_route_feature(f)]
    kilometers = sum(route_length_km(f["geometry"]["coordinates"]) for f in routes)
    return {
        "totalSessions": len(routes),
        "totalKilometers": round(kilometers, 1),
        "totalImages": sum(f["properties"].get("imageCount") or 0 for f in routes),
        "contributors": len({f["properties"].get("collector") for f in routes}),
    }


class CoverageIndexMerger:
    """Folds a finished session's route into the shared coverage index.

    The index is a GeoJSON FeatureCollection with one LineString per
    session. Merging replaces any previous feature of the same session,
    so running it again for a session never creates a duplicate entry.
    The index is a side artifact of publishing: every failure here is
    logged and swallowed.
    """

    def __init__(self, tolerance: float = 0.0001, path: str = COVERAGE_INDEX_PATH) -> None:
        self.tolerance = tolerance
        self.path = path

    def build_feature(
        self,
        session: Session,
        captures: list[Capture],
        contributor: str = "",
    ) -> dict[str, Any] | None:
        """Build the route feature of a session, or None without a usable route."""
        coords = [
            [capture.gps.lng, capture.gps.lat]
            for capture in captures
            if capture.gps is not None
            and capture.gps.lat is not None
            and capture.gps.lng is not None
        ]
        if len(coords) < 2:
            return None

        simplified = simplify_route(coords, self.tolerance)
        if len(simplified) < 2:
            return None

        return {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": simplified},
            "properties": {
                "sessionId": session.id,
                "name": session.name,
                "collectedAt": session.created_at,
                "collector": contributor or "anonymous",
                "imageCount": sum(1 for capture in captures if capture.published),
                "published": True,
            },
        }

    @staticmethod
    def merge_feature(index: dict[str, Any], feature: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of index with feature replacing its session's entry."""
        session_id = feature["properties"]["sessionId"]
        features = [
            f
            for f in index.get("features", [])
            if _feature_session_id(f) != session_id
        ]
        features.append(feature)

        return {
            **index,
            "type": "FeatureCollection",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "stats": compute_stats(features),
            "features": features,
        }

    async def load(self, client: GitHubContentsClient) -> tuple[dict[str, Any], str | None]:
        """Fetch the current index and its sha; an empty index if unavailable."""
        try:
            remote = await client.get_content(self.path)
            if remote is None:
                return empty_index(), None

            raw = remote.content
            if raw is None and remote.url:
                raw = await client.fetch_url(remote.url)
            index = json.loads(raw or b"{}")
        except (RemoteError, ValueError) as e:
            logger.warning("Coverage index unavailable, starting empty: %s", e)
            return empty_index(), None

        if (
            not isinstance(index, dict)
            or index.get("type") != "FeatureCollection"
            or not isinstance(index.get("features"), list)
        ):
            logger.warning("Coverage index malformed, replacing it: path=%s", self.path)
            return empty_index(), remote.sha

        return index, remote.sha

    async def merge(
        self,
        client: GitHubContentsClient,
        session: Session,
        captures: list[Capture],
        contributor: str = "",
    ) -> bool:
        """Merge a session into the remote coverage index.

        Args:
            client: Client bound to the target repository
            session: The published session
            captures: All captures of the session
            contributor: Name credited for the route

        Returns:
            True if the index was written
        """
        try:
            return await self._merge(client, session, captures, contributor)
        except Exception:
            logger.exception("Coverage index merge failed: session_id=%s", session.id)
            return False

    async def _merge(
        self,
        client: GitHubContentsClient,
        session: Session,
        captures: list[Capture],
        contributor: str,
    ) -> bool:
        feature = self.build_feature(session, captures, contributor)
        if feature is None:
            logger.info("No route to index, fewer than 2 GPS points: session_id=%s", session.id)
            return False

        # A conflict means someone else wrote the index; merge into theirs once more
        for attempt in (1, 2):
            index, sha = await self.load(client)
            merged = self.merge_feature(index, feature)
            try:
                await client.put_content(
                    self.path, encode_json(merged), "Update coverage index", sha=sha
                )
            except ConflictError as e:
                logger.warning("Coverage index changed remotely: attempt=%d, error=%s", attempt, e)
                continue
            except RemoteError as e:
                logger.error("Coverage index update failed: session_id=%s, error=%s", session.id, e)
                return False

            logger.info(
                "Coverage index updated: session_id=%s, sessions=%d, km=%s",
                session.id,
                merged["stats"]["totalSessions"],
                merged["stats"]["totalKilometers"],
            )
            return True

        logger.error("Coverage index update gave up after conflicts: session_id=%s", session.id)
        return False
