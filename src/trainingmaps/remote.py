"""Remote vector sources: ArcGIS FeatureServer layers and static GeoJSON feeds."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import geopandas as gpd
import requests

from .config import HttpConfig

_LOGGER = logging.getLogger("trainingmaps.remote")

REMOTE_CRS = "EPSG:4326"
# Hard stop against servers that keep flagging exceededTransferLimit.
_MAX_PAGES = 500


class FeatureServiceError(RuntimeError):
    """ArcGIS REST endpoint answered with an error payload."""


def _new_session(http_cfg: HttpConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": http_cfg.user_agent})
    return session


def _check_arcgis_payload(payload: Any, url: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise FeatureServiceError(f"Unexpected response from {url}: expected a JSON object")
    error = payload.get("error")
    if error:
        if isinstance(error, Mapping):
            code = error.get("code", "?")
            message = error.get("message", "unknown error")
            details = "; ".join(str(item) for item in error.get("details") or [])
            text = f"{code} {message}" + (f" ({details})" if details else "")
        else:
            text = str(error)
        raise FeatureServiceError(f"ArcGIS service error from {url}: {text}")
    return payload


def _exceeded_transfer_limit(payload: Mapping[str, Any]) -> bool:
    # f=geojson reports the flag under "properties" on most server versions.
    if payload.get("exceededTransferLimit"):
        return True
    properties = payload.get("properties")
    return isinstance(properties, Mapping) and bool(properties.get("exceededTransferLimit"))


class FeatureServiceClient:
    """Query one or more ArcGIS FeatureServer layers into GeoDataFrames."""

    def __init__(self, http_cfg: HttpConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = http_cfg
        self._session = session if session is not None else _new_session(http_cfg)

    def _get_json(self, url: str, params: Mapping[str, Any]) -> Mapping[str, Any]:
        response = self._session.get(url, params=dict(params), timeout=self.cfg.request_timeout_s)
        response.raise_for_status()
        return _check_arcgis_payload(response.json(), url)

    def layer_info(self, layer_url: str) -> dict[str, Any]:
        """Return the layer name, geometry type and server page size."""
        url = layer_url.rstrip("/")
        payload = self._get_json(url, {"f": "json"})
        max_record_count = payload.get("maxRecordCount")
        return {
            "name": payload.get("name"),
            "geometry_type": payload.get("geometryType"),
            "max_record_count": int(max_record_count) if max_record_count else None,
        }

    def query(
        self,
        layer_url: str,
        *,
        where: str = "1=1",
        out_fields: str = "*",
        page_size: int | None = None,
    ) -> gpd.GeoDataFrame:
        """Fetch every feature matching `where`, following server paging.

        Pages are requested with `resultOffset`/`resultRecordCount` until the
        server stops reporting `exceededTransferLimit` or returns no features.
        """
        url = layer_url.rstrip("/")
        query_url = f"{url}/query"
        record_count = page_size or self.cfg.page_size

        features: list[Mapping[str, Any]] = []
        offset = 0
        for page in range(_MAX_PAGES):
            params = {
                "where": where,
                "outFields": out_fields,
                "returnGeometry": "true",
                "outSR": "4326",
                "f": "geojson",
                "resultOffset": offset,
                "resultRecordCount": record_count,
            }
            payload = self._get_json(query_url, params)
            batch = payload.get("features") or []
            features.extend(batch)
            _LOGGER.debug("%s page %d: %d features (offset %d)", url, page + 1, len(batch), offset)
            if not batch or not _exceeded_transfer_limit(payload):
                break
            offset += len(batch)
        else:
            raise FeatureServiceError(f"{url} kept paging after {_MAX_PAGES} pages; aborting")

        _LOGGER.info("Fetched %d features from %s (where=%s)", len(features), url, where)
        if not features:
            return gpd.GeoDataFrame(geometry=[], crs=REMOTE_CRS)
        return gpd.GeoDataFrame.from_features(features, crs=REMOTE_CRS)


def fetch_geojson_feed(
    url: str,
    http_cfg: HttpConfig,
    *,
    session: requests.Session | None = None,
) -> gpd.GeoDataFrame:
    """Download a GeoJSON FeatureCollection (e.g. the USGS earthquake feed)."""
    client = session if session is not None else _new_session(http_cfg)
    response = client.get(url, timeout=http_cfg.request_timeout_s)
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, Mapping) or payload.get("type") != "FeatureCollection":
        raise ValueError(f"{url} did not return a GeoJSON FeatureCollection")
    features = payload.get("features") or []
    _LOGGER.info("Fetched %d features from %s", len(features), url)
    if not features:
        return gpd.GeoDataFrame(geometry=[], crs=REMOTE_CRS)
    return gpd.GeoDataFrame.from_features(features, crs=REMOTE_CRS)
