from __future__ import annotations

from typing import Any

import pytest
import requests

from trainingmaps.config import HttpConfig
from trainingmaps.remote import FeatureServiceClient, FeatureServiceError, fetch_geojson_feed

HTTP = HttpConfig(request_timeout_s=5, user_agent="training-test/1.0", page_size=2)
LAYER_URL = "https://example.test/arcgis/rest/services/Active_Faults/FeatureServer/0"


def _feature(idx: int) -> dict[str, Any]:
    return {
        "type": "Feature",
        "properties": {"OBJECTID": idx, "name": f"fault {idx}"},
        "geometry": {"type": "LineString", "coordinates": [[idx, 0.0], [idx + 0.5, 1.0]]},
    }


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        return self.payload


class FakeSession:
    def __init__(self, *responses: FakeResponse) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any], Any]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, timeout: Any = None) -> FakeResponse:
        self.calls.append((url, dict(params or {}), timeout))
        return self.responses.pop(0)


def test_query_follows_exceeded_transfer_limit() -> None:
    session = FakeSession(
        FakeResponse({"type": "FeatureCollection", "features": [_feature(0), _feature(1)],
                      "properties": {"exceededTransferLimit": True}}),
        FakeResponse({"type": "FeatureCollection", "features": [_feature(2), _feature(3)],
                      "exceededTransferLimit": True}),
        FakeResponse({"type": "FeatureCollection", "features": [_feature(4)]}),
    )

    frame = FeatureServiceClient(HTTP, session=session).query(LAYER_URL + "/", where="magnitude > 2")

    assert len(frame) == 5
    assert frame["OBJECTID"].tolist() == [0, 1, 2, 3, 4]
    assert frame.crs.to_epsg() == 4326
    assert [call[0] for call in session.calls] == [LAYER_URL + "/query"] * 3
    assert [call[1]["resultOffset"] for call in session.calls] == [0, 2, 4]
    first = session.calls[0][1]
    assert first["where"] == "magnitude > 2"
    assert first["resultRecordCount"] == 2
    assert first["outSR"] == "4326"
    assert first["f"] == "geojson"
    assert session.calls[0][2] == 5


def test_query_stops_on_empty_page() -> None:
    session = FakeSession(
        FakeResponse({"features": [_feature(0)], "exceededTransferLimit": True}),
        FakeResponse({"features": [], "exceededTransferLimit": True}),
    )

    frame = FeatureServiceClient(HTTP, session=session).query(LAYER_URL, page_size=10)

    assert len(frame) == 1
    assert len(session.calls) == 2
    assert session.calls[0][1]["resultRecordCount"] == 10


def test_query_without_features_returns_empty_frame() -> None:
    session = FakeSession(FakeResponse({"type": "FeatureCollection", "features": []}))

    frame = FeatureServiceClient(HTTP, session=session).query(LAYER_URL)

    assert frame.empty
    assert frame.crs.to_epsg() == 4326


def test_arcgis_error_payload_raises() -> None:
    session = FakeSession(
        FakeResponse({"error": {"code": 400, "message": "Invalid query", "details": ["bad where"]}})
    )

    with pytest.raises(FeatureServiceError, match="400 Invalid query \\(bad where\\)"):
        FeatureServiceClient(HTTP, session=session).query(LAYER_URL, where="nonsense")


def test_http_error_propagates() -> None:
    session = FakeSession(FakeResponse({}, status_code=503))

    with pytest.raises(requests.HTTPError):
        FeatureServiceClient(HTTP, session=session).query(LAYER_URL)


def test_layer_info() -> None:
    session = FakeSession(
        FakeResponse({"name": "Active_Faults", "geometryType": "esriGeometryPolyline", "maxRecordCount": 2000})
    )

    info = FeatureServiceClient(HTTP, session=session).layer_info(LAYER_URL)

    assert info == {
        "name": "Active_Faults",
        "geometry_type": "esriGeometryPolyline",
        "max_record_count": 2000,
    }
    assert session.calls[0][1] == {"f": "json"}


def test_default_session_sends_user_agent() -> None:
    client = FeatureServiceClient(HTTP)

    assert client._session.headers["User-Agent"] == "training-test/1.0"


def test_fetch_geojson_feed() -> None:
    payload = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"mag": 3.2, "place": "10 km N of Somewhere", "time": 1760000000000},
                "geometry": {"type": "Point", "coordinates": [-117.5, 35.7, 8.1]},
            }
        ],
    }
    session = FakeSession(FakeResponse(payload))

    frame = fetch_geojson_feed("https://example.test/quakes.geojson", HTTP, session=session)

    assert len(frame) == 1
    assert frame["mag"].iloc[0] == pytest.approx(3.2)
    assert frame.crs.to_epsg() == 4326


def test_fetch_geojson_feed_rejects_other_payloads() -> None:
    session = FakeSession(FakeResponse({"type": "Feature"}))

    with pytest.raises(ValueError, match="FeatureCollection"):
        fetch_geojson_feed("https://example.test/quakes.geojson", HTTP, session=session)
