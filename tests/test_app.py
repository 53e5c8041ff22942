import io
import json

import pytest

from parcel_locator.core import app as app_module
from parcel_locator.core.errors import AnnotationError
from parcel_locator.core.models import LocalizationRecord, db
from parcel_locator.core.types import (
    CadastreData, CandidateVisuals, Coordinates, LocalizationResult, MatchingScore, PropertyCandidate,
    RankedCandidate, ReferenceSale, SatelliteAnalysis, ScoreDetails,
)
from parcel_locator.geo.exclusions import ExcludedCandidate


def sample_result():
    candidate = PropertyCandidate(
        id="330630000AB0001", address="12 Rue des Pins, 33000 Bordeaux", postal_code="33000", city="Bordeaux",
        coordinates=Coordinates(44.838, -0.579), cadastre=CadastreData(("330630000AB0001",), 640.0),
    )
    ranked = RankedCandidate(
        candidate=candidate,
        satellite=SatelliteAnalysis(pool_present=True),
        score=MatchingScore(global_score=75, details=ScoreDetails(pool_similarity=95)),
        explanation="Cette adresse (12 Rue des Pins, 33000 Bordeaux) est proposée car ...",
        visuals=CandidateVisuals(satellite_url="https://sat", cadastre_url="https://cad"),
    )
    return LocalizationResult(status="success", source="VISUAL_MATCH", candidates=(ranked,))


class FakePipeline:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def locate(self, image_bytes, zone, context=None, listing=None, reference_sales=(), exclusions=()):
        self.calls.append({
            "image": image_bytes, "zone": zone, "context": context, "listing": listing,
            "reference_sales": list(reference_sales), "exclusions": list(exclusions),
        })
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    with app_module.app.app_context():
        db.drop_all()
        db.create_all()
    return app_module.app.test_client()


def form(**overrides):
    data = {"image": (io.BytesIO(b"jpeg-bytes"), "photo.jpg"), "lat": "44.8378", "lng": "-0.5792", "radius": "500"}
    data.update(overrides)
    return data


def test_localisation_returns_ranked_candidates(client, monkeypatch):
    pipeline = FakePipeline(sample_result())
    monkeypatch.setattr(app_module, "_pipeline", pipeline)

    response = client.post(
        "/api/localisation",
        data=form(postal_codes="33000, 33800", city="Bordeaux", price="450000", surface="620,5"),
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "success"
    assert payload["candidates"][0]["score"]["global"] == 75
    assert "street_view_url" not in payload["candidates"][0]["visuals"]
    assert payload["request_id"]

    call = pipeline.calls[0]
    assert call["image"] == b"jpeg-bytes"
    assert call["zone"].radius_meters == 500
    assert call["zone"].constraints.postal_codes == ("33000", "33800")
    assert call["context"].city == "Bordeaux"
    assert call["listing"].surface == 620.5


@pytest.mark.parametrize("overrides", [
    {"lat": ""},
    {"lng": "west"},
    {"radius": "0"},
    {"radius": "-20"},
    {"lat": "95"},
    {"price": "cheap"},
    {"reference_sales": "not json"},
    {"reference_sales": json.dumps({"price": 1})},
    {"reference_sales": json.dumps([{"price": 400000}])},
    {"reference_sales": json.dumps([{"price": "high", "parcel_id": "330630000AB0001"}])},
    {"reference_sales": json.dumps([{"price": 400000, "lat": 44.8}])},
])
def test_localisation_validation_errors(client, monkeypatch, overrides):
    pipeline = FakePipeline(sample_result())
    monkeypatch.setattr(app_module, "_pipeline", pipeline)

    response = client.post("/api/localisation", data=form(**overrides), content_type="multipart/form-data")

    assert response.status_code == 400
    assert "error" in response.get_json()
    assert pipeline.calls == []


def test_localisation_requires_an_image(client, monkeypatch):
    monkeypatch.setattr(app_module, "_pipeline", FakePipeline(sample_result()))
    data = form()
    del data["image"]
    response = client.post("/api/localisation", data=data, content_type="multipart/form-data")
    assert response.status_code == 400


def test_annotation_failure_is_a_bad_gateway(client, monkeypatch):
    monkeypatch.setattr(app_module, "_pipeline", FakePipeline(error=AnnotationError("quota exceeded")))
    response = client.post("/api/localisation", data=form(), content_type="multipart/form-data")
    assert response.status_code == 502
    assert "quota exceeded" in response.get_json()["details"]


def test_history_lists_saved_results(client, monkeypatch):
    monkeypatch.setattr(app_module, "_pipeline", FakePipeline(sample_result()))
    first = client.post("/api/localisation", data=form(), content_type="multipart/form-data").get_json()
    client.post("/api/localisation", data=form(), content_type="multipart/form-data")

    response = client.get("/api/localisation/history?limit=1")

    assert response.status_code == 200
    results = response.get_json()["results"]
    assert len(results) == 1
    assert results[0]["top_score"] == 75
    assert results[0]["top_address"] == "12 Rue des Pins, 33000 Bordeaux"
    assert results[0]["request_id"] != first["request_id"]

    with app_module.app.app_context():
        record = LocalizationRecord.query.filter_by(request_id=first["request_id"]).one()
        assert record.data["candidates"][0]["candidate"]["id"] == "330630000AB0001"


def test_history_rejects_bad_limit(client):
    assert client.get("/api/localisation/history?limit=lots").status_code == 400


def test_cadastre_proxy_serves_png(client, monkeypatch):
    png = b"\x89PNG" + b"\x00" * 2000
    requested = []

    def plan_image(coordinates):
        requested.append(coordinates)
        return png

    monkeypatch.setattr(app_module.cadastre_client, "plan_image", plan_image)

    response = client.get("/api/cadastre?lat=44.8378&lng=-0.5792")

    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert response.data == png
    assert response.headers["Cache-Control"] == "public, max-age=86400"
    assert requested == [Coordinates(44.8378, -0.5792)]


def test_cadastre_proxy_validation_and_upstream_failure(client, monkeypatch):
    monkeypatch.setattr(app_module.cadastre_client, "plan_image", lambda coordinates: None)
    assert client.get("/api/cadastre?lat=44.8378").status_code == 400
    assert client.get("/api/cadastre?lat=north&lng=-0.57").status_code == 400
    assert client.get("/api/cadastre?lat=44.8378&lng=-0.5792").status_code == 502


def test_health(client):
    payload = client.get("/health").get_json()
    assert payload["status"] == "healthy"
    assert payload["features"]["google_maps"] is False
    assert "google_maps" in payload["circuit_breakers"]


def test_metrics(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert b"http_requests_total" in response.data


def test_department_and_reference_sales_reach_the_pipeline(client, monkeypatch):
    pipeline = FakePipeline(sample_result())
    monkeypatch.setattr(app_module, "_pipeline", pipeline)
    sales = [
        {"price": 410000, "surface": 118, "date": "2023-05-02", "parcel_id": "330630000AB0001"},
        {"price": 380000, "lat": 44.8381, "lng": -0.5791},
    ]

    response = client.post(
        "/api/localisation",
        data=form(department="33", price="400000", reference_sales=json.dumps(sales)),
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    call = pipeline.calls[0]
    assert call["context"].department == "33"
    assert call["context"].city is None
    assert call["reference_sales"] == [
        ReferenceSale(price=410000, surface=118, date="2023-05-02", parcel_id="330630000AB0001"),
        ReferenceSale(price=380000, coordinates=Coordinates(44.8381, -0.5791)),
    ]
    assert call["exclusions"] == []


def test_relaunch_excludes_earlier_candidates_and_widens_the_zone(client, monkeypatch):
    pipeline = FakePipeline(sample_result())
    monkeypatch.setattr(app_module, "_pipeline", pipeline)
    first = client.post(
        "/api/localisation", data=form(postal_codes="33000"), content_type="multipart/form-data",
    ).get_json()

    response = client.post(
        "/api/localisation/more",
        data={"image": (io.BytesIO(b"jpeg-bytes"), "photo.jpg"), "request_id": first["request_id"]},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    second = response.get_json()
    assert second["root_request_id"] == first["request_id"]
    assert second["expansion_level"] == 1
    assert second["search_radius_meters"] == 650
    assert second["request_id"] not in (None, first["request_id"])

    call = pipeline.calls[1]
    assert call["zone"].radius_meters == 650
    assert call["zone"].constraints.postal_codes == ("33000",)
    assert call["exclusions"] == [ExcludedCandidate(Coordinates(44.838, -0.579), ("330630000AB0001",))]

    third = client.post(
        "/api/localisation/more",
        data={"image": (io.BytesIO(b"jpeg-bytes"), "photo.jpg"), "request_id": second["request_id"]},
        content_type="multipart/form-data",
    ).get_json()

    assert third["root_request_id"] == first["request_id"]
    assert third["expansion_level"] == 2
    assert pipeline.calls[2]["zone"].radius_meters == 2000
    assert len(pipeline.calls[2]["exclusions"]) == 2

    history = client.get("/api/localisation/history").get_json()["results"]
    levels = {r["request_id"]: r["expansion_level"] for r in history}
    assert levels == {first["request_id"]: 0, second["request_id"]: 1, third["request_id"]: 2}


def test_relaunch_of_an_unknown_request_is_not_found(client, monkeypatch):
    pipeline = FakePipeline(sample_result())
    monkeypatch.setattr(app_module, "_pipeline", pipeline)

    unknown = client.post(
        "/api/localisation/more",
        data={"image": (io.BytesIO(b"jpeg-bytes"), "photo.jpg"), "request_id": "nope"},
        content_type="multipart/form-data",
    )
    missing = client.post(
        "/api/localisation/more",
        data={"image": (io.BytesIO(b"jpeg-bytes"), "photo.jpg")},
        content_type="multipart/form-data",
    )

    assert unknown.status_code == 404
    assert missing.status_code == 400
    assert pipeline.calls == []
