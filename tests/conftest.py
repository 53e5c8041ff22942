import os
import sys
from pathlib import Path

# Ensure the `parcel_locator` package is importable when running pytest from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read at import time: run against an in-memory database with every external service disabled.
os.environ["DATABASE_URL"] = "sqlite://"
for name in ("GOOGLE_MAPS_API_KEY", "OPENAI_API_KEY", "GOOGLE_APPLICATION_CREDENTIALS_JSON", "PUBLIC_BASE_URL"):
    os.environ.pop(name, None)

import pytest
import requests

from parcel_locator.core.types import Coordinates, SearchZone, ZoneConstraints


class DummyResponse:
    def __init__(self, status_code=200, payload=None, content=b"", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"http error {self.status_code}")

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class DummySession:
    """Replays queued responses; a callable ``response`` is called with the URL."""

    def __init__(self):
        self.calls = []
        self.response = DummyResponse(payload={})

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if callable(self.response):
            return self.response(url)
        return self.response


@pytest.fixture
def patch_session(monkeypatch):
    from parcel_locator.utils import http

    session = DummySession()
    monkeypatch.setattr(http, "_SESSION", session)
    return session


@pytest.fixture
def bordeaux_zone():
    return SearchZone(center=Coordinates(44.8378, -0.5792), radius_meters=500)


def square_feature(lat, lng, half_size=0.0001, **properties):
    """GeoJSON parcel feature: a small square centred on (lat, lng)."""
    ring = [
        [lng - half_size, lat - half_size],
        [lng + half_size, lat - half_size],
        [lng + half_size, lat + half_size],
        [lng - half_size, lat + half_size],
        [lng - half_size, lat - half_size],
    ]
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring]},
        "properties": properties,
    }


def zone_with(postal_codes=(), communes=(), radius=500):
    return SearchZone(
        center=Coordinates(44.8378, -0.5792),
        radius_meters=radius,
        constraints=ZoneConstraints(postal_codes=tuple(postal_codes), communes=tuple(communes)),
    )
