"""
Shared fixtures: an in-memory MongoDB (mongomock) wrapped in a ``Store`` and
TestClients bound to apps built around that store. No real database needed.
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Store
from main import create_app


@pytest.fixture
def store():
    return Store(mongomock.MongoClient(), "gracelog_test")


@pytest.fixture
def disconnected_store():
    return Store(mongomock.MongoClient(), "gracelog_test", connected=False)


@pytest.fixture
def client(store):
    return TestClient(create_app(store=store))


@pytest.fixture
def disconnected_client(disconnected_store):
    return TestClient(create_app(store=disconnected_store))


@pytest.fixture
def quote_payload():
    return {
        "firstName": " Ayse ",
        "lastName": "Yilmaz",
        "email": "ayse@example.com",
        "phone": "+90 555 000 00 00",
        "company": "Anatolia Textiles",
        "serviceType": "sea",
        "incoterms": "FOB",
        "originCountry": "Turkey",
        "originCity": "Istanbul",
        "destCountry": "Germany",
        "destCity": "Hamburg",
        "totalWeight": "1250.5",
        "totalCBM": "4.2",
        "additionalServices": {"fragile": True},
        "notes": "Palletised cargo",
        "language": "en",
    }
