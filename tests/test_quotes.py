"""
Quote endpoint tests: validation, normalisation, reference retry, listing and
status updates.
"""
import itertools
from datetime import datetime, timedelta

import pytest

import services


@pytest.fixture
def sequential_clock(monkeypatch):
    """Each reference gets its own millisecond, so referenceNo values are predictable."""
    ticks = itertools.count(1712345678000)
    monkeypatch.setattr(services, "_epoch_ms", lambda: next(ticks))


class TestCreateQuote:

    def test_create_quote_success(self, client, store, quote_payload):
        response = client.post("/api/quotes", json=quote_payload)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["referenceNo"].startswith("GRL")
        assert len(body["referenceNo"]) == 11

        doc = store.db["quote"].find_one({"referenceNo": body["referenceNo"]})
        assert doc["firstName"] == "Ayse"
        assert doc["totalWeight"] == 1250.5
        assert doc["totalCBM"] == 4.2
        assert doc["status"] == "pending"
        assert doc["language"] == "en"
        assert doc["additionalServices"] == {
            "fragile": True, "express": False, "insurance": False, "packaging": False,
        }
        assert doc["createdAt"] is not None
        assert doc["updatedAt"] is not None

    def test_missing_fields_are_listed(self, client):
        response = client.post("/api/quotes", json={"firstName": "Ayse", "email": "", "serviceType": None})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["missingFields"] == [
            "email", "serviceType", "originCity", "originCountry",
            "destCity", "destCountry", "totalWeight",
        ]

    def test_empty_payload_lists_every_required_field(self, client):
        response = client.post("/api/quotes", json={})

        assert response.status_code == 400
        assert response.json()["missingFields"] == list(services.QUOTE_REQUIRED_FIELDS)

    @pytest.mark.parametrize("service_type", ["rail", "AIR", "ship"])
    def test_invalid_service_type_rejected(self, client, quote_payload, service_type):
        quote_payload["serviceType"] = service_type

        response = client.post("/api/quotes", json=quote_payload)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_invalid_incoterm_reports_field_errors(self, client, quote_payload):
        quote_payload["incoterms"] = "XYZ"

        response = client.post("/api/quotes", json=quote_payload)

        assert response.status_code == 400
        assert any(message.startswith("incoterms") for message in response.json()["errors"])

    def test_unparseable_weight_defaults_to_zero(self, client, store, quote_payload):
        quote_payload["totalWeight"] = "heavy"
        quote_payload["totalCBM"] = ""

        body = client.post("/api/quotes", json=quote_payload).json()

        doc = store.db["quote"].find_one({"referenceNo": body["referenceNo"]})
        assert doc["totalWeight"] == 0
        assert doc["totalCBM"] is None

    def test_out_of_range_numbers_do_not_break_listing(self, client, store, quote_payload):
        quote_payload["totalWeight"] = "1e400"
        quote_payload["totalCBM"] = "-1e400"

        body = client.post("/api/quotes", json=quote_payload).json()

        doc = store.db["quote"].find_one({"referenceNo": body["referenceNo"]})
        assert doc["totalWeight"] == 0
        assert doc["totalCBM"] is None
        listed = client.get("/api/quotes")
        assert listed.status_code == 200
        assert listed.json()["quotes"][0]["totalWeight"] == 0

    def test_optional_fields_get_defaults(self, client, store, quote_payload):
        for field in ("lastName", "phone", "company", "incoterms", "additionalServices", "notes", "language"):
            quote_payload.pop(field)

        body = client.post("/api/quotes", json=quote_payload).json()

        doc = store.db["quote"].find_one({"referenceNo": body["referenceNo"]})
        assert doc["lastName"] == ""
        assert doc["company"] is None
        assert doc["incoterms"] is None
        assert doc["language"] == "tr"
        assert doc["additionalServices"]["express"] is False

    def test_disconnected_store_returns_503(self, disconnected_client, quote_payload):
        response = disconnected_client.post("/api/quotes", json=quote_payload)

        assert response.status_code == 503
        assert response.json()["error"] == "MongoDB not connected"

    def test_validation_runs_before_connectivity_check(self, disconnected_client):
        response = disconnected_client.post("/api/quotes", json={})

        assert response.status_code == 400


class TestReferenceRetry:

    def test_same_millisecond_collision_retries_with_suffix(self, client, store, quote_payload, monkeypatch):
        monkeypatch.setattr(services, "_epoch_ms", lambda: 1712345678901)

        first = client.post("/api/quotes", json=quote_payload).json()
        second = client.post("/api/quotes", json=quote_payload).json()

        assert first["referenceNo"] == "GRL45678901"
        assert second["success"] is True
        assert second["referenceNo"].startswith("GRL45678901")
        assert len(second["referenceNo"]) == 14
        assert store.db["quote"].count_documents({}) == 2
        assert store.db["quote"].find_one({"referenceNo": "GRL45678901"})["_id"] is not None

    def test_second_collision_is_surfaced(self, client, store, quote_payload, monkeypatch):
        monkeypatch.setattr(services, "_epoch_ms", lambda: 1712345678901)
        monkeypatch.setattr(services.random, "randrange", lambda n: 7)

        assert client.post("/api/quotes", json=quote_payload).status_code == 200
        retried = client.post("/api/quotes", json=quote_payload).json()
        assert retried["referenceNo"] == "GRL45678901007"

        response = client.post("/api/quotes", json=quote_payload)

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert store.db["quote"].count_documents({}) == 2


class TestListQuotes:

    def _create(self, client, payload, **overrides):
        return client.post("/api/quotes", json={**payload, **overrides}).json()

    def test_pagination(self, client, quote_payload, sequential_clock):
        refs = [self._create(client, quote_payload, firstName=f"Client {i}")["referenceNo"] for i in range(3)]

        response = client.get("/api/quotes", params={"page": 1, "limit": 2})

        body = response.json()
        assert body["total"] == 3
        assert body["totalPages"] == 2
        assert body["currentPage"] == 1
        assert len(body["quotes"]) == 2
        assert "id" in body["quotes"][0]
        assert "_id" not in body["quotes"][0]

        page_two = client.get("/api/quotes", params={"page": 2, "limit": 2}).json()
        assert len(page_two["quotes"]) == 1
        listed = [q["referenceNo"] for q in body["quotes"] + page_two["quotes"]]
        assert sorted(listed) == sorted(refs)

    def test_status_filter(self, client, quote_payload, sequential_clock):
        first = self._create(client, quote_payload)
        self._create(client, quote_payload)
        client.put(f"/api/quotes/{first['id']}/status", json={"status": "quoted"})

        pending = client.get("/api/quotes", params={"status": "pending"}).json()

        assert pending["total"] == 1
        assert all(q["status"] == "pending" for q in pending["quotes"])

    def test_search_matches_reference_case_insensitively(self, client, quote_payload, sequential_clock):
        created = self._create(client, quote_payload)
        self._create(client, quote_payload)

        body = client.get("/api/quotes", params={"search": created["referenceNo"].lower()}).json()

        assert body["total"] == 1
        assert body["quotes"][0]["referenceNo"] == created["referenceNo"]

    def test_search_covers_name_email_and_company(self, client, quote_payload, sequential_clock):
        self._create(client, quote_payload, company="Bosphorus Freight", email="ops@bosphorus.example")
        self._create(client, quote_payload, firstName="Mehmet", lastName="Kaya", company=None, email="mk@example.com")

        assert client.get("/api/quotes", params={"search": "bosPHORUS"}).json()["total"] == 1
        assert client.get("/api/quotes", params={"search": "kaya"}).json()["total"] == 1
        assert client.get("/api/quotes", params={"search": "example"}).json()["total"] == 2
        assert client.get("/api/quotes", params={"search": "nobody"}).json()["total"] == 0

    def test_search_treats_regex_characters_literally(self, client, quote_payload, sequential_clock):
        self._create(client, quote_payload)

        body = client.get("/api/quotes", params={"search": ".*"}).json()

        assert body["total"] == 0

    def test_newest_first(self, client, store):
        base = datetime(2026, 3, 1, 9, 0)
        store.db["quote"].insert_many([
            {"referenceNo": f"GRL0000000{i}", "firstName": f"Client {i}", "status": "pending",
             "createdAt": base + timedelta(hours=i)}
            for i in (2, 0, 3, 1)
        ])

        body = client.get("/api/quotes").json()

        assert [q["referenceNo"] for q in body["quotes"]] == [
            "GRL00000003", "GRL00000002", "GRL00000001", "GRL00000000",
        ]
        second_page = client.get("/api/quotes", params={"page": 2, "limit": 3}).json()
        assert [q["referenceNo"] for q in second_page["quotes"]] == ["GRL00000000"]

    def test_timestamps_are_rendered_as_utc(self, client, store):
        store.db["quote"].insert_one({"referenceNo": "GRL00000001", "createdAt": datetime(2026, 3, 1, 9, 5, 7, 250000)})

        quote = client.get("/api/quotes").json()["quotes"][0]

        assert quote["createdAt"] == "2026-03-01T09:05:07.250Z"

    @pytest.mark.parametrize("params", [{"page": "abc"}, {"page": 0}, {"page": -2}, {"limit": "abc"}, {"limit": 0}])
    def test_bad_paging_values_fall_back_to_defaults(self, client, quote_payload, sequential_clock, params):
        for _ in range(12):
            client.post("/api/quotes", json=quote_payload)

        response = client.get("/api/quotes", params=params)

        assert response.status_code == 200
        body = response.json()
        assert body["currentPage"] == 1
        assert len(body["quotes"]) == 10
        assert body["totalPages"] == 2

    def test_large_limit_is_not_capped(self, client, quote_payload, sequential_clock):
        for _ in range(12):
            client.post("/api/quotes", json=quote_payload)

        body = client.get("/api/quotes", params={"limit": 500}).json()

        assert len(body["quotes"]) == 12
        assert body["totalPages"] == 1

    def test_empty_collection(self, client):
        body = client.get("/api/quotes").json()

        assert body == {"quotes": [], "totalPages": 0, "currentPage": 1, "total": 0}


class TestUpdateQuoteStatus:

    def test_update_status_refreshes_updated_at(self, client, store, quote_payload):
        created = client.post("/api/quotes", json=quote_payload).json()
        before = store.db["quote"].find_one({"referenceNo": created["referenceNo"]})

        response = client.put(f"/api/quotes/{created['id']}/status", json={"status": "processing"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["quote"]["status"] == "processing"
        after = store.db["quote"].find_one({"referenceNo": created["referenceNo"]})
        assert after["updatedAt"] >= before["updatedAt"]
        assert after["createdAt"] == before["createdAt"]

    def test_any_listed_status_is_accepted_from_any_other(self, client, quote_payload):
        created = client.post("/api/quotes", json=quote_payload).json()

        for status in ("rejected", "pending", "accepted", "processing"):
            response = client.put(f"/api/quotes/{created['id']}/status", json={"status": status})
            assert response.json()["quote"]["status"] == status

    def test_unknown_status_rejected(self, client, quote_payload):
        created = client.post("/api/quotes", json=quote_payload).json()

        response = client.put(f"/api/quotes/{created['id']}/status", json={"status": "shipped"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_malformed_id_rejected(self, client):
        response = client.put("/api/quotes/not-an-id/status", json={"status": "quoted"})

        assert response.status_code == 400

    def test_unknown_id_returns_404(self, client):
        response = client.put("/api/quotes/65f1c0ffee0000000000abcd/status", json={"status": "quoted"})

        assert response.status_code == 404


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("12.5", 12.5),
        ("12.5kg", 12.5),
        (" 7", 7.0),
        (3, 3.0),
        ("abc", None),
        (None, None),
        (True, None),
        (float("nan"), None),
        ("1e400", None),
        ("-1e400kg", None),
        (10 ** 400, None),
    ])
    def test_parse_number(self, value, expected):
        assert services.parse_number(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (None, 10),
        ("25", 25),
        ("25abc", 25),
        (" 3", 3),
        ("abc", 10),
        ("0", 10),
        ("-4", 10),
        (True, 10),
    ])
    def test_parse_page_param(self, value, expected):
        assert services.parse_page_param(value, 10) == expected

    def test_generate_reference(self, monkeypatch):
        monkeypatch.setattr(services, "_epoch_ms", lambda: 1700000000123)
        monkeypatch.setattr(services.random, "randrange", lambda n: 42)

        assert services.generate_reference() == "GRL00000123"
        assert services.generate_reference(with_suffix=True) == "GRL00000123042"
