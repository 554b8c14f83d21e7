"""Tests for the web API (documents, intake, export, diary, search, metrics)."""

from __future__ import annotations

import io
import uuid
import zipfile
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from medcard.api.diary import router as diary_router
from medcard.api.documents import router
from medcard.schemas.analysis import AnalysisResult
from medcard.schemas.intake import DocumentPayload

AUTH = ("anna", "secret")


@pytest.fixture()
def app(store, orchestrator, blobs):
    app = FastAPI()
    app.include_router(router)
    app.include_router(diary_router)
    app.state.store = store
    app.state.blobs = blobs
    app.state.orchestrator = orchestrator
    return app


@pytest.fixture()
def client(app):
    with patch("medcard.api.auth.settings") as mock_settings:
        mock_settings.security.web_password = "secret"
        with TestClient(app) as test_client:
            yield test_client


def _create(client, **fields):
    body = {"date": "2025-03-25", "title": "Анализ крови", "subtype": "кровь"}
    body.update(fields)
    response = client.post("/api/documents", json=body, auth=AUTH)
    assert response.status_code == 201
    return response.json()


# ── Auth ─────────────────────────────────────────────────────────────


class TestAuth:
    def test_requires_credentials(self, client):
        assert client.get("/api/documents").status_code == 401

    def test_wrong_password(self, client):
        response = client.get("/api/documents", auth=("anna", "nope"))
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Basic"

    def test_not_configured(self, app):
        with patch("medcard.api.auth.settings") as mock_settings:
            mock_settings.security.web_password = ""
            with TestClient(app) as test_client:
                assert test_client.get("/api/documents", auth=AUTH).status_code == 503


# ── Documents ────────────────────────────────────────────────────────


class TestDocuments:
    def test_create_normalizes_and_extracts(self, client):
        document = _create(client, category="что-то", key_values={"Гемоглобин": "9.2 г/л"})

        assert document["category"] == "анализы"
        assert document["subtype"] == "кровь"
        assert document["measurements"] == [
            {"name": "Гемоглобин", "value": 92.0, "unit": "г/л", "date": "2025-03-25"}
        ]

    def test_create_validates_title(self, client):
        response = client.post("/api/documents", json={"date": "2025-03-25", "title": ""}, auth=AUTH)
        assert response.status_code == 422

    def test_get_and_missing(self, client):
        created = _create(client)

        assert client.get(f"/api/documents/{created['id']}", auth=AUTH).json()["title"] == "Анализ крови"
        assert client.get(f"/api/documents/{uuid.uuid4()}", auth=AUTH).status_code == 404

    def test_list_filters(self, client):
        _create(client)
        _create(client, title="УЗИ почек", subtype="узи", date="2025-03-20")

        everything = client.get("/api/documents", auth=AUTH).json()
        studies = client.get("/api/documents", params={"category": "исследования"}, auth=AUTH).json()

        assert everything["total"] == 2
        assert [d["title"] for d in everything["documents"]] == ["Анализ крови", "УЗИ почек"]
        assert [d["title"] for d in studies["documents"]] == ["УЗИ почек"]

    def test_update_renormalizes_and_reextracts(self, client):
        created = _create(client, key_values={"ПСА": "4.5"})

        response = client.put(
            f"/api/documents/{created['id']}",
            json={"subtype": "онкомаркеры", "key_values": {"ПСА": "5.1", "Гемоглобин": "140"}},
            auth=AUTH,
        )

        updated = response.json()
        assert response.status_code == 200
        assert updated["title"] == "Анализ крови"
        assert (updated["category"], updated["subtype"]) == ("анализы", "онкомаркеры")
        assert sorted((m["name"], m["value"]) for m in updated["measurements"]) == [
            ("Гемоглобин", 140.0),
            ("ПСА общий", 5.1),
        ]

    def test_update_missing(self, client):
        response = client.put(f"/api/documents/{uuid.uuid4()}", json={"title": "x"}, auth=AUTH)
        assert response.status_code == 404

    @pytest.mark.parametrize("field", ["title", "date", "recommendations", "tags"])
    def test_update_rejects_null(self, client, store, field):
        created = _create(client)

        response = client.put(f"/api/documents/{created['id']}", json={field: None}, auth=AUTH)

        assert response.status_code == 422
        assert store.documents[uuid.UUID(created["id"])].title == "Анализ крови"

    def test_update_null_optional_field_clears_it(self, client):
        created = _create(client, doctor="Иванов И.И.")

        response = client.put(f"/api/documents/{created['id']}", json={"doctor": None}, auth=AUTH)

        assert response.status_code == 200
        assert response.json()["doctor"] is None

    def test_delete(self, client, store):
        created = _create(client)

        assert client.delete(f"/api/documents/{created['id']}", auth=AUTH).status_code == 204
        assert client.delete(f"/api/documents/{created['id']}", auth=AUTH).status_code == 404
        assert store.documents == {}


# ── Intake ───────────────────────────────────────────────────────────


class TestUpload:
    def test_upload_photo(self, client, jpeg):
        response = client.post(
            "/api/documents/upload",
            files=[("files", ("scan.jpg", jpeg, "image/jpeg"))],
            data={"caption": "из поликлиники"},
            auth=AUTH,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "created"
        assert body["page_count"] == 1

    def test_upload_several_pages(self, client, analyzer, jpeg):
        files = [("files", (f"page-{i}.jpg", jpeg, "image/jpeg")) for i in range(2)]

        body = client.post("/api/documents/upload", files=files, auth=AUTH).json()

        assert body["page_count"] == 2
        assert len(analyzer.calls) == 1

    def test_unsupported_file(self, client):
        response = client.post(
            "/api/documents/upload", files=[("files", ("notes.txt", b"hello", "text/plain"))], auth=AUTH
        )
        assert response.status_code == 422
        assert response.json()["detail"]["status"] == "failed"

    def test_empty_file(self, client):
        response = client.post(
            "/api/documents/upload", files=[("files", ("empty.pdf", b"", "application/pdf"))], auth=AUTH
        )
        assert response.status_code == 400

    def test_duplicate_then_resolve(self, client, analyzer, jpeg):
        _create(client, title="УЗИ почек", subtype="узи", doctor="Иванов И.И.")
        analyzer.result = AnalysisResult(
            subtype="кровь", title="Общий анализ крови", date="2025-03-25", doctor="Иванов И.И."
        )

        parked = client.post(
            "/api/documents/upload", files=[("files", ("scan.jpg", jpeg, "image/jpeg"))], auth=AUTH
        ).json()
        assert parked["status"] == "pending_decision"

        stranger = client.post(
            f"/api/pending/{parked['pending_id']}/resolve", json={"action": "add"}, auth=("boris", "secret")
        )
        assert stranger.json()["status"] == "expired"

        resolved = client.post(
            f"/api/pending/{parked['pending_id']}/resolve", json={"action": "add"}, auth=AUTH
        ).json()
        again = client.post(
            f"/api/pending/{parked['pending_id']}/resolve", json={"action": "cancel"}, auth=AUTH
        ).json()

        assert resolved["status"] == "added"
        assert again["status"] == "expired"
        assert client.get("/api/documents", auth=AUTH).json()["total"] == 2

    def test_resolve_rejects_unknown_action(self, client):
        response = client.post(f"/api/pending/{uuid.uuid4()}/resolve", json={"action": "merge"}, auth=AUTH)
        assert response.status_code == 422


# ── Search and metrics ───────────────────────────────────────────────


class TestSearch:
    def test_short_query(self, client):
        _create(client)
        body = client.get("/api/search", params={"q": " а "}, auth=AUTH).json()
        assert body == {"query": "а", "total": 0, "exact": [], "partial": [], "context": []}

    def test_grouped_results(self, client):
        _create(client, summary="Гемоглобин в норме")
        _create(client, title="Консультация", subtype="консультация", tags=["гематология"])

        body = client.get("/api/search", params={"q": "гем"}, auth=AUTH).json()

        assert body["total"] == 2
        assert [r["document"]["title"] for r in body["exact"]] == ["Консультация"]
        assert [r["document"]["title"] for r in body["partial"]] == ["Анализ крови"]
        assert body["partial"][0]["highlights"][0]["field"] == "Резюме"


class TestMetrics:
    def test_series(self, client):
        _create(client, date="2025-01-10", key_values={"Гемоглобин": "100 г/л", "ПСА": "4.0"})
        _create(client, date="2025-03-25", key_values={"Гемоглобин": "12.5 г/л"})

        body = client.get("/api/metrics", auth=AUTH).json()

        names = [s["name"] for s in body["metrics"]]
        hemoglobin = next(s for s in body["metrics"] if s["name"] == "Гемоглобин")
        assert set(names) == {"Гемоглобин", "ПСА общий"}
        assert [p["value"] for p in hemoglobin["data_points"]] == [100.0, 125.0]
        assert hemoglobin["data_points"][0]["document_title"] == "Анализ крови"
        assert hemoglobin["change_percent"] == 25
        assert hemoglobin["change_direction"] == "up"
        assert hemoglobin["min_value"] == 100.0
        assert hemoglobin["max_value"] == 125.0

        psa = next(s for s in body["metrics"] if s["name"] == "ПСА общий")
        assert psa["change_percent"] is None

    def test_date_filter(self, client):
        _create(client, date="2025-01-10", key_values={"ПСА": "4.0"})
        _create(client, date="2025-03-25", key_values={"ПСА": "4.4"})

        body = client.get("/api/metrics", params={"fromDate": "2025-02-01"}, auth=AUTH).json()

        [psa] = body["metrics"]
        assert [p["date"] for p in psa["data_points"]] == ["2025-03-25"]

    def test_sync_backfills_missing(self, client, store):
        bare = _create(client, date="2025-03-01", title="ОАК", key_values={"Hb": "130"})
        # As if saved before measurements were extracted
        store.documents[uuid.UUID(bare["id"])].measurements = []
        _create(client, key_values={"ПСА": "4.0"})

        first = client.post("/api/metrics/sync", auth=AUTH).json()
        forced = client.post("/api/metrics/sync", params={"force": "true"}, auth=AUTH).json()

        assert first == {"documents": 1, "measurements": 1}
        assert forced == {"documents": 2, "measurements": 2}


# ── Export ───────────────────────────────────────────────────────────


async def _stored_document(store, blobs, title: str, date: str, file_name: str | None, data: bytes | None = b"%PDF"):
    url = None
    if data is not None:
        url = await blobs.put(data, file_name or "scan.pdf", "application/pdf")
    async with store.unit_of_work() as records:
        document = await records.create_document(
            DocumentPayload.model_validate({"date": date, "title": title, "file_url": url, "file_name": file_name}),
            [],
        )
    return document.id


class TestDownload:
    @pytest.mark.asyncio()
    async def test_zip_of_selected_documents(self, app, store, blobs):
        later = await _stored_document(store, blobs, "УЗИ: почки", "2025-03-25", "uzi.jpg", b"jpeg-bytes")
        earlier = await _stored_document(store, blobs, "Анализ крови", "2025-03-20", None, b"pdf-one")
        same_name = await _stored_document(store, blobs, "Анализ крови", "2025-03-20", "blood.pdf", b"pdf-two")
        await _stored_document(store, blobs, "Не выбран", "2025-03-21", "other.pdf")

        with patch("medcard.api.auth.settings") as mock_settings:
            mock_settings.security.web_password = "secret"
            with TestClient(app) as client:
                response = client.post(
                    "/api/documents/download",
                    json={"ids": [str(later), str(earlier), str(same_name)]},
                    auth=AUTH,
                )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert 'filename="documents.zip"' in response.headers["content-disposition"]
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert archive.namelist() == [
            "20-03-2025_Анализ крови.pdf",
            "20-03-2025_Анализ крови (2).pdf",
            "25-03-2025_УЗИ- почки.jpg",
        ]
        assert archive.read("25-03-2025_УЗИ- почки.jpg") == b"jpeg-bytes"

    @pytest.mark.asyncio()
    async def test_missing_files_are_skipped(self, app, store, blobs):
        kept = await _stored_document(store, blobs, "ЭКГ", "2025-03-25", "ecg.pdf")
        lost = await _stored_document(store, blobs, "МРТ", "2025-03-24", "mri.pdf")
        blobs.blobs.pop(store.documents[lost].file_url)

        with patch("medcard.api.auth.settings") as mock_settings:
            mock_settings.security.web_password = "secret"
            with TestClient(app) as client:
                response = client.post("/api/documents/download", json={"ids": [str(kept), str(lost)]}, auth=AUTH)

        assert zipfile.ZipFile(io.BytesIO(response.content)).namelist() == ["25-03-2025_ЭКГ.pdf"]

    def test_nothing_to_download(self, client):
        response = client.post("/api/documents/download", json={"ids": [str(uuid.uuid4())]}, auth=AUTH)
        assert response.status_code == 404

    def test_empty_selection(self, client):
        assert client.post("/api/documents/download", json={"ids": []}, auth=AUTH).status_code == 422


def test_upload_flags_duplicate_when_prompt_cannot_be_sent(client, analyzer, notifier, jpeg):
    existing = _create(client, title="УЗИ почек", subtype="узи", doctor="Иванов И.И.")
    analyzer.result = AnalysisResult(
        subtype="кровь", title="Общий анализ крови", date="2025-03-25", doctor="Иванов И.И."
    )

    async def unreachable(*args, **kwargs):
        raise ConnectionError("telegram down")

    notifier.notify = unreachable

    body = client.post("/api/documents/upload", files=[("files", ("scan.jpg", jpeg, "image/jpeg"))], auth=AUTH).json()

    assert body["status"] == "created"
    assert body["possible_duplicate_of"] == existing["id"]
    assert client.get("/api/documents", auth=AUTH).json()["total"] == 2


# ── Diary ────────────────────────────────────────────────────────────


class TestVitals:
    def test_create_and_list(self, client):
        created = client.post("/api/vitals", json={"type": "temperature", "value": 38.4}, auth=AUTH)
        client.post("/api/vitals", json={"type": "pulse", "value": 72}, auth=AUTH)

        assert created.status_code == 201
        vital = created.json()["vital"]
        assert (vital["unit"], vital["formatted"], vital["status"]) == ("°C", "38.4 °C", "high")

        everything = client.get("/api/vitals", auth=AUTH).json()["vitals"]
        pulses = client.get("/api/vitals", params={"type": "pulse"}, auth=AUTH).json()["vitals"]
        assert len(everything) == 2
        assert [(v["value"], v["status"]) for v in pulses] == [(72, "normal")]

    def test_pressure_needs_both_values(self, client, store):
        response = client.post("/api/vitals", json={"type": "pressure", "value": 120}, auth=AUTH)

        assert response.status_code == 422
        assert store.vitals == []

    def test_pressure(self, client):
        vital = client.post(
            "/api/vitals", json={"type": "pressure", "value": 85, "value2": 55}, auth=AUTH
        ).json()["vital"]

        assert vital["formatted"] == "85/55 мм рт.ст."
        assert vital["status"] == "low"

    def test_unknown_type(self, client):
        assert client.post("/api/vitals", json={"type": "glucose", "value": 5}, auth=AUTH).status_code == 422

    def test_old_readings_are_outside_the_window(self, client):
        client.post(
            "/api/vitals", json={"type": "weight", "value": 70, "recorded_at": "2020-01-01T08:00:00+00:00"}, auth=AUTH
        )

        assert client.get("/api/vitals", params={"days": 30}, auth=AUTH).json()["vitals"] == []


class TestSymptoms:
    def test_create_and_list(self, client):
        created = client.post("/api/symptoms", json={"name": " Головная боль ", "intensity": 3}, auth=AUTH)

        assert created.status_code == 201
        assert created.json()["symptom"]["name"] == "Головная боль"
        assert [s["intensity"] for s in client.get("/api/symptoms", auth=AUTH).json()["symptoms"]] == [3]

    def test_intensity_range(self, client):
        response = client.post("/api/symptoms", json={"name": "Тошнота", "intensity": 9}, auth=AUTH)
        assert response.status_code == 422


class TestMedications:
    def test_create_stop_and_list(self, client):
        created = client.post(
            "/api/medications",
            json={"name": "Преднизолон", "dosage": "5 мг", "start_date": "2025-03-01"},
            auth=AUTH,
        ).json()["medication"]
        client.post("/api/medications", json={"name": "Омепразол", "start_date": "2025-03-10"}, auth=AUTH)

        stopped = client.put(
            f"/api/medications/{created['id']}", json={"is_active": False, "end_date": "2025-03-20"}, auth=AUTH
        )

        assert stopped.status_code == 200
        assert stopped.json()["medication"]["end_date"] == "2025-03-20"
        active = client.get("/api/medications", auth=AUTH).json()["medications"]
        everything = client.get("/api/medications", params={"active": "false"}, auth=AUTH).json()["medications"]
        assert [m["name"] for m in active] == ["Омепразол"]
        assert [m["name"] for m in everything] == ["Омепразол", "Преднизолон"]

    def test_update_missing(self, client):
        response = client.put(f"/api/medications/{uuid.uuid4()}", json={"dosage": "10 мг"}, auth=AUTH)
        assert response.status_code == 404

    def test_name_cannot_be_cleared(self, client):
        created = client.post("/api/medications", json={"name": "Преднизолон"}, auth=AUTH).json()["medication"]

        response = client.put(f"/api/medications/{created['id']}", json={"name": None}, auth=AUTH)

        assert response.status_code == 422


class TestProcedures:
    def test_linked_to_document_and_filtered(self, client):
        document = _create(client, title="Выписка из гематологии")
        client.post(
            "/api/procedures",
            json={
                "date": "2025-03-12",
                "type": "transfusion",
                "name": "Переливание эритроцитов",
                "before_value": 68,
                "after_value": 91,
                "unit": "г/л",
                "document_id": document["id"],
            },
            auth=AUTH,
        )
        client.post("/api/procedures", json={"date": "2025-02-01", "type": "surgery", "name": "Биопсия"}, auth=AUTH)

        transfusions = client.get("/api/procedures", params={"type": "transfusion"}, auth=AUTH).json()["procedures"]
        february = client.get(
            "/api/procedures", params={"from": "2025-02-01", "to": "2025-02-28"}, auth=AUTH
        ).json()["procedures"]

        [transfusion] = transfusions
        assert transfusion["document"] == {
            "id": document["id"],
            "title": "Выписка из гематологии",
            "date": "2025-03-25",
        }
        assert (transfusion["before_value"], transfusion["after_value"]) == (68, 91)
        assert [p["name"] for p in february] == ["Биопсия"]

    def test_unknown_document(self, client, store):
        response = client.post(
            "/api/procedures",
            json={"date": "2025-03-12", "type": "surgery", "name": "Биопсия", "document_id": str(uuid.uuid4())},
            auth=AUTH,
        )

        assert response.status_code == 404
        assert store.procedures == []
