# tests/test_evidence.py
from custody.models import Evidence, EvidenceStatus, utcnow


class TestUploadInit:

    async def test_creates_uploaded_record_and_write_url(self, client, login, seed, db_session):
        case = await seed.case()
        login("detective", subject="det-1")

        response = await client.post(
            "/evidence/upload-init",
            json={
                "case_id": case.id,
                "file_name": "CCTV still #4.png",
                "content_type": "image/png",
                "file_size": 2048,
            },
        )

        assert response.status_code == 201
        ticket = response.json()
        assert ticket["blob_path"] == f"{case.id}/{ticket['evidence_id']}/CCTV_still__4.png"
        assert "verb=put" in ticket["upload_url"]
        assert ticket["starts_on"] < ticket["expires_on"]

        evidence = await db_session.get(Evidence, ticket["evidence_id"])
        assert evidence.status == EvidenceStatus.UPLOADED.value
        assert evidence.department == case.department
        assert evidence.file_type == "image"
        assert evidence.auto_tags == ["image"]
        assert evidence.uploaded_by == "det-1"
        assert evidence.blob_path_raw == ticket["blob_path"]

    async def test_unknown_case(self, client, login):
        login("detective")
        response = await client.post("/evidence/upload-init", json={"case_id": "nope", "file_name": "a.txt"})
        assert response.status_code == 404

    async def test_prosecutor_cannot_upload(self, client, login, seed):
        case = await seed.case()
        login("prosecutor")
        response = await client.post("/evidence/upload-init", json={"case_id": case.id, "file_name": "a.txt"})
        assert response.status_code == 403

    async def test_case_officer_other_department(self, client, login, seed):
        await seed.user("co-1", department="district_a")
        case = await seed.case("district_b")
        login("case_officer", subject="co-1")
        response = await client.post("/evidence/upload-init", json={"case_id": case.id, "file_name": "a.txt"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "wrong_department"


class TestUploadConfirm:

    async def test_rejects_when_object_is_missing(self, client, login, seed, db_session):
        case = await seed.case()
        evidence = await seed.evidence(case, uploaded=False)
        login("detective")

        response = await client.post(
            "/evidence/upload-confirm",
            json={"evidence_id": evidence.id, "case_id": case.id, "tags": ["knife"]},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "upload_not_found"
        await db_session.refresh(evidence)
        assert evidence.status == EvidenceStatus.UPLOADED.value
        assert evidence.user_tags == []
        assert evidence.confirmed_at is None

    async def test_case_mismatch(self, client, login, seed):
        case = await seed.case()
        other = await seed.case()
        evidence = await seed.evidence(case)
        login("detective")

        response = await client.post(
            "/evidence/upload-confirm",
            json={"evidence_id": evidence.id, "case_id": other.id},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    async def test_unknown_evidence(self, client, login):
        login("detective")
        response = await client.post(
            "/evidence/upload-confirm",
            json={"evidence_id": "missing", "case_id": "c"},
        )
        assert response.status_code == 404

    async def test_tags_are_unioned_with_auto_tags(self, client, login, seed):
        case = await seed.case()
        evidence = await seed.evidence(case, "scene.jpg")
        login("detective")

        response = await client.post(
            "/evidence/upload-confirm",
            json={
                "evidence_id": evidence.id,
                "case_id": case.id,
                "description": "Rear entrance",
                "tags": ["entry", " entry ", "image", "night"],
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["user_tags"] == ["entry", "image", "night"]
        assert data["tags"] == ["image", "entry", "night"]
        assert data["description"] == "Rear entrance"
        assert data["confirmed_at"] is not None
        assert data["status"] == "UPLOADED"

    async def test_second_confirm_is_rejected(self, client, login, seed):
        case = await seed.case()
        evidence = await seed.evidence(case)
        login("detective")
        body = {"evidence_id": evidence.id, "case_id": case.id}

        assert (await client.post("/evidence/upload-confirm", json=body)).status_code == 200
        assert (await client.post("/evidence/upload-confirm", json=body)).status_code == 409

    async def test_confirm_after_processing_refreshes_the_search_document(self, client, login, seed, clients):
        case = await seed.case()
        evidence = await seed.evidence(case, status=EvidenceStatus.COMPLETED, processed_at=utcnow())
        login("detective")

        response = await client.post(
            "/evidence/upload-confirm",
            json={"evidence_id": evidence.id, "case_id": case.id, "tags": ["ransom"]},
        )

        assert response.status_code == 200
        assert clients.search.published == [evidence.id]
        assert "ransom" in clients.search.documents[evidence.id]["tags"]


class TestReadEvidence:

    async def test_list_for_case(self, client, login, seed):
        case = await seed.case()
        a = await seed.evidence(case, "a.txt")
        b = await seed.evidence(case, "b.txt")
        await seed.evidence(await seed.case(), "other.txt")
        login("prosecutor")

        response = await client.get(f"/evidence?case_id={case.id}")

        assert response.status_code == 200
        assert {e["id"] for e in response.json()["items"]} == {a.id, b.id}

    async def test_list_requires_case_id(self, client, login):
        login("detective")
        response = await client.get("/evidence")
        assert response.status_code == 422

    async def test_get_and_status(self, client, login, seed):
        case = await seed.case()
        evidence = await seed.evidence(case, status=EvidenceStatus.FAILED, processing_error="boom | name=X")
        login("detective")

        detail = await client.get(f"/evidence/{evidence.id}")
        status = await client.get(f"/evidence/{evidence.id}/status")

        assert detail.status_code == 200
        assert detail.json()["file_name"] == "statement.txt"
        assert status.json()["status"] == "FAILED"
        assert status.json()["processing_error"] == "boom | name=X"

    async def test_case_officer_other_department(self, client, login, seed):
        await seed.user("co-1", department="district_a")
        evidence = await seed.evidence(await seed.case("district_b"))
        login("case_officer", subject="co-1")

        response = await client.get(f"/evidence/{evidence.id}")
        assert response.status_code == 403

    async def test_read_url(self, client, login, seed):
        evidence = await seed.evidence(await seed.case())
        login("prosecutor")

        response = await client.get(f"/evidence/{evidence.id}/read-url")

        assert response.status_code == 200
        assert "verb=get" in response.json()["read_url"]
        assert evidence.blob_path_raw in response.json()["read_url"]

    async def test_legacy_record_without_department_uses_the_case(self, client, login, seed):
        await seed.user("co-1", department="district_a")
        evidence = await seed.evidence(await seed.case("district_b"), department=None)
        login("case_officer", subject="co-1")

        response = await client.get(f"/evidence/{evidence.id}")
        assert response.status_code == 403


class TestUpdateTags:

    async def test_replaces_user_tags_keeps_auto_tags(self, client, login, seed, clients):
        evidence = await seed.evidence(await seed.case(), "clip.mp4", status=EvidenceStatus.COMPLETED)
        login("detective")

        response = await client.patch(f"/evidence/{evidence.id}/tags", json={"tags": ["suspect-2"]})

        assert response.status_code == 200
        assert response.json()["tags"] == ["video", "suspect-2"]
        assert clients.search.documents[evidence.id]["tags"] == ["video", "suspect-2"]

    async def test_search_outage_does_not_fail_the_update(self, client, login, seed, clients):
        evidence = await seed.evidence(await seed.case(), status=EvidenceStatus.COMPLETED)
        clients.search.fail_publish = True
        login("detective")

        response = await client.patch(f"/evidence/{evidence.id}/tags", json={"tags": ["x"]})
        assert response.status_code == 200


class TestDeleteEvidence:

    async def test_removes_row_blobs_and_document(self, client, login, seed, clients, db_session):
        case = await seed.case()
        evidence = await seed.evidence(case)
        clients.object_store.put(f"{case.id}/{evidence.id}/ocr.json", container="evidence-derived")
        login("detective")

        response = await client.delete(f"/evidence/{evidence.id}")

        assert response.status_code == 200
        assert response.json()["warnings"] == []
        assert await db_session.get(Evidence, evidence.id) is None
        assert clients.object_store.objects == {}
        assert clients.search.removed == [evidence.id]

    async def test_store_failures_become_warnings(self, client, login, seed, clients, db_session):
        evidence = await seed.evidence(await seed.case())
        clients.object_store.fail_deletes = True
        clients.search.fail_remove = True
        login("detective")

        response = await client.delete(f"/evidence/{evidence.id}")

        assert response.status_code == 200
        assert len(response.json()["warnings"]) == 3
        assert await db_session.get(Evidence, evidence.id) is None

    async def test_prosecutor_cannot_delete(self, client, login, seed):
        evidence = await seed.evidence(await seed.case())
        login("prosecutor")
        response = await client.delete(f"/evidence/{evidence.id}")
        assert response.status_code == 403


class TestSearchEndpoint:

    async def test_case_officer_is_forced_to_own_department(self, client, login, seed, clients):
        await seed.user("co-1", department="district_a")
        login("case_officer", subject="co-1")

        response = await client.get("/evidence/search?q=knife&department=district_b&top=500")

        assert response.status_code == 200
        assert response.json()["top"] == 100
        assert clients.search.queries[-1]["department"] == "district_a"

    async def test_prosecutor_searches_everything(self, client, login, clients):
        login("prosecutor")
        await client.get("/evidence/search?tag=cctv")
        assert clients.search.queries[-1]["department"] is None
        assert clients.search.queries[-1]["tag"] == "cctv"

    async def test_quoted_tag_is_just_a_value(self, client, login, clients):
        login("detective")
        response = await client.get("/evidence/search", params={"tag": "o'reilly \"x\""})
        assert response.status_code == 200
        assert response.json()["count"] == 0

    async def test_admin_cannot_search(self, client, login):
        login("admin")
        response = await client.get("/evidence/search?q=x")
        assert response.status_code == 403
