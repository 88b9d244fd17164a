import base64
import io
import json

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from cos_portal.api import create_app
from cos_portal.errors import NotFound, RateLimited
from cos_portal.repository import InMemoryArtistRepository
from cos_portal.storage import InMemoryStorage

from .conftest import make_docx, merge_response

USER = {"X-User-Email": "User@Example.com"}
AUTHED = {**USER, "Authorization": "Bearer gmail-token"}
ALICE = {"givenName": "Alice", "familyName": "Smith", "passportNumber": "X1234567"}
BOB = {"givenName": "Bob", "familyName": "Jones"}


class FakeGmail:
    """Records calls made through the gmail factory."""

    def __init__(self):
        self.tokens = []
        self.attachments = {}
        self.drafts = []
        self.closed = 0

    def __call__(self, token, config):
        self.tokens.append(token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed += 1

    def list_emails(self, max_results=None):
        return [{"id": "m-1", "subject": "CoS", "maxResults": max_results}]

    def download_attachment(self, message_id, attachment_id):
        key = (message_id, attachment_id)
        if key not in self.attachments:
            raise NotFound("Attachment data not found")
        if isinstance(self.attachments[key], Exception):
            raise self.attachments[key]
        return self.attachments[key]

    def create_reply_draft(self, draft):
        draft.validate()
        self.drafts.append(draft)
        return {"draftId": "d-1", "attachments": len(draft.visa_documents), "threadId": "t-1"}


def b64(data):
    return base64.b64encode(data).decode()


def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def gmail():
    return FakeGmail()


@pytest.fixture
def delays():
    return []


@pytest.fixture
def client(config, fake_client, gmail, delays):
    app = create_app(config, client=fake_client, repository=InMemoryArtistRepository(),
                     storage=InMemoryStorage(config), gmail_factory=gmail, sleep=delays.append)
    return TestClient(app)


def track(client, fake_client, records=None):
    fake_client.queue(json.dumps(records or [ALICE]), merge_response(records or [ALICE]))
    body = {"attachments": [{"filename": "details.docx", "base64Data": b64(make_docx(["Passport X1234567"]))}]}
    response = client.post("/extract-and-merge", json=body, headers=USER)
    assert response.status_code == 200, response.text
    return response.json()["tracker"]["added"]


class TestExtraction:
    def test_health(self, client):
        assert client.get("/health").json() == {"success": True, "status": "ok"}

    def test_extract_text(self, client):
        data = make_docx(["Tour itinerary", "Venue: O2 Arena"])
        response = client.post("/extract-text", json={"filename": "tour_itinerary.docx", "base64Data": b64(data)})
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert "O2 Arena" in body["text"]
        assert body["docType"] == "itinerary"
        assert body["method"] == "docx"

    def test_extract_text_accepts_data_url(self, client):
        data = "data:application/vnd.openxmlformats;base64," + b64(make_docx(["Hello there"]))
        response = client.post("/extract-text", json={"filename": "hello.docx", "base64Data": data})
        assert response.json()["text"] == "Hello there"

    def test_extract_text_unsupported(self, client):
        response = client.post("/extract-text", json={"filename": "notes.txt", "base64Data": b64(b"plain text")})
        assert response.status_code == 422
        assert response.json() == {"success": False, "error": response.json()["error"], "code": "UNSUPPORTED_FORMAT"}

    def test_missing_fields(self, client):
        response = client.post("/extract-text", json={"filename": "x.pdf"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_extract_from_text(self, client, fake_client):
        fake_client.queue(json.dumps([ALICE]))
        response = client.post("/extract", json={
            "filename": "artist_details.pdf", "text": "Passport number X1234567",
            "emailId": "m-1", "emailFrom": "agent@example.com",
        })
        body = response.json()
        assert body["peopleFound"] == 1
        assert body["extractedData"][0]["sourceEmailId"] == "m-1"
        assert body["placeholderUsed"] is False

    def test_extract_rate_limited(self, client, fake_client):
        fake_client.queue(RateLimited("slow down"))
        response = client.post("/extract", json={"filename": "a.pdf", "text": "some text"})
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"

    def test_merge(self, client, fake_client):
        fake_client.queue(merge_response([ALICE, BOB], "Bob is missing a passport"))
        response = client.post("/merge", json={"pdfs": [
            {"filename": "itinerary.pdf", "extractedText": "Venue", "extractedData": [ALICE, BOB], "emailId": "m-1"},
        ]})
        body = response.json()
        assert body["success"] is True
        assert [r["givenName"] for r in body["mergedData"]] == ["Alice", "Bob"]
        assert body["mergedData"][1]["sourceEmailId"] == "m-1"
        assert body["notes"] == "Bob is missing a passport"

    def test_merge_truncates_long_text(self, client, fake_client, config):
        fake_client.queue(merge_response([ALICE]))
        response = client.post("/merge", json={"pdfs": [
            {"filename": "big.pdf", "extractedText": "x" * 50000, "extractedData": [ALICE]},
        ]})
        assert response.status_code == 200
        prompt = fake_client.calls[0]["prompt"]
        assert prompt.count("x" * 100) > 0
        assert "x" * (config["ingestion"]["max_text_length"] + 1) not in prompt

    def test_merge_requires_documents(self, client):
        response = client.post("/merge", json={"pdfs": []})
        assert response.status_code == 400

    def test_merge_malformed(self, client, fake_client):
        fake_client.queue("not json at all")
        response = client.post("/merge", json={"pdfs": [{"filename": "a.pdf", "extractedData": [ALICE]}]})
        assert response.status_code == 502
        assert response.json()["code"] == "MALFORMED_RESPONSE"


class TestExtractAndMerge:
    def test_tracks_new_artists(self, client, fake_client, delays):
        fake_client.queue(json.dumps([ALICE, BOB]), json.dumps([ALICE]), merge_response([ALICE, BOB]))
        response = client.post("/extract-and-merge", headers=USER, json={"attachments": [
            {"filename": "tour_itinerary.docx", "base64Data": b64(make_docx(["Alice Smith, Bob Jones"])),
             "emailId": "m-1", "emailFrom": "agent@example.com"},
            {"filename": "alice.docx", "base64Data": b64(make_docx(["Passport X1234567"]))},
        ]})
        body = response.json()
        assert response.status_code == 200
        assert body["state"] == "done"
        assert len(body["tracker"]["added"]) == 2
        assert delays == [2.0]

        listed = client.get("/artists", headers=USER).json()["artists"]
        assert {a["givenName"] for a in listed} == {"Alice", "Bob"}
        assert all(a["status"] == "pending" for a in listed)

    def test_second_run_adds_no_duplicates(self, client, fake_client):
        track(client, fake_client)
        fake_client.queue(json.dumps([ALICE]), merge_response([ALICE]))
        body = {"attachments": [{"filename": "again.docx", "base64Data": b64(make_docx(["Passport X1234567"]))}]}
        tracker = client.post("/extract-and-merge", json=body, headers=USER).json()["tracker"]
        assert tracker["added"] == []
        assert len(tracker["duplicates"]) == 1

    def test_gmail_attachments_downloaded_lazily(self, client, fake_client, gmail):
        gmail.attachments[("m-1", "a-1")] = make_docx(["Passport X1234567"])
        fake_client.queue(json.dumps([ALICE]), merge_response([ALICE]))
        response = client.post("/extract-and-merge", headers=AUTHED, json={"attachments": [
            {"filename": "alice.docx", "attachmentId": "a-1", "emailId": "m-1"},
            {"filename": "gone.pdf", "attachmentId": "a-2", "emailId": "m-1"},
        ]})
        body = response.json()
        assert response.status_code == 200
        assert gmail.tokens == ["gmail-token"]
        assert [f["code"] for f in body["failed"]] == ["NOT_FOUND"]
        assert gmail.closed == 1

    def test_throttled_gmail_download_keeps_the_batch(self, client, fake_client, gmail, delays):
        gmail.attachments[("m-1", "a-1")] = make_docx(["Passport X1234567"])
        gmail.attachments[("m-1", "a-2")] = RateLimited("Gmail rate limit exceeded.")
        fake_client.queue(json.dumps([ALICE]), merge_response([ALICE]))
        response = client.post("/extract-and-merge", headers=AUTHED, json={"attachments": [
            {"filename": "alice.docx", "attachmentId": "a-1", "emailId": "m-1"},
            {"filename": "itinerary.pdf", "attachmentId": "a-2", "emailId": "m-1"},
        ]})
        body = response.json()
        assert response.status_code == 200
        assert [u["filename"] for u in body["units"]] == ["alice.docx"]
        assert body["failed"][0]["code"] == "RATE_LIMITED"
        assert len(body["tracker"]["added"]) == 1
        assert delays == [2.0, 3.0, 3.0]

    def test_gmail_attachment_needs_token(self, client):
        response = client.post("/extract-and-merge", headers=USER, json={"attachments": [
            {"filename": "alice.docx", "attachmentId": "a-1", "emailId": "m-1"},
        ]})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"

    def test_all_documents_unreadable(self, client):
        response = client.post("/extract-and-merge", headers=USER, json={"attachments": [
            {"filename": "notes.txt", "base64Data": b64(b"plain")},
        ]})
        body = response.json()
        assert response.status_code == 422
        assert body["code"] == "EXTRACTION_FAILED"
        assert body["state"] == "failed"
        assert body["failed"][0]["code"] == "UNSUPPORTED_FORMAT"

    def test_merge_failure_keeps_units(self, client, fake_client):
        fake_client.queue(json.dumps([ALICE]), "garbage")
        response = client.post("/extract-and-merge", headers=USER, json={"attachments": [
            {"filename": "alice.docx", "base64Data": b64(make_docx(["Passport X1234567"]))},
        ]})
        body = response.json()
        assert response.status_code == 502
        assert body["code"] == "MALFORMED_RESPONSE"
        assert len(body["units"]) == 1
        assert client.get("/artists", headers=USER).json()["artists"] == []

    def test_requires_user(self, client):
        response = client.post("/extract-and-merge", json={"attachments": []})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"


class TestTrackerEndpoints:
    def test_copy_then_upload(self, client, fake_client):
        artist_id = track(client, fake_client)[0]["id"]

        copied = client.post(f"/artists/{artist_id}/copied", headers=USER).json()
        assert copied["artist"]["status"] == "processing"

        response = client.post(f"/artists/{artist_id}/documents", headers=USER,
                               files={"file": ("visa.png", png_bytes(), "image/png")})
        body = response.json()
        assert response.status_code == 200
        assert body["fileType"] == "image/png"
        assert body["artist"]["status"] == "approved"
        assert body["artist"]["visaDocuments"][0]["url"].startswith("memory://")

        again = client.post(f"/artists/{artist_id}/copied", headers=USER).json()
        assert again["artist"]["status"] == "approved"

    def test_upload_rejects_corrupt_image(self, client, fake_client):
        artist_id = track(client, fake_client)[0]["id"]
        response = client.post(f"/artists/{artist_id}/documents", headers=USER,
                               files={"file": ("visa.jpg", b"not an image", "image/jpeg")})
        assert response.status_code == 400
        artist = client.get("/artists", headers=USER).json()["artists"][0]
        assert artist["status"] == "pending"

    def test_upload_unknown_artist(self, client):
        response = client.post("/artists/missing/documents", headers=USER,
                               files={"file": ("visa.pdf", b"%PDF", "application/pdf")})
        assert response.status_code == 404

    def test_other_user_cannot_see_artist(self, client, fake_client):
        artist_id = track(client, fake_client)[0]["id"]
        response = client.post(f"/artists/{artist_id}/copied", headers={"X-User-Email": "other@example.com"})
        assert response.status_code == 404
        assert client.get("/artists", headers={"X-User-Email": "other@example.com"}).json()["artists"] == []

    def test_reconcile_and_delete(self, client):
        added = client.post("/artists/reconcile", headers=USER, json={"records": [ALICE, BOB]}).json()["added"]
        assert len(added) == 2
        assert client.delete(f"/artists/{added[0]['id']}", headers=USER).json()["success"] is True
        assert len(client.get("/artists", headers=USER).json()["artists"]) == 1

    def test_admin_stats(self, client, config):
        client.post("/artists/reconcile", headers=USER, json={"records": [ALICE]})
        forbidden = client.get("/admin/stats", headers=USER)
        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "FORBIDDEN"

        stats = client.get("/admin/stats", headers={"X-User-Email": "admin@example.com"}).json()
        assert stats["totalArtists"] == 1
        assert stats["byStatus"]["pending"] == 1


class TestGmailEndpoints:
    def test_list_emails(self, client, gmail):
        response = client.get("/emails?maxResults=5", headers=AUTHED)
        assert response.json()["emails"][0]["maxResults"] == 5
        assert gmail.closed == 1

    def test_list_emails_without_token(self, client):
        response = client.get("/emails", headers=USER)
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"

    def test_refresh_failure(self, client):
        response = client.get("/emails", headers={**AUTHED, "X-Token-Error": "RefreshAccessTokenError"})
        assert response.status_code == 401
        assert response.json()["code"] == "REFRESH_TOKEN_ERROR"

    def test_create_draft(self, client, fake_client, gmail):
        artist_id = track(client, fake_client)[0]["id"]
        client.post(f"/artists/{artist_id}/documents", headers=USER,
                    files={"file": ("visa.pdf", b"%PDF-1.4", "application/pdf")})

        response = client.post("/drafts", headers=AUTHED, json={
            "artistId": artist_id, "originalEmailId": "m-1",
            "originalEmailSubject": "CoS please", "originalEmailFrom": "Agent <agent@example.com>",
        })
        assert response.status_code == 200
        assert response.json()["draftId"] == "d-1"
        draft = gmail.drafts[0]
        assert draft.subject == "Re: CoS please"
        assert draft.recipient == "agent@example.com"
        assert draft.sender_email == "user@example.com"

    def test_draft_without_documents(self, client, fake_client):
        artist_id = track(client, fake_client)[0]["id"]
        response = client.post("/drafts", headers=AUTHED, json={"artistId": artist_id})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
