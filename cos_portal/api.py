"""
HTTP endpoints for the sponsorship portal.

Every response carries ``success``. Failures are rendered from the
CosPortalError hierarchy as ``{"success": false, "error", "code"}`` with
the status code the error class declares.
"""

import base64
import binascii
import logging
import time
from typing import Dict, Any, List, Optional, Callable

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .classification import DocumentClassifier
from .errors import AuthExpired, CosPortalError, PermissionRequired, ValidationFailure
from .extraction import DocumentExtractor, ExtractionUnit, Provenance
from .gmail import GmailClient, ReplyDraft
from .ingestion import DocumentIngester
from .llm import CompletionClient
from .merge import MergeEngine
from .pipeline import Attachment, ExtractMergePipeline, PipelineState
from .prompts import PromptBuilder
from .repository import ArtistRepository, SqlArtistRepository
from .storage import ObjectStorage, InMemoryStorage, SupabaseStorage
from .tracker import ArtistTracker, VisaDocument

logger = logging.getLogger(__name__)

# Error codes whose HTTP status differs from the class default.
STATUS_BY_CODE = {"TIMEOUT": 408, "RATE_LIMITED": 429, "CANCELLED": 409}


class SourceEmail(BaseModel):
    emailId: Optional[str] = None
    emailSubject: Optional[str] = None
    emailFrom: Optional[str] = None

    def provenance(self) -> Provenance:
        return Provenance(self.emailId, self.emailSubject, self.emailFrom)


class ExtractTextRequest(BaseModel):
    filename: str
    base64Data: str


class ExtractRequest(SourceEmail):
    filename: str
    base64Data: Optional[str] = None
    text: Optional[str] = None


class MergeDocument(SourceEmail):
    filename: str
    extractedText: str = ""
    extractedData: List[Dict[str, Any]] = Field(default_factory=list)


class MergeRequest(BaseModel):
    pdfs: List[MergeDocument] = Field(default_factory=list)


class AttachmentRequest(SourceEmail):
    filename: str
    base64Data: Optional[str] = None
    attachmentId: Optional[str] = None


class ExtractAndMergeRequest(BaseModel):
    attachments: List[AttachmentRequest] = Field(default_factory=list)
    recipientEmail: Optional[str] = None


class ReconcileRequest(BaseModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    recipientEmail: Optional[str] = None


class DraftRequest(BaseModel):
    artistId: str
    originalEmailId: Optional[str] = None
    originalEmailSubject: Optional[str] = None
    originalEmailFrom: Optional[str] = None


def decode_base64(data: Optional[str], filename: str) -> bytes:
    if not data:
        raise ValidationFailure(f"No file data provided for {filename}")
    if "," in data and data.lstrip().startswith("data:"):
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationFailure(f"Invalid base64 data for {filename}: {e}")


def error_response(error: CosPortalError, **extra) -> JSONResponse:
    status = STATUS_BY_CODE.get(error.code, error.http_status)
    return JSONResponse(status_code=status, content={"success": False, "error": error.message, "code": error.code, **extra})


def current_user(x_user_email: Optional[str] = Header(None)) -> str:
    if not x_user_email:
        raise AuthExpired("Not authenticated", code="AUTH_ERROR")
    return x_user_email.strip().lower()


def access_token(authorization: Optional[str] = Header(None),
                 x_token_error: Optional[str] = Header(None)) -> str:
    if x_token_error == "RefreshAccessTokenError":
        raise AuthExpired("Authentication expired. Please sign in again.")
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthExpired("Not authenticated", code="AUTH_ERROR")
    return authorization.split(" ", 1)[1].strip()


def build_storage(config: Dict[str, Any]) -> ObjectStorage:
    backend = config.get('storage', {}).get('backend', 'supabase')
    if backend == 'memory':
        return InMemoryStorage(config)
    return SupabaseStorage(config)


def create_app(config: Dict[str, Any],
               client: Optional[CompletionClient] = None,
               repository: Optional[ArtistRepository] = None,
               storage: Optional[ObjectStorage] = None,
               gmail_factory: Optional[Callable[[str, Dict[str, Any]], GmailClient]] = None,
               sleep: Callable[[float], None] = time.sleep) -> FastAPI:
    """
    Builds the FastAPI application and wires every stage from one config.

    Args:
        config: The configuration dictionary from config.yaml.
        client: Completion client shared by extraction and merge.
        repository: Tracker persistence; SQL on database.url when omitted.
        storage: Object storage for visa documents.
        gmail_factory: Builds a GmailClient from an access token.
        sleep: Delay function for the batch pipeline.
    """
    client = client or CompletionClient(config)
    prompt_builder = PromptBuilder(config)
    ingester = DocumentIngester(config)
    classifier = DocumentClassifier(config)
    extractor = DocumentExtractor(config, client=client, prompt_builder=prompt_builder)
    merge_engine = MergeEngine(config, client=client, prompt_builder=prompt_builder)
    tracker = ArtistTracker(config, repository or SqlArtistRepository(config))
    storage = storage or build_storage(config)
    gmail_factory = gmail_factory or GmailClient
    admin_email = (config.get('admin_email') or "").strip().lower()

    def new_pipeline() -> ExtractMergePipeline:
        return ExtractMergePipeline(config, ingester=ingester, classifier=classifier,
                                    extractor=extractor, merge_engine=merge_engine, sleep=sleep)

    app = FastAPI(title="CoS Portal")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get('server', {}).get('cors_origins', ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.tracker = tracker
    app.state.storage = storage

    @app.exception_handler(CosPortalError)
    async def handle_portal_error(request: Request, exc: CosPortalError):
        logger.warning(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', []))}: {e.get('msg')}" for e in exc.errors())
        return error_response(ValidationFailure(f"Invalid request: {details}"))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"success": True, "status": "ok"}

    @app.post("/extract-text")
    def extract_text(body: ExtractTextRequest):
        document = ingester.extract_text(decode_base64(body.base64Data, body.filename), body.filename)
        return {
            "success": True,
            "text": document.text,
            "textLength": len(document.text),
            "truncated": document.truncated,
            "method": document.method,
            "docType": classifier.classify(document.filename, document.text).value,
        }

    @app.post("/extract")
    def extract(body: ExtractRequest):
        if body.text:
            document = ingester.from_text(body.text, body.filename)
        else:
            document = ingester.extract_text(decode_base64(body.base64Data, body.filename), body.filename)
        unit = extractor.extract(classifier.classify_document(document), body.provenance())
        return {
            "success": True,
            "filename": unit.filename,
            "docType": unit.doc_type.value,
            "extractedText": unit.text,
            "extractedData": unit.records,
            "peopleFound": len(unit.records),
            "placeholderUsed": unit.placeholder_used,
            "error": unit.error,
        }

    @app.post("/merge")
    def merge(body: MergeRequest):
        if not body.pdfs:
            raise ValidationFailure("No documents provided for merging.")
        units = []
        for pdf in body.pdfs:
            text, _ = ingester.truncate(pdf.extractedText, pdf.filename)
            units.append(ExtractionUnit(
                filename=pdf.filename,
                text=text,
                doc_type=classifier.classify(pdf.filename, text),
                records=pdf.extractedData,
                provenance=pdf.provenance(),
            ))
        result = merge_engine.merge(units)
        return {"success": True, **result.to_dict()}

    @app.post("/extract-and-merge")
    def extract_and_merge(body: ExtractAndMergeRequest, request: Request, user: str = Depends(current_user)):
        if not body.attachments:
            raise ValidationFailure("No attachments selected.")

        gmail = None
        attachments = []
        for item in body.attachments:
            if item.base64Data:
                attachments.append(Attachment(item.filename, decode_base64(item.base64Data, item.filename), item.provenance()))
                continue
            if not (item.attachmentId and item.emailId):
                raise ValidationFailure(f"{item.filename} needs base64Data or emailId and attachmentId")
            if gmail is None:
                gmail = gmail_factory(access_token(request.headers.get("authorization"),
                                                   request.headers.get("x-token-error")), config)
            attachments.append(Attachment(
                item.filename,
                provenance=item.provenance(),
                loader=lambda mid=item.emailId, aid=item.attachmentId, g=gmail: g.download_attachment(mid, aid),
            ))

        try:
            result = new_pipeline().run(attachments)
        finally:
            if gmail is not None:
                gmail.close()
        payload = result.to_dict()
        if result.state != PipelineState.DONE:
            status_error = CosPortalError(result.error or "Extract and merge failed.", code=result.error_code)
            if result.error_code == "EXTRACTION_FAILED":
                status_error.http_status = 422
            elif result.error_code not in STATUS_BY_CODE:
                status_error.http_status = 502
            extra = {k: v for k, v in payload.items() if k not in ("error", "code")}
            return error_response(status_error, **extra)

        reconciled = tracker.reconcile(user, result.records, recipient_email=body.recipientEmail)
        return {"success": True, **payload, "tracker": reconciled.to_dict()}

    @app.get("/artists")
    def list_artists(user: str = Depends(current_user)):
        return {"success": True, "artists": [a.to_dict() for a in tracker.list_artists(user)]}

    @app.post("/artists/reconcile")
    def reconcile(body: ReconcileRequest, user: str = Depends(current_user)):
        result = tracker.reconcile(user, body.records, recipient_email=body.recipientEmail)
        return {"success": True, **result.to_dict()}

    @app.post("/artists/{artist_id}/copied")
    def mark_copied(artist_id: str, user: str = Depends(current_user)):
        return {"success": True, "artist": tracker.mark_copied(user, artist_id).to_dict()}

    @app.delete("/artists/{artist_id}")
    def delete_artist(artist_id: str, user: str = Depends(current_user)):
        tracker.delete(user, artist_id)
        return {"success": True, "id": artist_id}

    @app.post("/artists/{artist_id}/documents")
    async def upload_document(artist_id: str, file: UploadFile = File(...), user: str = Depends(current_user)):
        tracker.get(user, artist_id)
        data = await file.read()
        stored = storage.upload(artist_id, file.filename or "upload", data, file.content_type)
        artist = tracker.attach_document(user, artist_id, VisaDocument(stored.url, stored.filename, stored.mime_type))
        return {"success": True, **stored.to_dict(), "artist": artist.to_dict()}

    @app.get("/emails")
    def list_emails(maxResults: Optional[int] = None, token: str = Depends(access_token)):
        with gmail_factory(token, config) as gmail:
            emails = gmail.list_emails(maxResults)
        return {"success": True, "emails": emails}

    @app.post("/drafts")
    def create_draft(body: DraftRequest, user: str = Depends(current_user), token: str = Depends(access_token)):
        artist = tracker.get(user, body.artistId)
        record = artist.record
        draft = ReplyDraft(
            config,
            artist_name=" ".join(p for p in (record.get("givenName"), record.get("familyName")) if p),
            record=record,
            visa_documents=[d.to_dict() for d in artist.visa_documents],
            original_subject=body.originalEmailSubject or record.get("sourceEmailSubject"),
            original_from=body.originalEmailFrom or artist.recipient_email or record.get("sourceEmailFrom"),
            original_email_id=body.originalEmailId or artist.email_id,
            sender_email=user,
        )
        with gmail_factory(token, config) as gmail:
            created = gmail.create_reply_draft(draft)
        return {"success": True, **created, "message": "Gmail draft created successfully"}

    @app.get("/admin/stats")
    def admin_stats(user: str = Depends(current_user)):
        if not admin_email or user != admin_email:
            raise PermissionRequired("Admin access required.", code="FORBIDDEN")
        return {"success": True, **tracker.stats()}

    return app
