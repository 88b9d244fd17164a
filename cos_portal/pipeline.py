"""
Batch extract-and-merge orchestration.

Attachments are processed one at a time with a fixed pause in between so
the completion provider is not hammered. Each attachment's download and LLM
extraction are retried a bounded number of times; an attachment that still fails is
recorded and skipped so the rest of the batch can be merged. The merge
itself runs once and either succeeds or fails the batch.

State machine: IDLE -> EXTRACTING(i/N) -> MERGING -> DONE | FAILED.
A batch stopped through its cancellation event ends in CANCELLED.
"""

import logging
import threading
import time
from enum import Enum
from typing import Dict, Any, List, Optional, Callable, Tuple

from .classification import DocumentClassifier
from .errors import AuthExpired, CosPortalError, LLMError, LLMTimeout, MergeFailure, PermissionRequired, RateLimited
from .extraction import DocumentExtractor, ExtractionUnit, Provenance
from .ingestion import DocumentIngester
from .merge import MergeEngine, MergeResult


class PipelineState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Attachment:
    """
    One selected email attachment.

    Bytes are either given up front or fetched lazily through ``loader``
    when the batch reaches this attachment.
    """
    def __init__(self, filename: str, data: Optional[bytes] = None, provenance: Optional[Provenance] = None,
                 loader: Optional[Callable[[], bytes]] = None):
        self.filename = filename
        self.data = data
        self.provenance = provenance or Provenance()
        self.loader = loader

    def __repr__(self):
        size = len(self.data) if self.data is not None else "lazy"
        return f"Attachment(filename={self.filename}, size={size})"

    def read(self) -> bytes:
        if self.data is None and self.loader is not None:
            self.data = self.loader()
        return self.data or b""


class FailedUnit:
    def __init__(self, filename: str, error: str, code: str, attempts: int):
        self.filename = filename
        self.error = error
        self.code = code
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "error": self.error, "code": self.code, "attempts": self.attempts}


class PipelineResult:
    """Outcome of one batch. Extracted units are kept even when the merge fails."""
    def __init__(self):
        self.state = PipelineState.IDLE
        self.units: List[ExtractionUnit] = []
        self.failed: List[FailedUnit] = []
        self.merge_result: Optional[MergeResult] = None
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None

    @property
    def records(self) -> List[Dict[str, Any]]:
        return self.merge_result.records if self.merge_result else []

    @property
    def notes(self) -> str:
        return self.merge_result.notes if self.merge_result else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "mergedData": self.records,
            "notes": self.notes,
            "units": [u.to_dict() for u in self.units],
            "failed": [f.to_dict() for f in self.failed],
            "error": self.error,
            "code": self.error_code,
        }


class ExtractMergePipeline:
    """Runs text extraction, per-document LLM extraction and the merge for one batch."""

    def __init__(self, config: Dict[str, Any],
                 ingester: Optional[DocumentIngester] = None,
                 classifier: Optional[DocumentClassifier] = None,
                 extractor: Optional[DocumentExtractor] = None,
                 merge_engine: Optional[MergeEngine] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the pipeline and its stages.

        Args:
            config: The configuration dictionary from config.yaml.
            ingester, classifier, extractor, merge_engine: Stage overrides; built from config when omitted.
            sleep: Delay function used for throttling and retry backoff.
        """
        self.config = config.get('pipeline', {})
        self.max_retries = int(self.config.get('max_retries', 2))
        self.retry_delay = float(self.config.get('retry_delay_seconds', 3))
        self.inter_document_delay = float(self.config.get('inter_document_delay_seconds', 2))
        self.ingester = ingester or DocumentIngester(config)
        self.classifier = classifier or DocumentClassifier(config)
        self.extractor = extractor or DocumentExtractor(config)
        self.merge_engine = merge_engine or MergeEngine(config)
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

        self.state = PipelineState.IDLE
        self.progress = (0, 0)

    def run(self, attachments: List[Attachment],
            cancel_event: Optional[threading.Event] = None,
            on_progress: Optional[Callable[[PipelineState, int, int], None]] = None) -> PipelineResult:
        """
        Processes a batch of attachments end to end.

        Args:
            attachments: The user-selected attachments, in order.
            cancel_event: Checked before each attachment; when set the batch stops.
            on_progress: Called with (state, done, total) after each transition.

        Returns:
            A PipelineResult in state DONE, FAILED or CANCELLED.
        """
        result = PipelineResult()
        total = len(attachments)
        self.logger.info(f"Starting extract-and-merge for {total} attachment(s).")

        for i, attachment in enumerate(attachments):
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning(f"Batch cancelled after {i}/{total} attachment(s).")
                self._transition(result, PipelineState.CANCELLED, i, total, on_progress)
                result.error, result.error_code = "Batch cancelled by user.", "CANCELLED"
                return result

            self._transition(result, PipelineState.EXTRACTING, i, total, on_progress)
            unit = self._process_attachment(attachment, result)
            if unit:
                result.units.append(unit)

            if i < total - 1 and self.inter_document_delay > 0:
                self.sleep(self.inter_document_delay)

        self.progress = (total, total)
        return self.merge_units(result, on_progress)

    def merge_units(self, result: PipelineResult,
                    on_progress: Optional[Callable[[PipelineState, int, int], None]] = None) -> PipelineResult:
        """
        Runs (or re-runs) the merge over a result's extracted units.

        A failed merge leaves ``result.units`` untouched so it can be retried.
        """
        done = len(result.units) + len(result.failed)
        if not result.units:
            self.logger.error("No attachments were extracted successfully. Nothing to merge.")
            self._transition(result, PipelineState.FAILED, done, done, on_progress)
            result.error, result.error_code = "No documents could be extracted.", "EXTRACTION_FAILED"
            return result

        self._transition(result, PipelineState.MERGING, done, done, on_progress)
        try:
            result.merge_result = self.merge_engine.merge(result.units)
        except MergeFailure as e:
            self.logger.error(f"Merge failed: {e}")
            result.merge_result = None
            result.error, result.error_code = e.message, e.code
            self._transition(result, PipelineState.FAILED, done, done, on_progress)
            return result

        result.error, result.error_code = None, None
        self._transition(result, PipelineState.DONE, done, done, on_progress)
        self.logger.info(f"Batch finished: {len(result.units)} extracted, {len(result.failed)} failed, "
                         f"{len(result.records)} person record(s).")
        return result

    def _process_attachment(self, attachment: Attachment, result: PipelineResult) -> Optional[ExtractionUnit]:
        document = self._attempt(
            lambda: self.ingester.extract_text(attachment.read(), attachment.filename),
            attachment.filename, result, retry_on=(RateLimited, LLMTimeout),
        )
        if document is None:
            return None
        classified = self.classifier.classify_document(document)
        return self._attempt(
            lambda: self.extractor.extract(classified, attachment.provenance),
            attachment.filename, result, retry_on=(LLMError,),
        )

    def _attempt(self, action: Callable[[], Any], filename: str, result: PipelineResult,
                 retry_on: Tuple[type, ...]) -> Optional[Any]:
        """
        Runs one step for an attachment with bounded retry.

        Errors in ``retry_on`` are retried after ``retry_delay``; once attempts
        run out, or on any other per-document error, the attachment is recorded
        as failed and None is returned. AuthExpired and PermissionRequired
        propagate and abort the batch.
        """
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return action()
            except (AuthExpired, PermissionRequired):
                raise
            except retry_on as e:
                if attempt == attempts:
                    self.logger.error(f"Giving up on {filename} after {attempts} attempts: {e}")
                    result.failed.append(FailedUnit(filename, e.message, e.code, attempt))
                    return None
                self.logger.warning(f"Processing {filename} failed ({e.code}). Retrying in {self.retry_delay:.0f}s.")
                self.sleep(self.retry_delay)
            except CosPortalError as e:
                self.logger.error(f"Skipping {filename}: {e}")
                result.failed.append(FailedUnit(filename, e.message, e.code, attempt))
                return None
        return None

    def _transition(self, result: PipelineResult, state: PipelineState, done: int, total: int,
                    on_progress: Optional[Callable[[PipelineState, int, int], None]]):
        self.state = state
        self.progress = (done, total)
        result.state = state
        self.logger.debug(f"Pipeline state: {state.value} ({done}/{total})")
        if on_progress:
            on_progress(state, done, total)
