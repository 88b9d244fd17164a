import logging
from typing import Dict, Any, List, Optional

from .classification import ClassifiedDocument, DocType
from .errors import MalformedResponse, UpstreamError
from .llm import CompletionClient, parse_json_array
from .prompts import PromptBuilder, EXTRACTION_SYSTEM_PROMPT
from .schema import PROVENANCE_FIELDS, placeholder_record


class Provenance:
    """Where an attachment came from. Carried onto every record it yields."""
    def __init__(self, email_id: Optional[str] = None, subject: Optional[str] = None, sender: Optional[str] = None):
        self.email_id = email_id
        self.subject = subject
        self.sender = sender

    def as_fields(self) -> Dict[str, Optional[str]]:
        return dict(zip(PROVENANCE_FIELDS, (self.email_id or None, self.subject or None, self.sender or None)))

    def is_empty(self) -> bool:
        return not (self.email_id or self.subject or self.sender)

    def stamp(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """A copy of record with the known provenance values set. Unknown ones are left alone."""
        return {**record, **{k: v for k, v in self.as_fields().items() if v}}


class ExtractionUnit:
    """
    One attachment's extraction result: its text, type guess and partial records.

    ``placeholder_used`` is set when the records are the fabricated stand-in
    rather than real extracted data; ``error`` holds the reason.
    """
    def __init__(self, filename: str, text: str, doc_type: DocType, records: List[Dict[str, Any]],
                 provenance: Optional[Provenance] = None, placeholder_used: bool = False,
                 error: Optional[str] = None):
        self.filename = filename
        self.text = text
        self.doc_type = doc_type
        self.records = records
        self.provenance = provenance or Provenance()
        self.placeholder_used = placeholder_used
        self.error = error

    def __repr__(self):
        status = "placeholder" if self.placeholder_used else "success"
        return f"ExtractionUnit(filename={self.filename}, type='{self.doc_type.value}', people={len(self.records)}, status='{status}')"

    def provenance_fields(self) -> Dict[str, Optional[str]]:
        """Provenance from the unit itself, falling back to its first record."""
        fields = self.provenance.as_fields()
        if self.records:
            first = self.records[0]
            for key in PROVENANCE_FIELDS:
                if not fields[key] and first.get(key):
                    fields[key] = first[key]
        return fields

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "docType": self.doc_type.value,
            "extractedText": self.text,
            "extractedData": self.records,
            "peopleFound": len(self.records),
            "placeholderUsed": self.placeholder_used,
            "error": self.error,
            "emailId": self.provenance.email_id,
            "emailSubject": self.provenance.subject,
            "emailFrom": self.provenance.sender,
        }


class DocumentExtractor:
    """
    Extracts partial applicant records from one document with a single completion call.

    When the model's answer cannot be used, the extractor either substitutes
    the placeholder record (``extraction.placeholder_on_failure``, the default)
    or re-raises. Rate limits and timeouts are always re-raised so the batch
    loop can back off and retry.
    """
    def __init__(self, config: Dict[str, Any], client: Optional[CompletionClient] = None,
                 prompt_builder: Optional[PromptBuilder] = None):
        """
        Initializes the DocumentExtractor with the application's configuration.

        Args:
            config: The configuration dictionary from config.yaml.
            client: Completion client; built from config when omitted.
            prompt_builder: Prompt builder; built from config when omitted.
        """
        self.config = config.get('extraction', {})
        self.placeholder_on_failure = bool(self.config.get('placeholder_on_failure', True))
        self.client = client or CompletionClient(config)
        self.prompt_builder = prompt_builder or PromptBuilder(config)
        self.logger = logging.getLogger(__name__)

    def extract(self, doc: ClassifiedDocument, provenance: Optional[Provenance] = None) -> ExtractionUnit:
        """
        Extracts records from a classified document.

        Args:
            doc: The document with its type guess.
            provenance: Source email details stamped onto every record.

        Returns:
            An ExtractionUnit. Its records are never empty.

        Raises:
            RateLimited, LLMTimeout: Always propagated for the caller to retry.
            MalformedResponse, UpstreamError: Only when placeholder substitution is disabled.
        """
        provenance = provenance or Provenance()
        prompt = self.prompt_builder.build_extraction_prompt(doc.text, doc.doc_type)

        placeholder_used, error = False, None
        try:
            response = self.client.complete(prompt, system_prompt=EXTRACTION_SYSTEM_PROMPT)
            records = parse_json_array(response)
            if not records:
                raise MalformedResponse("Completion returned an empty array.", raw_response=response)
        except (MalformedResponse, UpstreamError) as e:
            if not self.placeholder_on_failure:
                raise
            self.logger.warning(f"Extraction failed for {doc.filename}: {e}. Substituting placeholder record.")
            records, placeholder_used, error = [placeholder_record()], True, str(e)

        stamped = [provenance.stamp(record) for record in records]
        self.logger.info(f"Extracted {len(stamped)} person(s) from {doc.filename}.")
        return ExtractionUnit(
            filename=doc.filename,
            text=doc.text,
            doc_type=doc.doc_type,
            records=stamped,
            provenance=provenance,
            placeholder_used=placeholder_used,
            error=error,
        )
