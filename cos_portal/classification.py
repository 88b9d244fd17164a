import logging
from enum import Enum
from typing import Dict, Any, List, Optional

from .ingestion import Document


class DocType(str, Enum):
    ITINERARY = "itinerary"
    DETAILS = "details"
    UNKNOWN = "unknown"


class ClassifiedDocument(Document):
    """Extends Document to include the document-type guess."""
    def __init__(self, document: Document, doc_type: DocType, method: str):
        super().__init__(document.filename, document.text, document.method, document.truncated)
        self.doc_type = doc_type
        self.classification_method = method

    def __repr__(self):
        return f"ClassifiedDocument(filename={self.filename}, type='{self.doc_type.value}', method='{self.classification_method}')"


class DocumentClassifier:
    """
    Guesses whether an attachment is a tour itinerary or an artist details sheet.

    Keyword rules are checked against the filename and the extracted text.
    Itinerary keywords take precedence; a document matching neither set is
    UNKNOWN rather than silently treated as a details sheet.
    """
    def __init__(self, config: Dict[str, Any]):
        """
        Initializes the DocumentClassifier with the application's configuration.

        Args:
            config: The configuration dictionary from config.yaml.
        """
        self.config = config.get('classification', {})
        self.logger = logging.getLogger(__name__)

    def classify(self, filename: str, text: str) -> DocType:
        doc_type, _ = self._classify(filename, text)
        return doc_type

    def classify_document(self, doc: Document) -> ClassifiedDocument:
        doc_type, method = self._classify(doc.filename, doc.text)
        return ClassifiedDocument(doc, doc_type, method)

    def _classify(self, filename: str, text: str):
        fn_lower = (filename or "").lower()
        text_lower = (text or "").lower()

        rules = [
            (DocType.ITINERARY, "itinerary_filename_keywords", "itinerary_content_keywords"),
            (DocType.DETAILS, "details_filename_keywords", "details_content_keywords"),
        ]
        for doc_type, filename_key, content_key in rules:
            method = self._match(fn_lower, text_lower, self.config.get(filename_key, []), self.config.get(content_key, []))
            if method:
                self.logger.debug(f"Classified {filename} as '{doc_type.value}' by {method}.")
                return doc_type, method

        self.logger.warning(f"Could not classify {filename}. Marking as 'unknown'.")
        return DocType.UNKNOWN, "failed"

    @staticmethod
    def _match(fn_lower: str, text_lower: str, filename_keywords: List[str], content_keywords: List[str]) -> Optional[str]:
        if any(kw in fn_lower for kw in filename_keywords):
            return "rules_filename"
        if any(kw in text_lower for kw in content_keywords):
            return "rules_content"
        return None
