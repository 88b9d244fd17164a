import logging
from typing import Dict, Any, List, Optional

from .errors import LLMError, MalformedResponse, MergeFailure, ValidationFailure
from .extraction import ExtractionUnit
from .llm import CompletionClient, parse_json_array
from .prompts import PromptBuilder, MERGE_SEPARATOR, MERGE_SYSTEM_PROMPT
from .schema import PROVENANCE_FIELDS, SHOW_DATE_FIELDS, canonicalize, has_complete_engagement, is_blank, display_name


class MergeResult:
    """Ordered per-person records plus the model's notes on missing critical fields."""
    def __init__(self, records: List[Dict[str, Any]], notes: str):
        self.records = records
        self.notes = notes

    def __repr__(self):
        return f"MergeResult(people={len(self.records)})"

    def to_dict(self) -> Dict[str, Any]:
        return {"mergedData": self.records, "notes": self.notes}


class MergeEngine:
    """
    Combines a batch of extraction units into one record per distinct person.

    The model does the reading; this class owns everything deterministic
    around it: response parsing, canonical field order, policy fields,
    provenance repair and the shared-itinerary join across co-listed artists.
    Unlike per-document extraction, a failure here is never masked.
    """
    def __init__(self, config: Dict[str, Any], client: Optional[CompletionClient] = None,
                 prompt_builder: Optional[PromptBuilder] = None):
        """
        Initializes the MergeEngine with the application's configuration.

        Args:
            config: The configuration dictionary from config.yaml.
            client: Completion client; built from config when omitted.
            prompt_builder: Prompt builder; built from config when omitted.
        """
        self.config = config.get('merge', {})
        self.model = self.config.get('model')
        self.client = client or CompletionClient(config)
        self.prompt_builder = prompt_builder or PromptBuilder(config)
        self.logger = logging.getLogger(__name__)

    def merge(self, units: List[ExtractionUnit]) -> MergeResult:
        """
        Runs the merge prompt over every unit and post-processes the answer.

        Args:
            units: Successfully extracted units of one batch.

        Returns:
            A MergeResult whose records are all canonical.

        Raises:
            ValidationFailure: No units were supplied.
            MergeFailure: The completion call failed or its answer was not valid JSON.
        """
        if not units:
            raise ValidationFailure("No documents provided for merging.")

        self.logger.info(f"Merging {len(units)} document(s): {[u.filename for u in units]}")
        prompt = self.prompt_builder.build_merge_prompt(units)

        try:
            response = self.client.complete(prompt, system_prompt=MERGE_SYSTEM_PROMPT, model=self.model)
        except LLMError as e:
            self.logger.error(f"Merge completion failed: {e}")
            raise MergeFailure(f"Failed to merge documents: {e}", code=e.code)

        raw_records, notes = self.parse_response(response)
        records = [canonicalize(r) for r in raw_records]
        self._repair_provenance(records, units)
        self._propagate_itinerary(records)

        for record in records:
            self.logger.debug(f"Merged record for {display_name(record)} (venue: '{record.get('venueAddress')}').")
        self.logger.info(f"Merge produced {len(records)} person record(s).")
        return MergeResult(records, notes)

    def parse_response(self, response: str):
        """
        Splits the completion on the notes separator and parses the JSON half.

        Raises:
            MergeFailure: The JSON half is not an array of objects.
        """
        json_part, _, notes_part = (response or "").partition(MERGE_SEPARATOR)
        try:
            records = parse_json_array(json_part)
        except MalformedResponse:
            self.logger.error("Failed to parse merge response as JSON.")
            raise MergeFailure("Failed to parse AI response.", raw_response=response or "", code="MALFORMED_RESPONSE")
        return records, notes_part.strip()

    def _repair_provenance(self, records: List[Dict[str, Any]], units: List[ExtractionUnit]):
        """Fills provenance the model dropped from the first unit that carries it."""
        source = None
        for unit in units:
            fields = unit.provenance_fields()
            if any(fields.values()):
                source = fields
                break
        if not source:
            return

        for record in records:
            for key in PROVENANCE_FIELDS:
                if is_blank(record.get(key)) and source.get(key):
                    record[key] = source[key]

    def _propagate_itinerary(self, records: List[Dict[str, Any]]):
        """
        Gives every person the dates and venue of the one complete itinerary record.

        Artists listed together on an itinerary share its engagement, so this
        deterministic join overrides the model's per-person guesses.
        """
        if len(records) < 2:
            return

        itinerary = next((r for r in records if has_complete_engagement(r)), None)
        if not itinerary:
            self.logger.warning("No complete itinerary record found. Keeping individual engagement data.")
            return

        self.logger.info(f"Applying itinerary dates and venue from {display_name(itinerary)} to all {len(records)} artists.")
        salary = itinerary.get("grossSalary")
        for record in records:
            for key in SHOW_DATE_FIELDS:
                record[key] = itinerary[key]
            record["venueAddress"] = itinerary["venueAddress"]
            if not is_blank(salary):
                record["grossSalary"] = salary
