"""
Prompt construction for the completion service.

Two kinds of prompt are built here: a per-document extraction prompt whose
wording depends on the document-type guess, and a single merge prompt that
sees every document of a batch at once. Both are pure string building.
"""

import json
from typing import Dict, Any, List, Sequence

from .classification import DocType
from .schema import FIELD_ORDER, CONSTANT_FIELDS, CRITICAL_FIELDS, IGNORED_FIELDS, SUMMARY_TEMPLATE

MERGE_SEPARATOR = "---NOTES---"

EXTRACTION_SYSTEM_PROMPT = (
    "You are a visa form data extraction specialist. Extract only the information explicitly "
    "provided in the document. Return ONLY valid JSON, no other text."
)

MERGE_SYSTEM_PROMPT = "You are a professional document extraction specialist. Return only valid JSON arrays."

ITINERARY_FIELDS = [
    "familyName", "givenName", "nationality", "countryOfBirth", "artistRole",
    "showDateStartDay", "showDateStartMonth", "showDateStartYear",
    "showDateEndDay", "showDateEndMonth", "showDateEndYear",
    "grossSalary", "venueAddress",
]

DATE_RULES = """DATE RULES:
- Every date is split into three string fields: day, month and year
- Days use two digits: "01", "02", ... "31"
- Months are ZERO-INDEXED: January="0", February="1", March="2", April="3", May="4", June="5", July="6", August="7", September="8", October="9", November="10", December="11"
- Numeric months written 1-12 must be shifted down by one (8 -> "7"); months already written 0-11 are kept
- Written dates are converted, e.g. "25th Nov 2024" -> day="25", month="10", year="2024"
- American dates (MM/DD/YYYY) must be recognised and converted
- If the year is not mentioned, assume {default_year}
- Single-day performances use the same date for start and end; for several dates use the first as start and the last as end"""

VALUE_RULES = """VALUE RULES:
- Strip currency symbols and codes (£, $, €, USD, GBP, AF) from salary figures; grossSalary is an integer amount only
- AF means Artist Fee: extract the number only
- Extract REAL names (not stage names) for familyName, givenName and otherNames
- Keep every text value on a single line
- If a value cannot be found, leave it as an empty string "". NEVER guess or invent values"""


def _schema_block(fields: Sequence[str], with_constants: bool = False) -> str:
    template = {}
    for name in fields:
        template[name] = CONSTANT_FIELDS.get(name, "") if with_constants else ""
    if with_constants and "summaryOfJobDescription" in template:
        template["summaryOfJobDescription"] = SUMMARY_TEMPLATE.format(country="[COUNTRY]")
    return json.dumps([template], indent=2)


class PromptBuilder:
    """Builds extraction and merge prompts embedding the sponsorship form schema."""

    def __init__(self, config: Dict[str, Any]):
        self.default_year = str(config.get('merge', {}).get('default_year', '2025'))

    def build_extraction_prompt(self, text: str, doc_type: DocType) -> str:
        """
        Builds the per-document prompt for one attachment.

        Args:
            text: Extracted document text (already truncated).
            doc_type: The classifier's guess for this document.

        Returns:
            The complete instruction string.
        """
        date_rules = DATE_RULES.format(default_year=self.default_year)

        if doc_type == DocType.ITINERARY:
            return f"""Extract key information from this artist itinerary document. Return ONLY a JSON array with this structure:

{_schema_block(ITINERARY_FIELDS)}

RULES:
- Extract every artist named in the itinerary, one object per person
- Record the artist role if stated: "DJ", "Musician", "Band Member", "Tour Manager", "Sound Engineer", "Lighting Technician"
- The venue address is the full address of the venue where the event takes place
- All artists listed in this itinerary work the same dates and venue
{date_rules}
{VALUE_RULES}

DOCUMENT TEXT:
{text}

Return ONLY the JSON array, no other text."""

        if doc_type == DocType.DETAILS:
            focus = """RULES FOR ARTIST DETAILS:
- PRIORITY: extract PERSONAL DETAILS (names, nationality, passport, birth details, home address)
- Do NOT extract a venue address from a details document; venues come from itineraries
- Leave event dates blank when absent; they are merged in from the itinerary later"""
        else:
            focus = """RULES FOR AN UNCLASSIFIED DOCUMENT:
- The document type could not be determined; it may hold personal details, an itinerary, or both
- Extract personal details and any event dates, fees and venue address that are explicitly stated
- Only fill venueAddress when the text clearly names the venue of a performance"""

        return f"""You are a visa form data extraction specialist. Extract information from this Certificate of Sponsorship document and return ONLY valid JSON.

CRITICAL RULES:
1. ONLY extract information explicitly provided in the document
2. NEVER make assumptions or fill in missing information
3. Leave fields BLANK ("") if information is not provided
4. Return ONLY a JSON array with one object per person, no other text

REQUIRED JSON FORMAT:
{_schema_block(FIELD_ORDER, with_constants=True)}

{focus}
{date_rules}
{VALUE_RULES}

DOCUMENT TEXT:
{text}

Return ONLY the JSON array, no other text."""

    def build_merge_prompt(self, units: List[Any]) -> str:
        """
        Builds the single prompt that combines every document of a batch.

        Args:
            units: Extraction units exposing filename, doc_type, text and records.

        Returns:
            The complete instruction string.
        """
        combined_text = combine_texts(units)
        hints = []
        for unit in units:
            hints.append(f"- {unit.filename}: {unit.doc_type.value}")
            if unit.records:
                hints.append(f"  pre-extracted fields: {json.dumps(unit.records, ensure_ascii=False)}")

        return f"""You are a visa form data extraction specialist. Extract and MERGE information from ALL provided documents for a UK Certificate of Sponsorship form.

MERGING RULES:
1. Read ALL documents and identify how many distinct people appear
2. Output an ARRAY with exactly one JSON object per person
3. Take each field from whichever document contains it
4. Artists mentioned together in the same itinerary work the same gigs: identical dates, venue address and gross salary

DOCUMENT TYPE DETECTION:
- ITINERARY documents contain tour schedules, event dates, venue addresses and performance details
- ARTIST DETAILS documents contain personal information, passport details, birth information and home addresses

VENUE ADDRESS PRIORITY:
- The venue address ALWAYS comes from an ITINERARY document
- If a details document mentions a venue, IGNORE it in favour of the itinerary venue
- The venue address is the full address where the event takes place

{DATE_RULES.format(default_year=self.default_year)}
{VALUE_RULES}

DOCUMENT CLASSIFICATION HINTS:
{chr(10).join(hints)}

REQUIRED OUTPUT FORMAT (ARRAY OF OBJECTS):
{_schema_block(FIELD_ORDER, with_constants=True)}

NOTES REQUIREMENTS:
Only report missing information for these CRITICAL fields:
{", ".join(CRITICAL_FIELDS)}

NEVER report these as missing: {", ".join(IGNORED_FIELDS)}

OUTPUT REQUIREMENTS:
1. Return the JSON array first (no code block markers)
2. Then output the separator line: {MERGE_SEPARATOR}
3. Then list ONLY missing CRITICAL information, as concisely as possible
4. If all critical fields are present, write "No critical information missing"
5. All text values must be single lines and the JSON must be valid

DOCUMENT TEXT:
{combined_text}
"""


def combine_texts(units: List[Any]) -> str:
    """Concatenates every unit's raw text with filename separators."""
    parts = []
    for unit in units:
        if unit.text:
            parts.append(f"\n---\n{unit.filename}:\n{unit.text}")
    return "".join(parts)
