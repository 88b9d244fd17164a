"""
Canonical shape of a Certificate of Sponsorship applicant record.

The field order mirrors the sponsorship form, so records copied out of the
portal paste straight into it. Business-policy fields are fixed here and
overwritten on every record regardless of what a document or model says.
"""

from typing import Dict, Any, List

FIELD_ORDER: List[str] = [
    "familyName", "givenName", "otherNames", "nationality", "placeOfBirth", "countryOfBirth",
    "birthDay", "birthMonth", "birthYear", "sex", "countryOfResidence", "passportNumber",
    "passportIssueDay", "passportIssueMonth", "passportIssueYear", "passportExpiryDay",
    "passportExpiryMonth", "passportExpiryYear", "placeOfIssueOfPassport", "address",
    "addressLine2", "addressLine3", "city", "county", "postcode", "country", "ukIdCardNumber",
    "ukNationalInsuranceNumber", "nationalIdCardNumber", "employeeNumber", "showDateStartDay",
    "showDateStartMonth", "showDateStartYear", "showDateEndDay", "showDateEndMonth",
    "showDateEndYear", "doesMigrantNeedToLeaveAndReenter", "totalWeeklyHours", "addPWSAddress",
    "addWSAddress", "jobTitle", "jobType", "summaryOfJobDescription", "forEach", "grossSalary",
    "grossAllowances", "allowanceDetails", "creativeCodeCompliance", "certifyMaintenance", "venueAddress",
]

PROVENANCE_FIELDS = ("sourceEmailId", "sourceEmailSubject", "sourceEmailFrom")

CONSTANT_FIELDS: Dict[str, str] = {
    "doesMigrantNeedToLeaveAndReenter": "Y",
    "totalWeeklyHours": "2",
    "addPWSAddress": "",
    "addWSAddress": "",
    "jobTitle": "Touring DJ",
    "jobType": "X3145",
    "forEach": "PERF",
    "grossAllowances": "",
    "allowanceDetails": "",
    "creativeCodeCompliance": "Creative Sector - Live Music - No Code of Conduct",
    "certifyMaintenance": "Y",
}

SUMMARY_TEMPLATE = (
    "Internationally renowned touring DJ from {country} performing in the UK "
    "as part of international tour. No impact on resident labor."
)
PLACEHOLDER_SUMMARY = (
    "Internationally renowned touring DJ performing in the UK "
    "as part of international tour. No impact on resident labor."
)

# Fields the merge notes may report as missing. Everything in
# IGNORED_FIELDS must never be reported.
CRITICAL_FIELDS: List[str] = [
    "familyName", "givenName", "nationality", "placeOfBirth", "countryOfBirth",
    "birthDay", "birthMonth", "birthYear", "sex", "countryOfResidence",
    "passportNumber", "passportIssueDay", "passportIssueMonth", "passportIssueYear",
    "passportExpiryDay", "passportExpiryMonth", "passportExpiryYear", "placeOfIssueOfPassport",
    "address", "city", "postcode", "country",
    "showDateStartDay", "showDateStartMonth", "showDateStartYear",
    "showDateEndDay", "showDateEndMonth", "showDateEndYear",
    "grossSalary", "venueAddress",
]

IGNORED_FIELDS: List[str] = [
    "otherNames", "addressLine2", "addressLine3", "county", "ukIdCardNumber",
    "ukNationalInsuranceNumber", "nationalIdCardNumber", "employeeNumber",
    "addPWSAddress", "addWSAddress", "grossAllowances", "allowanceDetails",
]

SHOW_DATE_FIELDS = (
    "showDateStartDay", "showDateStartMonth", "showDateStartYear",
    "showDateEndDay", "showDateEndMonth", "showDateEndYear",
)

# Marker values for records fabricated when per-document extraction fails.
PLACEHOLDER_NATIONALITY = "Unknown"
PLACEHOLDER_PASSPORT = "UNKNOWN123"


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def summary_for(country: str) -> str:
    return SUMMARY_TEMPLATE.format(country=country or "")


def canonicalize(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Re-emits a record in canonical field order with policy fields enforced.

    Missing or null fields become empty strings. Keys outside the canonical
    order are dropped, except provenance fields which are carried over when set.
    """
    ordered = {}
    for key in FIELD_ORDER:
        value = record.get(key)
        ordered[key] = "" if value is None else value

    ordered.update(CONSTANT_FIELDS)
    ordered["summaryOfJobDescription"] = summary_for(str(ordered.get("countryOfBirth") or ""))

    for key in PROVENANCE_FIELDS:
        if not is_blank(record.get(key)):
            ordered[key] = record[key]
    return ordered


def placeholder_record() -> Dict[str, Any]:
    """The stand-in record used when per-document extraction cannot produce data."""
    record = canonicalize({
        "familyName": "Unknown",
        "givenName": "Artist",
        "nationality": PLACEHOLDER_NATIONALITY,
        "countryOfBirth": "Unknown",
        "passportNumber": PLACEHOLDER_PASSPORT,
    })
    record["summaryOfJobDescription"] = PLACEHOLDER_SUMMARY
    return record


def is_placeholder(record: Dict[str, Any]) -> bool:
    return (record.get("nationality") == PLACEHOLDER_NATIONALITY
            and record.get("passportNumber") == PLACEHOLDER_PASSPORT)


def has_complete_engagement(record: Dict[str, Any]) -> bool:
    """True when the full show date range and a venue are all present."""
    return all(not is_blank(record.get(f)) for f in SHOW_DATE_FIELDS) and not is_blank(record.get("venueAddress"))


def missing_critical_fields(record: Dict[str, Any]) -> List[str]:
    return [f for f in CRITICAL_FIELDS if is_blank(record.get(f))]


def display_name(record: Dict[str, Any]) -> str:
    return " ".join(str(record.get(k) or "").strip() for k in ("givenName", "familyName")).strip() or "Unknown"
