from cos_portal.schema import (
    CONSTANT_FIELDS,
    FIELD_ORDER,
    PROVENANCE_FIELDS,
    canonicalize,
    display_name,
    has_complete_engagement,
    is_placeholder,
    missing_critical_fields,
    placeholder_record,
)


class TestCanonicalize:
    def test_every_field_present_in_order(self):
        record = canonicalize({"givenName": "Alice", "familyName": "Smith"})
        assert list(record.keys()) == FIELD_ORDER
        assert record["givenName"] == "Alice"
        assert record["passportNumber"] == ""

    def test_null_values_become_empty_strings(self):
        record = canonicalize({"givenName": None, "city": None})
        assert record["givenName"] == ""
        assert record["city"] == ""

    def test_constant_fields_are_forced(self):
        record = canonicalize({
            "jobTitle": "Drummer",
            "jobType": "Z999",
            "forEach": "HOUR",
            "totalWeeklyHours": "40",
            "certifyMaintenance": "N",
            "doesMigrantNeedToLeaveAndReenter": "N",
            "creativeCodeCompliance": "whatever",
        })
        for key, value in CONSTANT_FIELDS.items():
            assert record[key] == value

    def test_summary_rebuilt_from_country_of_birth(self):
        record = canonicalize({"countryOfBirth": "Germany", "summaryOfJobDescription": "Something else"})
        assert record["summaryOfJobDescription"].startswith("Internationally renowned touring DJ from Germany")

    def test_unknown_keys_dropped(self):
        record = canonicalize({"artistRole": "DJ", "givenName": "Bob"})
        assert "artistRole" not in record

    def test_provenance_kept_when_set(self):
        record = canonicalize({"sourceEmailId": "m1", "sourceEmailSubject": "", "sourceEmailFrom": None})
        assert record["sourceEmailId"] == "m1"
        assert "sourceEmailSubject" not in record
        assert "sourceEmailFrom" not in record


class TestPlaceholder:
    def test_placeholder_is_marked(self):
        record = placeholder_record()
        assert is_placeholder(record)
        assert record["nationality"] == "Unknown"
        assert set(FIELD_ORDER) <= set(record)

    def test_placeholder_never_has_engagement(self):
        assert not has_complete_engagement(placeholder_record())

    def test_real_record_is_not_placeholder(self):
        assert not is_placeholder(canonicalize({"nationality": "British", "passportNumber": "X1"}))

    def test_no_provenance_on_placeholder(self):
        record = placeholder_record()
        assert not any(k in record for k in PROVENANCE_FIELDS)

    def test_placeholder_summary_names_no_country(self):
        summary = placeholder_record()["summaryOfJobDescription"]
        assert summary.startswith("Internationally renowned touring DJ performing in the UK")
        assert " from " not in summary


class TestHelpers:
    def test_complete_engagement(self):
        record = canonicalize({
            "showDateStartDay": "01", "showDateStartMonth": "7", "showDateStartYear": "2025",
            "showDateEndDay": "05", "showDateEndMonth": "7", "showDateEndYear": "2025",
            "venueAddress": "O2 Arena, London",
        })
        assert has_complete_engagement(record)
        record["venueAddress"] = " "
        assert not has_complete_engagement(record)

    def test_missing_critical_fields_ignores_optional(self):
        missing = missing_critical_fields(canonicalize({"givenName": "Alice"}))
        assert "familyName" in missing
        assert "givenName" not in missing
        assert "otherNames" not in missing
        assert "county" not in missing

    def test_display_name(self):
        assert display_name({"givenName": "Alice", "familyName": "Smith"}) == "Alice Smith"
        assert display_name({}) == "Unknown"
