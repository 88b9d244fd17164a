import pytest

from cos_portal.classification import DocType
from cos_portal.errors import LLMTimeout, MergeFailure, RateLimited, ValidationFailure
from cos_portal.extraction import ExtractionUnit, Provenance
from cos_portal.merge import MergeEngine
from cos_portal.prompts import MERGE_SYSTEM_PROMPT
from cos_portal.schema import CONSTANT_FIELDS, FIELD_ORDER

from .conftest import merge_response

ENGAGEMENT = {
    "showDateStartDay": "01", "showDateStartMonth": "7", "showDateStartYear": "2025",
    "showDateEndDay": "05", "showDateEndMonth": "7", "showDateEndYear": "2025",
    "venueAddress": "O2 Arena, London",
}


def itinerary_and_details_units():
    return [
        ExtractionUnit(
            "tour_itinerary.pdf",
            "Artists: Alice Smith, Bob Jones. Venue: O2 Arena, London. 1-5 August 2025.",
            DocType.ITINERARY,
            [],
            provenance=Provenance("msg-42", "CoS for August", "Agent <agent@example.com>"),
        ),
        ExtractionUnit(
            "alice_details.docx",
            "Alice Smith. Passport number X1234567.",
            DocType.DETAILS,
            [{"givenName": "Alice", "familyName": "Smith", "passportNumber": "X1234567"}],
        ),
    ]


class TestMergeEngine:
    def test_uses_merge_model_and_prompt(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice"}]))
        MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        call = fake_client.calls[0]
        assert call["model"] == "gpt-4o"
        assert call["system_prompt"] == MERGE_SYSTEM_PROMPT
        assert "tour_itinerary.pdf:" in call["prompt"]

    def test_itinerary_and_details_scenario(self, config, fake_client):
        fake_client.queue(merge_response([
            {"givenName": "Alice", "familyName": "Smith", "passportNumber": "X1234567", **ENGAGEMENT},
            {"givenName": "Bob", "familyName": "Jones", "venueAddress": "Somewhere else", "showDateStartDay": "09"},
        ], notes="Bob Jones: passportNumber missing"))

        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())

        assert len(result.records) == 2
        alice, bob = result.records
        for record in (alice, bob):
            assert record["venueAddress"] == "O2 Arena, London"
            assert record["showDateStartDay"] == "01"
            assert record["showDateStartMonth"] == "7"
            assert record["showDateEndDay"] == "05"
        assert alice["passportNumber"] == "X1234567"
        assert bob["passportNumber"] == ""
        assert result.notes == "Bob Jones: passportNumber missing"

    def test_field_completeness_and_constants(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice", "jobTitle": "Singer", "forEach": "WEEK"}]))
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        record = result.records[0]
        assert all(key in record for key in FIELD_ORDER)
        for key, value in CONSTANT_FIELDS.items():
            assert record[key] == value

    def test_provenance_repaired_from_first_unit(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice"}, {"givenName": "Bob"}]))
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        for record in result.records:
            assert record["sourceEmailId"] == "msg-42"
            assert record["sourceEmailSubject"] == "CoS for August"
            assert record["sourceEmailFrom"] == "Agent <agent@example.com>"

    def test_provenance_from_model_is_kept(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice", "sourceEmailId": "msg-7"}]))
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert result.records[0]["sourceEmailId"] == "msg-7"
        assert result.records[0]["sourceEmailSubject"] == "CoS for August"

    def test_provenance_from_unit_records(self, config, fake_client):
        units = [ExtractionUnit("a.pdf", "text", DocType.DETAILS, [{"sourceEmailId": "rec-1"}])]
        fake_client.queue(merge_response([{"givenName": "Alice"}]))
        result = MergeEngine(config, client=fake_client).merge(units)
        assert result.records[0]["sourceEmailId"] == "rec-1"

    def test_salary_propagates_only_when_present(self, config, fake_client):
        fake_client.queue(merge_response([
            {"givenName": "Alice", **ENGAGEMENT, "grossSalary": "1500"},
            {"givenName": "Bob", "grossSalary": "900"},
        ]))
        alice, bob = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units()).records
        assert bob["grossSalary"] == "1500"

        fake_client.queue(merge_response([
            {"givenName": "Alice", **ENGAGEMENT, "grossSalary": ""},
            {"givenName": "Bob", "grossSalary": "900"},
        ]))
        alice, bob = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units()).records
        assert bob["grossSalary"] == "900"

    def test_no_complete_itinerary_keeps_individual_dates(self, config, fake_client):
        fake_client.queue(merge_response([
            {"givenName": "Alice", "venueAddress": "Venue A"},
            {"givenName": "Bob", "venueAddress": "Venue B"},
        ]))
        alice, bob = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units()).records
        assert alice["venueAddress"] == "Venue A"
        assert bob["venueAddress"] == "Venue B"

    def test_single_record_untouched(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice", "venueAddress": "Venue A"}]))
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert result.records[0]["venueAddress"] == "Venue A"

    def test_single_object_response_accepted(self, config, fake_client):
        fake_client.queue('{"givenName": "Alice"}\n---NOTES---\nAll good')
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert len(result.records) == 1
        assert result.notes == "All good"

    def test_missing_separator_gives_empty_notes(self, config, fake_client):
        fake_client.queue('[{"givenName": "Alice"}]')
        result = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert result.notes == ""

    def test_malformed_response_is_hard_failure(self, config, fake_client):
        fake_client.queue("Sorry, I cannot help with that.\n---NOTES---\nnothing")
        with pytest.raises(MergeFailure) as exc:
            MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert exc.value.code == "MALFORMED_RESPONSE"
        assert "Sorry" in exc.value.raw_response

    @pytest.mark.parametrize("error, code", [(RateLimited("slow"), "RATE_LIMITED"), (LLMTimeout("late"), "TIMEOUT")])
    def test_completion_errors_become_merge_failures(self, config, fake_client, error, code):
        fake_client.queue(error)
        with pytest.raises(MergeFailure) as exc:
            MergeEngine(config, client=fake_client).merge(itinerary_and_details_units())
        assert exc.value.code == code

    def test_no_units_rejected(self, config, fake_client):
        with pytest.raises(ValidationFailure):
            MergeEngine(config, client=fake_client).merge([])
        assert fake_client.calls == []

    def test_to_dict(self, config, fake_client):
        fake_client.queue(merge_response([{"givenName": "Alice"}], notes="n"))
        data = MergeEngine(config, client=fake_client).merge(itinerary_and_details_units()).to_dict()
        assert set(data) == {"mergedData", "notes"}
        assert data["notes"] == "n"
