import copy
import io
import json

import pytest
from docx import Document as DocxDocument

from cos_portal.config import DEFAULT_CONFIG
from cos_portal.prompts import MERGE_SEPARATOR


class FakeCompletionClient:
    """Returns queued responses in order; queued exceptions are raised."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def complete(self, prompt, system_prompt=None, model=None):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "model": model})
        if not self.responses:
            raise AssertionError("FakeCompletionClient ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def merge_response(records, notes="No critical information missing"):
    return f"{json.dumps(records)}\n{MERGE_SEPARATOR}\n{notes}"


def make_docx(paragraphs, table_rows=None):
    """Builds a real .docx file in memory."""
    doc = DocxDocument()
    for text in paragraphs:
        doc.add_paragraph(text)
    if table_rows:
        table = doc.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, row in enumerate(table_rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def config():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["database"]["url"] = "sqlite:///:memory:"
    cfg["storage"]["backend"] = "memory"
    cfg["admin_email"] = "admin@example.com"
    cfg["gmail"]["sponsor_email"] = "sponsor@example.com"
    cfg["gmail"]["sponsor_name"] = "Sam Sponsor"
    return cfg


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


@pytest.fixture
def no_sleep():
    """Collects requested delays instead of sleeping. Pass ``no_sleep.append`` as the sleep function."""
    return []
