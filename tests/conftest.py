"""Test configuration and shared fixtures. Fakes for providers and stores live in fakes.py."""

import pytest

from ingestion.models import PageContent
from storage.database import Database


@pytest.fixture
def database(tmp_path):
    """Fresh SQLite database per test."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def manual_pages():
    """Three pages of a small technical manual."""
    return [
        PageContent(page_number=1, text=(
            "1 Introduction\n"
            "This manual describes the installation of the pump assembly. "
            "Read every section before starting work."
        )),
        PageContent(page_number=2, text=(
            "2 Installation\n"
            "Procedure: prepare the site before mounting the pump.\n"
            "2.1 Preparation\n"
            "1. Remove the cover plate.\n"
            "2. Disconnect the power supply.\n"
            "3. Check the seals for wear.\n"
            "See Section 3 for maintenance intervals."
        )),
        PageContent(page_number=3, text=(
            "3 Maintenance\n"
            "Inspect the pump every six months. Replace the seals when worn."
        )),
    ]
