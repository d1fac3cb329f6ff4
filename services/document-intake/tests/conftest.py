"""Shared test fixtures for document intake tests."""

import sys
from pathlib import Path

import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import IntakeFile  # noqa: E402


@pytest.fixture
def pdf_file() -> IntakeFile:
    return IntakeFile(
        filename="policy.pdf",
        content_type="application/pdf",
        content=b"%PDF-1.4\n% fake policy document\n",
    )


@pytest.fixture
def image_file() -> IntakeFile:
    return IntakeFile(
        filename="card.jpg",
        content_type="image/jpeg",
        content=b"\xff\xd8\xff\xe0fake-jpeg-bytes",
    )


@pytest.fixture
def scan_payload() -> dict:
    """Scan response for an insurance card, as the remote service sends it."""
    return {
        "documentType": "insurance_card",
        "suggestedDomain": "insurance",
        "suggestedAction": "Add to insurance policies",
        "confidence": 0.91,
        "text": "ACME HEALTH\nMember ID: ABC123456\nValid thru 03/26\nCopay $25.00",
        "enhancedData": {
            "documentTitle": "ACME Health Insurance Card",
            "summary": "Health insurance card for John Doe",
            "fields": {
                "memberId": {
                    "label": "Member ID",
                    "value": "ABC123456",
                    "confidence": 0.95,
                    "fieldType": "text",
                },
                "holderName": {
                    "value": "John Doe",
                    "confidence": 0.62,
                    "fieldType": "text",
                },
                "copay": {
                    "label": "Copay",
                    "value": 25,
                    "confidence": 0.4,
                    "fieldType": "currency",
                },
            },
            "allDatesFound": [],
            "allNumbersFound": ["ABC123456", 25],
            "allNamesFound": ["John Doe"],
        },
    }


@pytest.fixture
def policy_text() -> str:
    return (
        "ACME Insurance Company\n"
        "Policy Number: P-99812\n"
        "Effective date: 01/01/2020\n"
        "Expiration: 12/31/2027\n"
    )
