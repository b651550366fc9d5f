"""Rule-based single-document KYC agent.

No LLM involved. Each document goes through:
1. OCR via the configured TextExtractor
2. Document type detection (Aadhaar, PAN, passport, ...)
3. Regex extraction of the standard KYC fields, plus father's name
   for PAN cards and gender for Aadhaar cards
Optionally the license photo is compared with a selfie.
"""

import asyncio
import re
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Iterable, Callable

from .face_matching import FaceMatcher, FaceMatchOutcome
from .interfaces import TextExtractor
from .verification import RawDocument

logger = logging.getLogger(__name__)


STATUS_NO_DOCUMENTS = "At least one document is required"
STATUS_NO_TEXT = "Could not extract text from any document. Please ensure the documents are clear and readable."

AADHAAR_CARD = "Aadhar Card"
PAN_CARD = "PAN Card"
PASSPORT = "Passport"
DRIVERS_LICENSE = "Driver's License"
NATIONAL_ID_CARD = "National ID Card"
IDENTITY_DOCUMENT = "Identity Document"
UNKNOWN_DOCUMENT = "Unknown"

# A document with fewer fields than this is reported as incomplete
MIN_FIELDS_FOUND = 3

_I = re.IGNORECASE
_IM = re.IGNORECASE | re.MULTILINE

AADHAAR_NUMBER = re.compile(r"\d{4}\s?\d{4}\s?\d{4}")
PAN_NUMBER = re.compile(r"[A-Z]{5}\d{4}[A-Z]", _I)
PAN_NUMBER_EXACT = re.compile(r"^[A-Z]{5}\d{4}[A-Z]$")

AADHAAR_MARKERS = (
    "AADHAAR", "AADHAR", "GOVERNMENT OF INDIA", "GOVERNMENTOFINDIA", "UIDAI",
    "UNIQUE IDENTIFICATION", "UNIQUEIDENTIFICATION", "BHARAT SARKAR",
)
# Devanagari: Bharat, Aadhaar, Sarkar, Pehchaan
AADHAAR_SCRIPT_MARKERS = ("भारत", "आधार", "सरकार", "पहचान")
INDIAN_DOCUMENT_HINTS = ("GOVERNMENT", "INDIA", "DOB", "MALE", "FEMALE")
# Devanagari: birth, male, female
INDIAN_SCRIPT_HINTS = ("जन्म", "पुरुष", "महिला")
PAN_MARKERS = re.compile(r"PERMANENT ACCOUNT NUMBER|\bPAN\b|INCOME TAX DEP(?:ARTMENT|TT?)\b")

# "Name" right after "Father" labels the father, not the holder
_NAME_LABEL = r"(?<!Father's )(?<!Father )\b(?:Full Name|Name of Applicant|Name)"
_FATHER_LABEL = r"\b(?:Father's Name|Father Name|Father)"

NAME_PATTERNS = [
    re.compile(_NAME_LABEL + r"[\s:]+([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+)", _IM),
    re.compile(_NAME_LABEL + r"[\s:]+([A-Z][A-Z \t]{2,49})", _IM),
    # Title-case line with no label
    re.compile(r"^([A-Z][a-z]+[ \t]+[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)?)[ \t]*$", re.MULTILINE),
]

FATHER_NAME_PATTERNS = [
    re.compile(_FATHER_LABEL + r"[\s:]+([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+)", _IM),
    re.compile(_FATHER_LABEL + r"[\s:]+([A-Z][A-Z \t]{4,49})", _IM),
]

AADHAAR_ID_PATTERNS = [
    re.compile(r"\b(?:Aadhaar|Aadhar|आधार)(?:[ \t]+(?:No\.?|Number))?[\s:]+(\d{4}[\s-]?\d{4}[\s-]?\d{4})", _IM),
    re.compile(r"(\d{4}\s?\d{4}\s?\d{4})"),
]

PAN_ID_PATTERNS = [
    re.compile(r"\b(?:Permanent Account Number|PAN(?:[ \t]+(?:Number|No\.?))?)[\s:]+([A-Z]{5}\s?\d{4}\s?[A-Z])", _IM),
    re.compile(r"\b([A-Z]{5}\d{4}[A-Z])\b", _I),
]

GENERIC_ID_PATTERNS = [
    re.compile(r"\b(?:ID Number|ID No\.?|IDNO|Passport Number|Passport No\.?|Passport|ID)[\s:#]+([A-Z0-9]{6,20})\b", _IM),
    re.compile(r"\b([A-Z]{1,3}[0-9]{6,15})\b", _I),
]

_DATE = r"\d{1,2}[/-]\d{1,2}[/-]\d{2,4}"
_LONG_DATE = r"\d{1,2}[ \t]+[A-Za-z]+[ \t]+\d{4}"

DOB_PATTERNS = [
    re.compile(r"\b(?:DOB|Date of Birth|Birth Date)[\s:]+(" + _DATE + r")", _IM),
    re.compile(r"\b(?:DOB|Date of Birth|Birth Date)[\s:]+(" + _LONG_DATE + r")", _IM),
    re.compile(r"(" + _DATE + r")"),
]

EXPIRY_PATTERNS = [
    re.compile(r"\b(?:Expiry|Expires|Valid Until)(?:[ \t]+Date)?[\s:]+(" + _DATE + r")", _IM),
    re.compile(r"\b(?:Expiry|Expires|Valid Until)(?:[ \t]+Date)?[\s:]+(" + _LONG_DATE + r")", _IM),
]

NATIONALITY_PATTERNS = [
    re.compile(r"\b(?:Nationality|Country(?:[ \t]+of[ \t]+Issue)?)[\s:]+([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)?)", _IM),
    re.compile(r"\b(?:Nationality|Country(?:[ \t]+of[ \t]+Issue)?)[\s:]+([A-Z]{2,3})\b", _IM),
]

ADDRESS_PATTERNS = [
    # Multi-line block ending at a blank line or the next "LABEL:" line
    re.compile(r"\b(?:Address of Applicant|Address)[\s:]+(.+?)(?:\n[ \t]*\n|\n[A-Z][A-Za-z' ]{1,30}:|\Z)", _IM | re.DOTALL),
    re.compile(r"\b(?:Address of Applicant|Address)[\s:]+([A-Z0-9 \t,./#-]{10,150})", _IM),
]

GENDER_PATTERN = re.compile(r"\b(?:Gender|Sex)[\s:]+(Male|Female|M/F|M|F)\b", _IM)
GENDERS = {"M": "Male", "MALE": "Male", "F": "Female", "FEMALE": "Female"}


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def _first_match(
    patterns: Iterable[re.Pattern],
    text: str,
    clean: Callable[[str], str] = _collapse,
    accept: Callable[[str], bool] = bool,
) -> Optional[str]:
    """Return the first cleaned capture that passes `accept`, trying patterns in order."""
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = clean(match.group(1))
            if accept(value):
                return value
    return None


def _is_name(value: str) -> bool:
    return 3 < len(value) < 100


def detect_document_type(text: str) -> str:
    """Classify OCR text by issuer markers and ID number shapes."""
    if not text or not text.strip():
        return UNKNOWN_DOCUMENT

    upper = text.upper()
    has_aadhaar_number = AADHAAR_NUMBER.search(text) is not None

    if has_aadhaar_number and (
        any(marker in upper for marker in AADHAAR_MARKERS)
        or any(marker in text for marker in AADHAAR_SCRIPT_MARKERS)
    ):
        return AADHAAR_CARD

    if has_aadhaar_number and (
        any(hint in upper for hint in INDIAN_DOCUMENT_HINTS)
        or any(hint in text for hint in INDIAN_SCRIPT_HINTS)
    ):
        return AADHAAR_CARD

    # OCR often loses the labels; a bare 12-digit number still reads as Aadhaar
    if has_aadhaar_number and not PAN_NUMBER.search(text):
        return AADHAAR_CARD

    if PAN_MARKERS.search(upper) or PAN_NUMBER.search(text):
        return PAN_CARD

    if "PASSPORT" in upper:
        return PASSPORT

    if "DRIVER" in upper and ("LICENSE" in upper or "LICENCE" in upper):
        return DRIVERS_LICENSE

    if "NATIONAL ID" in upper or "ID CARD" in upper:
        return NATIONAL_ID_CARD

    if re.search(r"\bID\b|IDENTITY", upper):
        return IDENTITY_DOCUMENT

    return UNKNOWN_DOCUMENT


def extract_name(text: str) -> Optional[str]:
    return _first_match(NAME_PATTERNS, text, accept=_is_name)


def extract_father_name(text: str) -> Optional[str]:
    return _first_match(FATHER_NAME_PATTERNS, text, accept=_is_name)


def extract_id_number(text: str, document_type: str) -> Optional[str]:
    """
    Aadhaar numbers come back grouped as "XXXX XXXX XXXX", PAN numbers
    upper-cased. Anything else, or a card whose own number is unreadable,
    falls back to generic passport/ID patterns.
    """
    if document_type == AADHAAR_CARD:
        digits = _first_match(
            AADHAAR_ID_PATTERNS,
            text,
            clean=lambda value: re.sub(r"[\s-]", "", value),
            accept=lambda value: len(value) == 12 and value.isdigit(),
        )
        if digits:
            return f"{digits[:4]} {digits[4:8]} {digits[8:]}"

    if document_type == PAN_CARD:
        pan = _first_match(
            PAN_ID_PATTERNS,
            text,
            clean=lambda value: re.sub(r"\s", "", value).upper(),
            accept=lambda value: PAN_NUMBER_EXACT.match(value) is not None,
        )
        if pan:
            return pan

    return _first_match(
        GENERIC_ID_PATTERNS,
        text,
        clean=str.strip,
        accept=lambda value: 6 <= len(value) <= 20 and any(char.isdigit() for char in value),
    )


def extract_date_of_birth(text: str) -> Optional[str]:
    return _first_match(DOB_PATTERNS, text, clean=str.strip)


def extract_expiry_date(text: str) -> Optional[str]:
    return _first_match(EXPIRY_PATTERNS, text, clean=str.strip)


def extract_nationality(text: str) -> Optional[str]:
    return _first_match(NATIONALITY_PATTERNS, text, clean=str.strip)


def extract_address(text: str) -> Optional[str]:
    """Address lines are joined with ", "."""
    def clean(value: str) -> str:
        lines = [_collapse(line) for line in value.splitlines()]
        return ", ".join(line.strip(" ,") for line in lines if line.strip(" ,"))

    return _first_match(ADDRESS_PATTERNS, text, clean=clean, accept=lambda value: 10 < len(value) < 250)


def extract_gender(text: str) -> Optional[str]:
    match = GENDER_PATTERN.search(text)
    if not match:
        return None
    value = match.group(1).strip().upper()
    return GENDERS.get(value, value)


@dataclass
class AgentDocument:
    """Fields read from one document by the rule-based agent."""
    index: int
    document_type: str = UNKNOWN_DOCUMENT
    full_name: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    nationality: Optional[str] = None
    expiry_date: Optional[str] = None
    father_name: Optional[str] = None
    gender: Optional[str] = None

    @property
    def id_label(self) -> str:
        if self.document_type == AADHAAR_CARD:
            return "Aadhar Number"
        if self.document_type == PAN_CARD:
            return "PAN Number"
        return "ID/Passport Number"

    def _counted_fields(self) -> List[Optional[str]]:
        fields = [
            self.full_name,
            self.id_number,
            self.date_of_birth,
            self.address,
            self.nationality,
            self.expiry_date,
        ]
        if self.document_type == PAN_CARD and self.father_name:
            fields.append(self.father_name)
        if self.document_type == AADHAAR_CARD and self.gender:
            fields.append(self.gender)
        return fields

    @property
    def fields_found(self) -> int:
        return sum(1 for value in self._counted_fields() if value)

    @property
    def fields_total(self) -> int:
        return len(self._counted_fields())

    @property
    def complete(self) -> bool:
        return self.fields_found >= MIN_FIELDS_FOUND


def extract_kyc_fields(text: str, index: int = 1) -> AgentDocument:
    """Run type detection and every field extractor over one document's text."""
    document = AgentDocument(index=index)
    if not text or not text.strip():
        return document

    document.document_type = detect_document_type(text)
    document.full_name = extract_name(text)
    document.id_number = extract_id_number(text, document.document_type)
    document.date_of_birth = extract_date_of_birth(text)
    document.address = extract_address(text)
    document.nationality = extract_nationality(text)
    document.expiry_date = extract_expiry_date(text)

    if document.document_type == PAN_CARD:
        document.father_name = extract_father_name(text)
    elif document.document_type == AADHAAR_CARD:
        document.gender = extract_gender(text)

    return document


@dataclass
class AgentResult:
    """Outcome of one agent run."""
    success: bool = False
    status: str = ""
    documents: List[AgentDocument] = field(default_factory=list)
    face_match: Optional[FaceMatchOutcome] = None


class KycAgent:
    """
    Reads KYC fields from one or more documents without an LLM.

    Documents that are empty, fail OCR, or yield no text are skipped; the
    run fails only when no document produced text.
    """

    def __init__(self, text_extractor: TextExtractor, face_matcher: Optional[FaceMatcher] = None):
        self.text_extractor = text_extractor
        self.face_matcher = face_matcher

    async def process(
        self,
        documents: List[RawDocument],
        license_image: Optional[bytes] = None,
        selfie_image: Optional[bytes] = None,
    ) -> AgentResult:
        if not documents:
            return AgentResult(status=STATUS_NO_DOCUMENTS)

        face_task = None
        if license_image and selfie_image and self.face_matcher is not None:
            face_task = asyncio.create_task(
                asyncio.to_thread(self.face_matcher.compare, license_image, selfie_image)
            )

        texts = await asyncio.gather(
            *(self._read(index, document) for index, document in enumerate(documents, start=1))
        )

        result = AgentResult()
        for index, text in enumerate(texts, start=1):
            if text:
                result.documents.append(extract_kyc_fields(text, index))

        if face_task is not None:
            result.face_match = await face_task

        if not result.documents:
            result.status = STATUS_NO_TEXT
            return result

        result.success = True
        result.status = f"Processed {len(result.documents)} of {len(documents)} documents"
        logger.info(
            f"KYC agent: {result.status} "
            f"(types={[document.document_type for document in result.documents]})"
        )
        return result

    async def _read(self, index: int, document: RawDocument) -> Optional[str]:
        if not document.content:
            logger.warning(f"Skipping empty document {index}")
            return None
        try:
            text = await self.text_extractor.extract_text(document.content, document.content_type)
        except Exception as e:
            logger.warning(f"Error processing document {index}: {e}")
            return None
        return text if text and text.strip() else None
