"""KYC field and address extraction from OCR text.

Both extractors call an OpenAI-compatible chat completion endpoint
(OpenRouter). Address extraction never fails outright:
1. LLM answer, cleaned of section numbers and labels
2. Regex fallback over the raw text (Indian, then Canadian layout)
3. None
"""

import json
import re
import logging
from typing import Optional, Dict, Any

from openai import AsyncOpenAI

from ..config import get_settings, Settings
from .interfaces import FieldExtractor, AddressExtractor, ExtractedFields, is_missing

logger = logging.getLogger(__name__)


MODEL_MAP = {
    "Mistral": "mistralai/Mistral-7B-Instruct-v0.2",
    "OpenAI": "openai/gpt-4o",
}
DEFAULT_MODEL = MODEL_MAP["Mistral"]

KYC_FIELD_NAMES = [
    "document_type",
    "document_number",
    "country_of_issue",
    "issuing_authority",
    "full_name",
    "first_name",
    "middle_name",
    "last_name",
    "gender",
    "date_of_birth",
    "place_of_birth",
    "nationality",
    "address",
    "date_of_issue",
    "date_of_expiry",
    "blood_group",
    "personal_id_number",
    "father_name",
    "mother_name",
    "marital_status",
    "photo_base64",
    "signature_base64",
    "additional_info",
]

KYC_FIELDS_PROMPT = """
You are an expert KYC document parser. Extract only factual data from the document.
If any field is missing, set it to "Not provided". DO NOT infer.

The address must include building/house number, street, city, province, postal code.

Return only the JSON below:

{fields}

Text:
{text}
"""

MISTRAL_ADDRESS_PROMPT = """You are a strict document parser extracting addresses from identity documents.

Your task is to extract ONLY the full mailing address from the document text. The address format depends on the country:

**For Canadian addresses:**
- House/building number, Street name, City, Province (two-letter code like ON, NL), Postal code (A1A 1A1 format)
- Example: 742 Evergreen Terrace, Ottawa, ON K1A 0B1

**For Indian addresses:**
- House/building number, Street name, Area/Locality, City, State (full name like Tamil Nadu or abbreviation like TN), PIN code (6 digits)
- Example: 10 F2 Narayanasamy Kovil Street, Pettai, Tirunelveli, Tamil Nadu 627004
- Example: 10 F2 Narayanasamy Kovil Street, Pettai, Tirunelveli, TN 627004

**IMPORTANT RULES:**
- DO NOT include section numbers (e.g., '8.', '9.', '8)', '9)') or labels like 'Eyes:', 'Class:', etc.
- Ignore any lines starting with numbers followed by a dot or parenthesis (e.g., '8.', '8.2', '9)') as these are section headers, not addresses.
- The address should begin with the actual building number (e.g., '10 F2', '2', '742')
- Never assume or hallucinate building numbers.
- If multiple addresses exist, pick the one that is clearly a residential or mailing address.
- If no address is found, return "None" (exactly this word, no quotes).

Return ONLY the address in one line. No extra words, explanations, or labels.

Text:
{text}

Extracted Address:"""

GENERIC_ADDRESS_PROMPT = """Extract the full mailing address from the following text. Include street, city, state/province, and postal/PIN code. Support both Canadian and Indian address formats. If no address is found, return "None".

Text: {text}

Address:"""


# Address cleanup patterns
LEADING_SECTION_NUMBERS = re.compile(r"^(?:\s*(\d{1,2}(?:\.\d)?[.):])\s*)+")
SECTION_LABEL = re.compile(r"section\s*\d{1,2}(?:\.\d)?[.):]?\s*", re.IGNORECASE)
LEADING_DECIMAL = re.compile(r"^\d+\.\d+\s+")

# "742 Evergreen Terrace, Ottawa, ON K1A 0B1"
CANADIAN_FULL_ADDRESS = re.compile(
    r"^\d{1,5}[A-Za-z\-]?\s+[\w\s.,'-]+?,\s*\w+,\s*[A-Z]{2},?\s*[A-Z]\d[A-Z] ?\d[A-Z]\d",
    re.IGNORECASE,
)

INDIAN_STATES = (
    "Tamil Nadu|TN|Andhra Pradesh|AP|Maharashtra|MH|Karnataka|KA|Kerala|KL|Gujarat|GJ|"
    "Rajasthan|RJ|Madhya Pradesh|MP|Uttar Pradesh|UP|West Bengal|WB|Bihar|BR|Odisha|OR|"
    "Punjab|PB|Haryana|HR|Assam|AS|Jharkhand|JH|Chhattisgarh|CT|Himachal Pradesh|HP|"
    "Uttarakhand|UT|Goa|GA|Manipur|MN|Meghalaya|ML|Mizoram|MZ|Nagaland|NL|Tripura|TR|"
    "Sikkim|SK|Telangana|TG|Arunachal Pradesh|AR"
)

_WORDS = r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"

# number + words + optional locality suffix + comma parts + state + optional PIN
INDIAN_ADDRESS = re.compile(
    r"\d+\s*[A-Z0-9/]*(?:\s+[A-Z][a-z]+)+"
    r"(?:\s+(?:Street|St|Road|Rd|Avenue|Ave|Lane|Ln|Nagar|Colony|Area|Locality|Pettai|Kovil))?"
    rf"(?:\s*,\s*{_WORDS})*"
    rf"\s*,\s*(?:{INDIAN_STATES})\b"
    r"(?:\s+\d{6})?",
    re.IGNORECASE | re.MULTILINE,
)

# number + words + street suffix + comma parts + province code + optional postal code
CANADIAN_ADDRESS = re.compile(
    r"\d+\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"
    r"\s+(?:Street|St|Road|Rd|Avenue|Ave|Lane|Ln|Drive|Dr|Boulevard|Blvd|Court|Ct|Crescent|Cres|Way|Terrace|Ter)"
    rf"(?:\s*,\s*{_WORDS})*"
    r"\s*,\s*[A-Z]{2}\b"
    r"(?:\s+[A-Z]\d[A-Z]\s?\d[A-Z]\d)?",
    re.IGNORECASE | re.MULTILINE,
)

MIN_ADDRESS_LENGTH = 10
MAX_ADDRESS_LENGTH = 200


def resolve_model(model_choice: Optional[str]) -> str:
    """Map a user-facing model choice to the provider model id."""
    return MODEL_MAP.get(model_choice or "", DEFAULT_MODEL)


def clean_address(raw_response: str, source_text: str = "") -> str:
    """
    Strip section numbers and labels from an LLM address answer.

    When a complete Canadian address can be recognised (in the answer or,
    failing that, at the start of the source text) it is returned on its own.
    """
    flattened = (raw_response or "").replace("\n", ", ").replace("  ", " ").strip()
    flattened = LEADING_SECTION_NUMBERS.sub("", flattened)
    flattened = SECTION_LABEL.sub("", flattened)
    flattened = LEADING_DECIMAL.sub("", flattened)

    match = CANADIAN_FULL_ADDRESS.match(flattened)
    if match:
        return match.group(0).strip()

    match = CANADIAN_FULL_ADDRESS.match((source_text or "").replace("\n", " "))
    if match:
        return match.group(0).strip()

    return flattened


def fallback_address(text: str) -> Optional[str]:
    """Find an Indian or Canadian address in raw OCR text with regex."""
    if not text or not text.strip():
        return None

    for pattern in (INDIAN_ADDRESS, CANADIAN_ADDRESS):
        match = pattern.search(text)
        if match:
            address = match.group(0).strip()
            if MIN_ADDRESS_LENGTH < len(address) < MAX_ADDRESS_LENGTH:
                return address

    return None


def safe_json_parse(text: str) -> Dict[str, Any]:
    """Parse the outermost JSON object in a model response."""
    match = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not match:
        raise ValueError("No JSON found in model output")
    payload = json.loads(match.group())
    if not isinstance(payload, dict):
        raise ValueError("Model output is not a JSON object")
    return payload


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_fields(raw_output: str, source_text: str = "") -> ExtractedFields:
    """
    Turn a model response into an ExtractedFields map.

    Placeholder answers become None. The address is cleaned the same way as
    the dedicated address extractor's answer. Unparseable output yields the
    unresolved variant carrying the raw response.
    """
    try:
        payload = safe_json_parse(raw_output)
    except ValueError as e:
        logger.warning(f"Failed to parse KYC fields JSON: {e}")
        return ExtractedFields.unresolved("Failed to parse KYC fields", raw_output)

    values = {}
    for name, raw_value in payload.items():
        value = _as_text(raw_value)
        values[name] = None if is_missing(value) else value.strip()

    if values.get("address"):
        cleaned = clean_address(values["address"], source_text)
        values["address"] = None if is_missing(cleaned) else cleaned

    return ExtractedFields(values=values)


class LLMClient:
    """Thin async wrapper over an OpenAI-compatible chat completion endpoint."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.openrouter_api_key,
                base_url=self.settings.openrouter_base_url,
                timeout=self.settings.http_timeout_seconds,
                default_headers={
                    "HTTP-Referer": self.settings.llm_referer,
                    "X-Title": self.settings.llm_title,
                },
            )
        return self._client

    async def complete(self, prompt: str, model_choice: Optional[str]) -> str:
        """Single-turn completion; returns the message content."""
        response = await self.client.chat.completions.create(
            model=resolve_model(model_choice),
            messages=[{"role": "user", "content": prompt}],
            temperature=self.settings.llm_temperature,
            max_tokens=self.settings.llm_max_tokens,
        )
        return response.choices[0].message.content or ""


class LLMFieldExtractor(FieldExtractor):
    """Extracts the standard KYC field set as JSON."""

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or LLMClient()

    @staticmethod
    def build_prompt(text: str) -> str:
        fields = ",\n".join(f'  "{name}": "string or \'Not provided\'"' for name in KYC_FIELD_NAMES)
        return KYC_FIELDS_PROMPT.format(fields="{\n" + fields + "\n}", text=text)

    async def extract_fields(self, text: str, model_hint: str) -> ExtractedFields:
        raw_output = await self.llm.complete(self.build_prompt(text), model_hint)
        fields = parse_fields(raw_output, text)
        if fields.is_resolved:
            logger.info(f"Extracted {len(fields.to_dict())} KYC fields")
        return fields


class LLMAddressExtractor(AddressExtractor):
    """Extracts a single mailing address, falling back to regex on the raw text."""

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or LLMClient()

    @staticmethod
    def build_prompt(text: str, model_hint: str) -> str:
        template = MISTRAL_ADDRESS_PROMPT if model_hint == "Mistral" else GENERIC_ADDRESS_PROMPT
        return template.format(text=text)

    async def extract_address(self, text: str, model_hint: str) -> Optional[str]:
        try:
            answer = await self.llm.complete(self.build_prompt(text, model_hint), model_hint)
        except Exception as e:
            logger.error(f"Error extracting address with LLM, using fallback: {e}")
            return fallback_address(text)

        address = clean_address(answer, text)
        if is_missing(address):
            logger.warning("LLM returned no address, attempting fallback extraction from text")
            return fallback_address(text)
        return address
