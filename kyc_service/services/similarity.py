"""Token-set similarity scoring with address-abbreviation expansion.

The same scorer is used for every comparison the verification pipeline makes:
document address vs. expected address, document vs. document, and document
vs. geocoded address. Callers pick the threshold.
"""

import re
from enum import Enum
from typing import Optional, List, Tuple
import logging

logger = logging.getLogger(__name__)


class Region(str, Enum):
    """Address scheme used to resolve ambiguous region codes."""
    INDIA = "india"
    CANADA = "canada"


# Unambiguous two-letter region codes -> full names
REGION_ABBREVIATIONS = {
    # Indian states
    "TN": "Tamil Nadu",
    "AP": "Andhra Pradesh",
    "MH": "Maharashtra",
    "KA": "Karnataka",
    "KL": "Kerala",
    "GJ": "Gujarat",
    "RJ": "Rajasthan",
    "MP": "Madhya Pradesh",
    "UP": "Uttar Pradesh",
    "WB": "West Bengal",
    "BR": "Bihar",
    "OR": "Odisha",
    "PB": "Punjab",
    "HR": "Haryana",
    "AS": "Assam",
    "JH": "Jharkhand",
    "CT": "Chhattisgarh",
    "HP": "Himachal Pradesh",
    "UT": "Uttarakhand",
    "GA": "Goa",
    "MN": "Manipur",
    "ML": "Meghalaya",
    "MZ": "Mizoram",
    "TR": "Tripura",
    "TG": "Telangana",
    "AR": "Arunachal Pradesh",
    # Canadian provinces and territories
    "ON": "Ontario",
    "BC": "British Columbia",
    "AB": "Alberta",
    "QC": "Quebec",
    "MB": "Manitoba",
    "NS": "Nova Scotia",
    "NB": "New Brunswick",
    "PE": "Prince Edward Island",
    "YT": "Yukon",
    "NT": "Northwest Territories",
    "NU": "Nunavut",
}

# Codes used by both schemes
AMBIGUOUS_ABBREVIATIONS = {
    "SK": {Region.INDIA: "Sikkim", Region.CANADA: "Saskatchewan"},
    "NL": {Region.INDIA: "Nagaland", Region.CANADA: "Newfoundland and Labrador"},
}

# Substrings that mark an address as Indian. Best-effort heuristic, not a
# geocoding step: anything without a hint is treated as Canadian.
INDIA_HINT_KEYWORDS = ("india", "tamil", "tirunelveli", "pettai", "chennai")
INDIA_HINT_PATTERNS = (
    re.compile(r"\bpin(?:\s*code)?\b", re.IGNORECASE),
    re.compile(r"\bpincode\b", re.IGNORECASE),
    re.compile(r"(?<!\d)\d{6}(?!\d)"),  # PIN-like 6-digit token
)

_ABBREVIATION_PATTERN = re.compile(
    r"\b(" + "|".join(sorted(set(REGION_ABBREVIATIONS) | set(AMBIGUOUS_ABBREVIATIONS))) + r")\b",
    re.IGNORECASE,
)

# Whitespace and the punctuation that separates address parts
TOKEN_DELIMITERS = re.compile(r"[\s,.;:\-]+")


def classify_region(address: str) -> Region:
    """
    Guess which address scheme an address belongs to.

    Scans the whole string (case-insensitive) for Indian hints such as a known
    city, the word "india", or a 6-digit PIN code. Defaults to CANADA.
    """
    if not address:
        return Region.CANADA

    lowered = address.lower()
    if any(keyword in lowered for keyword in INDIA_HINT_KEYWORDS):
        return Region.INDIA
    if any(pattern.search(address) for pattern in INDIA_HINT_PATTERNS):
        return Region.INDIA
    return Region.CANADA


def normalize_address(address: str) -> str:
    """
    Expand region abbreviations to full names (whole words only).

    Ambiguous codes (SK, NL) are resolved with classify_region().
    """
    if not address or not address.strip():
        return address

    region = classify_region(address)

    def expand(match: re.Match) -> str:
        code = match.group(1).upper()
        if code in AMBIGUOUS_ABBREVIATIONS:
            return AMBIGUOUS_ABBREVIATIONS[code][region]
        return REGION_ABBREVIATIONS[code]

    return _ABBREVIATION_PATTERN.sub(expand, address)


def normalize_text(text: str) -> str:
    """Full normalization applied before comparison."""
    return normalize_address(text).casefold().strip()


def tokenize(text: str) -> set:
    """Split normalized text into a set of words."""
    return {token for token in TOKEN_DELIMITERS.split(text) if token}


def jaccard(tokens1: set, tokens2: set) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 for two empty sets."""
    union = tokens1 | tokens2
    if not union:
        return 0.0
    return len(tokens1 & tokens2) / len(union)


class SimilarityScorer:
    """Scores address/name similarity using normalized token sets."""

    def similarity(self, text1: Optional[str], text2: Optional[str]) -> float:
        """Similarity in [0, 1]."""
        if not text1 or not text1.strip() or not text2 or not text2.strip():
            return 0.0

        norm1 = normalize_text(text1)
        norm2 = normalize_text(text2)

        if norm1 == norm2:
            return 1.0

        return jaccard(tokenize(norm1), tokenize(norm2))

    def score(
        self,
        text1: Optional[str],
        text2: Optional[str],
        threshold: float,
    ) -> Tuple[float, bool]:
        """
        Compare two strings.

        Args:
            text1: First text (address or name)
            text2: Second text
            threshold: Minimum similarity counted as a match

        Returns:
            Tuple of (similarity, similarity >= threshold)
        """
        try:
            similarity = self.similarity(text1, text2)
        except Exception as e:
            logger.error(f"Error scoring similarity: {e}")
            return 0.0, False

        logger.debug(f"Similarity '{text1}' vs '{text2}' -> {similarity:.2f}")
        return similarity, similarity >= threshold

    def check_document_consistency(
        self,
        documents: List[Tuple[Optional[str], Optional[str]]],
        threshold: float,
    ) -> Tuple[float, float, bool]:
        """
        Compare the first two documents' (address, name) pairs.

        Names are compared with threshold 0.0, so the name score is
        informational only.

        Returns:
            Tuple of (address_score, name_score, documents_consistent)
        """
        if len(documents) < 2:
            return 0.0, 0.0, False

        (address1, name1), (address2, name2) = documents[0], documents[1]
        address_score, consistent = self.score(address1, address2, threshold)
        name_score, _ = self.score(name1, name2, 0.0)

        return address_score, name_score, consistent
