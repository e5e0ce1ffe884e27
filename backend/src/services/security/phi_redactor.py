import re
from typing import Optional


class PHIRedactor:
    """Strips protected health information from text before it reaches the logs."""

    # Pre-compiled patterns, applied in order (dates and ids before phones)
    EMAIL_REGEX = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    DATE_REGEX = re.compile(r'\b\d{2}/\d{2}/\d{4}\b|\b\d{4}-\d{2}-\d{2}\b')
    MRN_REGEX = re.compile(r'\b(?:MRN|medical record|patient id)[:\s#]*\d+', re.IGNORECASE)
    NATIONAL_ID_REGEX = re.compile(r'\b\d{4}[-\s]?\d{4}[-\s]?\d{4}\b')
    PHONE_REGEX = re.compile(r'\+\d{1,3}[-.\s]?\d{3,14}\b|\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b')
    NAME_REGEX = re.compile(r'\b(?:Mr\.|Mrs\.|Ms\.|Dr\.|Miss)\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*')

    @staticmethod
    def redact(text: Optional[str]) -> str:
        if not text:
            return ""

        redacted = text
        redacted = PHIRedactor.EMAIL_REGEX.sub("[EMAIL]", redacted)
        redacted = PHIRedactor.DATE_REGEX.sub("[DATE]", redacted)
        redacted = PHIRedactor.MRN_REGEX.sub("[MRN]", redacted)
        redacted = PHIRedactor.NATIONAL_ID_REGEX.sub("[ID]", redacted)
        redacted = PHIRedactor.PHONE_REGEX.sub("[PHONE]", redacted)
        redacted = PHIRedactor.NAME_REGEX.sub("[NAME]", redacted)
        return redacted

    @staticmethod
    def preview(text: Optional[str], limit: int = 60) -> str:
        """Redacted, single-line, truncated version for log lines."""
        clean = PHIRedactor.redact(text).replace("\n", " ")
        if len(clean) > limit:
            return clean[:limit] + "..."
        return clean
