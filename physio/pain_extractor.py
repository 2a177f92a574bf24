import re

from physio.models import PainInfo

PAIN_LOCATIONS = ('neck', 'back', 'shoulder', 'knee', 'hip', 'ankle', 'wrist', 'elbow')

# "pain 7", "level 7", "pain level of 7"
_PAIN_LEVEL_PATTERN = re.compile(r'(?:pain level|level|pain)\s*(?:of\s*)?(\d{1,2})(?!\d)', re.IGNORECASE)


def extract_pain_level(utterance):
    for match in _PAIN_LEVEL_PATTERN.finditer(utterance):
        level = int(match.group(1))
        if 1 <= level <= 10:
            return level
    return None


def extract_pain_location(utterance):
    lower_message = utterance.lower()
    for location in PAIN_LOCATIONS:
        if location in lower_message:
            return location
    return None


def extract_pain_info(utterance: str) -> PainInfo:
    """
    Pull a pain level (1-10) and a body location out of a patient utterance.

    Args:
        utterance (str): Raw typed or transcribed patient text

    Returns:
        PainInfo: level and location (None when absent) plus a confidence of
        0.5 baseline, 0.8 with a location, 0.9 with both
    """
    pain_level = extract_pain_level(utterance)
    pain_location = extract_pain_location(utterance)

    confidence = 0.5
    if pain_location is not None:
        confidence = 0.8
        if pain_level is not None:
            confidence = 0.9

    return PainInfo(pain_level=pain_level, pain_location=pain_location, confidence=confidence)
