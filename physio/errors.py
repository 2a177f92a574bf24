"""Error taxonomy for the intake assistant.

Only BackendUnavailable and NotAuthenticated are meant to leave the session
manager. The others are raised and absorbed inside the component where they
occur, then surfaced as a log record or a fallback message.
"""

SETUP_SCRIPT = "scripts/001_create_patient_tables.sql"


class PhysioError(Exception):
    """Base class for all intake assistant errors"""


class ProviderUnavailable(PhysioError):
    """No language-model credentials configured"""


class ProviderCallFailed(PhysioError):
    """Network, timeout or malformed response from the language-model provider"""


class BackendUnavailable(PhysioError):
    """The persistence backend is missing its tables"""

    def __init__(self, message=None):
        if message is None:
            message = (
                "Database tables not found. Please run the SQL script "
                f"'{SETUP_SCRIPT}' to create the required tables."
            )
        super().__init__(message)


class NotAuthenticated(PhysioError):
    """No patient identity is bound to the session manager"""

    def __init__(self, message="User not authenticated"):
        super().__init__(message)


class InteractionLogFailed(PhysioError):
    """Writing a patient interaction record failed"""


class SpeechUnsupported(PhysioError):
    """Speech capture or synthesis is not available on this platform"""


class SynthesisFailed(PhysioError):
    """Speech synthesis failed or was interrupted at runtime"""


class InvalidTransition(PhysioError):
    """An intake flow action was requested from the wrong state"""
