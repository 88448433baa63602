"""
Error types shared by the resource pipeline and the allocation ledger.

Each error carries the HTTP status it is rendered with; the Flask error
handler in app.py turns them into {success: false, message} envelopes.
"""


class MediOpsError(Exception):
    """Base class for errors surfaced to API callers"""
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedExtractionError(MediOpsError):
    """Extraction output was not an object at all"""
    default_message = 'Extraction result is not a JSON object'


class ExtractionError(MediOpsError):
    """Text extraction or the AI call failed for a single document"""
    default_message = 'Error analyzing resource PDF'


class ValidationError(MediOpsError):
    status_code = 400
    default_message = 'Invalid request'


class NotFoundError(MediOpsError):
    status_code = 404
    default_message = 'Not found'
