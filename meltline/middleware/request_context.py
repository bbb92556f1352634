from datetime import datetime, timezone
from uuid import uuid4

from meltline.schemas.envelope import ErrorEnvelope, ErrorInfo, ResponseMeta


def error_envelope(error: ErrorInfo) -> ErrorEnvelope:
    """Wrap an error in a response envelope with a fresh request id."""
    return ErrorEnvelope(
        request_id=str(uuid4()),
        error=error,
        meta=ResponseMeta(timestamp=datetime.now(timezone.utc)),
    )
