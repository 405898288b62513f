"""Error type raised by services and rendered as the functions' JSON envelope."""

from typing import Any, Dict


class FunctionError(Exception):
    """A failure with a status code and a client-facing ``error`` message.

    Extra keyword arguments are merged into the response body, e.g.
    ``FunctionError(503, "Worker down", requestId=rid, attempts=2)``.
    """

    def __init__(self, status_code: int, error: str, **extra: Any) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.extra = extra

    def to_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"success": False, "error": self.error}
        content.update(self.extra)
        return content
