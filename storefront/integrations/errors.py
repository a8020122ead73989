from dataclasses import dataclass
from typing import Any

SLIP_VERIFIER = "slip_verifier"
BLOB_STORE = "blob_store"


@dataclass
class IntegrationError(Exception):
    """Failure of a collaborator the engine does not own (verifier, store, gateway)."""

    service: str
    code: str
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.service}:{self.code}:{self.message}"

    def log_fields(self) -> dict[str, Any]:
        return {"service": self.service, "code": self.code, "error": self.message, "retryable": self.retryable}


class IntegrationTimeoutError(IntegrationError):
    def __init__(self, service: str, message: str = "Collaborator did not answer in time") -> None:
        super().__init__(service=service, code="TIMEOUT", message=message, retryable=True)


class IntegrationUnavailableError(IntegrationError):
    def __init__(self, service: str, message: str = "Collaborator unavailable") -> None:
        super().__init__(service=service, code="UNAVAILABLE", message=message, retryable=True)


class IntegrationBadGatewayError(IntegrationError):
    def __init__(self, service: str, message: str = "Collaborator answered with an unusable payload") -> None:
        super().__init__(service=service, code="BAD_GATEWAY", message=message, retryable=False)
